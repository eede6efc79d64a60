"""
Driver wallets and settlements.

A driver collects the delivery fee in cash and owes the platform its
commission. Settling marks the driver's delivered orders reconciled and
records a payment for the commission collected.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from accounting import (compute_order_commission, is_archived, is_delivered, to_amount,
                        to_currency)
from config import (DEFAULT_SETTINGS, ORDERS, PAYMENTS, STATUS_COMMITTED, STATUS_PENDING,
                    Settings)
from exceptions import NothingToSettleError, PersistenceError
from timestamps import now_local, to_aware, to_datetime

logger = logging.getLogger(__name__)


def _unreconciled(driver: dict, orders: Iterable[dict]) -> List[dict]:
    driver_id = str(driver['id'])
    return [
        o for o in orders
        if str(o.get('driverId')) == driver_id and is_delivered(o) and not o.get('reconciled')
    ]


def driver_wallet(driver: dict, orders: Iterable[dict]) -> dict:
    """Current (unsettled) wallet of one driver, as the driver app shows it.

    Archived orders are not part of the live wallet; their balance lives in the
    monthly report's wallet snapshot.
    """
    unpaid = [o for o in _unreconciled(driver, orders) if not is_archived(o)]
    total_fees = sum(to_amount(o.get('deliveryFee')) for o in unpaid)
    company_share = sum(compute_order_commission(o, driver) for o in unpaid)
    opening_balance = to_amount(driver.get('walletOpeningBalance'))

    final_fees = to_currency(total_fees)
    final_share = to_currency(company_share)
    rate = to_amount(driver.get('commissionRate'))
    return {
        'driverId': str(driver['id']),
        'name': driver.get('name', ''),
        'ordersCount': len(unpaid),
        'orderIds': [o['id'] for o in unpaid],
        'commissionType': driver.get('commissionType') or 'percentage',
        'commissionRate': rate,
        'totalFees': final_fees,
        'companyShare': final_share,
        'openingBalance': opening_balance,
        'driverShare': to_currency(final_fees - final_share + opening_balance),
    }


def payment_date(orders: Iterable[dict], now: datetime, settings: Settings = DEFAULT_SETTINGS) -> datetime:
    """When a settlement is booked.

    Settling after midnight but before the shift ends, for orders delivered on
    an earlier day, books the payment at 23:59:59 of the last delivery day.
    """
    delivered = [d for d in (to_datetime(o.get('deliveredAt'), settings) for o in orders) if d is not None]
    if not delivered:
        return now
    last = max(delivered)
    if now.date() != last.date() and now.hour < settings.business_day_start_hour:
        return datetime(last.year, last.month, last.day, 23, 59, 59)
    return now


def find_pending_payment(payments: Iterable[dict], driver_id: str) -> Optional[dict]:
    pending = [p for p in payments
               if p.get('status') == STATUS_PENDING and str(p.get('driverId')) == str(driver_id)]
    if not pending:
        return None
    return max(pending, key=lambda p: to_datetime(p.get('createdAt')) or datetime.min)


def _reconcile_and_commit(store, payment: dict, orders: Iterable[dict], now: datetime,
                          settings: Settings) -> None:
    covered = set(payment.get('reconciledOrderIds') or [])
    patches = [{'id': o['id'], 'reconciled': True}
               for o in orders if o.get('id') in covered and not o.get('reconciled')]
    try:
        if patches:
            store.batch_save_data(ORDERS, patches, settings.archive_batch_size)
    except Exception as e:
        logger.exception("Reconciling orders for payment %s failed", payment['id'])
        raise PersistenceError('Reconciling orders', e, payment_id=payment['id'],
                               driver_id=payment['driverId']) from e

    committed_at = to_aware(now, settings)
    try:
        store.update_data(PAYMENTS, payment['id'], {'status': STATUS_COMMITTED, 'committedAt': committed_at})
    except Exception as e:
        logger.exception("Committing payment %s failed", payment['id'])
        raise PersistenceError('Committing payment', e, payment_id=payment['id'],
                               driver_id=payment['driverId']) from e
    payment['status'] = STATUS_COMMITTED
    payment['committedAt'] = committed_at


def _audit_settlement(store, actor_id: str, driver: dict, payment: dict) -> None:
    try:
        store.add_audit_log(actor_id, 'financial', 'تسوية مالية',
                            f"تمت تسوية حساب المندوب {driver.get('name', driver['id'])}. المبلغ: {payment['amount']} ج.م لعدد {payment['ordersCount']} طلب.")
    except Exception:
        # Payment and orders are already committed at this point
        logger.exception("Audit log for payment %s failed", payment['id'])


def settle_driver(store, driver: dict, orders: Iterable[dict], actor_id: str, now: datetime = None,
                  payments: Iterable[dict] = None, settings: Settings = DEFAULT_SETTINGS) -> dict:
    """Reconcile every delivered, unsettled order of `driver` and record the payment.

    The payment is saved 'pending' with the ids it covers, the orders are
    marked reconciled, then the payment is committed. A pending payment left
    by a failed run is finished instead of starting a new one. `payments`
    defaults to the payments collection read from the store.

    Raises NothingToSettleError when there is nothing to settle and
    PersistenceError when a write fails.
    """
    now = now or now_local(settings)
    orders = list(orders)
    driver_id = str(driver['id'])
    if payments is None:
        payments = store.get_collection(PAYMENTS)

    pending = find_pending_payment(payments, driver_id)
    if pending is not None:
        logger.warning("Resuming pending payment %s for driver %s", pending['id'], driver_id)
        _reconcile_and_commit(store, pending, orders, now, settings)
        _audit_settlement(store, actor_id, driver, pending)
        return pending

    eligible = _unreconciled(driver, orders)
    if not eligible:
        raise NothingToSettleError(driver_id)

    total_fees = sum(to_amount(o.get('deliveryFee')) for o in eligible)
    company_share = sum(compute_order_commission(o, driver) for o in eligible)
    paid_at = to_aware(payment_date(eligible, now, settings), settings)

    payment = {
        'id': f"PAY-{int(to_aware(now, settings).timestamp() * 1000)}",
        'driverId': driver_id,
        'amount': to_currency(company_share),
        'totalCollected': to_currency(total_fees),
        'ordersCount': len(eligible),
        'createdAt': paid_at,
        'reconciledOrderIds': [o['id'] for o in eligible],
        'status': STATUS_PENDING,
    }

    try:
        store.add_data(PAYMENTS, payment)
    except Exception as e:
        logger.exception("Saving payment for driver %s failed", driver_id)
        raise PersistenceError('Saving payment', e, driver_id=driver_id) from e

    _reconcile_and_commit(store, payment, eligible, now, settings)
    logger.info("Settled %d orders for driver %s: %.2f", len(eligible), driver_id, payment['amount'])
    _audit_settlement(store, actor_id, driver, payment)
    return payment


def delete_payment(store, payment_id: str, actor_id: str) -> bool:
    """Remove a payment record. Orders it reconciled stay reconciled."""
    deleted = store.delete_data(PAYMENTS, payment_id)
    if deleted:
        store.add_audit_log(actor_id, 'financial', 'المدفوعات', f"تم حذف عملية الدفع رقم {payment_id}")
    return deleted
