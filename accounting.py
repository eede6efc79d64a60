"""
Commission and reporting arithmetic over order/user documents.

Every function here is pure: callers fetch the collections (see dbhelper) and
pass them in. Documents are the plain dicts stored in Firestore, with the
camelCase keys the client apps write.
"""
import logging
import re
from collections import defaultdict
from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from config import DEFAULT_SETTINGS, ZERO_COMMISSION_VISIBLE, Settings
from timestamps import business_date_of, now_local, to_datetime

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    # Values are what the client apps store in the status field
    WAITING_MERCHANT = 'بانتظار التاجر'
    PREPARING = 'جاري التحضير'
    READY = 'تم التجهيز'
    PENDING = 'قيد الانتظار'
    IN_TRANSIT = 'قيد التوصيل'
    DELIVERED = 'تم التوصيل'
    CANCELLED = 'تم الإلغاء/الرفض'


TERMINAL_STATUSES = {OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value}
ACTIVE_STATUSES = {s.value for s in OrderStatus} - TERMINAL_STATUSES

COMMISSION_FIXED = 'fixed'
COMMISSION_PERCENTAGE = 'percentage'

REGULAR_PREFIX = 'ORD-'
SHOPPING_PREFIX = 'S-'

_LEADING_DIGITS = re.compile(r'^\d+')


# HELPERS
def to_amount(value: Any) -> float:
    """Parse a money field; numeric strings are accepted, anything else is 0."""
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return 0.0
    return 0.0


def to_currency(value: float) -> float:
    """Round half-up to 2 decimals. Only for final figures, never mid-sum."""
    try:
        return float(Decimal(str(value)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return 0.0


def status_of(order: dict) -> str:
    status = order.get('status')
    return status.value if isinstance(status, OrderStatus) else status


def is_delivered(order: dict) -> bool:
    return status_of(order) == OrderStatus.DELIVERED.value


def is_cancelled(order: dict) -> bool:
    return status_of(order) == OrderStatus.CANCELLED.value


def is_archived(order: dict) -> bool:
    return order.get('isArchived') is True


def live_orders(orders: Iterable[dict]) -> List[dict]:
    """Orders still on the books (isArchived != true)."""
    return [o for o in orders if not is_archived(o)]


def users_by_id(users: Iterable[dict]) -> Dict[str, dict]:
    return {str(u['id']): u for u in users if u and u.get('id') is not None}


def _driver_for(order: dict, drivers: Dict[str, dict]) -> Optional[dict]:
    driver_id = order.get('driverId')
    if driver_id in (None, ''):
        return None
    return drivers.get(str(driver_id))


def is_status_reversion(current: Any, new: Any) -> bool:
    """True when a finished order would be pushed back into an active status."""
    current = current.value if isinstance(current, OrderStatus) else current
    new = new.value if isinstance(new, OrderStatus) else new
    return current in TERMINAL_STATUSES and new in ACTIVE_STATUSES


# ==================================================
# COMMISSION
# ==================================================
def compute_order_commission(order: dict, driver: Optional[dict]) -> float:
    """What the driver owes the platform for one order.

    fixed: commissionRate per order, whatever the delivery fee.
    percentage: commissionRate percent of the delivery fee.
    Zero when there is no driver or the order is not delivered.
    """
    if driver is None or not is_delivered(order):
        return 0.0
    rate = to_amount(driver.get('commissionRate'))
    if driver.get('commissionType') == COMMISSION_FIXED:
        commission = rate
    else:
        commission = to_amount(order.get('deliveryFee')) * (rate / 100)
    return max(commission, 0.0)


def commission_breakdown(orders: Iterable[dict], drivers: Dict[str, dict],
                         settings: Settings = DEFAULT_SETTINGS) -> dict:
    """Aggregate commission over delivered, non-archived orders.

    Only strictly positive commissions go into the total. With the 'visible'
    zero-commission policy, delivered orders whose driver is known but whose
    commission came out as 0 are still counted in commissionedOrders.
    """
    total = 0.0
    counted = 0
    for order in orders:
        if is_archived(order) or not is_delivered(order):
            continue
        driver = _driver_for(order, drivers)
        commission = compute_order_commission(order, driver)
        if commission > 0:
            total += commission
            counted += 1
        elif driver is not None and settings.zero_commission_policy == ZERO_COMMISSION_VISIBLE:
            counted += 1
    return {'total': total, 'commissionedOrders': counted}


def compute_aggregate_commission(orders: Iterable[dict], drivers: Dict[str, dict],
                                 settings: Settings = DEFAULT_SETTINGS) -> float:
    return commission_breakdown(orders, drivers, settings)['total']


def admin_share(app_profit: float, settings: Settings = DEFAULT_SETTINGS) -> float:
    return app_profit * settings.admin_share_rate


# ==================================================
# ORDER NUMBERING
# ==================================================
def order_number(order_id: Any, prefix: str) -> Optional[int]:
    """Numeric suffix of an id with the given prefix ('ORD-12' -> 12)."""
    if not isinstance(order_id, str) or not order_id.startswith(prefix):
        return None
    match = _LEADING_DIGITS.match(order_id[len(prefix):])
    return int(match.group()) if match else None


def _max_number(orders: Iterable[dict], prefix: str) -> int:
    numbers = [order_number(o.get('id'), prefix) for o in orders]
    return max([n for n in numbers if n is not None], default=0)


def last_order_ids(orders: Iterable[dict]) -> Tuple[str, str]:
    """Highest regular and shopping ids among the given orders ('<prefix>0' if none)."""
    orders = list(orders)
    return (f"{REGULAR_PREFIX}{_max_number(orders, REGULAR_PREFIX)}",
            f"{SHOPPING_PREFIX}{_max_number(orders, SHOPPING_PREFIX)}")


def next_order_id(orders: Iterable[dict], shopping: bool = False, reports: Iterable[dict] = ()) -> str:
    """Next id for a new order.

    Only live orders are scanned; the highest id already archived comes from
    the monthly reports (lastRegularOrderId / lastShoppingOrderId), so an id
    is never handed out twice.
    """
    prefix = SHOPPING_PREFIX if shopping else REGULAR_PREFIX
    field = 'lastShoppingOrderId' if shopping else 'lastRegularOrderId'
    archived = [order_number(r.get(field), prefix) for r in reports or ()]
    floor = max([n for n in archived if n is not None], default=0)
    return f"{prefix}{max(_max_number(live_orders(orders), prefix), floor) + 1}"


# ==================================================
# PERIOD TOTALS / WALLET SNAPSHOTS
# ==================================================
def summarize_orders(orders: Iterable[dict], users: Iterable[dict],
                     settings: Settings = DEFAULT_SETTINGS) -> dict:
    """Financial totals of a set of orders (archived ones are skipped)."""
    orders = live_orders(orders)
    drivers = users_by_id(users)
    delivered = [o for o in orders if is_delivered(o)]
    cancelled = [o for o in orders if is_cancelled(o)]

    total_revenue = sum(to_amount(o.get('totalPrice')) for o in delivered)
    total_fees = sum(to_amount(o.get('deliveryFee')) for o in delivered)
    profit = commission_breakdown(delivered, drivers, settings)

    return {
        'ordersCount': len(orders),
        'deliveredOrdersCount': len(delivered),
        'cancelledOrdersCount': len(cancelled),
        'otherOrdersCount': len(orders) - len(delivered) - len(cancelled),
        'totalRevenue': total_revenue,
        'totalDeliveryFees': total_fees,
        'totalAppProfit': profit['total'],
        'commissionedOrdersCount': profit['commissionedOrders'],
        'adminShare': admin_share(profit['total'], settings),
        'totalDriverPayouts': total_fees - profit['total'],
    }


def wallet_snapshots(orders: Iterable[dict], users: Iterable[dict]) -> Dict[str, dict]:
    """Unpaid balance of every driver that appears on a delivered order.

    balance = delivery fees - commission, over the driver's delivered orders
    that are not reconciled yet.
    """
    people = users_by_id(users)
    snapshots: Dict[str, dict] = {}
    for order in orders:
        if not is_delivered(order) or order.get('driverId') in (None, ''):
            continue
        driver_id = str(order['driverId'])
        driver = people.get(driver_id)
        entry = snapshots.get(driver_id)
        if entry is None:
            entry = snapshots[driver_id] = {
                'name': (driver or {}).get('name') or order.get('driverName') or driver_id,
                'role': (driver or {}).get('role') or 'driver',
                'balance': 0.0,
                'ordersCount': 0,
            }
        if order.get('reconciled'):
            continue
        entry['balance'] += to_amount(order.get('deliveryFee')) - compute_order_commission(order, driver)
        entry['ordersCount'] += 1
    return snapshots


# ==================================================
# DASHBOARD / DAILY / PER-USER REPORTS
# ==================================================
def _delivery_time(order: dict, settings: Settings) -> Optional[datetime]:
    return to_datetime(order.get('deliveredAt'), settings) or to_datetime(order.get('createdAt'), settings)


def dashboard_stats(orders: Iterable[dict], users: Iterable[dict], now: datetime = None,
                    settings: Settings = DEFAULT_SETTINGS) -> dict:
    """Headline numbers of the admin reports screen, plus the current calendar month."""
    users = list(users)
    orders = live_orders(orders)
    now = now or now_local(settings)
    drivers = users_by_id(users)
    totals = summarize_orders(orders, users, settings)

    this_month = []
    for order in orders:
        if not is_delivered(order):
            continue
        when = _delivery_time(order, settings)
        if when is not None and when.year == now.year and when.month == now.month:
            this_month.append(order)
    monthly_commission = compute_aggregate_commission(this_month, drivers, settings)

    return {
        'orderCount': totals['ordersCount'],
        'deliveredCount': totals['deliveredOrdersCount'],
        'cancelledCount': totals['cancelledOrdersCount'],
        'pendingCount': sum(1 for o in orders if status_of(o) == OrderStatus.PENDING.value),
        'totalRevenue': totals['totalRevenue'],
        'totalDeliveryFees': totals['totalDeliveryFees'],
        'totalCommission': totals['totalAppProfit'],
        'merchantsCount': sum(1 for u in users if u and u.get('role') == 'merchant'),
        'driversCount': sum(1 for u in users if u and u.get('role') == 'driver'),
        'monthlyRevenue': sum(to_amount(o.get('totalPrice')) for o in this_month),
        'monthlyCommission': monthly_commission,
        'monthlyAdminShare': admin_share(monthly_commission, settings),
    }


def daily_report(orders: Iterable[dict], users: Iterable[dict], now: datetime = None,
                 settings: Settings = DEFAULT_SETTINGS, top: int = 5) -> dict:
    """Numbers for the current business day (06:00 -> 06:00).

    Orders with an unreadable createdAt are left out instead of failing the report.
    """
    now = now or now_local(settings)
    today = business_date_of(now, settings)
    drivers = users_by_id(users)

    todays = []
    for order in live_orders(orders):
        bucket = business_date_of(order.get('createdAt'), settings)
        if bucket is None:
            logger.debug("Skipping order %s with unreadable createdAt", order.get('id'))
            continue
        if bucket == today:
            todays.append(order)

    delivered = [o for o in todays if is_delivered(o)]
    cancelled = [o for o in todays if is_cancelled(o)]
    pending = [o for o in todays if status_of(o) == OrderStatus.PENDING.value]

    performance: Dict[str, dict] = {}
    for order in delivered:
        driver = _driver_for(order, drivers)
        if driver is None:
            continue
        row = performance.setdefault(str(driver['id']), {
            'driverId': str(driver['id']), 'name': driver.get('name', ''), 'count': 0, 'total': 0.0})
        row['count'] += 1
        row['total'] += to_amount(order.get('deliveryFee'))
    top_drivers = sorted(performance.values(), key=lambda r: r['count'], reverse=True)[:top]

    count = len(todays)
    return {
        'date': today.isoformat(),
        'count': count,
        'deliveredCount': len(delivered),
        'cancelledCount': len(cancelled),
        'pendingCount': len(pending),
        'totalRevenue': sum(to_amount(o.get('totalPrice')) for o in delivered),
        'totalDeliveryFees': sum(to_amount(o.get('deliveryFee')) for o in delivered),
        'totalCommission': compute_aggregate_commission(delivered, drivers, settings),
        'deliveryRate': round(len(delivered) / count * 100) if count else 0,
        'cancelRate': round(len(cancelled) / count * 100) if count else 0,
        'topDrivers': top_drivers,
    }


def _as_date(value: Any) -> Optional[date]:
    if value in (None, ''):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def user_report(orders: Iterable[dict], user: dict, start: Any = None, end: Any = None,
                settings: Settings = DEFAULT_SETTINGS) -> dict:
    """Detailed report of one driver or merchant.

    start/end ('YYYY-MM-DD' or date) bound createdAt inclusively; both must be
    given for the range to apply. Raises ValueError on a malformed date.
    """
    user_id = str(user['id'])
    is_driver = user.get('role') == 'driver'
    key = 'driverId' if is_driver else 'merchantId'
    selected = [o for o in orders if str(o.get(key)) == user_id]

    start_day, end_day = _as_date(start), _as_date(end)
    date_label = 'منذ بدء العمل'
    if start_day and end_day:
        lower = datetime.combine(start_day, time.min)
        upper = datetime.combine(end_day, time(23, 59, 59))
        in_range = []
        for order in selected:
            created = to_datetime(order.get('createdAt'), settings)
            if created is not None and lower <= created <= upper:
                in_range.append(order)
        selected = in_range
        date_label = f"من {start_day.isoformat()} إلى {end_day.isoformat()}"

    selected.sort(key=lambda o: to_datetime(o.get('createdAt'), settings) or datetime.min, reverse=True)

    delivered = [o for o in selected if is_delivered(o)]
    total_revenue = sum(to_amount(o.get('totalPrice')) for o in delivered)
    total_delivery = sum(to_amount(o.get('deliveryFee')) for o in delivered)
    app_commission = 0.0
    driver_earnings = 0.0
    if is_driver:
        app_commission = sum(compute_order_commission(o, user) for o in delivered)
        driver_earnings = total_delivery - app_commission

    return {
        'user': {'id': user_id, 'name': user.get('name', ''), 'role': user.get('role')},
        'orders': selected,
        'dateLabel': date_label,
        'summary': {
            'count': len(selected),
            'totalRevenue': total_revenue,
            'totalDelivery': total_delivery,
            'appCommission': app_commission,
            'driverEarnings': driver_earnings,
        },
    }


def group_by_business_date(orders: Iterable[dict],
                           settings: Settings = DEFAULT_SETTINGS) -> Dict[date, List[dict]]:
    """Orders bucketed by business date of createdAt; unreadable dates are dropped."""
    buckets: Dict[date, List[dict]] = defaultdict(list)
    for order in orders:
        bucket = business_date_of(order.get('createdAt'), settings)
        if bucket is not None:
            buckets[bucket].append(order)
    return dict(buckets)
