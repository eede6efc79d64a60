from datetime import datetime

import pytest

from config import ORDERS, PAYMENTS, STATUS_COMMITTED, STATUS_PENDING, USERS
from conftest import InMemoryStore, make_order
from exceptions import NothingToSettleError, PersistenceError
from timestamps import to_datetime
from wallet import delete_payment, driver_wallet, payment_date, settle_driver

NOW = datetime(2024, 2, 15, 12, 0)


def test_driver_wallet_for_fixed_driver(drivers, period_orders):
    wallet = driver_wallet(drivers[0], period_orders)
    assert wallet['ordersCount'] == 2
    assert wallet['orderIds'] == ['ORD-1', 'ORD-3']
    assert wallet['totalFees'] == 100
    assert wallet['companyShare'] == 10
    assert wallet['driverShare'] == 90
    assert wallet['commissionType'] == 'fixed'


def test_driver_wallet_adds_opening_balance_and_skips_settled(drivers):
    driver = dict(drivers[1], walletOpeningBalance='12.5')
    orders = [
        make_order('ORD-1', driver_id='d-pct', fee=33.33),
        make_order('ORD-2', driver_id='d-pct', fee=50, reconciled=True),
        make_order('ORD-3', driver_id='d-pct', fee=50, isArchived=True),
    ]
    wallet = driver_wallet(driver, orders)
    assert wallet['ordersCount'] == 1
    assert wallet['totalFees'] == 33.33
    assert wallet['companyShare'] == 6.67
    assert wallet['openingBalance'] == 12.5
    assert wallet['driverShare'] == pytest.approx(39.16)


def test_payment_is_backdated_when_settling_before_shift_end():
    orders = [make_order('ORD-1', deliveredAt=datetime(2024, 2, 10, 22, 0)),
              make_order('ORD-2', deliveredAt=datetime(2024, 2, 10, 18, 0))]
    assert payment_date(orders, datetime(2024, 2, 11, 3, 0)) == datetime(2024, 2, 10, 23, 59, 59)


@pytest.mark.parametrize('now', [
    datetime(2024, 2, 11, 7, 0),
    datetime(2024, 2, 10, 23, 0),
])
def test_payment_is_not_backdated_otherwise(now):
    orders = [make_order('ORD-1', deliveredAt=datetime(2024, 2, 10, 22, 0))]
    assert payment_date(orders, now) == now


def test_payment_date_without_delivery_times():
    assert payment_date([make_order('ORD-1')], NOW) == NOW


def test_settle_driver(store, drivers):
    payment = settle_driver(store, drivers[0], store.get_collection(ORDERS), 'admin-1', now=NOW)

    assert payment['id'].startswith('PAY-')
    assert payment['amount'] == 10
    assert payment['totalCollected'] == 100
    assert payment['ordersCount'] == 2
    assert payment['reconciledOrderIds'] == ['ORD-1', 'ORD-3']
    assert to_datetime(payment['createdAt']) == NOW

    assert store.collections[PAYMENTS][payment['id']]['driverId'] == 'd-fixed'
    assert store.collections[PAYMENTS][payment['id']]['status'] == STATUS_COMMITTED
    assert store.collections[ORDERS]['ORD-1']['reconciled'] is True
    assert not store.collections[ORDERS]['ORD-7'].get('reconciled')
    assert store.audit[-1]['target'] == 'تسوية مالية'

    with pytest.raises(NothingToSettleError):
        settle_driver(store, drivers[0], store.get_collection(ORDERS), 'admin-1', now=NOW)


def _settle(store, driver, **kwargs):
    kwargs.setdefault('now', NOW)
    return settle_driver(store, driver, store.get_collection(ORDERS), 'admin-1', **kwargs)


def _reconciled(store):
    return sorted(o['id'] for o in store.collections[ORDERS].values() if o.get('reconciled'))


def test_failed_payment_write_reconciles_nothing(store, drivers):
    store.fail_on['add_data'] = RuntimeError('unavailable')
    with pytest.raises(PersistenceError) as excinfo:
        _settle(store, drivers[0])
    assert excinfo.value.step == 'Saving payment'
    assert excinfo.value.details['driver_id'] == 'd-fixed'
    assert _reconciled(store) == []
    assert not store.collections.get(PAYMENTS)

    del store.fail_on['add_data']
    payment = _settle(store, drivers[0])
    assert payment['status'] == STATUS_COMMITTED
    assert _reconciled(store) == ['ORD-1', 'ORD-3']


def test_failed_reconcile_is_resumed_by_next_settlement(store, drivers):
    store.fail_on['batch_save_data'] = RuntimeError('unavailable')
    with pytest.raises(PersistenceError) as excinfo:
        _settle(store, drivers[0])
    assert excinfo.value.step == 'Reconciling orders'
    [pending] = store.collections[PAYMENTS].values()
    assert pending['status'] == STATUS_PENDING
    assert pending['reconciledOrderIds'] == ['ORD-1', 'ORD-3']
    assert store.audit == []

    del store.fail_on['batch_save_data']
    payment = _settle(store, drivers[0])
    assert payment['id'] == pending['id']
    assert payment['status'] == STATUS_COMMITTED
    assert len(store.collections[PAYMENTS]) == 1
    assert store.collections[PAYMENTS][pending['id']]['status'] == STATUS_COMMITTED
    assert _reconciled(store) == ['ORD-1', 'ORD-3']
    assert len(store.audit) == 1


def test_pending_payment_of_other_driver_is_not_resumed(store, drivers):
    store.collections[PAYMENTS] = {'PAY-1': {'id': 'PAY-1', 'driverId': 'd-pct', 'status': STATUS_PENDING,
                                             'reconciledOrderIds': ['ORD-7']}}
    payment = _settle(store, drivers[0])
    assert payment['id'] != 'PAY-1'
    assert store.collections[PAYMENTS]['PAY-1']['status'] == STATUS_PENDING


def test_failing_audit_log_does_not_fail_settlement(store, drivers):
    def broken(*args, **kwargs):
        raise RuntimeError('audit down')
    store.add_audit_log = broken
    payment = _settle(store, drivers[0])
    assert payment['status'] == STATUS_COMMITTED


def test_delete_payment(users):
    store = InMemoryStore(**{PAYMENTS: [{'id': 'PAY-1', 'amount': 10}], USERS: users})
    assert delete_payment(store, 'PAY-1', 'admin-1') is True
    assert store.collections[PAYMENTS] == {}
    assert len(store.audit) == 1
    assert delete_payment(store, 'PAY-1', 'admin-1') is False
    assert len(store.audit) == 1
