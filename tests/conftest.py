import copy
from datetime import datetime

import pytest

from accounting import OrderStatus
from config import MONTHLY_REPORTS, ORDERS, USERS


class FakeWatch:
    def __init__(self):
        self.unsubscribed = False

    def unsubscribe(self):
        self.unsubscribed = True


class InMemoryStore:
    """Stand-in for the dbhelper module, keeping collections in dicts."""

    def __init__(self, **collections):
        self.collections = {
            name: {str(doc['id']): copy.deepcopy(doc) for doc in docs}
            for name, docs in collections.items()
        }
        self.calls = []
        self.fail_on = {}
        self.fail_batch_at = None
        self.batch_sizes = []
        self.audit = []
        self.watches = []

    def _check(self, method):
        self.calls.append(method)
        error = self.fail_on.get(method)
        if error is not None:
            raise error

    def get_collection(self, name):
        return [copy.deepcopy(doc) for doc in self.collections.get(name, {}).values()]

    def get_document(self, collection, doc_id):
        doc = self.collections.get(collection, {}).get(str(doc_id))
        return copy.deepcopy(doc) if doc else None

    def subscribe_to_collection(self, name, callback):
        callback(self.get_collection(name))
        watch = FakeWatch()
        self.watches.append(watch)
        return watch

    def add_data(self, collection, record):
        self._check('add_data')
        doc = copy.deepcopy(record)
        docs = self.collections.setdefault(collection, {})
        doc_id = str(doc.get('id') or f"auto-{len(docs) + 1}")
        doc['id'] = doc_id
        docs[doc_id] = doc
        return doc_id

    def update_data(self, collection, doc_id, fields):
        self._check('update_data')
        docs = self.collections.setdefault(collection, {})
        docs.setdefault(str(doc_id), {'id': doc_id}).update(copy.deepcopy(fields))
        return fields

    def batch_save_data(self, collection, records, batch_size=400):
        self._check('batch_save_data')
        docs = self.collections.setdefault(collection, {})
        written = 0
        for index, start in enumerate(range(0, len(records), batch_size)):
            if self.fail_batch_at is not None and index == self.fail_batch_at:
                raise RuntimeError('batch commit failed')
            chunk = records[start:start + batch_size]
            self.batch_sizes.append(len(chunk))
            for record in chunk:
                docs.setdefault(str(record['id']), {'id': record['id']}).update(copy.deepcopy(record))
            written += len(chunk)
        return written

    def delete_data(self, collection, doc_id):
        self._check('delete_data')
        return self.collections.get(collection, {}).pop(str(doc_id), None) is not None

    def add_audit_log(self, actor_id, action_type, target, details):
        self.audit.append({'actorId': actor_id, 'actionType': action_type, 'target': target, 'details': details})
        return f"log-{len(self.audit)}"


def make_order(order_id, status=OrderStatus.DELIVERED, driver_id=None, fee=0, price=0,
               created_at=datetime(2024, 2, 10, 12, 0), **extra):
    order = {
        'id': order_id,
        'status': status.value,
        'deliveryFee': fee,
        'totalPrice': price,
        'createdAt': created_at,
    }
    if driver_id is not None:
        order['driverId'] = driver_id
    order.update(extra)
    return order


@pytest.fixture
def drivers():
    return [
        {'id': 'd-fixed', 'name': 'Fixed Driver', 'role': 'driver', 'commissionType': 'fixed', 'commissionRate': 5},
        {'id': 'd-pct', 'name': 'Percent Driver', 'role': 'driver', 'commissionType': 'percentage', 'commissionRate': 20},
        {'id': 'd-zero', 'name': 'Zero Driver', 'role': 'driver', 'commissionType': 'fixed', 'commissionRate': 0},
    ]


@pytest.fixture
def users(drivers):
    return drivers + [
        {'id': 'admin-1', 'name': 'Admin', 'role': 'admin'},
        {'id': 'm-1', 'name': 'Pizza Place', 'role': 'merchant'},
    ]


@pytest.fixture
def period_orders():
    return [
        make_order('ORD-1', driver_id='d-fixed', fee=40, price=200, merchantId='m-1'),
        make_order('ORD-3', driver_id='d-fixed', fee=60, price=300, merchantId='m-1'),
        make_order('ORD-7', driver_id='d-pct', fee=50, price=100, merchantId='m-1'),
        make_order('S-2', status=OrderStatus.CANCELLED, driver_id='d-pct', fee=30, price=80),
        make_order('S-9', status=OrderStatus.PENDING, fee=25, price=90),
    ]


@pytest.fixture
def store(period_orders, users):
    return InMemoryStore(**{ORDERS: period_orders, USERS: users, MONTHLY_REPORTS: []})
