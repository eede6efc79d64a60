import pytest

import app as app_module
from config import MONTHLY_REPORTS, ORDERS, PAYMENTS
from conftest import make_order


@pytest.fixture
def client(store):
    app_module.app.config.update(TESTING=True, DOCUMENT_STORE=store)
    with app_module.app.test_client() as client:
        yield client
    app_module.stop_live_subscriptions()
    app_module.app.config['DOCUMENT_STORE'] = None


def login(client, role='admin', user_id='admin-1'):
    with client.session_transaction() as sess:
        sess['user_id'] = user_id
        sess['role'] = role


def test_reports_require_login(client):
    assert client.get('/admin/reports/stats').status_code == 401
    login(client, role='driver', user_id='d-fixed')
    assert client.get('/admin/reports/stats').status_code == 401


def test_stats(client):
    login(client, role='supervisor')
    data = client.get('/admin/reports/stats').get_json()
    assert data['orderCount'] == 5
    assert data['totalCommission'] == pytest.approx(20)


def test_daily_and_days(client):
    login(client)
    assert 'topDrivers' in client.get('/admin/reports/daily').get_json()
    days = client.get('/admin/reports/days').get_json()['days']
    assert days[0]['date'] == '2024-02-10'
    assert days[0]['ordersCount'] == 5


def test_user_report(client):
    login(client)
    data = client.get('/admin/reports/user/d-fixed?start=2024-02-01&end=2024-02-28').get_json()
    assert data['summary']['count'] == 2
    assert client.get('/admin/reports/user/nobody').status_code == 404
    assert client.get('/admin/reports/user/d-fixed?start=bad&end=2024-02-28').status_code == 400

    response = client.get('/admin/reports/user/m-1/download/csv')
    assert response.status_code == 200
    assert response.mimetype == 'text/csv'
    assert client.get('/admin/reports/user/m-1/download/txt').status_code == 400


def test_archive_flow(client, store):
    login(client)
    response = client.post('/admin/archive', json={})
    assert response.status_code == 200
    report = response.get_json()['report']
    assert report['status'] == 'committed'
    assert all(o['isArchived'] for o in store.collections[ORDERS].values())

    listing = client.get('/admin/monthly_reports').get_json()['reports']
    assert [r['id'] for r in listing] == [report['id']]
    assert client.get(f"/admin/monthly_reports/{report['id']}").status_code == 200
    assert client.get('/admin/monthly_reports/REP-0').status_code == 404

    download = client.get(f"/admin/monthly_reports/{report['id']}/download/excel")
    assert download.status_code == 200
    assert download.data[:2] == b'PK'

    assert client.get('/orders/next_id').get_json() == {'id': 'ORD-8'}
    assert client.get('/orders/next_id?type=shopping').get_json() == {'id': 'S-10'}

    # Everything is archived now
    again = client.post('/admin/archive', json={})
    assert again.status_code == 400
    assert again.get_json()['code'] == 'NOTHING_TO_ARCHIVE'

    store.collections[ORDERS]['ORD-8'] = make_order('ORD-8')
    duplicate = client.post('/admin/archive', json={})
    assert duplicate.status_code == 409
    assert duplicate.get_json()['code'] == 'DUPLICATE_ARCHIVE'

    forced = client.post('/admin/archive', json={'force': True})
    assert forced.status_code == 200
    assert len(store.collections[MONTHLY_REPORTS]) == 2


def test_archive_is_admin_only(client):
    login(client, role='supervisor')
    assert client.post('/admin/archive', json={}).status_code == 401


def test_archive_persistence_error(client, store):
    login(client)
    store.fail_on['add_data'] = RuntimeError('boom')
    response = client.post('/admin/archive', json={})
    assert response.status_code == 500
    assert response.get_json()['code'] == 'PERSISTENCE_FAILED'


def test_wallets_and_settlement(client, store):
    login(client)
    wallets = client.get('/admin/wallet').get_json()['wallets']
    assert {w['driverId']: w['driverShare'] for w in wallets}['d-fixed'] == 90
    assert client.get('/admin/wallet/m-1').status_code == 404

    settled = client.post('/admin/wallet/d-fixed/settle')
    assert settled.status_code == 200
    payment = settled.get_json()['payment']
    assert payment['amount'] == 10

    assert client.post('/admin/wallet/d-fixed/settle').status_code == 400
    assert client.get('/admin/wallet/d-fixed').get_json()['ordersCount'] == 0

    assert client.delete(f"/admin/payments/{payment['id']}").status_code == 200
    assert store.collections[PAYMENTS] == {}
    assert client.delete(f"/admin/payments/{payment['id']}").status_code == 404


def test_next_order_id(client, store):
    login(client, role='merchant', user_id='m-1')
    assert client.get('/orders/next_id').get_json() == {'id': 'ORD-8'}
    assert client.get('/orders/next_id?type=shopping').get_json() == {'id': 'S-10'}

    store.collections[ORDERS]['ORD-7']['isArchived'] = True
    assert client.get('/orders/next_id').get_json() == {'id': 'ORD-4'}


def test_live_subscriptions_serve_cached_collections(client, store):
    login(client)
    app_module.start_live_subscriptions()
    # Changes made behind the subscription are not seen until it pushes again
    del store.collections[ORDERS]['ORD-1']
    assert client.get('/admin/reports/stats').get_json()['orderCount'] == 5

    watches = list(store.watches)
    app_module.stop_live_subscriptions()
    assert all(w.unsubscribed for w in watches)
    assert client.get('/admin/reports/stats').get_json()['orderCount'] == 4
