import io
import os
import threading
from datetime import datetime

from flask import Flask, jsonify, request, send_file, session

import dbhelper
from accounting import (dashboard_stats, daily_report, group_by_business_date, live_orders,
                        next_order_id, summarize_orders, user_report, users_by_id)
from archive import archive_current_period
from config import (MONTHLY_REPORTS, ORDERS, PAYMENTS, USERS, FlaskConfig, Settings,
                    configure_logging)
from exceptions import AccountingError
from exports import export_monthly_report, export_user_report
from timestamps import to_datetime
from wallet import delete_payment, driver_wallet, settle_driver

app = Flask(__name__)
app.config.from_object(FlaskConfig)
app.config['ACCOUNTING_SETTINGS'] = Settings.from_env()
app.secret_key = app.config['SECRET_KEY']

REPORT_ROLES = ['admin', 'supervisor']

# Collections kept current by subscribe_to_collection (see start_live_subscriptions)
_live = {}
_live_lock = threading.Lock()
_watches = []


def _store():
    """Document store the routes talk to: dbhelper (Firestore) unless overridden."""
    return app.config.get('DOCUMENT_STORE') or dbhelper


def _settings() -> Settings:
    return app.config['ACCOUNTING_SETTINGS']


def _collection(name):
    with _live_lock:
        if name in _live:
            return list(_live[name])
    return _store().get_collection(name)


def start_live_subscriptions(names=(ORDERS, USERS, MONTHLY_REPORTS)):
    """Keep in-memory copies of the given collections, pushed by Firestore."""
    store = _store()
    for name in names:
        def on_change(docs, name=name):
            with _live_lock:
                _live[name] = docs
            app.logger.debug("Live %s updated: %d documents", name, len(docs))
        _watches.append(store.subscribe_to_collection(name, on_change))
    app.logger.info("Subscribed to %s", ', '.join(names))


def stop_live_subscriptions():
    while _watches:
        watch = _watches.pop()
        if watch is not None and hasattr(watch, 'unsubscribe'):
            watch.unsubscribe()
    with _live_lock:
        _live.clear()


def _unauthorized(roles):
    if 'user_id' not in session or session.get('role') not in roles:
        return jsonify({'error': 'Unauthorized'}), 401
    return None


def _find_user(user_id):
    return users_by_id(_collection(USERS)).get(str(user_id))


@app.errorhandler(AccountingError)
def handle_accounting_error(error):
    if error.status_code >= 500:
        app.logger.error("%s: %s", error.error_code, error.message)
    return jsonify(error.to_dict()), error.status_code


# ==================================================
# REPORTS
# ==================================================
@app.route('/admin/reports/stats')
def reports_stats():
    denied = _unauthorized(REPORT_ROLES)
    if denied:
        return denied
    stats = dashboard_stats(_collection(ORDERS), _collection(USERS), settings=_settings())
    return jsonify(stats)


@app.route('/admin/reports/daily')
def reports_daily():
    denied = _unauthorized(REPORT_ROLES)
    if denied:
        return denied
    return jsonify(daily_report(_collection(ORDERS), _collection(USERS), settings=_settings()))


@app.route('/admin/reports/days')
def reports_by_day():
    """Totals per business day, newest first."""
    denied = _unauthorized(REPORT_ROLES)
    if denied:
        return denied
    users = _collection(USERS)
    buckets = group_by_business_date(live_orders(_collection(ORDERS)), settings=_settings())
    days = []
    for day in sorted(buckets, reverse=True):
        summary = summarize_orders(buckets[day], users, settings=_settings())
        days.append({'date': day.isoformat(), **summary})
    return jsonify({'days': days})


def _user_report_or_error(user_id):
    user = _find_user(user_id)
    if not user or user.get('role') not in ('driver', 'merchant'):
        return None, (jsonify({'error': 'User not found'}), 404)
    try:
        report = user_report(_collection(ORDERS), user,
                             start=request.args.get('start', '').strip() or None,
                             end=request.args.get('end', '').strip() or None,
                             settings=_settings())
    except ValueError:
        return None, (jsonify({'error': 'Dates must be YYYY-MM-DD'}), 400)
    return report, None


@app.route('/admin/reports/user/<user_id>')
def reports_user(user_id):
    denied = _unauthorized(REPORT_ROLES)
    if denied:
        return denied
    report, error = _user_report_or_error(user_id)
    if error:
        return error
    return jsonify(report)


@app.route('/admin/reports/user/<user_id>/download/<format>')
def download_user_report(user_id, format):
    denied = _unauthorized(REPORT_ROLES)
    if denied:
        return denied
    report, error = _user_report_or_error(user_id)
    if error:
        return error
    try:
        payload, mimetype, filename = export_user_report(report, format)
    except ValueError:
        return "Invalid format", 400
    return send_file(io.BytesIO(payload), mimetype=mimetype, download_name=filename, as_attachment=True)


# ==================================================
# MONTHLY ARCHIVE
# ==================================================
@app.route('/admin/archive', methods=['POST'])
def archive_period():
    """Close the books: snapshot live orders into a monthly report and archive them."""
    denied = _unauthorized(['admin'])
    if denied:
        return denied
    data = request.get_json(silent=True) or {}
    store = _store()
    # Always read fresh here, the live cache may lag behind the last archive
    report = archive_current_period(
        store,
        store.get_collection(ORDERS),
        store.get_collection(USERS),
        actor_id=session['user_id'],
        force=bool(data.get('force')),
        settings=_settings(),
    )
    app.logger.info("Monthly archive %s done by %s", report['id'], session['user_id'])
    return jsonify({'success': True, 'message': f"Archived {report['archivedOrdersCount']} orders",
                    'report': report})


@app.route('/admin/monthly_reports')
def monthly_reports():
    denied = _unauthorized(REPORT_ROLES)
    if denied:
        return denied
    reports = _collection(MONTHLY_REPORTS)
    reports.sort(key=lambda r: to_datetime(r.get('createdAt')) or datetime.min, reverse=True)
    return jsonify({'reports': reports})


def _get_report(report_id):
    return _store().get_document(MONTHLY_REPORTS, report_id)


@app.route('/admin/monthly_reports/<report_id>')
def monthly_report(report_id):
    denied = _unauthorized(REPORT_ROLES)
    if denied:
        return denied
    report = _get_report(report_id)
    if not report:
        return jsonify({'error': 'Report not found'}), 404
    return jsonify(report)


@app.route('/admin/monthly_reports/<report_id>/download/<format>')
def download_monthly_report(report_id, format):
    denied = _unauthorized(REPORT_ROLES)
    if denied:
        return denied
    report = _get_report(report_id)
    if not report:
        return jsonify({'error': 'Report not found'}), 404
    try:
        payload, mimetype, filename = export_monthly_report(report, format)
    except ValueError:
        return "Invalid format", 400
    return send_file(io.BytesIO(payload), mimetype=mimetype, download_name=filename, as_attachment=True)


# ==================================================
# DRIVER WALLETS
# ==================================================
@app.route('/admin/wallet')
def wallets():
    denied = _unauthorized(REPORT_ROLES)
    if denied:
        return denied
    orders = _collection(ORDERS)
    drivers = [u for u in _collection(USERS) if u.get('role') == 'driver']
    return jsonify({'wallets': [driver_wallet(d, orders) for d in drivers]})


@app.route('/admin/wallet/<driver_id>')
def wallet(driver_id):
    denied = _unauthorized(REPORT_ROLES)
    if denied:
        return denied
    driver = _find_user(driver_id)
    if not driver or driver.get('role') != 'driver':
        return jsonify({'error': 'Driver not found'}), 404
    return jsonify(driver_wallet(driver, _collection(ORDERS)))


@app.route('/admin/wallet/<driver_id>/settle', methods=['POST'])
def settle(driver_id):
    denied = _unauthorized(['admin'])
    if denied:
        return denied
    store = _store()
    driver = users_by_id(store.get_collection(USERS)).get(str(driver_id))
    if not driver or driver.get('role') != 'driver':
        return jsonify({'error': 'Driver not found'}), 404
    payment = settle_driver(store, driver, store.get_collection(ORDERS), session['user_id'],
                            settings=_settings())
    return jsonify({'success': True, 'message': f"Settled {payment['ordersCount']} orders",
                    'payment': payment})


@app.route('/admin/payments/<payment_id>', methods=['DELETE'])
def remove_payment(payment_id):
    denied = _unauthorized(['admin'])
    if denied:
        return denied
    if not _store().get_document(PAYMENTS, payment_id):
        return jsonify({'error': 'Payment not found'}), 404
    delete_payment(_store(), payment_id, session['user_id'])
    return jsonify({'success': True})


# ==================================================
# ORDER NUMBERING
# ==================================================
@app.route('/orders/next_id')
def order_next_id():
    denied = _unauthorized(['admin', 'supervisor', 'merchant'])
    if denied:
        return denied
    shopping = request.args.get('type', 'regular').strip().lower() == 'shopping'
    return jsonify({'id': next_order_id(_collection(ORDERS), shopping=shopping,
                                        reports=_collection(MONTHLY_REPORTS))})


if __name__ == '__main__':
    configure_logging()
    dbhelper.initialize_database()
    if os.getenv('LIVE_SUBSCRIPTIONS', '').lower() in ('1', 'true', 'yes'):
        start_live_subscriptions()
    app.run(debug=os.getenv('FLASK_DEBUG') == '1', host='0.0.0.0')
