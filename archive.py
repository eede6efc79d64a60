"""
Monthly archival ("closing the books").

The current live orders are summarised into a MonthlyReport and then marked
archived. The two writes are not atomic in Firestore, so the report is saved
as 'pending' first, the orders are marked in batches, and only then is the
report flipped to 'committed'. A run that dies in between leaves a pending
report behind, and the next run finishes that one instead of creating a second.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from accounting import (is_archived, last_order_ids, live_orders, summarize_orders,
                        wallet_snapshots)
from config import (DEFAULT_SETTINGS, MONTHLY_REPORTS, ORDERS, STATUS_COMMITTED, STATUS_PENDING,
                    Settings)
from exceptions import DuplicateArchiveError, NothingToArchiveError, PersistenceError
from timestamps import month_label, now_local, to_aware, to_datetime

logger = logging.getLogger(__name__)


def mark_orders_archived(orders: Iterable[dict], label: str) -> List[dict]:
    """Merge-patches that archive `orders` under `label`.

    Orders already archived get no patch, so applying the result twice changes
    nothing the second time.
    """
    return [
        {'id': o['id'], 'isArchived': True, 'archiveMonth': label}
        for o in orders if not is_archived(o)
    ]


def build_monthly_report(live: List[dict], users: Iterable[dict], actor_id: str, now: datetime,
                         settings: Settings = DEFAULT_SETTINGS) -> dict:
    """Snapshot of the live orders as a (pending) MonthlyReport document."""
    users = list(users)
    created_at = to_aware(now, settings)
    last_regular, last_shopping = last_order_ids(live)
    totals = summarize_orders(live, users, settings)
    return {
        'id': f"REP-{int(created_at.timestamp() * 1000)}",
        'month': now.month - 1,
        'year': now.year,
        'monthLabel': month_label(now),
        'totalRevenue': totals['totalRevenue'],
        'totalDeliveryFees': totals['totalDeliveryFees'],
        'totalAppProfit': totals['totalAppProfit'],
        'adminShare': totals['adminShare'],
        'totalDriverPayouts': totals['totalDriverPayouts'],
        'createdAt': created_at,
        'archivedOrdersCount': len(live),
        'deliveredOrdersCount': totals['deliveredOrdersCount'],
        'cancelledOrdersCount': totals['cancelledOrdersCount'],
        'otherOrdersCount': totals['otherOrdersCount'],
        'lastRegularOrderId': last_regular,
        'lastShoppingOrderId': last_shopping,
        'walletSnapshots': wallet_snapshots(live, users),
        'archivedBy': actor_id,
        'archivedOrderIds': [o['id'] for o in live],
        'status': STATUS_PENDING,
    }


def find_pending_report(reports: Iterable[dict]) -> Optional[dict]:
    pending = [r for r in reports if r.get('status') == STATUS_PENDING]
    if not pending:
        return None
    return max(pending, key=lambda r: to_datetime(r.get('createdAt')) or datetime.min)


def _latest_committed(reports: Iterable[dict], settings: Settings) -> Optional[dict]:
    # Reports written before the pending/committed flow have no status
    committed = [r for r in reports if r.get('status', STATUS_COMMITTED) == STATUS_COMMITTED]
    if not committed:
        return None
    return max(committed, key=lambda r: to_datetime(r.get('createdAt'), settings) or datetime.min)


def _mark_and_commit(store, report: dict, orders: List[dict], now: datetime, settings: Settings) -> int:
    patches = mark_orders_archived(orders, report['monthLabel'])
    try:
        written = store.batch_save_data(ORDERS, patches, settings.archive_batch_size) if patches else 0
    except Exception as e:
        logger.exception("Archiving orders for report %s failed", report['id'])
        raise PersistenceError('Archiving orders', e, report_id=report['id']) from e

    committed_at = to_aware(now, settings)
    try:
        store.update_data(MONTHLY_REPORTS, report['id'], {'status': STATUS_COMMITTED, 'committedAt': committed_at})
    except Exception as e:
        logger.exception("Committing report %s failed", report['id'])
        raise PersistenceError('Committing monthly report', e, report_id=report['id']) from e
    report['status'] = STATUS_COMMITTED
    report['committedAt'] = committed_at
    return written


def resume_archive(store, report: dict, orders: Iterable[dict], now: datetime = None,
                   settings: Settings = DEFAULT_SETTINGS) -> dict:
    """Finish a pending report: archive whichever of its orders are still live."""
    now = now or now_local(settings)
    covered = set(report.get('archivedOrderIds') or [])
    remaining = [o for o in orders if o.get('id') in covered and not is_archived(o)]
    logger.warning("Resuming pending report %s: %d orders still live", report['id'], len(remaining))
    _mark_and_commit(store, report, remaining, now, settings)
    return report


def _audit_archive(store, actor_id: str, report: dict) -> None:
    count = len(report.get('archivedOrderIds') or []) or report.get('archivedOrdersCount', 0)
    try:
        store.add_audit_log(actor_id, 'financial', 'التقارير الشهرية',
                            f"أرشفة {count} طلب في تقرير {report['monthLabel']} ({report['id']})")
    except Exception:
        # Report and orders are already committed at this point
        logger.exception("Audit log for report %s failed", report['id'])


def archive_current_period(store, orders: Iterable[dict], users: Iterable[dict], actor_id: str,
                           now: datetime = None, force: bool = False, reports: Iterable[dict] = None,
                           settings: Settings = DEFAULT_SETTINGS) -> dict:
    """Close the books on every live order and return the committed MonthlyReport.

    `store` is anything with the dbhelper functions (get_collection, add_data,
    update_data, batch_save_data, add_audit_log). `reports` defaults to the
    monthly_reports collection read from the store.

    Raises NothingToArchiveError when there are no live orders,
    DuplicateArchiveError when a report was committed within the duplicate
    window (unless `force`), and PersistenceError when a write fails.
    """
    now = now or now_local(settings)
    orders = list(orders)
    if reports is None:
        reports = store.get_collection(MONTHLY_REPORTS)
    reports = list(reports)

    pending = find_pending_report(reports)
    if pending is not None:
        report = resume_archive(store, pending, orders, now, settings)
        _audit_archive(store, actor_id, report)
        return report

    live = live_orders(orders)
    if not live:
        raise NothingToArchiveError()

    latest = _latest_committed(reports, settings)
    if latest is not None and not force:
        created = to_datetime(latest.get('createdAt'), settings)
        if created is not None:
            age = (now - created).total_seconds()
            if 0 <= age < settings.duplicate_report_window_seconds:
                raise DuplicateArchiveError(latest['id'], age)

    report = build_monthly_report(live, users, actor_id, now, settings)
    try:
        store.add_data(MONTHLY_REPORTS, report)
    except Exception as e:
        logger.exception("Saving monthly report failed")
        raise PersistenceError('Saving monthly report', e) from e

    written = _mark_and_commit(store, report, live, now, settings)
    logger.info("Archived %d orders into %s (%s) by %s", written, report['id'], report['monthLabel'], actor_id)
    _audit_archive(store, actor_id, report)
    return report
