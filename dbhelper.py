import logging
import os
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

# FIREBASE ADMIN SDK (SERVER SIDE)
import firebase_admin
from firebase_admin import credentials, firestore

from accounting import is_status_reversion
from config import ARCHIVE_BATCH_SIZE, AUDIT_LOGS, ORDERS
from timestamps import now_local, to_aware

logger = logging.getLogger(__name__)

# FIRESTORE CLIENT, CREATED ON FIRST USE
db = None

'''
Credentials are looked up in this order:
    === FIREBASE_CREDENTIALS env var
    === GOOGLE_APPLICATION_CREDENTIALS env var
    === serviceAccountKey.json in the project root
Without any of them we can still run against the emulator (FIRESTORE_EMULATOR_HOST).
'''
def _require_db():
    global db
    if db is not None:
        return
    if not firebase_admin._apps:
        cred_path = os.getenv('FIREBASE_CREDENTIALS') or os.getenv('GOOGLE_APPLICATION_CREDENTIALS') or 'serviceAccountKey.json'
        try:
            if os.path.exists(cred_path):
                cred = credentials.Certificate(cred_path)
                firebase_admin.initialize_app(cred)
            elif os.getenv('FIRESTORE_EMULATOR_HOST'):
                firebase_admin.initialize_app()
            else:
                raise RuntimeError(
                    "Firebase credentials not found. Set FIREBASE_CREDENTIALS or GOOGLE_APPLICATION_CREDENTIALS to your serviceAccountKey.json, or place serviceAccountKey.json in project root."
                )
        except ValueError as e:
            # Already initialized elsewhere, reuse the existing app
            if 'already exists' not in str(e).lower():
                raise
    db = firestore.client()


def initialize_database():
    """Connect to Firestore once at startup."""
    _require_db()
    logger.info("Connected to Firebase Firestore.")


# HELPER FUNCTIONS
def _now() -> datetime:
    """Return current timestamp as an aware datetime (Firestore reads naive ones as UTC)."""
    return to_aware(now_local())


def deep_clean(value: Any) -> Any:
    """Make a payload Firestore-safe.

    Drops private '_' keys and callables, unwraps enums and turns bare dates
    into datetimes (Firestore has no date type).
    """
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, dict):
        return {
            str(k): deep_clean(v) for k, v in value.items()
            if not str(k).startswith('_') and not callable(v)
        }
    if isinstance(value, (list, tuple, set)):
        return [deep_clean(v) for v in value if not callable(v)]
    return value


def _with_id(doc) -> Dict[str, Any]:
    data = doc.to_dict() or {}
    data.setdefault('id', doc.id)
    return data


# ==================================================
# DOCUMENT STORE
# - subscribe_to_collection(): push-based read of a whole collection
# - get_collection(): one-shot read
# - get_document(): fetch a single document
# - add_data(): create one document
# - update_data(): merge-patch one document
# - batch_save_data(): merge-patch many documents, chunked
# - delete_data(): remove one document
# ==================================================
def subscribe_to_collection(name: str, callback: Callable[[List[Dict[str, Any]]], None]):
    """Call `callback` with the full collection every time it changes.

    Returns the Firestore watch; call `.unsubscribe()` on it to stop.
    """
    _require_db()

    def on_snapshot(col_snapshot, changes, read_time):
        try:
            callback([_with_id(doc) for doc in col_snapshot])
        except Exception:
            logger.exception("Subscription callback failed [%s]", name)

    return db.collection(name).on_snapshot(on_snapshot)


def get_collection(name: str) -> List[Dict[str, Any]]:
    """Return every document of a collection, with its id merged in."""
    _require_db()
    return [_with_id(doc) for doc in db.collection(name).get()]


def get_document(collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
    """Fetch one document by id, None if missing."""
    _require_db()
    snapshot = db.collection(collection).document(str(doc_id)).get()
    return _with_id(snapshot) if snapshot.exists else None


def add_data(collection: str, record: Dict[str, Any]) -> str:
    """Create a document; record['id'] becomes the document id when given. Returns the id."""
    _require_db()
    payload = deep_clean(record)
    payload['serverUpdatedAt'] = firestore.SERVER_TIMESTAMP
    if payload.get('id') not in (None, ''):
        doc_id = str(payload['id'])
        db.collection(collection).document(doc_id).set(payload)
        return doc_id
    _, ref = db.collection(collection).add(payload)
    return ref.id


def _apply_order_update(transaction, doc_ref, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Write an order status change, refusing to revive a finished order."""
    snapshot = doc_ref.get(transaction=transaction)
    if not snapshot.exists:
        transaction.set(doc_ref, payload)
        return payload
    current = snapshot.to_dict() or {}
    if is_status_reversion(current.get('status'), payload.get('status')):
        payload = dict(payload)
        blocked = payload.pop('status')
        logger.warning("Blocked status reversion %s -> %s for order %s", current.get('status'), blocked, doc_ref.id)
        payload['adminNotes'] = (current.get('adminNotes') or '') + f"\n[System] Blocked reversion from {current.get('status')} to {blocked}"
    transaction.set(doc_ref, payload, merge=True)
    return payload


_guarded_order_update = firestore.transactional(_apply_order_update)


def update_data(collection: str, doc_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    """Merge-patch one document and return what was written.

    Order status changes go through a transaction so a Delivered/Cancelled
    order cannot be moved back to an active status.
    """
    _require_db()
    payload = deep_clean(fields)
    payload['serverUpdatedAt'] = firestore.SERVER_TIMESTAMP
    doc_ref = db.collection(collection).document(str(doc_id))
    if collection == ORDERS and payload.get('status'):
        return _guarded_order_update(db.transaction(), doc_ref, payload)
    doc_ref.set(payload, merge=True)
    return payload


def batch_save_data(collection: str, records: List[Dict[str, Any]], batch_size: int = ARCHIVE_BATCH_SIZE) -> int:
    """Merge-patch many documents (each needs an 'id'), committing per chunk.

    Returns how many documents were written. A failing chunk raises; the chunks
    before it stay committed.
    """
    _require_db()
    items = [r for r in deep_clean(records) if r.get('id') not in (None, '')]
    written = 0
    # PER BATCH INSTEAD OF SINGLE WRITE
    for i in range(0, len(items), batch_size):
        chunk = items[i:i + batch_size]
        batch = db.batch()
        for item in chunk:
            doc_ref = db.collection(collection).document(str(item['id']))
            batch.set(doc_ref, {**item, 'serverUpdatedAt': firestore.SERVER_TIMESTAMP}, merge=True)
        batch.commit()
        written += len(chunk)
        logger.debug("Committed %d/%d %s documents", written, len(items), collection)
    return written


def delete_data(collection: str, doc_id: str) -> bool:
    """Delete a document by id."""
    _require_db()
    if not doc_id:
        return False
    db.collection(collection).document(str(doc_id)).delete()
    return True


# ==================================================
# AUDIT LOG
# ==================================================
def add_audit_log(actor_id: str, action_type: str, target: str, details: str) -> str:
    """Log an admin action ('create', 'update', 'delete', 'financial')."""
    return add_data(AUDIT_LOGS, {
        'actorId': actor_id,
        'actionType': action_type,
        'target': target,
        'details': details,
        'createdAt': _now(),
    })
