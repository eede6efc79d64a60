"""
Timestamp normalisation and business-day helpers.

Order documents carry timestamps in whatever shape the writer produced:
Firestore datetimes, ``{'seconds': .., 'nanoseconds': ..}`` maps coming from
the web client, epoch numbers or ISO strings. Everything is turned into one
naive local ``datetime`` here so the accounting code never has to care.
"""
from datetime import date, datetime, time, timedelta
from typing import Any, Optional

import pytz
from dateutil import parser

from config import DEFAULT_SETTINGS, Settings

ARABIC_MONTHS = [
    'يناير', 'فبراير', 'مارس', 'أبريل', 'مايو', 'يونيو',
    'يوليو', 'أغسطس', 'سبتمبر', 'أكتوبر', 'نوفمبر', 'ديسمبر',
]

# Epoch values above this are milliseconds (JS Date.now())
_MILLIS_THRESHOLD = 1e11


def _local_tz(settings: Settings):
    return pytz.timezone(settings.timezone)


def _from_epoch(seconds: float, settings: Settings) -> datetime:
    utc = datetime.fromtimestamp(seconds, tz=pytz.UTC)
    return utc.astimezone(_local_tz(settings)).replace(tzinfo=None)


def _naive_local(dt: datetime, settings: Settings) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(_local_tz(settings)).replace(tzinfo=None)


def to_datetime(value: Any, settings: Settings = DEFAULT_SETTINGS) -> Optional[datetime]:
    """Return a naive local datetime for any supported timestamp shape, else None."""
    if value is None or isinstance(value, bool):
        return None

    # datetime first: DatetimeWithNanoseconds and pandas Timestamp are subclasses
    if isinstance(value, datetime):
        return _naive_local(value, settings)
    if isinstance(value, date):
        return datetime.combine(value, time.min)

    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if abs(value) > _MILLIS_THRESHOLD else float(value)
        try:
            return _from_epoch(seconds, settings)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, dict):
        seconds = value.get('seconds', value.get('_seconds'))
        nanos = value.get('nanoseconds', value.get('_nanoseconds', 0)) or 0
    else:
        seconds = getattr(value, 'seconds', None)
        nanos = getattr(value, 'nanos', getattr(value, 'nanoseconds', 0)) or 0
    if seconds is not None:
        try:
            return _from_epoch(float(seconds) + float(nanos) / 1e9, settings)
        except (TypeError, OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return _naive_local(parser.isoparse(text), settings)
        except ValueError:
            pass
        try:
            return _naive_local(parser.parse(text), settings)
        except (ValueError, OverflowError):
            return None

    return None


def now_local(settings: Settings = DEFAULT_SETTINGS) -> datetime:
    return datetime.now(_local_tz(settings)).replace(tzinfo=None)


def to_aware(dt: datetime, settings: Settings = DEFAULT_SETTINGS) -> datetime:
    """Attach the app timezone to a naive local datetime before storing it.

    Firestore reads naive datetimes as UTC.
    """
    if dt.tzinfo is not None:
        return dt
    return _local_tz(settings).localize(dt)


def business_date_of(timestamp: Any, settings: Settings = DEFAULT_SETTINGS) -> Optional[date]:
    """Business date of a timestamp; a delivery day ends at 06:00, not midnight.

    Orders placed after midnight but before the shift ends belong to the previous
    day. Returns None when the timestamp cannot be parsed.
    """
    dt = to_datetime(timestamp, settings)
    if dt is None:
        return None
    if dt.hour < settings.business_day_start_hour:
        dt = dt - timedelta(days=1)
    return dt.date()


def is_current_business_day(timestamp: Any, now: datetime = None,
                            settings: Settings = DEFAULT_SETTINGS) -> bool:
    bucket = business_date_of(timestamp, settings)
    if bucket is None:
        return False
    return bucket == business_date_of(now or now_local(settings), settings)


def month_label(dt: datetime) -> str:
    """Arabic month name and year, e.g. 'فبراير 2024'."""
    return f"{ARABIC_MONTHS[dt.month - 1]} {dt.year}"
