import logging
import os
from dataclasses import dataclass

# FIRESTORE COLLECTION NAMES
ORDERS = 'orders'
USERS = 'users'
PAYMENTS = 'payments'
MONTHLY_REPORTS = 'monthly_reports'
AUDIT_LOGS = 'audit_logs'

# ADMIN TAKES 15% OF THE APP PROFIT
ADMIN_SHARE_RATE = 0.15

# DELIVERY DAYS RUN 06:00 -> 06:00
BUSINESS_DAY_START_HOUR = 6

# FIRESTORE ALLOWS 500 WRITES PER BATCH, WE STAY UNDER IT
ARCHIVE_BATCH_SIZE = 400

DUPLICATE_REPORT_WINDOW_SECONDS = 300

# MONTHLY REPORTS AND PAYMENTS ARE WRITTEN PENDING, THEN COMMITTED
STATUS_PENDING = 'pending'
STATUS_COMMITTED = 'committed'

ZERO_COMMISSION_EXCLUDED = 'excluded'
ZERO_COMMISSION_VISIBLE = 'visible'

APP_TIMEZONE = 'Africa/Cairo'


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


def _int_env(name: str, default: int) -> int:
    return int(_float_env(name, default))


@dataclass(frozen=True)
class Settings:
    """Accounting knobs passed explicitly into the engine functions."""

    admin_share_rate: float = ADMIN_SHARE_RATE
    business_day_start_hour: int = BUSINESS_DAY_START_HOUR
    archive_batch_size: int = ARCHIVE_BATCH_SIZE
    duplicate_report_window_seconds: int = DUPLICATE_REPORT_WINDOW_SECONDS
    zero_commission_policy: str = ZERO_COMMISSION_EXCLUDED
    timezone: str = APP_TIMEZONE

    @classmethod
    def from_env(cls) -> 'Settings':
        policy = (os.getenv('ZERO_COMMISSION_POLICY') or ZERO_COMMISSION_EXCLUDED).strip().lower()
        if policy not in (ZERO_COMMISSION_EXCLUDED, ZERO_COMMISSION_VISIBLE):
            policy = ZERO_COMMISSION_EXCLUDED
        hour = _int_env('BUSINESS_DAY_START_HOUR', BUSINESS_DAY_START_HOUR)
        return cls(
            admin_share_rate=_float_env('ADMIN_SHARE_RATE', ADMIN_SHARE_RATE),
            business_day_start_hour=min(max(hour, 0), 23),
            archive_batch_size=max(1, min(_int_env('ARCHIVE_BATCH_SIZE', ARCHIVE_BATCH_SIZE), 500)),
            duplicate_report_window_seconds=max(0, _int_env('DUPLICATE_REPORT_WINDOW_SECONDS',
                                                           DUPLICATE_REPORT_WINDOW_SECONDS)),
            zero_commission_policy=policy,
            timezone=os.getenv('APP_TIMEZONE') or APP_TIMEZONE,
        )


# Engine-wide default; read once at import
DEFAULT_SETTINGS = Settings.from_env()


class FlaskConfig:
    """Flask app.config values (web layer only)."""

    SECRET_KEY = os.getenv('SECRET_KEY', 'delivery-ledger')
    JSON_AS_ASCII = False
    # Set to a store object (see dbhelper) to bypass Firestore, e.g. in tests
    DOCUMENT_STORE = None


def configure_logging(level: str = None) -> None:
    """Install a single console handler for the whole app."""
    level_name = (level or os.getenv('LOG_LEVEL') or 'INFO').upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )
    # The google clients are chatty at INFO
    logging.getLogger('google').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)
