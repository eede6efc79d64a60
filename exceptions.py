"""
Accounting exceptions.

Each carries an ``error_code`` and the HTTP status the Flask layer answers with.
"""


class AccountingError(Exception):
    """Base class for every error the accounting engine raises on purpose."""

    status_code = 400
    error_code = 'ACCOUNTING_ERROR'

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {'success': False, 'error': self.message, 'code': self.error_code}
        if self.details:
            body['details'] = self.details
        return body


class NothingToArchiveError(AccountingError):
    """Closing the books with zero live orders."""

    error_code = 'NOTHING_TO_ARCHIVE'

    def __init__(self, message: str = 'No live orders to archive'):
        super().__init__(message)


class DuplicateArchiveError(AccountingError):
    """A committed report was created moments ago; refusing to create another."""

    status_code = 409
    error_code = 'DUPLICATE_ARCHIVE'

    def __init__(self, report_id: str, seconds_ago: float):
        super().__init__(
            f"Report {report_id} was archived {int(seconds_ago)}s ago; pass force to archive again",
            report_id=report_id,
        )
        self.report_id = report_id


class NothingToSettleError(AccountingError):
    error_code = 'NOTHING_TO_SETTLE'

    def __init__(self, driver_id: str):
        super().__init__(f"No unreconciled delivered orders for driver {driver_id}", driver_id=driver_id)


class PersistenceError(AccountingError):
    """A document store write failed part way through an operation."""

    status_code = 500
    error_code = 'PERSISTENCE_FAILED'

    def __init__(self, step: str, cause: Exception, **details):
        super().__init__(f"{step} failed: {cause}", step=step, **details)
        self.step = step
        self.cause = cause
