"""
Identity Reconciliation - Error Taxonomy

Each error carries the HTTP status the API surfaces it with. Validation
and auth errors are raised before any write; per-record failures are not
raised at all but collected into the job report.
"""

from typing import Optional

from sqlalchemy.exc import SQLAlchemyError


class ReconciliationError(Exception):
    """Base class for errors surfaced to the caller as ``{"error": message}``."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class AuthError(ReconciliationError):
    """Missing or insufficient caller identity. Not retried."""

    status_code = 403

    @classmethod
    def not_authenticated(cls) -> "AuthError":
        return cls("Unauthorized", status_code=401)

    @classmethod
    def admin_required(cls) -> "AuthError":
        return cls("Unauthorized - admin only", status_code=403)


class ValidationError(ReconciliationError):
    """Missing or malformed request fields. Not retried."""

    status_code = 400


class NotFoundError(ReconciliationError):
    """A referenced Candidate, Staff or User does not exist."""

    status_code = 404


class UnexpectedError(ReconciliationError):
    """Anything else; the caller only ever sees the message."""

    status_code = 500


class SnapshotLimitExceeded(UnexpectedError):
    """A collection is larger than the job is allowed to load."""

    def __init__(self, entity: str, limit: int):
        super().__init__(
            f"{entity} collection exceeds the snapshot limit of {limit} records"
        )
        self.entity = entity
        self.limit = limit


def describe_error(error: BaseException) -> str:
    """
    Caller-safe text for an error raised by a write.

    Database errors render their statement and bound parameters, which
    carry staff contact details, so only the class name is kept.
    """
    if isinstance(error, SQLAlchemyError):
        return f"{type(error).__name__}: database operation failed"
    return str(error) or type(error).__name__
