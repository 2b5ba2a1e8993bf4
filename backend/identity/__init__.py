"""
Identity Reconciliation Module

Keeps staff records (HR) and users (login identity) linked and in step.

Features:
- Email-based staff/user matching (case-insensitive)
- Link resolution that never overwrites an existing link
- Profile field sync in both directions (diff-and-apply)
- Ownership correction for leads, bookings and activities
- Bulk provisioning of staff records for users without one
- Invite and hire workflows
"""

from .errors import (
    ReconciliationError,
    AuthError,
    ValidationError,
    NotFoundError,
    UnexpectedError,
    SnapshotLimitExceeded
)
from .matcher import match
from .models import StaffRecord, UserRecord, normalize_link_id
from .service import IdentitySyncService, JobLockRegistry, JobState

__all__ = [
    'ReconciliationError',
    'AuthError',
    'ValidationError',
    'NotFoundError',
    'UnexpectedError',
    'SnapshotLimitExceeded',
    'match',
    'StaffRecord',
    'UserRecord',
    'normalize_link_id',
    'IdentitySyncService',
    'JobLockRegistry',
    'JobState'
]
