"""
Profile Sync Engine

Copies the shared profile fields between a user and their staff record(s).

Directions:
- staff -> user: partial; only non-empty staff values are copied. Runs when
  a user links their own staff record.
- user -> staff: full; every field is written, absent values become "".
  Runs when a user edits or explicitly syncs their profile.

Both directions diff against the destination first and write only the
fields that differ (None and "" are the same value), so a destination that
already agrees receives no write. The user record is canonical for the
profile fields; staff records linked to a different user are never touched.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from services.entity_gateway import EntityGateway, EntityType

from .batch import ItemFailure, run_batch
from .models import PROFILE_FIELDS, ProfileField, StaffRecord, UserRecord

logger = logging.getLogger(__name__)


class SyncDirection(str, Enum):
    STAFF_TO_USER = "staff_to_user"
    USER_TO_STAFF = "user_to_staff"


def _read(obj: Any, name: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


def values_equal(a: Any, b: Any) -> bool:
    """Field equality where None and "" are interchangeable."""
    if _is_blank(a) and _is_blank(b):
        return True
    return a == b


def sync_profile(
    source: Any,
    target: Any,
    direction: SyncDirection,
    fields: Sequence[ProfileField] = PROFILE_FIELDS,
    fill_only: bool = False
) -> Dict[str, Any]:
    """
    Compute the patch that brings ``target`` in line with ``source``.

    Args:
        source: Record or mapping read from
        target: Record or mapping the patch applies to
        direction: Which side is which
        fields: Field pairs to consider
        fill_only: staff -> user only; leave non-empty user fields alone

    Returns:
        Field -> value for the fields that would change; empty when the
        target already agrees
    """
    patch: Dict[str, Any] = {}

    for f in fields:
        if direction == SyncDirection.STAFF_TO_USER:
            value = _read(source, f.staff_field)
            dest = f.user_field
            if _is_blank(value):
                continue
            if fill_only and not _is_blank(_read(target, dest)):
                continue
        else:
            value = _read(source, f.user_field) or ""
            dest = f.staff_field

        if not values_equal(value, _read(target, dest)):
            patch[dest] = value

    return patch


@dataclass
class SyncReport:
    direction: SyncDirection
    synced: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failures: List[ItemFailure] = field(default_factory=list)
    cancelled: int = 0

    @property
    def message(self) -> str:
        if self.direction == SyncDirection.USER_TO_STAFF:
            if not (self.synced or self.unchanged or self.skipped or self.failures):
                return "No matching staff records found"
            return (
                f"Synced user profile to {len(self.synced)} staff record(s). "
                f"{len(self.unchanged)} already up to date."
            )
        if self.synced:
            return "Synced staff profile to user"
        return "User profile already up to date"

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "syncedCount": len(self.synced),
            "unchangedCount": len(self.unchanged),
            "skipped": len(self.skipped),
            "failedCount": len(self.failures),
            "failures": [f.to_dict() for f in self.failures],
            "message": self.message,
        }
        if self.cancelled:
            result["cancelled"] = True
            result["cancelledCount"] = self.cancelled
        return result


def plan_user_to_staff(
    user_id: str,
    source: Mapping[str, Any],
    staff: Sequence[StaffRecord]
) -> Tuple[List[Tuple[StaffRecord, Dict[str, Any]]], List[str], List[str]]:
    """
    Patches for each candidate staff record.

    Returns (writes, unchanged ids, skipped ids). An unset link is filled in
    as part of the patch; a record linked to someone else is skipped.
    """
    writes: List[Tuple[StaffRecord, Dict[str, Any]]] = []
    unchanged: List[str] = []
    skipped: List[str] = []

    for record in staff:
        if record.is_linked and record.user_id != user_id:
            logger.info(f"Skipping staff {record.id}: linked to another user")
            skipped.append(record.id)
            continue

        patch = sync_profile(source, record, SyncDirection.USER_TO_STAFF)
        if not record.is_linked:
            patch["user_id"] = user_id

        if patch:
            writes.append((record, patch))
        else:
            unchanged.append(record.id)

    return writes, unchanged, skipped


async def sync_user_to_staff(
    gateway: EntityGateway,
    user_id: str,
    source: Mapping[str, Any],
    staff: Sequence[StaffRecord],
    max_concurrency: int = 5,
    cancel_event: Optional[asyncio.Event] = None
) -> SyncReport:
    """Write the user's profile onto each linked or email-matched staff record."""
    writes, unchanged, skipped = plan_user_to_staff(user_id, source, staff)
    report = SyncReport(SyncDirection.USER_TO_STAFF, unchanged=unchanged, skipped=skipped)

    async def apply(item):
        record, patch = item
        await gateway.update(EntityType.STAFF, record.id, patch)
        logger.info(f"Synced user {user_id} profile to staff {record.id} ({len(patch)} fields)")

    outcome = await run_batch(
        writes,
        apply,
        key=lambda item: item[0].id,
        max_concurrency=max_concurrency,
        cancel_event=cancel_event
    )

    report.synced = [record.id for (record, _), _ in outcome.completed]
    report.failures = outcome.failures
    report.cancelled = outcome.cancelled
    return report


def plan_staff_to_user(
    user: UserRecord,
    staff: Sequence[StaffRecord],
    fill_only: bool = False
) -> Dict[str, Any]:
    """
    Merge the non-empty fields of the user's staff records into one patch.

    Records are applied in order, so with ``fill_only`` the first staff
    value for an empty user field wins; otherwise the last one does.
    """
    current = user.model_dump()
    for record in staff:
        current.update(sync_profile(record, current, SyncDirection.STAFF_TO_USER, fill_only=fill_only))

    return {
        f.user_field: current.get(f.user_field)
        for f in PROFILE_FIELDS
        if not values_equal(current.get(f.user_field), _read(user, f.user_field))
    }


async def sync_staff_to_user(
    gateway: EntityGateway,
    user: UserRecord,
    staff: Sequence[StaffRecord],
    fill_only: bool = False
) -> SyncReport:
    """Copy staff profile values onto the user; no write when nothing differs."""
    report = SyncReport(SyncDirection.STAFF_TO_USER)

    own = [s for s in staff if s.user_id == user.id]
    report.skipped = [s.id for s in staff if s.user_id != user.id]

    patch = plan_staff_to_user(user, own, fill_only=fill_only)
    if not patch:
        report.unchanged = [user.id]
        return report

    async def apply(item):
        await gateway.update(EntityType.USER, user.id, patch)
        logger.info(f"Synced staff profile to user {user.id} ({len(patch)} fields)")

    outcome = await run_batch([user.id], apply, key=lambda item: item)
    report.synced = [item for item, _ in outcome.completed]
    report.failures = outcome.failures
    return report
