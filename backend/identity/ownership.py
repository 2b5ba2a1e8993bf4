"""
Ownership Auditor

Corrects the denormalized ``created_by`` email on attributed records
(leads, bookings, activities) against the user their actor-id field
references. Runs once per record type, since the actor-id field differs.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from services.entity_gateway import EntityGateway

from .batch import ItemFailure, run_batch
from .models import AttributionRule, UserRecord, emails_equal, normalize_link_id

logger = logging.getLogger(__name__)


@dataclass
class OwnershipReport:
    rule: AttributionRule
    fixed: List[str] = field(default_factory=list)
    already_correct: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failures: List[ItemFailure] = field(default_factory=list)
    cancelled: int = 0

    @property
    def message(self) -> str:
        return (
            f"Fixed {len(self.fixed)} {self.rule.label}. "
            f"{len(self.already_correct)} were already correct."
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "fixed": len(self.fixed),
            "alreadyCorrect": len(self.already_correct),
            "skipped": len(self.skipped),
            "failedCount": len(self.failures),
            "failures": [f.to_dict() for f in self.failures],
            "message": self.message,
        }
        if self.cancelled:
            result["cancelled"] = True
            result["cancelledCount"] = self.cancelled
        return result


def plan_ownership_fixes(
    records: Sequence[Mapping[str, Any]],
    users: Sequence[UserRecord],
    actor_id_field: str
) -> Tuple[List[Tuple[str, str]], List[str], List[str]]:
    """
    Classify attributed records.

    Returns (fixes as (record id, canonical email), already-correct ids,
    skipped ids). A record is skipped when its actor id is missing, points
    at no user, or points at a user without an email.
    """
    users_by_id = {u.id: u for u in users}
    fixes: List[Tuple[str, str]] = []
    already_correct: List[str] = []
    skipped: List[str] = []

    for record in records:
        record_id = record["id"]
        actor_id = normalize_link_id(record.get(actor_id_field))
        if actor_id is None:
            logger.debug(f"Record {record_id} has no {actor_id_field}, skipping")
            skipped.append(record_id)
            continue

        user = users_by_id.get(actor_id)
        if user is None or not user.email:
            logger.debug(f"No user found for {actor_id_field} {actor_id}")
            skipped.append(record_id)
            continue

        if emails_equal(record.get("created_by"), user.email):
            already_correct.append(record_id)
        else:
            fixes.append((record_id, user.email))

    return fixes, already_correct, skipped


async def audit_ownership(
    gateway: EntityGateway,
    rule: AttributionRule,
    records: Sequence[Mapping[str, Any]],
    users: Sequence[UserRecord],
    max_concurrency: int = 5,
    cancel_event: Optional[asyncio.Event] = None
) -> OwnershipReport:
    """
    Set ``created_by`` to the referenced user's stored email wherever it
    differs case-insensitively.
    """
    fixes, already_correct, skipped = plan_ownership_fixes(records, users, rule.actor_id_field)
    report = OwnershipReport(rule=rule, already_correct=already_correct, skipped=skipped)

    async def fix(item: Tuple[str, str]):
        record_id, email = item
        await gateway.update(rule.entity_type, record_id, {"created_by": email})
        logger.info(f"Fixed {rule.entity_type.value} {record_id} created_by -> {email}")

    outcome = await run_batch(
        fixes,
        fix,
        key=lambda item: item[0],
        max_concurrency=max_concurrency,
        cancel_event=cancel_event
    )

    report.fixed = [record_id for (record_id, _), _ in outcome.completed]
    report.failures = outcome.failures
    report.cancelled = outcome.cancelled
    return report
