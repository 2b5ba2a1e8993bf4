"""
Link Resolver

Writes matcher output onto ``Staff.user_id``. An unset link is filled in;
a link that is already set is left alone, whichever user it points at.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from services.entity_gateway import EntityGateway, EntityType

from .batch import ItemFailure, run_batch
from .matcher import MatchPair, unmatched_users
from .models import StaffRecord, UserRecord

logger = logging.getLogger(__name__)


@dataclass
class LinkReport:
    linked: List[str] = field(default_factory=list)
    already_linked: List[str] = field(default_factory=list)
    not_found: List[str] = field(default_factory=list)
    failures: List[ItemFailure] = field(default_factory=list)
    cancelled: int = 0

    @property
    def message(self) -> str:
        return (
            f"Linked {len(self.linked)} staff records. "
            f"{len(self.already_linked)} were already linked. "
            f"{len(self.not_found)} users had no matching staff record."
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "linkedCount": len(self.linked),
            "alreadyLinkedCount": len(self.already_linked),
            "notFoundCount": len(self.not_found),
            "failedCount": len(self.failures),
            "failures": [f.to_dict() for f in self.failures],
            "message": self.message,
        }
        if self.cancelled:
            result["cancelled"] = True
            result["cancelledCount"] = self.cancelled
        return result


def plan_links(pairs: Iterable[MatchPair]) -> tuple:
    """
    Split pairs into links to write and staff that are already linked.

    A staff record reachable from two users (one per email) is claimed by
    the first pair; later pairs see it as already linked.
    """
    to_link: List[MatchPair] = []
    already_linked: List[str] = []
    claimed = set()

    for staff, user in pairs:
        if staff.is_linked or staff.id in claimed:
            already_linked.append(staff.id)
            continue
        claimed.add(staff.id)
        to_link.append((staff, user))

    return to_link, already_linked


async def resolve_links(
    gateway: EntityGateway,
    pairs: Sequence[MatchPair],
    users: Optional[Sequence[UserRecord]] = None,
    max_concurrency: int = 5,
    cancel_event: Optional[asyncio.Event] = None
) -> LinkReport:
    """
    Apply candidate links.

    Args:
        gateway: Entity gateway to write through
        pairs: (staff, user) pairs from the matcher
        users: Full user snapshot; when given, users without a pair are
            reported as not found
        max_concurrency: Concurrent staff updates
        cancel_event: Stops the job between updates

    Returns:
        LinkReport
    """
    to_link, already_linked = plan_links(pairs)
    report = LinkReport(already_linked=already_linked)

    if users is not None:
        report.not_found = [u.id for u in unmatched_users(users, pairs)]

    async def link(pair: MatchPair):
        staff, user = pair
        await gateway.update(EntityType.STAFF, staff.id, {"user_id": user.id})
        logger.info(f"Linked staff {staff.id} to user {user.id}")

    outcome = await run_batch(
        to_link,
        link,
        key=lambda pair: pair[0].id,
        max_concurrency=max_concurrency,
        cancel_event=cancel_event
    )

    report.linked = [staff.id for (staff, _), _ in outcome.completed]
    report.failures = outcome.failures
    report.cancelled = outcome.cancelled
    return report
