"""
Bulk Provisioner

Creates a default staff record for every user that no staff record links
to. All drafts go to the gateway in one bulk create.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from services.entity_gateway import EntityGateway, EntityType

from .models import StaffDraft, StaffRecord, UserRecord

logger = logging.getLogger(__name__)


@dataclass
class ProvisionReport:
    intended: int = 0
    created: List[str] = field(default_factory=list)
    names: List[Optional[str]] = field(default_factory=list)

    @property
    def message(self) -> str:
        if not self.intended:
            return "All users already have staff records"
        return f"Created {len(self.created)} staff records"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": len(self.created),
            "users": self.names,
            "message": self.message,
        }


def provision_missing_staff(
    users: Sequence[UserRecord],
    existing_staff: Sequence[StaffRecord],
    timezone: str = "America/New_York",
    primary_role: str = "Team Member",
    today: Optional[date] = None
) -> List[StaffDraft]:
    """Drafts for users whose id is not the ``user_id`` of any staff record."""
    linked_user_ids = {s.user_id for s in existing_staff if s.is_linked}
    start_date = today or date.today()

    return [
        StaffDraft(
            user_id=user.id,
            legal_full_name=user.full_name,
            preferred_name=user.full_name,
            email=user.email,
            company_email=user.email,
            profile_photo_url=user.profile_photo_url or None,
            primary_role=primary_role,
            timezone=timezone,
            start_date=start_date,
        )
        for user in users
        if user.id not in linked_user_ids
    ]


async def create_staff_drafts(gateway: EntityGateway, drafts: Sequence[StaffDraft]) -> ProvisionReport:
    """
    Bulk-create the drafts.

    The intended count is logged before the gateway call so a failed bulk
    create can still be attributed. A failure propagates to the caller.
    """
    report = ProvisionReport(intended=len(drafts))
    if not drafts:
        return report

    logger.info(f"Creating {len(drafts)} staff records for users without one")
    created = await gateway.bulk_create(EntityType.STAFF, [d.to_record() for d in drafts])

    report.created = [record["id"] for record in created]
    report.names = [d.preferred_name for d in drafts]
    logger.info(f"Created {len(created)} staff records")
    return report
