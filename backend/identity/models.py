"""
Identity Reconciliation - Record Models

Typed views of gateway records used by the pure matching, sync and audit
logic. Gateway dicts are parsed into these models on read; the three
historical "unset" spellings of ``Staff.user_id`` (None, "" and "null")
all become None here and are never written back.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from services.audit import ResourceType
from services.entity_gateway import EntityType


def normalize_link_id(value: Any) -> Optional[str]:
    """Collapse the unset sentinels of a link field to None."""
    if value is None:
        return None
    value = str(value).strip()
    if not value or value == "null":
        return None
    return value


def normalize_email(value: Optional[str]) -> Optional[str]:
    """Lowercased email; None when empty. Surrounding whitespace is kept."""
    if not value:
        return None
    return value.lower()


def emails_equal(a: Optional[str], b: Optional[str]) -> bool:
    """Case-insensitive email identity. Two blanks are equal."""
    return normalize_email(a) == normalize_email(b)


# ==================== PROFILE FIELDS ====================

@dataclass(frozen=True)
class ProfileField:
    """One synchronized field and its name on each side."""
    user_field: str
    staff_field: str


PROFILE_FIELDS: Tuple[ProfileField, ...] = (
    ProfileField("full_name", "preferred_name"),
    ProfileField("profile_photo_url", "profile_photo_url"),
    ProfileField("personal_email", "personal_email"),
    ProfileField("phone", "phone"),
    ProfileField("address", "address"),
    ProfileField("bio", "bio"),
    ProfileField("linkedin_link", "linkedin_link"),
    ProfileField("facebook_link", "facebook_link"),
    ProfileField("instagram_link", "instagram_link"),
    ProfileField("tiktok_link", "tiktok_link"),
    ProfileField("emergency_contact_name", "emergency_contact_name"),
    ProfileField("emergency_contact_phone", "emergency_contact_phone"),
    ProfileField("emergency_contact_relationship", "emergency_contact_relationship"),
    ProfileField("emergency_contact_email", "emergency_contact_email"),
)


class ProfileFields(BaseModel):
    """Fields present on both users and staff under the same name."""
    model_config = ConfigDict(extra="allow")

    profile_photo_url: Optional[str] = None
    personal_email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    bio: Optional[str] = None
    linkedin_link: Optional[str] = None
    facebook_link: Optional[str] = None
    instagram_link: Optional[str] = None
    tiktok_link: Optional[str] = None
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    emergency_contact_relationship: Optional[str] = None
    emergency_contact_email: Optional[str] = None


# ==================== RECORDS ====================

class UserRecord(ProfileFields):
    """Login identity."""
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: Optional[str] = None

    @property
    def normalized_email(self) -> Optional[str]:
        return normalize_email(self.email)


class StaffRecord(ProfileFields):
    """HR record; ``user_id`` is the optional link to a UserRecord."""
    id: str
    user_id: Optional[str] = None
    company_email: Optional[str] = None
    legal_full_name: Optional[str] = None
    preferred_name: Optional[str] = None

    @field_validator("user_id", mode="before")
    @classmethod
    def _normalize_user_id(cls, v):
        return normalize_link_id(v)

    @property
    def is_linked(self) -> bool:
        return self.user_id is not None

    @property
    def display_name(self) -> str:
        return self.preferred_name or self.legal_full_name or self.id

    def match_emails(self) -> Set[str]:
        """Normalized emails this record can be matched under (zero to two)."""
        return {
            e for e in (normalize_email(self.company_email), normalize_email(self.personal_email))
            if e
        }


class StaffDraft(BaseModel):
    """Default staff shell created for a user that has no staff record."""
    user_id: str
    legal_full_name: Optional[str] = None
    preferred_name: Optional[str] = None
    email: Optional[str] = None
    company_email: Optional[str] = None
    profile_photo_url: Optional[str] = None
    employment_status: str = "active"
    worker_type: str = "w2_employee"
    primary_role: str = "Team Member"
    pay_type: str = "salary"
    current_salary: float = 0
    timezone: str = "America/New_York"
    start_date: date = Field(default_factory=date.today)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


# ==================== ATTRIBUTION ====================

@dataclass(frozen=True)
class AttributionRule:
    """Which field of a record type names the acting user."""
    entity_type: EntityType
    actor_id_field: str
    resource_type: ResourceType
    label: str


ATTRIBUTION_RULES: Dict[str, AttributionRule] = {
    "lead": AttributionRule(EntityType.LEAD, "owner_id", ResourceType.LEAD, "leads"),
    "booking": AttributionRule(EntityType.BOOKING, "booked_by_id", ResourceType.BOOKING, "bookings"),
    "activity": AttributionRule(EntityType.ACTIVITY, "performed_by_id", ResourceType.ACTIVITY, "activities"),
}
