"""
Studio Ops Core - Entity SQLAlchemy Models

Tables behind the entity gateway:
- Identity: users, staff, candidates
- Notes carried across at hire: candidate_notes, staff_notes
- Attributed records: leads, bookings, activities

Ids are opaque strings; the identity provider mints user ids.
"""

import uuid
from datetime import datetime, date, timezone
from decimal import Decimal
from typing import Dict, Any

from sqlalchemy import (
    Column, String, Text, Boolean, Date, DateTime, Numeric, JSON
)

from database.connection import Base


# ==================== HELPER FUNCTIONS ====================

def generate_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EntityMixin:
    """Common id/timestamps plus the plain-dict view the gateway hands out."""

    id = Column(String(64), primary_key=True, default=generate_id)
    created_date = Column(DateTime(timezone=True), default=utc_now)
    updated_date = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)
            if isinstance(value, (datetime, date)):
                value = value.isoformat()
            elif isinstance(value, Decimal):
                value = float(value)
            data[column.key] = value
        return data


class ProfileFieldsMixin:
    """Profile fields shared by users and staff and kept in sync between them."""

    profile_photo_url = Column(Text)
    personal_email = Column(String(255), index=True)
    phone = Column(String(50))
    address = Column(Text)
    bio = Column(Text)
    linkedin_link = Column(Text)
    facebook_link = Column(Text)
    instagram_link = Column(Text)
    tiktok_link = Column(Text)
    emergency_contact_name = Column(String(200))
    emergency_contact_phone = Column(String(50))
    emergency_contact_relationship = Column(String(100))
    emergency_contact_email = Column(String(255))


# ==================== IDENTITY ====================

class UserDB(EntityMixin, ProfileFieldsMixin, Base):
    """
    Login identity, created by the identity provider's invite flow.
    """
    __tablename__ = "users"

    email = Column(String(255), nullable=False, index=True)
    full_name = Column(String(200))
    role = Column(String(30), default="user")
    departments = Column(JSON, default=list)
    on_team_schedule = Column(Boolean, default=False)


class StaffDB(EntityMixin, ProfileFieldsMixin, Base):
    """
    HR record for a team member. ``user_id`` links to the login identity.
    """
    __tablename__ = "staff"

    user_id = Column(String(64), nullable=True, index=True)
    email = Column(String(255))
    company_email = Column(String(255), index=True)
    legal_full_name = Column(String(200))
    preferred_name = Column(String(200))
    primary_role = Column(String(100))
    employment_status = Column(String(30), default="active")
    worker_type = Column(String(30))
    pay_type = Column(String(30))
    current_salary = Column(Numeric(12, 2), default=0)
    current_hourly_rate = Column(Numeric(10, 2))
    timezone = Column(String(64))
    start_date = Column(Date)
    photographer_status = Column(String(30))
    signed_off_services = Column(JSON, default=list)


class CandidateDB(EntityMixin, Base):
    """
    Pre-hire record; becomes a staff record through the hire workflow.
    """
    __tablename__ = "candidates"

    full_name = Column(String(200))
    email = Column(String(255), index=True)
    phone = Column(String(50))
    stage = Column(String(30), default="applied", index=True)
    staff_id = Column(String(64), nullable=True)


class CandidateNoteDB(EntityMixin, Base):
    __tablename__ = "candidate_notes"

    candidate_id = Column(String(64), nullable=False, index=True)
    note = Column(Text)
    author_id = Column(String(64))
    author_name = Column(String(200))


class StaffNoteDB(EntityMixin, Base):
    __tablename__ = "staff_notes"

    staff_id = Column(String(64), nullable=False, index=True)
    staff_name = Column(String(200))
    note = Column(Text)
    note_type = Column(String(30), default="general")
    author_id = Column(String(64))
    author_name = Column(String(200))


# ==================== ATTRIBUTED RECORDS ====================

class LeadDB(EntityMixin, Base):
    """Sales lead; ``owner_id`` is the owning user."""
    __tablename__ = "leads"

    owner_id = Column(String(64), index=True)
    created_by = Column(String(255))
    name = Column(String(200))
    email = Column(String(255))
    status = Column(String(30), index=True)


class BookingDB(EntityMixin, Base):
    """Customer booking; ``booked_by_id`` is the booking user."""
    __tablename__ = "bookings"

    booked_by_id = Column(String(64), index=True)
    created_by = Column(String(255))
    client_name = Column(String(200))
    service_name = Column(String(200))
    session_date = Column(Date)
    status = Column(String(30), index=True)


class ActivityDB(EntityMixin, Base):
    """CRM activity log entry; ``performed_by_id`` is the acting user."""
    __tablename__ = "activities"

    performed_by_id = Column(String(64), index=True)
    created_by = Column(String(255))
    activity_type = Column(String(50))
    lead_id = Column(String(64), index=True)
    description = Column(Text)
