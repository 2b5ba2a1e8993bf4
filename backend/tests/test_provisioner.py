"""
Unit Tests for the Bulk Provisioner

Run with: pytest tests/test_provisioner.py -v
"""

from datetime import date
from unittest.mock import AsyncMock

import pytest

from identity.models import StaffRecord, UserRecord
from identity.provisioner import create_staff_drafts, provision_missing_staff
from services.entity_gateway import EntityType, InMemoryEntityGateway

USERS = [
    UserRecord(id="u1", email="one@studio.com", full_name="One"),
    UserRecord(id="u2", email="two@studio.com", full_name="Two", profile_photo_url="https://cdn/two.png"),
    UserRecord(id="u3", email="three@studio.com", full_name="Three"),
]


class TestProvisionMissingStaff:
    """Test draft computation."""

    def test_set_difference(self):
        existing = [StaffRecord(id="s1", user_id="u1"), StaffRecord(id="s2", user_id="u1")]

        drafts = provision_missing_staff(USERS, existing)

        assert [d.user_id for d in drafts] == ["u2", "u3"]

    def test_sentinel_links_do_not_count(self):
        existing = [StaffRecord(id="s1", user_id="null"), StaffRecord(id="s2", user_id="")]
        drafts = provision_missing_staff(USERS, existing)
        assert len(drafts) == 3

    def test_draft_defaults(self):
        drafts = provision_missing_staff(
            [USERS[1]], [],
            timezone="Europe/London",
            today=date(2026, 3, 1)
        )
        record = drafts[0].to_record()

        assert record["user_id"] == "u2"
        assert record["legal_full_name"] == "Two"
        assert record["preferred_name"] == "Two"
        assert record["email"] == "two@studio.com"
        assert record["company_email"] == "two@studio.com"
        assert record["profile_photo_url"] == "https://cdn/two.png"
        assert record["employment_status"] == "active"
        assert record["worker_type"] == "w2_employee"
        assert record["primary_role"] == "Team Member"
        assert record["pay_type"] == "salary"
        assert record["current_salary"] == 0
        assert record["timezone"] == "Europe/London"
        assert record["start_date"] == "2026-03-01"

    def test_nothing_missing(self):
        existing = [StaffRecord(id=f"s{i}", user_id=u.id) for i, u in enumerate(USERS)]
        assert provision_missing_staff(USERS, existing) == []


class TestCreateStaffDrafts:
    """Test the bulk create."""

    @pytest.mark.asyncio
    async def test_single_bulk_create(self):
        gateway = InMemoryEntityGateway()
        drafts = provision_missing_staff(USERS, [])

        report = await create_staff_drafts(gateway, drafts)

        assert gateway.write_count == 1
        assert len(gateway.snapshot(EntityType.STAFF)) == 3
        assert report.to_dict() == {
            "count": 3,
            "users": ["One", "Two", "Three"],
            "message": "Created 3 staff records",
        }

    @pytest.mark.asyncio
    async def test_no_drafts_no_call(self):
        gateway = AsyncMock()
        report = await create_staff_drafts(gateway, [])

        gateway.bulk_create.assert_not_called()
        assert report.message == "All users already have staff records"

    @pytest.mark.asyncio
    async def test_bulk_failure_propagates(self):
        gateway = AsyncMock()
        gateway.bulk_create.side_effect = RuntimeError("insert failed")

        with pytest.raises(RuntimeError):
            await create_staff_drafts(gateway, provision_missing_staff(USERS, []))
