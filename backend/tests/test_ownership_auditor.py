"""
Unit Tests for the Ownership Auditor

Tests:
- created_by corrected to the referenced user's stored email
- Case-insensitive equality counts as already correct
- Missing and dangling actor ids are skipped
- Each record type uses its own actor-id field
- Re-running performs no writes

Run with: pytest tests/test_ownership_auditor.py -v
"""

import pytest

from identity.models import ATTRIBUTION_RULES, UserRecord
from identity.ownership import audit_ownership, plan_ownership_fixes
from services.entity_gateway import EntityType, InMemoryEntityGateway

USERS = [
    UserRecord(id="u1", email="new@x.com"),
    UserRecord(id="u2", email="Mixed@Studio.com"),
    UserRecord(id="u3", email=None),
]


class TestPlanning:
    """Test record classification."""

    def test_classifies_every_case(self):
        records = [
            {"id": "b1", "booked_by_id": "u1", "created_by": "old@x.com"},
            {"id": "b2", "booked_by_id": "u2", "created_by": "mixed@studio.com"},
            {"id": "b3", "booked_by_id": None, "created_by": "someone@x.com"},
            {"id": "b4", "booked_by_id": "u404", "created_by": "ghost@x.com"},
            {"id": "b5", "booked_by_id": "u3", "created_by": "x@x.com"},
            {"id": "b6", "created_by": "nobody@x.com"},
        ]

        fixes, already_correct, skipped = plan_ownership_fixes(records, USERS, "booked_by_id")

        assert fixes == [("b1", "new@x.com")]
        assert already_correct == ["b2"]
        assert skipped == ["b3", "b4", "b5", "b6"]

    def test_sentinel_actor_id_is_skipped(self):
        records = [{"id": "l1", "owner_id": "null", "created_by": "a@x.com"}]
        _, _, skipped = plan_ownership_fixes(records, USERS, "owner_id")
        assert skipped == ["l1"]

    def test_rules_per_record_type(self):
        assert ATTRIBUTION_RULES["lead"].actor_id_field == "owner_id"
        assert ATTRIBUTION_RULES["booking"].actor_id_field == "booked_by_id"
        assert ATTRIBUTION_RULES["activity"].actor_id_field == "performed_by_id"


class TestAuditOwnership:
    """Test the gateway-writing audit."""

    @pytest.mark.asyncio
    async def test_booking_attribution_corrected(self):
        gateway = InMemoryEntityGateway(seed={EntityType.BOOKING: [
            {"id": "b1", "booked_by_id": "u1", "created_by": "old@x.com"},
        ]})

        records = await gateway.list(EntityType.BOOKING)
        report = await audit_ownership(gateway, ATTRIBUTION_RULES["booking"], records, USERS)

        assert report.to_dict()["fixed"] == 1
        assert (await gateway.get(EntityType.BOOKING, "b1"))["created_by"] == "new@x.com"

    @pytest.mark.asyncio
    async def test_canonical_casing_is_users_stored_value(self):
        gateway = InMemoryEntityGateway(seed={EntityType.LEAD: [
            {"id": "l1", "owner_id": "u2", "created_by": "wrong@studio.com"},
        ]})

        records = await gateway.list(EntityType.LEAD)
        await audit_ownership(gateway, ATTRIBUTION_RULES["lead"], records, USERS)

        assert (await gateway.get(EntityType.LEAD, "l1"))["created_by"] == "Mixed@Studio.com"

    @pytest.mark.asyncio
    async def test_dangling_reference_untouched(self):
        gateway = InMemoryEntityGateway(seed={EntityType.LEAD: [
            {"id": "l1", "owner_id": "u404", "created_by": "keep@x.com"},
        ]})

        records = await gateway.list(EntityType.LEAD)
        report = await audit_ownership(gateway, ATTRIBUTION_RULES["lead"], records, USERS)
        result = report.to_dict()

        assert result["skipped"] == 1
        assert result["fixed"] == 0
        assert result["alreadyCorrect"] == 0
        assert gateway.write_count == 0
        assert (await gateway.get(EntityType.LEAD, "l1"))["created_by"] == "keep@x.com"

    @pytest.mark.asyncio
    async def test_activity_rerun_is_idempotent(self):
        gateway = InMemoryEntityGateway(seed={EntityType.ACTIVITY: [
            {"id": "a1", "performed_by_id": "u1", "created_by": "OLD@x.com"},
            {"id": "a2", "performed_by_id": "u1", "created_by": "NEW@X.COM"},
        ]})
        rule = ATTRIBUTION_RULES["activity"]

        first = await audit_ownership(gateway, rule, await gateway.list(EntityType.ACTIVITY), USERS)
        writes = gateway.write_count
        second = await audit_ownership(gateway, rule, await gateway.list(EntityType.ACTIVITY), USERS)

        assert first.fixed == ["a1"]
        assert first.already_correct == ["a2"]
        assert second.fixed == []
        assert sorted(second.already_correct) == ["a1", "a2"]
        assert gateway.write_count == writes
        assert first.message == "Fixed 1 activities. 1 were already correct."
