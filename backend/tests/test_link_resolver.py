"""
Unit Tests for the Link Resolver

Tests:
- Bulk link scenario (3 users / 5 staff)
- Existing links are never overwritten
- All unset sentinels are eligible for linking
- One failing update does not abort the rest
- Second run performs no writes

Run with: pytest tests/test_link_resolver.py -v
"""

import asyncio

import pytest
from sqlalchemy.exc import IntegrityError

from identity.link_resolver import plan_links, resolve_links
from identity.matcher import match
from identity.models import StaffRecord, UserRecord
from services.entity_gateway import EntityType, InMemoryEntityGateway


class FailingGateway(InMemoryEntityGateway):
    """In-memory gateway whose updates fail for chosen record ids."""

    def __init__(self, failing_ids, error=None, **kwargs):
        super().__init__(**kwargs)
        self.failing_ids = set(failing_ids)
        self.error = error

    async def update(self, entity_type, entity_id, patch):
        if entity_id in self.failing_ids:
            raise self.error or ConnectionError(f"write to {entity_id} timed out")
        return await super().update(entity_type, entity_id, patch)


USERS = [
    {"id": "u1", "email": "one@studio.com"},
    {"id": "u2", "email": "two@studio.com"},
    {"id": "u3", "email": "three@studio.com"},
]

STAFF = [
    {"id": "s1", "company_email": "One@Studio.com", "user_id": None},
    {"id": "s2", "personal_email": "one@studio.com", "user_id": ""},
    {"id": "s3", "company_email": "two@studio.com", "user_id": "null"},
    {"id": "s4", "company_email": "stranger@studio.com"},
    {"id": "s5"},
]


async def run_resolver(gateway, **kwargs):
    users = [UserRecord(**u) for u in await gateway.list(EntityType.USER)]
    staff = [StaffRecord(**s) for s in await gateway.list(EntityType.STAFF)]
    pairs = match(users, staff)
    return await resolve_links(gateway, pairs, users=users, **kwargs)


def staff_links(gateway):
    return {s["id"]: s.get("user_id") for s in gateway.snapshot(EntityType.STAFF)}


class TestBulkLinking:
    """Test the bulk link-all flow."""

    @pytest.fixture
    def gateway(self):
        return InMemoryEntityGateway(seed={EntityType.USER: USERS, EntityType.STAFF: STAFF})

    @pytest.mark.asyncio
    async def test_bulk_link_scenario(self, gateway):
        report = await run_resolver(gateway)
        result = report.to_dict()

        assert result["linkedCount"] == 3
        assert result["alreadyLinkedCount"] == 0
        assert result["notFoundCount"] == 1
        assert report.not_found == ["u3"]
        assert result["failedCount"] == 0

        links = staff_links(gateway)
        assert links["s1"] == "u1"
        assert links["s2"] == "u1"
        assert links["s3"] == "u2"
        assert links["s4"] is None
        assert links["s5"] is None

    @pytest.mark.asyncio
    async def test_message_matches_counts(self, gateway):
        report = await run_resolver(gateway)
        assert report.message == (
            "Linked 3 staff records. 0 were already linked. 1 users had no matching staff record."
        )

    @pytest.mark.asyncio
    async def test_second_run_writes_nothing(self, gateway):
        await run_resolver(gateway)
        after_first = gateway.snapshot(EntityType.STAFF)
        writes_after_first = gateway.write_count

        report = await run_resolver(gateway)

        assert len(report.linked) == 0
        assert len(report.already_linked) == 3
        assert gateway.write_count == writes_after_first
        assert gateway.snapshot(EntityType.STAFF) == after_first

    @pytest.mark.asyncio
    async def test_sentinel_values_never_written(self, gateway):
        await run_resolver(gateway)
        assert "null" not in staff_links(gateway).values()


class TestNonOverwrite:
    """Test that existing links are preserved."""

    @pytest.mark.asyncio
    async def test_existing_link_is_kept(self):
        gateway = InMemoryEntityGateway(seed={
            EntityType.USER: [{"id": "u2", "email": "jane@co.com"}],
            EntityType.STAFF: [{"id": "s1", "company_email": "jane@co.com", "user_id": "u1"}],
        })

        report = await run_resolver(gateway)

        assert report.already_linked == ["s1"]
        assert report.linked == []
        assert staff_links(gateway)["s1"] == "u1"
        assert gateway.write_count == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sentinel", [None, "", "null"])
    async def test_sentinels_are_eligible(self, sentinel):
        gateway = InMemoryEntityGateway(seed={
            EntityType.USER: [{"id": "u1", "email": "jane@co.com"}],
            EntityType.STAFF: [{"id": "s1", "company_email": "Jane@Co.com", "user_id": sentinel}],
        })

        report = await run_resolver(gateway)

        assert report.linked == ["s1"]
        assert staff_links(gateway)["s1"] == "u1"

    def test_first_pair_claims_shared_staff(self):
        record = StaffRecord(id="s1", company_email="a@co.com", personal_email="b@co.com")
        pairs = [(record, UserRecord(id="u1", email="a@co.com")), (record, UserRecord(id="u2", email="b@co.com"))]

        to_link, already_linked = plan_links(pairs)

        assert [(s.id, u.id) for s, u in to_link] == [("s1", "u1")]
        assert already_linked == ["s1"]


class TestFailureIsolation:
    """Test per-record isolation of update failures."""

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_siblings(self):
        gateway = FailingGateway(
            failing_ids={"s2"},
            seed={EntityType.USER: USERS, EntityType.STAFF: STAFF},
        )

        report = await run_resolver(gateway)
        result = report.to_dict()

        assert sorted(report.linked) == ["s1", "s3"]
        assert result["failedCount"] == 1
        assert result["failures"][0]["id"] == "s2"
        assert "timed out" in result["failures"][0]["error"]
        assert staff_links(gateway)["s2"] == ""

    @pytest.mark.asyncio
    async def test_database_error_reported_without_statement(self):
        gateway = FailingGateway(
            failing_ids={"s2"},
            error=IntegrityError(
                "UPDATE staff SET user_id=$1 WHERE staff.id = $2",
                ("u1", "one@studio.com"),
                Exception("deadlock detected"),
            ),
            seed={EntityType.USER: USERS, EntityType.STAFF: STAFF},
        )

        result = (await run_resolver(gateway)).to_dict()

        error = result["failures"][0]["error"]
        assert error == "IntegrityError: database operation failed"
        assert "UPDATE staff" not in error
        assert "one@studio.com" not in error

    @pytest.mark.asyncio
    async def test_failed_record_linked_on_rerun(self):
        gateway = FailingGateway(
            failing_ids={"s2"},
            seed={EntityType.USER: USERS, EntityType.STAFF: STAFF},
        )
        await run_resolver(gateway)

        gateway.failing_ids.clear()
        report = await run_resolver(gateway)

        assert report.linked == ["s2"]


class TestCancellation:
    """Test cooperative cancellation between updates."""

    @pytest.mark.asyncio
    async def test_cancelled_before_start_writes_nothing(self):
        gateway = InMemoryEntityGateway(seed={EntityType.USER: USERS, EntityType.STAFF: STAFF})
        cancel_event = asyncio.Event()
        cancel_event.set()

        report = await run_resolver(gateway, cancel_event=cancel_event)

        assert report.cancelled == 3
        assert report.linked == []
        assert report.to_dict()["cancelled"] is True
        assert gateway.write_count == 0
