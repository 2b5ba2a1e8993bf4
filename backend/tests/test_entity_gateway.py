"""
Unit Tests for the Entity Gateway

Tests the in-memory gateway contract the reconciliation jobs rely on and
the SQL gateway's value coercion. No database is required.

Run with: pytest tests/test_entity_gateway.py -v
"""

from datetime import date, datetime

import pytest

from database import StaffDB, UserDB
from services.entity_gateway import (
    EntityNotFoundError,
    EntityType,
    InMemoryEntityGateway,
    MODEL_MAP,
    SqlEntityGateway,
)


class TestInMemoryGateway:
    """Test the in-memory implementation."""

    @pytest.mark.asyncio
    async def test_create_assigns_id_and_timestamps(self):
        gateway = InMemoryEntityGateway()

        record = await gateway.create(EntityType.LEAD, {"name": "Smith wedding"})

        assert record["id"]
        assert record["created_date"]
        assert gateway.write_count == 1

    @pytest.mark.asyncio
    async def test_records_are_copies(self):
        gateway = InMemoryEntityGateway(seed={EntityType.USER: [{"id": "u1", "departments": ["hr"]}]})

        record = await gateway.get(EntityType.USER, "u1")
        record["departments"].append("sales")

        assert (await gateway.get(EntityType.USER, "u1"))["departments"] == ["hr"]

    @pytest.mark.asyncio
    async def test_filter_equality_and_case(self):
        gateway = InMemoryEntityGateway(seed={EntityType.STAFF: [
            {"id": "s1", "company_email": "Jane@Co.com"},
            {"id": "s2", "company_email": "john@co.com"},
        ]})

        exact = await gateway.filter(EntityType.STAFF, {"company_email": "jane@co.com"})
        folded = await gateway.filter(EntityType.STAFF, {"company_email": "jane@co.com"}, ignore_case=True)

        assert exact == []
        assert [r["id"] for r in folded] == ["s1"]

    @pytest.mark.asyncio
    async def test_list_limit_keeps_order(self):
        gateway = InMemoryEntityGateway(seed={EntityType.USER: [{"id": f"u{i}"} for i in range(5)]})

        records = await gateway.list(EntityType.USER, limit=3)

        assert [r["id"] for r in records] == ["u0", "u1", "u2"]

    @pytest.mark.asyncio
    async def test_update_merges_patch(self):
        gateway = InMemoryEntityGateway(seed={EntityType.STAFF: [{"id": "s1", "phone": "1", "bio": "x"}]})

        updated = await gateway.update(EntityType.STAFF, "s1", {"phone": "2"})

        assert updated["phone"] == "2"
        assert updated["bio"] == "x"

    @pytest.mark.asyncio
    async def test_update_missing_record(self):
        gateway = InMemoryEntityGateway()

        with pytest.raises(EntityNotFoundError):
            await gateway.update(EntityType.STAFF, "s404", {"phone": "2"})

        assert gateway.write_count == 0

    @pytest.mark.asyncio
    async def test_bulk_create_is_one_write(self):
        gateway = InMemoryEntityGateway()

        created = await gateway.bulk_create(EntityType.STAFF, [{"user_id": "u1"}, {"user_id": "u2"}])

        assert len(created) == 2
        assert gateway.write_count == 1


class TestSqlGatewayHelpers:
    """Test SQL gateway coercion without a database."""

    def test_every_entity_type_has_a_model(self):
        assert set(MODEL_MAP) == set(EntityType)

    def test_coerce_drops_unknown_fields(self):
        values = SqlEntityGateway._coerce(UserDB, {"email": "a@b.com", "not_a_column": 1})
        assert values == {"email": "a@b.com"}

    def test_coerce_parses_dates(self):
        values = SqlEntityGateway._coerce(StaffDB, {
            "start_date": "2026-03-01",
            "created_date": "2026-03-01T09:30:00+00:00",
        })

        assert values["start_date"] == date(2026, 3, 1)
        assert isinstance(values["created_date"], datetime)

    def test_unknown_filter_field(self):
        with pytest.raises(ValueError):
            SqlEntityGateway._column(StaffDB, "favourite_colour")

    def test_to_dict_serializes_values(self):
        row = StaffDB(id="s1", user_id=None, start_date=date(2026, 3, 1))
        data = row.to_dict()

        assert data["id"] == "s1"
        assert data["start_date"] == "2026-03-01"
