"""
Entity Gateway

Collection-style access to the platform's entities:
- list / filter / get / create / update / bulk_create per entity type
- Records cross the boundary as plain dicts
- Every call is independently consistent; there are no cross-call transactions

Two implementations share the same semantics:
- SqlEntityGateway: PostgreSQL via SQLAlchemy, one short session per call
- InMemoryEntityGateway: process-local collections for local runs and tests
"""

import copy
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import Date, DateTime, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import (
    AsyncSessionLocal,
    UserDB, StaffDB, CandidateDB, CandidateNoteDB, StaffNoteDB,
    LeadDB, BookingDB, ActivityDB
)

logger = logging.getLogger(__name__)


class EntityType(str, Enum):
    """Collections exposed through the gateway."""
    USER = "User"
    STAFF = "Staff"
    CANDIDATE = "Candidate"
    CANDIDATE_NOTE = "CandidateNote"
    STAFF_NOTE = "StaffNote"
    LEAD = "Lead"
    BOOKING = "Booking"
    ACTIVITY = "Activity"


class EntityNotFoundError(LookupError):
    """Raised when an update targets a record that does not exist."""

    def __init__(self, entity_type: EntityType, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.value} {entity_id} not found")


class EntityGateway(ABC):
    """Contract every gateway implementation honours."""

    @abstractmethod
    async def list(self, entity_type: EntityType, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return records of a collection in stable creation order."""

    @abstractmethod
    async def filter(
        self,
        entity_type: EntityType,
        criteria: Dict[str, Any],
        ignore_case: bool = False
    ) -> List[Dict[str, Any]]:
        """Return records whose fields equal every value in ``criteria``."""

    @abstractmethod
    async def get(self, entity_type: EntityType, entity_id: str) -> Optional[Dict[str, Any]]:
        """Return one record, or None when it does not exist."""

    @abstractmethod
    async def create(self, entity_type: EntityType, data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a record and return it with its assigned id."""

    @abstractmethod
    async def update(self, entity_type: EntityType, entity_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Apply ``patch`` to one record and return the updated record."""

    @abstractmethod
    async def bulk_create(self, entity_type: EntityType, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Create all records in one all-or-nothing call."""


# ==================== SQL IMPLEMENTATION ====================

MODEL_MAP = {
    EntityType.USER: UserDB,
    EntityType.STAFF: StaffDB,
    EntityType.CANDIDATE: CandidateDB,
    EntityType.CANDIDATE_NOTE: CandidateNoteDB,
    EntityType.STAFF_NOTE: StaffNoteDB,
    EntityType.LEAD: LeadDB,
    EntityType.BOOKING: BookingDB,
    EntityType.ACTIVITY: ActivityDB,
}


class SqlEntityGateway(EntityGateway):
    """
    Gateway over the PostgreSQL entity tables.

    Each call opens its own session and commits before returning, so a
    failed write never poisons sibling writes issued by the same job.
    """

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self._session_factory = session_factory

    async def list(self, entity_type: EntityType, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        model = self._model(entity_type)
        stmt = select(model).order_by(model.created_date, model.id)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [row.to_dict() for row in result.scalars().all()]

    async def filter(
        self,
        entity_type: EntityType,
        criteria: Dict[str, Any],
        ignore_case: bool = False
    ) -> List[Dict[str, Any]]:
        model = self._model(entity_type)
        stmt = select(model).order_by(model.created_date, model.id)

        for key, value in criteria.items():
            column = self._column(model, key)
            if value is None:
                stmt = stmt.where(column.is_(None))
            elif ignore_case and isinstance(value, str):
                stmt = stmt.where(func.lower(column) == value.lower())
            else:
                stmt = stmt.where(column == value)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [row.to_dict() for row in result.scalars().all()]

    async def get(self, entity_type: EntityType, entity_id: str) -> Optional[Dict[str, Any]]:
        model = self._model(entity_type)
        async with self._session_factory() as session:
            row = await session.get(model, entity_id)
            return row.to_dict() if row else None

    async def create(self, entity_type: EntityType, data: Dict[str, Any]) -> Dict[str, Any]:
        model = self._model(entity_type)
        async with self._session_factory() as session:
            row = model(**self._coerce(model, data))
            session.add(row)
            await self._commit(session)
            await session.refresh(row)
            return row.to_dict()

    async def update(self, entity_type: EntityType, entity_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        model = self._model(entity_type)
        async with self._session_factory() as session:
            row = await session.get(model, entity_id)
            if row is None:
                raise EntityNotFoundError(entity_type, entity_id)

            for key, value in self._coerce(model, patch).items():
                setattr(row, key, value)

            await self._commit(session)
            await session.refresh(row)
            return row.to_dict()

    async def bulk_create(self, entity_type: EntityType, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        model = self._model(entity_type)
        async with self._session_factory() as session:
            rows = [model(**self._coerce(model, record)) for record in records]
            session.add_all(rows)
            await self._commit(session)
            for row in rows:
                await session.refresh(row)
            return [row.to_dict() for row in rows]

    # ==================== HELPERS ====================

    @staticmethod
    def _model(entity_type: EntityType):
        try:
            return MODEL_MAP[EntityType(entity_type)]
        except (KeyError, ValueError):
            raise ValueError(f"Unsupported entity type: {entity_type}")

    @staticmethod
    def _column(model, key: str):
        column = model.__table__.columns.get(key)
        if column is None:
            raise ValueError(f"{model.__tablename__} has no field '{key}'")
        return getattr(model, column.key)

    @staticmethod
    def _coerce(model, data: Dict[str, Any]) -> Dict[str, Any]:
        """Keep known columns and turn ISO strings into date/datetime values."""
        columns = model.__table__.columns
        values = {}
        for key, value in data.items():
            column = columns.get(key)
            if column is None:
                logger.debug(f"Dropping unknown field '{key}' for {model.__tablename__}")
                continue
            if isinstance(value, str) and value:
                if isinstance(column.type, DateTime):
                    value = datetime.fromisoformat(value)
                elif isinstance(column.type, Date):
                    value = date.fromisoformat(value[:10])
            values[key] = value
        return values

    @staticmethod
    async def _commit(session: AsyncSession) -> None:
        try:
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ==================== IN-MEMORY IMPLEMENTATION ====================

class InMemoryEntityGateway(EntityGateway):
    """
    Process-local gateway with the same semantics as SqlEntityGateway.

    Records are copied on the way in and out so callers never share state
    with the store. ``write_count`` counts create/update/bulk_create calls.
    """

    def __init__(self, seed: Optional[Dict[EntityType, Iterable[Dict[str, Any]]]] = None):
        self._collections: Dict[EntityType, Dict[str, Dict[str, Any]]] = {
            entity_type: {} for entity_type in EntityType
        }
        self.write_count = 0
        for entity_type, records in (seed or {}).items():
            self.seed(entity_type, records)

    def seed(self, entity_type: EntityType, records: Iterable[Dict[str, Any]]) -> None:
        """Load records without counting them as writes."""
        for record in records:
            self._insert(EntityType(entity_type), record)

    def snapshot(self, entity_type: EntityType) -> List[Dict[str, Any]]:
        """Synchronous copy of a collection, for assertions."""
        return [copy.deepcopy(r) for r in self._collections[EntityType(entity_type)].values()]

    async def list(self, entity_type: EntityType, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        records = self.snapshot(entity_type)
        return records[:limit] if limit is not None else records

    async def filter(
        self,
        entity_type: EntityType,
        criteria: Dict[str, Any],
        ignore_case: bool = False
    ) -> List[Dict[str, Any]]:
        def matches(record: Dict[str, Any]) -> bool:
            for key, expected in criteria.items():
                actual = record.get(key)
                if ignore_case and isinstance(expected, str) and isinstance(actual, str):
                    if actual.lower() != expected.lower():
                        return False
                elif actual != expected:
                    return False
            return True

        return [r for r in self.snapshot(entity_type) if matches(r)]

    async def get(self, entity_type: EntityType, entity_id: str) -> Optional[Dict[str, Any]]:
        record = self._collections[EntityType(entity_type)].get(entity_id)
        return copy.deepcopy(record) if record else None

    async def create(self, entity_type: EntityType, data: Dict[str, Any]) -> Dict[str, Any]:
        self.write_count += 1
        return copy.deepcopy(self._insert(EntityType(entity_type), data))

    async def update(self, entity_type: EntityType, entity_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        entity_type = EntityType(entity_type)
        record = self._collections[entity_type].get(entity_id)
        if record is None:
            raise EntityNotFoundError(entity_type, entity_id)

        self.write_count += 1
        record.update(copy.deepcopy(patch))
        record["updated_date"] = datetime.now(timezone.utc).isoformat()
        return copy.deepcopy(record)

    async def bulk_create(self, entity_type: EntityType, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        self.write_count += 1
        return [copy.deepcopy(self._insert(EntityType(entity_type), r)) for r in records]

    def _insert(self, entity_type: EntityType, data: Dict[str, Any]) -> Dict[str, Any]:
        record = copy.deepcopy(data)
        record.setdefault("id", str(uuid.uuid4()))
        now = datetime.now(timezone.utc).isoformat()
        record.setdefault("created_date", now)
        record.setdefault("updated_date", now)
        self._collections[entity_type][record["id"]] = record
        return record


# ==================== DEPENDENCY ====================

def get_entity_gateway() -> EntityGateway:
    """FastAPI dependency returning the database-backed gateway."""
    return SqlEntityGateway(AsyncSessionLocal)
