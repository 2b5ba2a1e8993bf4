"""
Identity Reconciliation - Job Runner

Entry points that wire the matcher, link resolver, profile sync, ownership
auditor and provisioner together. Every job runs the same steps:

    authorizing -> snapshotting -> processing -> reporting

and ends either ``reported`` (counts returned and audited) or ``failed``
(error raised and audited). Jobs hold no state between invocations; running
one twice against a consistent collection writes nothing the second time.

Admin-only: link-all, ownership fixes, provisioning, invite, hire.
Any authenticated caller: link-my-staff and sync-my-profile, acting on
their own user record.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel

from config import Settings, get_settings
from logging_config import set_job_context
from sentry_integration import capture_exception, set_tag
from services.audit import AuditAction, AuditLogger, ResourceType, get_audit_logger
from services.auth import AuthUser
from services.entity_gateway import EntityGateway, EntityType
from services.invite_client import InviteClient, InviteError

from .batch import run_batch
from .errors import (
    AuthError,
    NotFoundError,
    ReconciliationError,
    SnapshotLimitExceeded,
    UnexpectedError,
    ValidationError,
    describe_error,
)
from .link_resolver import resolve_links
from .matcher import build_email_index, match, match_user
from .models import ATTRIBUTION_RULES, StaffRecord, UserRecord
from .ownership import audit_ownership
from .profile_sync import sync_staff_to_user, sync_user_to_staff
from .provisioner import create_staff_drafts, provision_missing_staff

logger = logging.getLogger(__name__)


def hire_forced_fields() -> Dict[str, Any]:
    """Fields a hire request may not set on the new staff record."""
    return {
        "photographer_status": "training",
        "signed_off_services": [],
        "profile_photo_url": None,
        "user_id": None,
        "email": None,
    }


HIRE_IGNORED_FIELDS = {"id", "created_date", "updated_date"}


class JobState(str, Enum):
    AUTHORIZING = "authorizing"
    SNAPSHOTTING = "snapshotting"
    PROCESSING = "processing"
    REPORTING = "reporting"
    REPORTED = "reported"
    FAILED = "failed"


class JobRun:
    """Progress of one job invocation."""

    def __init__(self, name: str):
        self.name = name
        self.state = JobState.AUTHORIZING
        self.details: Dict[str, Any] = {}
        self._started = time.monotonic()

    def advance(self, state: JobState):
        logger.debug(f"Job {self.name}: {self.state.value} -> {state.value}")
        self.state = state

    @property
    def duration_ms(self) -> float:
        return round((time.monotonic() - self._started) * 1000, 2)


class JobLockRegistry:
    """
    In-process advisory locks keyed by job.

    A second trigger of a running job waits for the first to finish and
    then snapshots the already-reconciled collections. Locks do not span
    processes.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            logger.info(f"Job {key} is already running; waiting for it to finish")
        # Holders and waiters; the lock is dropped once the last one leaves
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]

    def is_running(self, job: str) -> bool:
        """True while any lock for ``job`` is held, including per-user and per-record keys."""
        return any(
            lock.locked() for key, lock in self._locks.items()
            if key == job or key.startswith(f"{job}:")
        )

    def __len__(self) -> int:
        return len(self._locks)


_job_locks = JobLockRegistry()


def get_job_locks() -> JobLockRegistry:
    """Process-wide lock registry."""
    return _job_locks


class IdentitySyncService:
    """
    Identity reconciliation jobs.

    Usage:
        service = IdentitySyncService(gateway)
        result = await service.link_all_staff(caller)
    """

    def __init__(
        self,
        gateway: EntityGateway,
        settings: Optional[Settings] = None,
        audit: Optional[AuditLogger] = None,
        locks: Optional[JobLockRegistry] = None,
        invite_client: Optional[InviteClient] = None
    ):
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.audit = audit or get_audit_logger()
        self.locks = locks or get_job_locks()
        self.invite_client = invite_client

    @property
    def max_concurrency(self) -> int:
        return self.settings.RECONCILIATION_MAX_CONCURRENCY

    # ==================== JOB EXECUTION ====================

    async def _execute(
        self,
        name: str,
        caller: Optional[AuthUser],
        action: AuditAction,
        resource_type: ResourceType,
        work: Callable[[JobRun], Awaitable[Dict[str, Any]]],
        admin_only: bool = True,
        lock_key: Optional[str] = None,
        resource_id: Optional[str] = None
    ) -> Dict[str, Any]:
        run = JobRun(name)
        set_job_context(name)
        set_tag("job", name)

        try:
            self._authorize(caller, admin_only)
            logger.info(f"Job {name} started by {caller.email}")

            async with self.locks.hold(lock_key or name):
                result = await work(run)

            run.advance(JobState.REPORTING)
            self.audit.log(
                action=action,
                resource_type=resource_type,
                user_id=caller.id,
                user_email=caller.email,
                resource_id=resource_id,
                details={**run.details, **_audit_counts(result), "duration_ms": run.duration_ms}
            )
            run.advance(JobState.REPORTED)
            logger.info(f"Job {name} finished in {run.duration_ms}ms: {result.get('message', '')}")
            return {"success": True, **result}

        except ReconciliationError as e:
            failed_while = self._fail(run, caller, action, resource_type, resource_id, e)
            if isinstance(e, UnexpectedError):
                capture_exception(e, job=name, state=failed_while.value)
            raise

        except Exception as e:
            logger.exception(f"Job {name} failed while {run.state.value}")
            failed_while = self._fail(run, caller, action, resource_type, resource_id, e)
            capture_exception(e, job=name, state=failed_while.value)
            if self.settings.is_production:
                raise UnexpectedError("Internal server error") from e
            raise UnexpectedError(describe_error(e)) from e

        finally:
            set_job_context(None)

    def _authorize(self, caller: Optional[AuthUser], admin_only: bool):
        if caller is None:
            raise AuthError.not_authenticated()
        if admin_only and not caller.is_admin():
            logger.warning(f"Non-admin {caller.id} attempted an admin-only job")
            raise AuthError.admin_required()

    def _fail(
        self,
        run: JobRun,
        caller: Optional[AuthUser],
        action: AuditAction,
        resource_type: ResourceType,
        resource_id: Optional[str],
        error: Exception
    ) -> JobState:
        failed_while = run.state
        run.advance(JobState.FAILED)
        logger.warning(f"Job {run.name} failed while {failed_while.value}: {describe_error(error)}")
        self.audit.log(
            action=action,
            resource_type=resource_type,
            user_id=caller.id if caller else None,
            user_email=caller.email if caller else None,
            resource_id=resource_id,
            details={**run.details, "state": failed_while.value},
            success=False,
            error_message=describe_error(error)
        )
        return failed_while

    async def _snapshot(
        self,
        entity_type: EntityType,
        model: Optional[Type[BaseModel]] = None
    ) -> List[Any]:
        """Load a whole collection, refusing ones above the snapshot limit."""
        limit = self.settings.SNAPSHOT_MAX_RECORDS
        records = await self.gateway.list(entity_type, limit=limit + 1)
        if len(records) > limit:
            raise SnapshotLimitExceeded(entity_type.value, limit)

        logger.info(f"Loaded {len(records)} {entity_type.value} records")
        if model is None:
            return records
        return [model(**r) for r in records]

    async def _load_user(self, user_id: str) -> UserRecord:
        record = await self.gateway.get(EntityType.USER, user_id)
        if not record:
            raise NotFoundError("User not found")
        return UserRecord(**record)

    async def _staff_for_user(self, user: UserRecord) -> List[StaffRecord]:
        """Staff linked to the user or carrying their email, via pushed-down filters."""
        queries = [self.gateway.filter(EntityType.STAFF, {"user_id": user.id})]
        if user.email:
            queries.append(self.gateway.filter(EntityType.STAFF, {"company_email": user.email}, ignore_case=True))
            queries.append(self.gateway.filter(EntityType.STAFF, {"personal_email": user.email}, ignore_case=True))

        found: Dict[str, StaffRecord] = {}
        for records in await asyncio.gather(*queries):
            for record in records:
                found.setdefault(record["id"], StaffRecord(**record))
        return list(found.values())

    # ==================== STATUS ====================

    def status(self) -> Dict[str, Any]:
        jobs = [
            "link_all_staff", "link_my_staff", "sync_my_profile", "provision_staff",
            "fix_ownership", "invite_staff", "hire_candidate",
        ]
        return {
            "status": "ok",
            "jobs": jobs,
            "running": [job for job in jobs if self.locks.is_running(job)],
            "ownership_record_types": sorted(ATTRIBUTION_RULES),
            "max_concurrency": self.max_concurrency,
            "snapshot_max_records": self.settings.SNAPSHOT_MAX_RECORDS,
        }

    # ==================== LINKING ====================

    async def link_all_staff(
        self,
        caller: Optional[AuthUser],
        cancel_event: Optional[asyncio.Event] = None
    ) -> Dict[str, Any]:
        """Link every unlinked staff record whose email matches a user."""

        async def work(run: JobRun) -> Dict[str, Any]:
            run.advance(JobState.SNAPSHOTTING)
            users = await self._snapshot(EntityType.USER, UserRecord)
            staff = await self._snapshot(EntityType.STAFF, StaffRecord)

            run.advance(JobState.PROCESSING)
            pairs = match(users, staff)
            run.details["candidate_pairs"] = len(pairs)
            report = await resolve_links(
                self.gateway, pairs, users=users,
                max_concurrency=self.max_concurrency, cancel_event=cancel_event
            )
            return report.to_dict()

        return await self._execute(
            "link_all_staff", caller, AuditAction.STAFF_LINK_ALL, ResourceType.STAFF, work
        )

    async def link_my_staff(
        self,
        caller: Optional[AuthUser],
        cancel_event: Optional[asyncio.Event] = None
    ) -> Dict[str, Any]:
        """
        Link the caller's matching staff records to them, then copy the
        non-empty staff profile values onto their user record.
        """

        async def work(run: JobRun) -> Dict[str, Any]:
            run.advance(JobState.SNAPSHOTTING)
            user = await self._load_user(caller.id)
            candidates = await self._staff_for_user(user)

            if not candidates:
                return {"linkedCount": 0, "alreadyLinkedCount": 0, "message": "No matching staff records found"}

            run.advance(JobState.PROCESSING)
            pairs = [(s, user) for s in match_user(user, build_email_index(candidates))]
            link_report = await resolve_links(
                self.gateway, pairs,
                max_concurrency=self.max_concurrency, cancel_event=cancel_event
            )

            newly_linked = set(link_report.linked)
            current = [
                s.model_copy(update={"user_id": user.id}) if s.id in newly_linked else s
                for s in candidates
            ]
            own = [s for s in current if s.user_id == user.id]

            sync_report = None
            if not (cancel_event is not None and cancel_event.is_set()):
                sync_report = await sync_staff_to_user(
                    self.gateway, user, current,
                    fill_only=self.settings.PROFILE_SYNC_USER_CANONICAL
                )

            failures = link_report.failures + (sync_report.failures if sync_report else [])
            result = {
                "linkedCount": len(link_report.linked),
                "alreadyLinkedCount": len(link_report.already_linked),
                "profileUpdated": bool(sync_report and sync_report.synced),
                "skipped": len(candidates) - len(own),
                "failedCount": len(failures),
                "failures": [f.to_dict() for f in failures],
                "message": f"Linked and synced {len(own)} staff record(s)",
            }
            if sync_report is None:
                result["cancelled"] = True
            return result

        return await self._execute(
            "link_my_staff", caller, AuditAction.STAFF_LINK_SELF, ResourceType.STAFF, work,
            admin_only=False, lock_key=f"link_my_staff:{caller.id if caller else ''}"
        )

    # ==================== PROFILE SYNC ====================

    async def sync_my_profile(
        self,
        caller: Optional[AuthUser],
        user_data: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> Dict[str, Any]:
        """
        Write the caller's profile onto their linked or email-matched staff
        records. ``user_data`` replaces the stored profile as the source when
        it is non-empty.
        """

        async def work(run: JobRun) -> Dict[str, Any]:
            run.advance(JobState.SNAPSHOTTING)
            user = await self._load_user(caller.id)
            candidates = await self._staff_for_user(user)

            run.advance(JobState.PROCESSING)
            source = user_data if user_data else user.model_dump()
            run.details["source"] = "payload" if user_data else "user"
            report = await sync_user_to_staff(
                self.gateway, user.id, source, candidates,
                max_concurrency=self.max_concurrency, cancel_event=cancel_event
            )
            return report.to_dict()

        return await self._execute(
            "sync_my_profile", caller, AuditAction.PROFILE_SYNC_SELF, ResourceType.STAFF, work,
            admin_only=False, lock_key=f"sync_my_profile:{caller.id if caller else ''}"
        )

    # ==================== PROVISIONING ====================

    async def provision_missing_staff(self, caller: Optional[AuthUser]) -> Dict[str, Any]:
        """Create default staff records for users that have none."""

        async def work(run: JobRun) -> Dict[str, Any]:
            run.advance(JobState.SNAPSHOTTING)
            users = await self._snapshot(EntityType.USER, UserRecord)
            staff = await self._snapshot(EntityType.STAFF, StaffRecord)

            run.advance(JobState.PROCESSING)
            drafts = provision_missing_staff(
                users, staff,
                timezone=self.settings.DEFAULT_STAFF_TIMEZONE,
                primary_role=self.settings.DEFAULT_STAFF_PRIMARY_ROLE
            )
            run.details["intended"] = len(drafts)
            report = await create_staff_drafts(self.gateway, drafts)
            return report.to_dict()

        return await self._execute(
            "provision_staff", caller, AuditAction.STAFF_PROVISION, ResourceType.STAFF, work
        )

    # ==================== OWNERSHIP ====================

    async def fix_ownership(
        self,
        caller: Optional[AuthUser],
        record_type: str,
        cancel_event: Optional[asyncio.Event] = None
    ) -> Dict[str, Any]:
        """Correct ``created_by`` on every lead, booking or activity."""
        rule = ATTRIBUTION_RULES.get(record_type)
        resource_type = rule.resource_type if rule else ResourceType.LEAD

        async def work(run: JobRun) -> Dict[str, Any]:
            if rule is None:
                raise ValidationError(
                    f"Unknown record type '{record_type}'. Expected one of: {', '.join(sorted(ATTRIBUTION_RULES))}"
                )

            run.advance(JobState.SNAPSHOTTING)
            records = await self._snapshot(rule.entity_type)
            users = await self._snapshot(EntityType.USER, UserRecord)

            run.advance(JobState.PROCESSING)
            report = await audit_ownership(
                self.gateway, rule, records, users,
                max_concurrency=self.max_concurrency, cancel_event=cancel_event
            )
            return report.to_dict()

        return await self._execute(
            f"fix_ownership:{record_type}", caller, AuditAction.OWNERSHIP_FIX, resource_type, work
        )

    # ==================== INVITE ====================

    async def invite_staff_to_user(
        self,
        caller: Optional[AuthUser],
        staff_id: Optional[str],
        company_email: Optional[str],
        departments: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """
        Invite a staff member through the identity provider, assign their
        departments and link the staff record to the new user.
        """
        departments = departments or []

        async def work(run: JobRun) -> Dict[str, Any]:
            if not staff_id or not company_email:
                raise ValidationError("Missing staff_id or company_email")

            run.advance(JobState.SNAPSHOTTING)
            record = await self.gateway.get(EntityType.STAFF, staff_id)
            if not record:
                raise NotFoundError("Staff not found")
            staff = StaffRecord(**record)
            if staff.is_linked:
                raise ValidationError("Staff record is already linked to a user")

            run.advance(JobState.PROCESSING)
            if self.invite_client is None:
                raise UnexpectedError("Identity provider is not configured")
            try:
                await self.invite_client.invite_user(company_email, "user")
            except InviteError as e:
                raise UnexpectedError(str(e)) from e

            users = await self.gateway.filter(EntityType.USER, {"email": company_email}, ignore_case=True)
            if not users:
                raise UnexpectedError("Failed to create user account")
            new_user = users[0]
            logger.info(f"User created with ID {new_user['id']}")

            if departments and new_user.get("departments") != departments:
                await self.gateway.update(EntityType.USER, new_user["id"], {"departments": departments})
                logger.info(f"Assigned departments to user: {', '.join(departments)}")

            await self.gateway.update(EntityType.STAFF, staff_id, {"user_id": new_user["id"]})
            logger.info(f"Linked staff {staff_id} to user {new_user['id']}")

            return {
                "user_id": new_user["id"],
                "message": f"Invited {company_email} and assigned {len(departments)} app(s)",
            }

        return await self._execute(
            "invite_staff", caller, AuditAction.STAFF_INVITE, ResourceType.STAFF, work,
            resource_id=staff_id
        )

    # ==================== HIRE ====================

    async def hire_candidate(
        self,
        caller: Optional[AuthUser],
        candidate_id: Optional[str],
        staff_data: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """
        Create a staff record from a candidate, carry their notes over and
        mark them hired. A candidate whose staff record still exists is
        reported as already hired.
        """

        async def work(run: JobRun) -> Dict[str, Any]:
            if not candidate_id:
                raise ValidationError("candidateId is required")
            if staff_data is None:
                raise ValidationError("staffData is required")

            run.advance(JobState.SNAPSHOTTING)
            candidate = await self.gateway.get(EntityType.CANDIDATE, candidate_id)
            if not candidate:
                raise NotFoundError("Candidate not found")

            if candidate.get("stage") == "hired" and candidate.get("staff_id"):
                existing = await self.gateway.get(EntityType.STAFF, candidate["staff_id"])
                if existing:
                    return {"staff": existing, "message": "Candidate already hired"}
                logger.info(f"Staff {candidate['staff_id']} for candidate {candidate_id} no longer exists; re-hiring")

            run.advance(JobState.PROCESSING)
            data = {k: v for k, v in staff_data.items() if k not in HIRE_IGNORED_FIELDS}
            data.update(hire_forced_fields())
            staff = await self.gateway.create(EntityType.STAFF, data)
            run.details["staff_id"] = staff["id"]
            logger.info(f"Created staff {staff['id']} for candidate {candidate_id}")

            notes = await self.gateway.filter(EntityType.CANDIDATE_NOTE, {"candidate_id": candidate_id})
            notes.sort(key=lambda n: n.get("created_date") or "", reverse=True)

            async def copy_note(note: Dict[str, Any]):
                await self.gateway.create(EntityType.STAFF_NOTE, {
                    "staff_id": staff["id"],
                    "staff_name": staff.get("legal_full_name"),
                    "note": note.get("note"),
                    "note_type": "general",
                    "author_id": note.get("author_id"),
                    "author_name": note.get("author_name"),
                })

            # Sequential so the copied notes keep their order
            outcome = await run_batch(notes, copy_note, key=lambda n: n["id"], max_concurrency=1)

            await self.gateway.update(EntityType.CANDIDATE, candidate_id, {
                "stage": "hired",
                "staff_id": staff["id"],
            })

            name = staff.get("legal_full_name") or candidate.get("full_name") or candidate_id
            return {
                "staff": staff,
                "notesCopied": len(outcome.completed),
                "failedCount": len(outcome.failures),
                "failures": [f.to_dict() for f in outcome.failures],
                "message": f"Hired {name}",
            }

        return await self._execute(
            "hire_candidate", caller, AuditAction.CANDIDATE_HIRE, ResourceType.CANDIDATE, work,
            lock_key=f"hire_candidate:{candidate_id}", resource_id=candidate_id
        )


def _audit_counts(result: Dict[str, Any]) -> Dict[str, Any]:
    """Scalar fields of a job result, for the audit entry."""
    return {
        k: v for k, v in result.items()
        if isinstance(v, (int, float, bool, str)) or v is None
    }
