"""
Identity Reconciliation - API Router

Provides REST API endpoints for the reconciliation jobs:
- GET /api/identity/status - Module status
- POST /api/identity/link-all-staff - Link every matching staff record
- POST /api/identity/link-my-staff - Link the caller's own staff record(s)
- POST /api/identity/sync-my-profile - Push the caller's profile to staff
- POST /api/identity/provision-staff - Create staff for users without one
- POST /api/identity/fix-ownership/{record_type} - Correct created_by
- POST /api/identity/invite-staff - Invite a staff member as a user
- POST /api/identity/hire-candidate - Turn a candidate into staff
- GET /api/identity/audit-log - Recent job runs

Permissions:
- status: public
- link-my-staff, sync-my-profile: any authenticated user
- everything else: admin

Errors are raised as ReconciliationError and rendered by the server's
exception handler as {"error": message}.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from middleware.auth import get_current_user_required, require_admin
from services.audit import get_audit_logger
from services.auth import AuthUser
from services.entity_gateway import EntityGateway, get_entity_gateway
from services.invite_client import InviteClient, get_invite_client

from .service import IdentitySyncService

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/identity", tags=["Identity Reconciliation"])

DISCONNECT_POLL_SECONDS = 0.5


# ==================== REQUEST MODELS ====================

class SyncProfileRequest(BaseModel):
    """Optional profile payload; the stored user profile is used when absent"""
    model_config = ConfigDict(populate_by_name=True)

    user_data: Optional[Dict[str, Any]] = Field(None, alias="userData")


class InviteStaffRequest(BaseModel):
    """Request model for inviting a staff member"""
    staff_id: Optional[str] = Field(None, description="Staff record to link")
    company_email: Optional[str] = Field(None, description="Email the invite is sent to")
    departments: Optional[List[str]] = Field(None, description="Apps assigned to the new user")


class HireCandidateRequest(BaseModel):
    """Request model for hiring a candidate"""
    model_config = ConfigDict(populate_by_name=True)

    candidate_id: Optional[str] = Field(None, alias="candidateId")
    staff_data: Optional[Dict[str, Any]] = Field(None, alias="staffData")


# ==================== DEPENDENCIES ====================

def get_identity_service(
    gateway: EntityGateway = Depends(get_entity_gateway),
    invite_client: InviteClient = Depends(get_invite_client)
) -> IdentitySyncService:
    return IdentitySyncService(gateway, invite_client=invite_client)


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event):
    while not cancel_event.is_set():
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)
        if await request.is_disconnected():
            logger.warning(f"Client disconnected from {request.url.path}; cancelling job")
            cancel_event.set()


async def job_cancel_event(request: Request):
    """Cancel event set when the HTTP client goes away mid-job."""
    cancel_event = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        yield cancel_event
    finally:
        watcher.cancel()


# ==================== ENDPOINTS ====================

@router.get("/status")
async def get_identity_status(service: IdentitySyncService = Depends(get_identity_service)):
    """
    Get identity reconciliation module status.
    No authentication required.
    """
    return {"module": "identity_reconciliation", "version": "1.0.0", **service.status()}


@router.post("/link-all-staff")
async def link_all_staff(
    current_user: AuthUser = Depends(require_admin),
    service: IdentitySyncService = Depends(get_identity_service),
    cancel_event: asyncio.Event = Depends(job_cancel_event)
):
    """
    Link every unlinked staff record to the user with the same email.

    **Rules:**
    - Emails compare case-insensitively
    - An existing link is never overwritten

    **Permissions:** admin
    """
    return await service.link_all_staff(current_user, cancel_event=cancel_event)


@router.post("/link-my-staff")
async def link_my_staff(
    current_user: AuthUser = Depends(get_current_user_required),
    service: IdentitySyncService = Depends(get_identity_service),
    cancel_event: asyncio.Event = Depends(job_cancel_event)
):
    """
    Link the caller's staff record(s) and copy their staff profile onto
    the caller's user record.

    **Permissions:** any authenticated user
    """
    return await service.link_my_staff(current_user, cancel_event=cancel_event)


@router.post("/sync-my-profile")
async def sync_my_profile(
    request: Optional[SyncProfileRequest] = None,
    current_user: AuthUser = Depends(get_current_user_required),
    service: IdentitySyncService = Depends(get_identity_service),
    cancel_event: asyncio.Event = Depends(job_cancel_event)
):
    """
    Write the caller's profile onto their linked or matching staff records.

    **Permissions:** any authenticated user
    """
    user_data = request.user_data if request else None
    return await service.sync_my_profile(current_user, user_data=user_data, cancel_event=cancel_event)


@router.post("/provision-staff")
async def provision_staff(
    current_user: AuthUser = Depends(require_admin),
    service: IdentitySyncService = Depends(get_identity_service)
):
    """
    Create a default staff record for every user without one.

    **Permissions:** admin
    """
    return await service.provision_missing_staff(current_user)


@router.post("/fix-ownership/{record_type}")
async def fix_ownership(
    record_type: str,
    current_user: AuthUser = Depends(require_admin),
    service: IdentitySyncService = Depends(get_identity_service),
    cancel_event: asyncio.Event = Depends(job_cancel_event)
):
    """
    Set created_by on each lead, booking or activity to the email of the
    user its actor id references.

    **Permissions:** admin
    """
    return await service.fix_ownership(current_user, record_type, cancel_event=cancel_event)


@router.post("/invite-staff")
async def invite_staff(
    request: InviteStaffRequest,
    current_user: AuthUser = Depends(require_admin),
    service: IdentitySyncService = Depends(get_identity_service)
):
    """
    Invite a staff member through the identity provider and link them.

    **Permissions:** admin
    """
    return await service.invite_staff_to_user(
        current_user,
        staff_id=request.staff_id,
        company_email=request.company_email,
        departments=request.departments
    )


@router.post("/hire-candidate")
async def hire_candidate(
    request: HireCandidateRequest,
    current_user: AuthUser = Depends(require_admin),
    service: IdentitySyncService = Depends(get_identity_service)
):
    """
    Create a staff record from a candidate and mark them hired.

    **Permissions:** admin
    """
    return await service.hire_candidate(
        current_user,
        candidate_id=request.candidate_id,
        staff_data=request.staff_data
    )


@router.get("/audit-log")
async def get_audit_log(
    limit: int = Query(50, ge=1, le=500),
    current_user: AuthUser = Depends(require_admin)
):
    """
    Recent reconciliation job runs, newest first.

    **Permissions:** admin
    """
    entries = get_audit_logger().read_entries(limit=limit)
    return {"entries": [e.model_dump() for e in entries], "count": len(entries)}
