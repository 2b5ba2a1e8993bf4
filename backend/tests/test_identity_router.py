"""
API Tests for the Identity Reconciliation endpoints

Tests the HTTP surface with the in-memory gateway swapped in:
- 401 without or with a bad bearer token
- 403 for non-admins on admin endpoints
- {"error": message} envelope with 400 / 404 statuses
- Success payloads carry success: true and counts

Run with: pytest tests/test_identity_router.py -v
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from identity.router import job_cancel_event
from server import app
from services.auth import create_access_token
from services.entity_gateway import EntityType, InMemoryEntityGateway, get_entity_gateway
from services.invite_client import get_invite_client


async def _no_cancel():
    return asyncio.Event()


@pytest.fixture
def gateway():
    gateway = InMemoryEntityGateway()
    gateway.seed(EntityType.USER, [
        {"id": "admin-1", "email": "admin@studio.com", "role": "admin", "full_name": "Ada Admin"},
        {"id": "u1", "email": "jane@co.com", "role": "user", "full_name": "Jane"},
    ])
    return gateway


@pytest.fixture
def invite_client():
    client = MagicMock()
    client.invite_user = AsyncMock(return_value={})
    return client


@pytest.fixture
def client(gateway, invite_client):
    app.dependency_overrides[get_entity_gateway] = lambda: gateway
    app.dependency_overrides[get_invite_client] = lambda: invite_client
    app.dependency_overrides[job_cancel_event] = _no_cancel
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(user_id, email):
    return {"Authorization": f"Bearer {create_access_token(user_id, email)}"}


@pytest.fixture
def admin_headers():
    return auth_headers("admin-1", "admin@studio.com")


@pytest.fixture
def member_headers():
    return auth_headers("u1", "jane@co.com")


class TestAuthentication:
    """Test 401/403 handling."""

    def test_status_is_public(self, client):
        response = client.get("/api/identity/status")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_missing_token_is_401(self, client):
        response = client.post("/api/identity/link-all-staff")
        assert response.status_code == 401
        assert response.json() == {"error": "Not authenticated"}

    def test_invalid_token_is_401(self, client):
        response = client.post(
            "/api/identity/link-my-staff",
            headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401
        assert "error" in response.json()

    def test_unknown_user_is_401(self, client):
        response = client.post(
            "/api/identity/link-my-staff",
            headers=auth_headers("ghost", "ghost@studio.com")
        )
        assert response.status_code == 401

    @pytest.mark.parametrize("path", [
        "/api/identity/link-all-staff",
        "/api/identity/provision-staff",
        "/api/identity/fix-ownership/lead",
    ])
    def test_member_forbidden_on_admin_jobs(self, client, member_headers, gateway, path):
        response = client.post(path, headers=member_headers)

        assert response.status_code == 403
        assert "error" in response.json()
        assert gateway.write_count == 0

    def test_role_read_from_user_record(self, client, gateway, member_headers):
        gateway.seed(EntityType.USER, [{"id": "u1", "email": "jane@co.com", "role": "admin"}])

        response = client.post("/api/identity/link-all-staff", headers=member_headers)

        assert response.status_code == 200


class TestJobs:
    """Test successful job calls."""

    def test_link_all_staff(self, client, gateway, admin_headers):
        gateway.seed(EntityType.STAFF, [
            {"id": "s1", "company_email": "Jane@Co.com", "user_id": "null"},
            {"id": "s2", "company_email": "nobody@co.com"},
        ])

        response = client.post("/api/identity/link-all-staff", headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["linkedCount"] == 1
        assert body["notFoundCount"] == 1
        assert (gateway.snapshot(EntityType.STAFF)[0])["user_id"] == "u1"

    def test_link_my_staff(self, client, gateway, member_headers):
        gateway.seed(EntityType.STAFF, [{"id": "s1", "personal_email": "JANE@co.com", "phone": "555"}])

        response = client.post("/api/identity/link-my-staff", headers=member_headers)

        assert response.status_code == 200
        assert response.json()["linkedCount"] == 1

    def test_sync_my_profile_without_body(self, client, gateway, member_headers):
        gateway.seed(EntityType.STAFF, [{"id": "s1", "user_id": "u1", "preferred_name": "Old"}])

        response = client.post("/api/identity/sync-my-profile", headers=member_headers)

        assert response.status_code == 200
        assert response.json()["syncedCount"] == 1
        assert gateway.snapshot(EntityType.STAFF)[0]["preferred_name"] == "Jane"

    def test_sync_my_profile_with_payload(self, client, gateway, member_headers):
        gateway.seed(EntityType.STAFF, [{"id": "s1", "user_id": "u1"}])

        response = client.post(
            "/api/identity/sync-my-profile",
            headers=member_headers,
            json={"userData": {"full_name": "Jane Doe", "phone": "555-0100"}}
        )

        assert response.status_code == 200
        stored = gateway.snapshot(EntityType.STAFF)[0]
        assert stored["preferred_name"] == "Jane Doe"
        assert stored["phone"] == "555-0100"

    def test_provision_staff(self, client, gateway, admin_headers):
        response = client.post("/api/identity/provision-staff", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["count"] == 2

    def test_fix_ownership_lead(self, client, gateway, admin_headers):
        gateway.seed(EntityType.LEAD, [{"id": "l1", "owner_id": "u1", "created_by": "JANE@co.com"}])

        response = client.post("/api/identity/fix-ownership/lead", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["alreadyCorrect"] == 1
        assert gateway.write_count == 0

    def test_fix_ownership_unknown_type_is_400(self, client, admin_headers):
        response = client.post("/api/identity/fix-ownership/invoice", headers=admin_headers)

        assert response.status_code == 400
        assert "Unknown record type" in response.json()["error"]

    def test_audit_log(self, client, admin_headers):
        client.post("/api/identity/provision-staff", headers=admin_headers)

        response = client.get("/api/identity/audit-log?limit=5", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["entries"][0]["action"] == "identity.staff_provision"


class TestInviteAndHire:
    """Test the invite and hire endpoints."""

    def test_invite_missing_fields_is_400(self, client, admin_headers):
        response = client.post("/api/identity/invite-staff", headers=admin_headers, json={"staff_id": "s1"})

        assert response.status_code == 400
        assert response.json() == {"error": "Missing staff_id or company_email"}

    def test_invite_malformed_body_is_400(self, client, admin_headers):
        response = client.post(
            "/api/identity/invite-staff",
            headers=admin_headers,
            json={"staff_id": "s1", "company_email": "a@b.com", "departments": "hr"}
        )

        assert response.status_code == 400
        assert "departments" in response.json()["error"]

    def test_invite_success(self, client, gateway, invite_client, admin_headers):
        gateway.seed(EntityType.STAFF, [{"id": "s1"}])
        gateway.seed(EntityType.USER, [{"id": "u9", "email": "new@studio.com"}])

        response = client.post(
            "/api/identity/invite-staff",
            headers=admin_headers,
            json={"staff_id": "s1", "company_email": "new@studio.com", "departments": ["hr"]}
        )

        assert response.status_code == 200
        assert response.json()["user_id"] == "u9"
        invite_client.invite_user.assert_awaited_once()

    def test_hire_missing_candidate_is_404(self, client, admin_headers):
        response = client.post(
            "/api/identity/hire-candidate",
            headers=admin_headers,
            json={"candidateId": "c404", "staffData": {"legal_full_name": "X"}}
        )

        assert response.status_code == 404
        assert response.json() == {"error": "Candidate not found"}

    def test_hire_accepts_snake_case_candidate_id(self, client, gateway, admin_headers):
        gateway.seed(EntityType.CANDIDATE, [{"id": "c1", "full_name": "Casey", "stage": "offer"}])

        response = client.post(
            "/api/identity/hire-candidate",
            headers=admin_headers,
            json={"candidate_id": "c1", "staffData": {"legal_full_name": "Casey"}}
        )

        assert response.status_code == 200
        assert response.json()["staff"]["photographer_status"] == "training"


class TestHealth:

    def test_liveness(self, client):
        response = client.get("/api/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_request_id_header(self, client):
        response = client.get("/api/health/live", headers={"X-Request-ID": "req-test-1"})
        assert response.headers["X-Request-ID"] == "req-test-1"
