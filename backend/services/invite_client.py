"""
Identity Provider Invite Client

Sends user invitations to the external identity provider. The provider
creates the User record; this service looks it up afterwards by email.
"""

import logging
import uuid
from typing import Any, Dict, Optional

import httpx

from config import get_settings

logger = logging.getLogger(__name__)


class InviteError(Exception):
    """The identity provider did not accept the invitation."""


class InviteClient:
    """Thin async client for the provider's invite endpoint."""

    def __init__(self, base_url: Optional[str], api_key: Optional[str], timeout: float = 15.0):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key or ""
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    async def invite_user(self, email: str, role: str = "user") -> Dict[str, Any]:
        """
        Invite ``email`` with ``role``.

        Raises:
            InviteError: provider unconfigured, unreachable, or rejected the call
        """
        if not self.is_configured:
            raise InviteError("Identity provider is not configured")

        request_id = str(uuid.uuid4())

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/users/invite",
                    json={"email": email, "role": role},
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "X-Request-ID": request_id,
                        "Content-Type": "application/json"
                    }
                )
        except httpx.TimeoutException:
            raise InviteError("Connection to identity provider timed out")
        except httpx.HTTPError as e:
            raise InviteError(f"Cannot reach identity provider: {str(e)[:100]}")

        if response.status_code not in (200, 201):
            logger.warning(f"Invite for {email} rejected with HTTP {response.status_code}")
            raise InviteError(f"Identity provider rejected invite: HTTP {response.status_code}")

        logger.info(f"Invited {email} as {role}")
        return response.json() if response.content else {}


def get_invite_client() -> InviteClient:
    """FastAPI dependency returning a client built from settings."""
    settings = get_settings()
    return InviteClient(
        base_url=settings.IDENTITY_PROVIDER_URL,
        api_key=settings.IDENTITY_PROVIDER_API_KEY,
        timeout=settings.IDENTITY_PROVIDER_TIMEOUT_SECONDS
    )
