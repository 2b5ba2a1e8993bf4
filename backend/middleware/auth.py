"""
Authentication Middleware and Dependencies

Provides:
- get_current_user_required: Resolve the caller from the bearer token
- RoleChecker: Dependency for role validation

The caller's role is read from their User record on every request, so a
role change takes effect without waiting for tokens to expire.
"""

from typing import List
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from logging_config import set_request_context
from sentry_integration import set_user
from services.auth import decode_token, AuthUser, UserRole
from services.entity_gateway import EntityGateway, EntityType, get_entity_gateway

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)


async def _resolve_caller(
    credentials: HTTPAuthorizationCredentials,
    gateway: EntityGateway
) -> AuthUser:
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"}
        )

    token_data = decode_token(credentials.credentials)

    if not token_data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"}
        )

    if token_data.token_type != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
            headers={"WWW-Authenticate": "Bearer"}
        )

    user = await gateway.get(EntityType.USER, token_data.user_id)
    if not user:
        logger.warning(f"Token for unknown user {token_data.user_id}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown user",
            headers={"WWW-Authenticate": "Bearer"}
        )

    caller = AuthUser(
        id=user["id"],
        email=user.get("email") or token_data.email,
        role=user.get("role") or UserRole.user.value,
        full_name=user.get("full_name")
    )

    set_request_context(user_id=caller.id)
    set_user(caller.id, role=caller.role)
    return caller


# ==================== DEPENDENCIES ====================

async def get_current_user_required(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    gateway: EntityGateway = Depends(get_entity_gateway)
) -> AuthUser:
    """
    Resolve the current caller.
    Raises 401 if no token, invalid token, or no matching user.
    """
    return await _resolve_caller(credentials, gateway)


class RoleChecker:
    """
    Dependency class for role-based access control.

    Usage:
        @router.post("/admin-only")
        async def admin_endpoint(user: AuthUser = Depends(RoleChecker(["admin"]))):
            ...
    """

    def __init__(self, allowed_roles: List[str]):
        self.allowed_roles = allowed_roles

    async def __call__(
        self,
        credentials: HTTPAuthorizationCredentials = Depends(security),
        gateway: EntityGateway = Depends(get_entity_gateway)
    ) -> AuthUser:
        caller = await _resolve_caller(credentials, gateway)

        if caller.role not in self.allowed_roles:
            logger.warning(f"Role gate rejected {caller.id} (role={caller.role})")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {self.allowed_roles}"
            )

        return caller


# Convenience role checkers
require_admin = RoleChecker([UserRole.admin.value])
