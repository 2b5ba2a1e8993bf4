"""
Authentication & Authorization Service for Studio Ops Core

Sign-in happens at the external identity provider. This module only:
- Verifies the provider's JWT access tokens (python-jose)
- Defines the authenticated caller context and roles

Roles:
- admin: may run reconciliation jobs over other people's records
- user: may link and sync their own staff record only
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional
import logging

from jose import JWTError, jwt
from pydantic import BaseModel

from config import get_settings

logger = logging.getLogger(__name__)

ACCESS_TOKEN_EXPIRE_MINUTES = 60


# ==================== ENUMS ====================

class UserRole(str, Enum):
    admin = "admin"
    user = "user"


# ==================== MODELS ====================

class TokenData(BaseModel):
    """Data extracted from JWT token"""
    user_id: str
    email: str
    exp: Optional[datetime] = None
    token_type: str = "access"


class AuthUser(BaseModel):
    """Authenticated caller context, resolved against the User collection"""
    id: str
    email: str
    role: str = UserRole.user.value
    full_name: Optional[str] = None

    def is_admin(self) -> bool:
        return self.role == UserRole.admin.value


# ==================== JWT UTILITIES ====================

def create_access_token(
    user_id: str,
    email: str,
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Mint an access token in the identity provider's format.
    Used by local tooling and tests; production tokens come from the provider.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))

    to_encode = {
        "sub": user_id,
        "email": email,
        "type": "access",
        "exp": expire,
        "iat": now
    }

    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Optional[TokenData]:
    """Decode and validate a JWT token"""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"JWT decode error: {e}")
        return None

    user_id = payload.get("sub")
    email = payload.get("email")
    exp = payload.get("exp")

    if not user_id or not email:
        return None

    return TokenData(
        user_id=user_id,
        email=email,
        token_type=payload.get("type", "access"),
        exp=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None
    )
