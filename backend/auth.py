# auth.py — Authentication for PulseStage
# Features:
# - Signed JWT sessions bound to one tenant
# - Bootstrap principal via the ADMIN_KEY escape hatch
# - Optional and required principal dependencies

import os
import hmac
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, Union

from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from errors import AuthorizationError, DenyReason
from models import User
from tenancy import TenantScope, get_tenant

logger = logging.getLogger("pulsestage.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY:
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set. Generated ephemeral key; sessions will not survive a restart."
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "480"))
ADMIN_KEY = os.getenv("ADMIN_KEY", "")
ADMIN_KEY_HEADER = "X-Admin-Key"

security = HTTPBearer(auto_error=False)


# ============================================================
# PRINCIPALS
# ============================================================

class TeamMemberPrincipal(BaseModel):
    """A signed-in user. Privileges come only from their team memberships."""
    id: str
    tenant_id: str
    email: str
    name: Optional[str] = None


class BootstrapPrincipal(BaseModel):
    """Holder of the tenant-level admin key; allowed everything inside one tenant."""
    tenant_id: str

    @property
    def id(self) -> None:
        return None


Principal = Union[TeamMemberPrincipal, BootstrapPrincipal]


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
            "iat": now,
            "type": "access",
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def token_for_user(user: User, expires_delta: Optional[timedelta] = None) -> str:
        return AuthService.create_access_token(
            {"sub": user.id, "tenant_id": user.tenant_id, "email": user.email},
            expires_delta,
        )

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise AuthorizationError(DenyReason.NOT_AUTHENTICATED, "Token expired")
        except JWTError:
            raise AuthorizationError(DenyReason.NOT_AUTHENTICATED, "Invalid token")

    @staticmethod
    def check_admin_key(presented: str) -> bool:
        if not ADMIN_KEY:
            return False
        return hmac.compare_digest(presented.encode("utf-8"), ADMIN_KEY.encode("utf-8"))


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_optional_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    tenant: TenantScope = Depends(get_tenant),
    db: AsyncSession = Depends(get_db_session),
) -> Optional[Principal]:
    """Resolve the caller, or None for anonymous requests. Bad credentials are never anonymous."""
    admin_key = request.headers.get(ADMIN_KEY_HEADER)
    if admin_key is not None:
        if not AuthService.check_admin_key(admin_key):
            logger.warning(f"Rejected admin key for tenant {tenant.slug}")
            raise AuthorizationError(DenyReason.NOT_AUTHENTICATED, "Invalid admin key")
        return BootstrapPrincipal(tenant_id=tenant.tenant_id)

    if credentials is None:
        return None

    payload = AuthService.verify_token(credentials.credentials)
    if payload.get("type") != "access":
        raise AuthorizationError(DenyReason.NOT_AUTHENTICATED, "Invalid token type")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthorizationError(DenyReason.NOT_AUTHENTICATED, "Invalid token")
    if payload.get("tenant_id") != tenant.tenant_id:
        raise AuthorizationError(DenyReason.NOT_AUTHENTICATED, "Session does not belong to this tenant")

    stmt = select(User).where(User.id == user_id, User.tenant_id == tenant.tenant_id)
    result = await db.execute(stmt)
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise AuthorizationError(DenyReason.NOT_AUTHENTICATED, "User not found or inactive")

    return TeamMemberPrincipal(id=user.id, tenant_id=user.tenant_id, email=user.email, name=user.name)


async def get_principal(
    principal: Optional[Principal] = Depends(get_optional_principal),
) -> Principal:
    if principal is None:
        raise AuthorizationError(DenyReason.NOT_AUTHENTICATED, "Authentication required")
    return principal


async def get_current_user(
    principal: Principal = Depends(get_principal),
) -> TeamMemberPrincipal:
    """Require a real user; the admin key has no user identity."""
    if not isinstance(principal, TeamMemberPrincipal):
        raise HTTPException(status_code=400, detail="This endpoint requires a user session")
    return principal
