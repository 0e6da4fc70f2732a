# routers/auth.py — Session endpoints (mock SSO login for development and tests)
import os
import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AuthService, BootstrapPrincipal, Principal, get_principal
from database import get_db_session
from errors import AuthorizationError, DenyReason
from models import User
from scoping import tenant_select
from settings_service import get_tenant_settings
from tenancy import TenantScope, get_tenant

logger = logging.getLogger("pulsestage.auth")

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


# --- Schemas ---

class DevLogin(BaseModel):
    email: EmailStr
    name: Optional[str] = Field(default=None, max_length=100)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: dict


# --- Endpoints ---

@router.post("/dev-login", response_model=TokenResponse)
async def dev_login(
    payload: DevLogin,
    tenant: TenantScope = Depends(get_tenant),
    db: AsyncSession = Depends(get_db_session),
):
    """Mock SSO: sign in as any email, creating the user on first login. Disabled in production."""
    if ENVIRONMENT == "production":
        raise HTTPException(status_code=404, detail="Not found")

    email = payload.email.lower()
    result = await db.execute(tenant_select(User, tenant).where(User.email == email))
    user = result.scalar_one_or_none()
    if user is None:
        user = User(
            tenant_id=tenant.tenant_id,
            email=email,
            name=payload.name or email.split("@")[0],
            sso_id=f"mock:{email}",
            is_active=True,
        )
        db.add(user)
        await db.commit()
        await db.refresh(user)
        logger.info(f"Created user {user.id} on first login to tenant {tenant.slug}")
    elif not user.is_active:
        raise AuthorizationError(DenyReason.NOT_AUTHENTICATED, "User is deactivated")

    settings = await get_tenant_settings(db, tenant.tenant_id)
    lifetime = timedelta(hours=settings["security"]["session_timeout"])
    return TokenResponse(
        access_token=AuthService.token_for_user(user, lifetime),
        expires_in=int(lifetime.total_seconds()),
        user={"id": user.id, "email": user.email, "name": user.name, "tenant_id": user.tenant_id},
    )


@router.get("/me")
async def whoami(principal: Principal = Depends(get_principal)):
    """Describe the current principal (user session or admin key)"""
    if isinstance(principal, BootstrapPrincipal):
        return {"type": "bootstrap", "tenant_id": principal.tenant_id}
    return {
        "type": "user",
        "id": principal.id,
        "email": principal.email,
        "name": principal.name,
        "tenant_id": principal.tenant_id,
    }
