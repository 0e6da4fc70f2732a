# tenancy.py — Per-request tenant resolution
# Priority: header (dev/test, or ALLOW_TENANT_HEADER) > subdomain (MULTI_TENANT_MODE) > "default"

import os
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from errors import TenantNotFound
from models import Tenant

logger = logging.getLogger("pulsestage.tenancy")

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
TENANT_HEADER = os.getenv("TENANT_HEADER", "X-Tenant-Id")
ALLOW_TENANT_HEADER = os.getenv("ALLOW_TENANT_HEADER", "false").lower() == "true"
MULTI_TENANT_MODE = os.getenv("MULTI_TENANT_MODE", "false").lower() == "true"
BASE_DOMAIN = os.getenv("BASE_DOMAIN", "")
DEFAULT_TENANT_SLUG = "default"


@dataclass(frozen=True)
class TenantScope:
    """The resolved tenant of a request. Every tenant-owned query takes one."""
    tenant_id: str
    slug: str
    name: str = ""


def resolve_tenant_slug(request: Request) -> Optional[str]:
    header_value = request.headers.get(TENANT_HEADER)
    if header_value and (ENVIRONMENT != "production" or ALLOW_TENANT_HEADER):
        return header_value.strip()

    if MULTI_TENANT_MODE and BASE_DOMAIN:
        hostname = (request.headers.get("host") or "").split(":")[0]
        suffix = f".{BASE_DOMAIN}"
        if hostname.endswith(suffix):
            subdomain = hostname[: -len(suffix)]
            if subdomain and subdomain != "www":
                return subdomain

    if not MULTI_TENANT_MODE:
        return DEFAULT_TENANT_SLUG

    return None


async def ensure_default_tenant(db: AsyncSession) -> Tenant:
    """Single-tenant installs run everything under the "default" tenant."""
    result = await db.execute(select(Tenant).where(Tenant.slug == DEFAULT_TENANT_SLUG))
    tenant = result.scalar_one_or_none()
    if not tenant:
        tenant = Tenant(slug=DEFAULT_TENANT_SLUG, name="Default")
        db.add(tenant)
        await db.commit()
        await db.refresh(tenant)
        logger.info("Created default tenant")
    return tenant


async def get_tenant(
    request: Request,
    db: AsyncSession = Depends(get_db_session),
) -> TenantScope:
    """FastAPI dependency: resolve the request's tenant or fail with 404."""
    slug = resolve_tenant_slug(request)
    if not slug:
        raise TenantNotFound(
            "Unable to resolve tenant from request. Specify the tenant via subdomain or header."
        )

    result = await db.execute(select(Tenant).where(Tenant.slug == slug))
    tenant = result.scalar_one_or_none()
    if not tenant:
        logger.info(f"Tenant not found: {slug}")
        raise TenantNotFound(f"Tenant '{slug}' does not exist.")

    scope = TenantScope(tenant_id=tenant.id, slug=tenant.slug, name=tenant.name)
    request.state.tenant = scope
    return scope
