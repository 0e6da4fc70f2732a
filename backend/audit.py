# audit.py — Best-effort audit trail for privileged mutations
# Entries are written after the response in a background task on their own
# session. A failed write is logged and never reaches the request.

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, Depends, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auth import Principal, TeamMemberPrincipal, get_optional_principal
from authorization import Scope
from database import get_session_factory
from models import AuditLog
from scoping import build_filter, scoped_select
from tenancy import TenantScope, get_tenant

logger = logging.getLogger("pulsestage.audit")

AUDIT_PAGE_LIMIT = 100
AUDIT_EXPORT_LIMIT = 10000


def clean_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Drop None values; an empty result is stored as NULL."""
    if not metadata:
        return None
    cleaned = {k: v for k, v in metadata.items() if v is not None}
    return cleaned or None


class AuditRecorder:
    """Collects the request context once; record() schedules one entry per mutation."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        background_tasks: BackgroundTasks,
        tenant: TenantScope,
        principal: Optional[Principal] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.background_tasks = background_tasks
        self.tenant = tenant
        self.principal = principal
        self.ip_address = ip_address
        self.user_agent = user_agent
        self.request_id = request_id

    def _actor(self) -> Dict[str, Optional[str]]:
        if isinstance(self.principal, TeamMemberPrincipal):
            return {
                "user_id": self.principal.id,
                "user_email": self.principal.email,
                "user_name": self.principal.name,
            }
        if self.principal is not None:
            return {"user_id": None, "user_email": None, "user_name": "admin-key"}
        return {"user_id": None, "user_email": None, "user_name": None}

    def record(
        self,
        action: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        team_id: Optional[str] = None,
    ) -> None:
        """Schedule one entry. team_id defaults to metadata["team_id"] when present."""
        if team_id is None and metadata:
            team_id = metadata.get("team_id")
        entry = {
            "tenant_id": self.tenant.tenant_id,
            "team_id": team_id,
            **self._actor(),
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "before_state": before,
            "after_state": after,
            "audit_metadata": clean_metadata(metadata),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "request_id": self.request_id,
        }
        self.background_tasks.add_task(write_entry, self.session_factory, entry)


async def write_entry(session_factory: async_sessionmaker, entry: Dict[str, Any]) -> bool:
    try:
        async with session_factory() as session:
            session.add(AuditLog(**entry))
            await session.commit()
        return True
    except Exception:
        logger.exception(f"Failed to write audit entry {entry.get('action')} for {entry.get('entity_id')}")
        return False


async def get_audit_recorder(
    request: Request,
    background_tasks: BackgroundTasks,
    tenant: TenantScope = Depends(get_tenant),
    principal: Optional[Principal] = Depends(get_optional_principal),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> AuditRecorder:
    return AuditRecorder(
        session_factory=session_factory,
        background_tasks=background_tasks,
        tenant=tenant,
        principal=principal,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        request_id=getattr(request.state, "request_id", None),
    )


# ============================================================
# QUERIES
# ============================================================

def _apply_filters(
    stmt,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
):
    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if entity_type:
        stmt = stmt.where(AuditLog.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(AuditLog.entity_id == entity_id)
    if start_date:
        stmt = stmt.where(AuditLog.created_at >= start_date)
    if end_date:
        stmt = stmt.where(AuditLog.created_at <= end_date)
    return stmt


async def get_audit_logs(
    db: AsyncSession,
    scope: Scope,
    tenant: TenantScope,
    limit: int = AUDIT_PAGE_LIMIT,
    offset: int = 0,
    **filters,
) -> List[AuditLog]:
    """Entries visible under scope. Tenant-level entries (no team) need the global scope."""
    stmt = _apply_filters(scoped_select(AuditLog, scope, tenant), **filters)
    stmt = stmt.order_by(AuditLog.created_at.desc()).offset(offset).limit(min(limit, AUDIT_PAGE_LIMIT))
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def export_audit_logs(db: AsyncSession, scope: Scope, tenant: TenantScope, **filters) -> List[AuditLog]:
    stmt = _apply_filters(scoped_select(AuditLog, scope, tenant), **filters)
    stmt = stmt.order_by(AuditLog.created_at.desc()).limit(AUDIT_EXPORT_LIMIT)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def count_audit_logs(db: AsyncSession, scope: Scope, tenant: TenantScope, **filters) -> int:
    stmt = _apply_filters(
        select(func.count(AuditLog.id)).where(build_filter(scope, tenant, AuditLog)), **filters
    )
    result = await db.execute(stmt)
    return result.scalar() or 0
