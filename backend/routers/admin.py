# routers/admin.py — Tenant administration: audit trail, data export, settings, tenant profile, user directory
import csv
import io
import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from audit import (
    AUDIT_PAGE_LIMIT, AuditRecorder,
    count_audit_logs, export_audit_logs, get_audit_logs, get_audit_recorder,
)
from auth import Principal, get_principal
from authorization import Target, require
from database import get_db_session
from models import AuditLog, Question, QuestionStatus, QuestionTag, Team, TeamMembership, Tenant, User, utcnow
from rbac import Action
from routers.moderation import scope_for_team_filter
from routers.questions import QuestionOut, questions_to_out
from scoping import build_filter, tenant_select
from settings_service import SettingsValidationError, get_tenant_settings, update_tenant_settings
from tenancy import TenantScope, get_tenant

router = APIRouter(prefix="/api/v1/admin", tags=["Admin"])

EXPORT_PREVIEW_LIMIT = 100

QUESTION_CSV_COLUMNS = [
    "id", "body", "upvotes", "status", "response_text", "responded_at",
    "created_at", "team_id", "team_name", "team_slug", "tags",
]
AUDIT_CSV_COLUMNS = [
    "timestamp", "user_email", "user_name", "action", "entity_type",
    "entity_id", "team_id", "ip_address", "user_agent", "metadata",
]


# --- Schemas ---

class TenantUpdate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class ExportFilters(BaseModel):
    team_id: Optional[str] = None
    status: Optional[QuestionStatus] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    min_upvotes: Optional[int] = None
    max_upvotes: Optional[int] = None
    tag_ids: List[str] = []
    has_response: Optional[bool] = None


# --- Helpers ---

def _log_to_out(log: AuditLog) -> Dict[str, Any]:
    return {
        "id": log.id,
        "team_id": log.team_id,
        "user_id": log.user_id,
        "user_email": log.user_email,
        "user_name": log.user_name,
        "action": log.action,
        "entity_type": log.entity_type,
        "entity_id": log.entity_id,
        "before_state": log.before_state,
        "after_state": log.after_state,
        "metadata": log.audit_metadata,
        "ip_address": log.ip_address,
        "request_id": log.request_id,
        "created_at": log.created_at.isoformat() if log.created_at else None,
    }


def _audit_filters(
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> Dict[str, Any]:
    return {
        "user_id": user_id,
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "start_date": start_date,
        "end_date": end_date,
    }


def _export_filters(
    team_id: Optional[str] = None,
    status: Optional[QuestionStatus] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    min_upvotes: Optional[int] = Query(default=None, ge=0),
    max_upvotes: Optional[int] = Query(default=None, ge=0),
    tag_ids: List[str] = Query(default=[]),
    has_response: Optional[bool] = None,
) -> ExportFilters:
    return ExportFilters(
        team_id=team_id,
        status=status,
        start_date=start_date,
        end_date=end_date,
        min_upvotes=min_upvotes,
        max_upvotes=max_upvotes,
        tag_ids=tag_ids,
        has_response=has_response,
    )


async def _audit_scope(db: AsyncSession, tenant: TenantScope, principal: Principal):
    return await require(db, principal, Action.VIEW_AUDIT_LOG, Target.tenant_wide(tenant.tenant_id))


async def _export_questions(
    db: AsyncSession,
    tenant: TenantScope,
    principal: Principal,
    filters: ExportFilters,
    limit: Optional[int] = None,
) -> List[Question]:
    """Questions in the teams the caller administers that match the export filters"""
    scope = await scope_for_team_filter(db, tenant, principal, Action.EXPORT_DATA, filters.team_id)

    stmt = select(Question).where(build_filter(scope, tenant, Question))
    if filters.status:
        stmt = stmt.where(Question.status == filters.status)
    if filters.start_date:
        stmt = stmt.where(Question.created_at >= filters.start_date)
    if filters.end_date:
        stmt = stmt.where(Question.created_at <= filters.end_date)
    if filters.min_upvotes is not None:
        stmt = stmt.where(Question.upvotes >= filters.min_upvotes)
    if filters.max_upvotes is not None:
        stmt = stmt.where(Question.upvotes <= filters.max_upvotes)
    if filters.tag_ids:
        tagged = select(QuestionTag.question_id).where(QuestionTag.tag_id.in_(filters.tag_ids))
        stmt = stmt.where(Question.id.in_(tagged))
    if filters.has_response is True:
        stmt = stmt.where(Question.response_text.is_not(None))
    elif filters.has_response is False:
        stmt = stmt.where(Question.response_text.is_(None))

    stmt = stmt.order_by(Question.status, Question.upvotes.desc(), Question.created_at.desc())
    if limit:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


def _csv_response(columns: Sequence[str], rows: List[Sequence[Any]], filename: str) -> Response:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(columns)
    writer.writerows(rows)
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def _export_filename(prefix: str, fmt: str) -> str:
    return f"{prefix}-{utcnow().date().isoformat()}.{fmt}"


# --- Audit ---

@router.get("/audit")
async def list_audit_logs(
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    filters: Dict[str, Any] = Depends(_audit_filters),
    limit: int = Query(default=AUDIT_PAGE_LIMIT, ge=1, le=AUDIT_PAGE_LIMIT),
    offset: int = Query(default=0, ge=0),
):
    """Audit trail of the teams the caller administers, newest first.

    Tenant-level entries (settings, tags, multi-team bulk operations) are only
    visible to the admin key.
    """
    scope = await _audit_scope(db, tenant, principal)
    logs = await get_audit_logs(db, scope, tenant, limit=limit, offset=offset, **filters)
    return {"logs": [_log_to_out(log) for log in logs], "limit": limit, "offset": offset}


@router.get("/audit/count")
async def audit_log_count(
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    filters: Dict[str, Any] = Depends(_audit_filters),
):
    scope = await _audit_scope(db, tenant, principal)
    return {"total": await count_audit_logs(db, scope, tenant, **filters)}


@router.get("/audit/export")
async def export_audit_trail(
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    filters: Dict[str, Any] = Depends(_audit_filters),
    export_format: str = Query(default="csv", alias="format", pattern="^(csv|json)$"),
):
    scope = await _audit_scope(db, tenant, principal)
    logs = await export_audit_logs(db, scope, tenant, **filters)
    filename = _export_filename("audit-log", export_format)

    if export_format == "json":
        return JSONResponse(
            content={
                "exported_at": utcnow().isoformat(),
                "tenant": tenant.slug,
                "total_records": len(logs),
                "logs": [_log_to_out(log) for log in logs],
            },
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    rows = [
        [
            log.created_at.isoformat() if log.created_at else "",
            log.user_email or "system",
            log.user_name or "System",
            log.action,
            log.entity_type,
            log.entity_id or "",
            log.team_id or "",
            log.ip_address or "",
            log.user_agent or "",
            json.dumps(log.audit_metadata or {}, sort_keys=True),
        ]
        for log in logs
    ]
    return _csv_response(AUDIT_CSV_COLUMNS, rows, filename)


# --- Data export ---

@router.get("/export/preview")
async def export_preview(
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    filters: ExportFilters = Depends(_export_filters),
    limit: int = Query(default=EXPORT_PREVIEW_LIMIT, ge=1, le=EXPORT_PREVIEW_LIMIT),
):
    """First rows of a question export, for checking filters before downloading"""
    questions = await _export_questions(db, tenant, principal, filters, limit=limit)
    preview: List[QuestionOut] = await questions_to_out(db, questions)
    return {
        "count": len(preview),
        "preview": preview,
        "filters": filters.model_dump(mode="json"),
    }


@router.get("/export/download")
async def export_download(
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
    filters: ExportFilters = Depends(_export_filters),
    export_format: str = Query(default="csv", alias="format", pattern="^(csv|json)$"),
):
    questions = await _export_questions(db, tenant, principal, filters)
    exported = await questions_to_out(db, questions)

    team_ids = {q.team_id for q in questions if q.team_id}
    teams: Dict[str, Team] = {}
    if team_ids:
        result = await db.execute(tenant_select(Team, tenant).where(Team.id.in_(list(team_ids))))
        teams = {t.id: t for t in result.scalars().all()}

    audit.record(
        "data.export", "Question", None,
        metadata={"format": export_format, "count": len(exported), "team_id": filters.team_id},
    )
    filename = _export_filename("pulsestage-export", export_format)

    if export_format == "json":
        return JSONResponse(
            content={
                "exported_at": utcnow().isoformat(),
                "filters": filters.model_dump(mode="json"),
                "total_count": len(exported),
                "questions": [q.model_dump() for q in exported],
            },
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    rows = []
    for q in exported:
        team = teams.get(q.team_id) if q.team_id else None
        rows.append([
            q.id,
            q.body,
            q.upvotes,
            q.status,
            q.response_text or "",
            q.responded_at or "",
            q.created_at,
            q.team_id or "",
            team.name if team else "",
            team.slug if team else "",
            ";".join(f"{tag.name}({tag.id})" for tag in q.tags),
        ])
    return _csv_response(QUESTION_CSV_COLUMNS, rows, filename)


# --- Settings ---

@router.get("/settings")
async def read_settings(
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
):
    await require(db, principal, Action.MANAGE_TENANT_SETTINGS, Target.tenant_wide(tenant.tenant_id))
    return await get_tenant_settings(db, tenant.tenant_id)


@router.patch("/settings")
async def patch_settings(
    updates: Dict[str, Any],
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Deep-merge a partial settings document and validate the result"""
    await require(db, principal, Action.MANAGE_TENANT_SETTINGS, Target.tenant_wide(tenant.tenant_id))

    before = await get_tenant_settings(db, tenant.tenant_id)
    try:
        settings = await update_tenant_settings(db, tenant.tenant_id, updates)
    except SettingsValidationError as e:
        await db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    await db.commit()

    audit.record("tenant.settings.update", "TenantSettings", tenant.tenant_id, before=before, after=settings)
    return settings


# --- Tenant & users ---

@router.get("/tenant")
async def get_tenant_profile(
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
):
    return {"id": tenant.tenant_id, "slug": tenant.slug, "name": tenant.name}


@router.patch("/tenant")
async def update_tenant_profile(
    payload: TenantUpdate,
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    await require(db, principal, Action.MANAGE_TENANT_SETTINGS, Target.tenant_wide(tenant.tenant_id))

    row = (await db.execute(select(Tenant).where(Tenant.id == tenant.tenant_id))).scalar_one()
    previous_name = row.name
    row.name = payload.name.strip()
    db.add(row)
    await db.commit()

    audit.record("tenant.update", "Tenant", row.id, before={"name": previous_name}, after={"name": row.name})
    return {"id": row.id, "slug": row.slug, "name": row.name}


@router.get("/users")
async def list_tenant_users(
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    """Users in the tenant with their team memberships"""
    await require(db, principal, Action.VIEW_TENANT_USERS, Target.tenant_wide(tenant.tenant_id))

    result = await db.execute(tenant_select(User, tenant).order_by(User.email).offset(offset).limit(limit))
    users = list(result.scalars().all())

    memberships: Dict[str, list] = {}
    if users:
        stmt = (
            select(TeamMembership, Team)
            .join(Team, Team.id == TeamMembership.team_id)
            .where(TeamMembership.user_id.in_([u.id for u in users]), Team.tenant_id == tenant.tenant_id)
            .order_by(Team.name)
        )
        for membership, team in (await db.execute(stmt)).all():
            memberships.setdefault(membership.user_id, []).append({
                "team_id": team.id,
                "team_name": team.name,
                "team_slug": team.slug,
                "role": membership.role.value,
            })

    return [
        {
            "id": u.id,
            "email": u.email,
            "name": u.name,
            "is_active": u.is_active,
            "primary_team_id": u.primary_team_id,
            "memberships": memberships.get(u.id, []),
        }
        for u in users
    ]
