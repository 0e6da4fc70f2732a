# routers/tags.py — Tenant tag catalogue
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditRecorder, get_audit_recorder
from auth import Principal, get_principal
from authorization import Target, require
from database import get_db_session
from models import QuestionTag, Tag
from rbac import Action
from scoping import tenant_select
from tenancy import TenantScope, get_tenant

router = APIRouter(prefix="/api/v1/tags", tags=["Tags"])


# --- Schemas ---

class TagCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=500)
    color: str = Field(default="#3B82F6", pattern=r"^#[0-9A-Fa-f]{6}$")


class TagOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    color: str
    question_count: int = 0


# --- Endpoints ---

@router.get("", response_model=List[TagOut])
async def list_tags(
    tenant: TenantScope = Depends(get_tenant),
    db: AsyncSession = Depends(get_db_session),
):
    """List tags with how many questions carry each"""
    usage = (
        select(QuestionTag.tag_id, func.count(QuestionTag.id).label("uses"))
        .group_by(QuestionTag.tag_id)
        .subquery()
    )
    stmt = (
        select(Tag, func.coalesce(usage.c.uses, 0))
        .outerjoin(usage, usage.c.tag_id == Tag.id)
        .where(Tag.tenant_id == tenant.tenant_id)
        .order_by(Tag.name)
    )
    result = await db.execute(stmt)
    return [
        TagOut(id=t.id, name=t.name, description=t.description, color=t.color, question_count=uses)
        for t, uses in result.all()
    ]


@router.post("", response_model=TagOut, status_code=201)
async def create_tag(
    payload: TagCreate,
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Create a tag (moderator in any team)"""
    await require(db, principal, Action.CREATE_TAG, Target.tenant_wide(tenant.tenant_id))

    name = payload.name.strip()
    existing = await db.execute(tenant_select(Tag, tenant).where(Tag.name == name))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=409, detail=f"Tag '{name}' already exists")

    tag = Tag(tenant_id=tenant.tenant_id, name=name, description=payload.description, color=payload.color)
    db.add(tag)
    await db.commit()
    await db.refresh(tag)

    audit.record("tag.create", "Tag", tag.id, after={"name": tag.name, "color": tag.color})
    return TagOut(id=tag.id, name=tag.name, description=tag.description, color=tag.color)
