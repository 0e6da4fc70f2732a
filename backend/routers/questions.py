# routers/questions.py — Question board: submit, browse, search, upvote, answer, moderate
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditRecorder, get_audit_recorder
from auth import (
    Principal, TeamMemberPrincipal,
    get_current_user, get_optional_principal, get_principal,
)
from authorization import Target, require
from database import get_db_session
from errors import AuthorizationError, DenyReason
from models import Question, QuestionStatus, QuestionTag, Tag, Team, Upvote, utcnow
from rbac import Action
from scoping import tenant_select
from search import search_questions
from settings_service import get_tenant_settings
from tenancy import TenantScope, get_tenant

router = APIRouter(prefix="/api/v1/questions", tags=["Questions"])


# --- Schemas ---

class QuestionCreate(BaseModel):
    body: str = Field(..., min_length=1, max_length=5000)
    team_id: Optional[str] = None


class RespondRequest(BaseModel):
    response: str = Field(..., min_length=1, max_length=10000)


class TagAssign(BaseModel):
    tag_id: str


class TagOut(BaseModel):
    id: str
    name: str
    color: str


class QuestionOut(BaseModel):
    id: str
    tenant_id: str
    team_id: Optional[str] = None
    author_id: Optional[str] = None
    body: str
    status: str
    upvotes: int
    response_text: Optional[str] = None
    responded_at: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    is_pinned: bool
    pinned_by: Optional[str] = None
    pinned_at: Optional[str] = None
    is_frozen: bool
    frozen_by: Optional[str] = None
    frozen_at: Optional[str] = None
    tags: List[TagOut] = []
    created_at: str


class SearchResult(QuestionOut):
    score: float


class UpvoteResult(BaseModel):
    question_id: str
    upvoted: bool
    already_upvoted: bool
    upvotes: int


# --- Helpers ---

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


async def load_question_tags(db: AsyncSession, question_ids: List[str]) -> Dict[str, List[TagOut]]:
    if not question_ids:
        return {}
    stmt = (
        select(QuestionTag.question_id, Tag)
        .join(Tag, Tag.id == QuestionTag.tag_id)
        .where(QuestionTag.question_id.in_(question_ids))
        .order_by(Tag.name)
    )
    result = await db.execute(stmt)
    tags: Dict[str, List[TagOut]] = {}
    for question_id, tag in result.all():
        tags.setdefault(question_id, []).append(TagOut(id=tag.id, name=tag.name, color=tag.color))
    return tags


def question_to_out(q: Question, tags: Optional[List[TagOut]] = None) -> QuestionOut:
    return QuestionOut(
        id=q.id,
        tenant_id=q.tenant_id,
        team_id=q.team_id,
        author_id=q.author_id,
        body=q.body,
        status=q.status.value if isinstance(q.status, QuestionStatus) else q.status,
        upvotes=q.upvotes or 0,
        response_text=q.response_text,
        responded_at=_iso(q.responded_at),
        reviewed_by=q.reviewed_by,
        reviewed_at=_iso(q.reviewed_at),
        is_pinned=bool(q.is_pinned),
        pinned_by=q.pinned_by,
        pinned_at=_iso(q.pinned_at),
        is_frozen=bool(q.is_frozen),
        frozen_by=q.frozen_by,
        frozen_at=_iso(q.frozen_at),
        tags=tags or [],
        created_at=_iso(q.created_at) or "",
    )


async def questions_to_out(db: AsyncSession, questions: List[Question]) -> List[QuestionOut]:
    tags = await load_question_tags(db, [q.id for q in questions])
    return [question_to_out(q, tags.get(q.id)) for q in questions]


async def get_question_or_404(db: AsyncSession, tenant: TenantScope, question_id: str) -> Question:
    result = await db.execute(tenant_select(Question, tenant).where(Question.id == question_id))
    question = result.scalar_one_or_none()
    if not question:
        raise HTTPException(status_code=404, detail="Question not found")
    return question


async def _question_response(db: AsyncSession, q: Question) -> QuestionOut:
    tags = await load_question_tags(db, [q.id])
    return question_to_out(q, tags.get(q.id))


# --- Endpoints ---

@router.post("", response_model=QuestionOut, status_code=201)
async def create_question(
    payload: QuestionCreate,
    tenant: TenantScope = Depends(get_tenant),
    principal: Optional[Principal] = Depends(get_optional_principal),
    db: AsyncSession = Depends(get_db_session),
):
    """Submit a question. Signed-in authors upvote their own question automatically."""
    settings = await get_tenant_settings(db, tenant.tenant_id)
    body = payload.body.strip()
    min_length = settings["questions"]["min_length"]
    max_length = settings["questions"]["max_length"]
    if not min_length <= len(body) <= max_length:
        raise HTTPException(
            status_code=400,
            detail=f"Question must be between {min_length} and {max_length} characters",
        )

    author = principal if isinstance(principal, TeamMemberPrincipal) else None
    if author is None and not settings["features"]["allow_anonymous_questions"]:
        raise AuthorizationError(DenyReason.NOT_AUTHENTICATED, "Anonymous questions are disabled")

    if payload.team_id:
        stmt = tenant_select(Team, tenant).where(Team.id == payload.team_id, Team.is_active == True)
        if (await db.execute(stmt)).scalar_one_or_none() is None:
            raise HTTPException(status_code=400, detail="Team not found or inactive")

    question = Question(
        tenant_id=tenant.tenant_id,
        team_id=payload.team_id,
        author_id=author.id if author else None,
        body=body,
        status=QuestionStatus.OPEN,
        upvotes=1 if author else 0,
    )
    db.add(question)
    await db.flush()
    if author:
        db.add(Upvote(question_id=question.id, user_id=author.id))
    await db.commit()
    await db.refresh(question)
    return question_to_out(question)


@router.get("", response_model=List[QuestionOut])
async def list_questions(
    tenant: TenantScope = Depends(get_tenant),
    db: AsyncSession = Depends(get_db_session),
    status: Optional[QuestionStatus] = None,
    team_id: Optional[str] = None,
    tag: Optional[str] = Query(default=None, description="Tag id or name"),
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    """List the tenant's questions, pinned first, then most upvoted"""
    stmt = tenant_select(Question, tenant)
    if status:
        stmt = stmt.where(Question.status == status)
    if team_id:
        stmt = stmt.where(Question.team_id == team_id)
    if tag:
        tagged = (
            select(QuestionTag.question_id)
            .join(Tag, Tag.id == QuestionTag.tag_id)
            .where(Tag.tenant_id == tenant.tenant_id, or_(Tag.id == tag, Tag.name == tag))
        )
        stmt = stmt.where(Question.id.in_(tagged))
    if created_from:
        stmt = stmt.where(Question.created_at >= created_from)
    if created_to:
        stmt = stmt.where(Question.created_at <= created_to)

    stmt = stmt.order_by(
        Question.is_pinned.desc(), Question.upvotes.desc(), Question.created_at.desc(),
    ).offset(offset).limit(limit)
    result = await db.execute(stmt)
    return await questions_to_out(db, list(result.scalars().all()))


@router.get("/search", response_model=List[SearchResult])
async def search(
    q: str = Query(default=""),
    team_id: Optional[str] = None,
    tenant: TenantScope = Depends(get_tenant),
    db: AsyncSession = Depends(get_db_session),
):
    """Keyword search across question bodies and answers"""
    scored = await search_questions(db, tenant, q, team_id=team_id)
    tags = await load_question_tags(db, [question.id for question, _ in scored])
    return [
        SearchResult(**question_to_out(question, tags.get(question.id)).model_dump(), score=round(score, 2))
        for question, score in scored
    ]


@router.get("/{question_id}", response_model=QuestionOut)
async def get_question(
    question_id: str,
    tenant: TenantScope = Depends(get_tenant),
    db: AsyncSession = Depends(get_db_session),
):
    question = await get_question_or_404(db, tenant, question_id)
    return await _question_response(db, question)


@router.post("/{question_id}/upvote", response_model=UpvoteResult)
async def upvote_question(
    question_id: str,
    tenant: TenantScope = Depends(get_tenant),
    user: TeamMemberPrincipal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Upvote once per user. Repeats report already_upvoted and leave the count alone."""
    question = await get_question_or_404(db, tenant, question_id)
    if question.is_frozen:
        raise HTTPException(status_code=400, detail="Question is frozen")
    if question.author_id == user.id:
        raise HTTPException(status_code=400, detail="Cannot upvote your own question")

    existing = await db.execute(
        select(Upvote.id).where(Upvote.question_id == question.id, Upvote.user_id == user.id)
    )
    if existing.scalar_one_or_none() is not None:
        return UpvoteResult(
            question_id=question.id, upvoted=False, already_upvoted=True, upvotes=question.upvotes,
        )

    db.add(Upvote(question_id=question.id, user_id=user.id))
    try:
        await db.flush()
    except IntegrityError:
        # Concurrent upvote by the same user won the unique constraint
        await db.rollback()
        await db.refresh(question)
        return UpvoteResult(
            question_id=question.id, upvoted=False, already_upvoted=True, upvotes=question.upvotes,
        )

    await db.execute(
        update(Question)
        .where(Question.id == question.id)
        .values(upvotes=Question.upvotes + 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(question)
    return UpvoteResult(question_id=question.id, upvoted=True, already_upvoted=False, upvotes=question.upvotes)


@router.get("/{question_id}/upvote-status")
async def upvote_status(
    question_id: str,
    tenant: TenantScope = Depends(get_tenant),
    user: TeamMemberPrincipal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    question = await get_question_or_404(db, tenant, question_id)
    result = await db.execute(
        select(Upvote.id).where(Upvote.question_id == question.id, Upvote.user_id == user.id)
    )
    return {
        "question_id": question.id,
        "has_upvoted": result.scalar_one_or_none() is not None,
        "upvotes": question.upvotes,
    }


@router.post("/{question_id}/respond", response_model=QuestionOut)
async def respond_to_question(
    question_id: str,
    payload: RespondRequest,
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Answer a question (moderator of its team)"""
    question = await get_question_or_404(db, tenant, question_id)
    await require(db, principal, Action.RESPOND_TO_QUESTION, Target.for_question(question))
    if question.is_frozen:
        raise HTTPException(status_code=400, detail="Question is frozen")

    previous_status = question.status.value
    now = utcnow()
    question.status = QuestionStatus.ANSWERED
    question.response_text = payload.response.strip()
    question.responded_at = now
    question.reviewed_by = principal.id
    question.reviewed_at = now
    db.add(question)
    await db.commit()
    await db.refresh(question)

    audit.record(
        "question.respond", "Question", question.id,
        before={"status": previous_status},
        after={"status": question.status.value},
        metadata={"team_id": question.team_id},
    )
    return await _question_response(db, question)


@router.post("/{question_id}/pin", response_model=QuestionOut)
async def toggle_pin(
    question_id: str,
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Pin or unpin a question"""
    question = await get_question_or_404(db, tenant, question_id)
    await require(db, principal, Action.PIN_QUESTION, Target.for_question(question))

    question.is_pinned = not question.is_pinned
    question.pinned_by = principal.id if question.is_pinned else None
    question.pinned_at = utcnow() if question.is_pinned else None
    db.add(question)
    await db.commit()
    await db.refresh(question)

    audit.record(
        "question.pin" if question.is_pinned else "question.unpin", "Question", question.id,
        metadata={"team_id": question.team_id},
    )
    return await _question_response(db, question)


@router.post("/{question_id}/freeze", response_model=QuestionOut)
async def toggle_freeze(
    question_id: str,
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Freeze or unfreeze a question. Frozen questions take no upvotes or answers."""
    question = await get_question_or_404(db, tenant, question_id)
    await require(db, principal, Action.FREEZE_QUESTION, Target.for_question(question))

    question.is_frozen = not question.is_frozen
    question.frozen_by = principal.id if question.is_frozen else None
    question.frozen_at = utcnow() if question.is_frozen else None
    db.add(question)
    await db.commit()
    await db.refresh(question)

    audit.record(
        "question.freeze" if question.is_frozen else "question.unfreeze", "Question", question.id,
        metadata={"team_id": question.team_id},
    )
    return await _question_response(db, question)


@router.post("/{question_id}/tags", response_model=QuestionOut)
async def add_tag(
    question_id: str,
    payload: TagAssign,
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Attach a tag. Attaching an already-attached tag is a no-op."""
    question = await get_question_or_404(db, tenant, question_id)
    await require(db, principal, Action.TAG_QUESTION, Target.for_question(question))

    tag = (await db.execute(tenant_select(Tag, tenant).where(Tag.id == payload.tag_id))).scalar_one_or_none()
    if not tag:
        raise HTTPException(status_code=404, detail="Tag not found")

    existing = await db.execute(
        select(QuestionTag.id).where(QuestionTag.question_id == question.id, QuestionTag.tag_id == tag.id)
    )
    if existing.scalar_one_or_none() is None:
        db.add(QuestionTag(question_id=question.id, tag_id=tag.id, created_by=principal.id))
        await db.commit()
        audit.record(
            "question.tag.add", "Question", question.id,
            metadata={"tag_id": tag.id, "tag_name": tag.name}, team_id=question.team_id,
        )
    return await _question_response(db, question)


@router.delete("/{question_id}/tags/{tag_id}", response_model=QuestionOut)
async def remove_tag(
    question_id: str,
    tag_id: str,
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Detach a tag. Detaching a tag that is not attached is a no-op."""
    question = await get_question_or_404(db, tenant, question_id)
    await require(db, principal, Action.TAG_QUESTION, Target.for_question(question))

    result = await db.execute(
        select(QuestionTag).where(QuestionTag.question_id == question.id, QuestionTag.tag_id == tag_id)
    )
    link = result.scalar_one_or_none()
    if link is not None:
        await db.delete(link)
        await db.commit()
        audit.record(
            "question.tag.remove", "Question", question.id, metadata={"tag_id": tag_id}, team_id=question.team_id,
        )
    return await _question_response(db, question)
