# routers/moderation.py — Moderation queue, bulk operations and moderator stats
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Literal, Optional, Set, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditRecorder, get_audit_recorder
from auth import Principal, get_principal
from authorization import Deny, GlobalScope, Scope, Target, TeamScope, authorize, require
from database import get_db_session
from models import Question, QuestionStatus, QuestionTag, Tag, Team, Upvote, User, utcnow
from rbac import Action, BULK_ACTIONS
from routers.questions import QuestionOut, questions_to_out
from scoping import build_filter, team_in_scope, tenant_select
from tenancy import TenantScope, get_tenant

logger = logging.getLogger("pulsestage.moderation")

router = APIRouter(prefix="/api/v1/moderation", tags=["Moderation"])

MAX_BULK_ITEMS = 100


# --- Schemas ---

class QueueOut(BaseModel):
    questions: List[QuestionOut]
    total: int
    limit: int
    offset: int


class BulkTagRequest(BaseModel):
    question_ids: List[str] = Field(..., min_length=1, max_length=MAX_BULK_ITEMS)
    tag_id: str
    action: Literal["add", "remove"] = "add"


class BulkActionRequest(BaseModel):
    question_ids: List[str] = Field(..., min_length=1, max_length=MAX_BULK_ITEMS)
    action: Literal["pin", "unpin", "freeze", "unfreeze", "delete"]


class BulkItemResult(BaseModel):
    question_id: str
    success: bool
    error: Optional[str] = None


class BulkResult(BaseModel):
    success_count: int
    error_count: int
    total: int
    results: List[BulkItemResult]


# --- Helpers ---

async def scope_for_team_filter(
    db: AsyncSession, tenant: TenantScope, principal: Principal, action: Action, team_id: Optional[str],
) -> Scope:
    """Single-team scope when a team is requested, otherwise every team the caller qualifies for."""
    if team_id:
        result = await db.execute(tenant_select(Team, tenant).where(Team.id == team_id))
        team = result.scalar_one_or_none()
        if not team:
            raise HTTPException(status_code=404, detail="Team not found")
        scope = await require(db, principal, action, Target.for_team(team))
        # The admin key is allowed globally but asked about one team
        if isinstance(scope, GlobalScope):
            return TeamScope(team.id)
        return scope
    return await require(db, principal, action, Target.tenant_wide(tenant.tenant_id))


async def _apply_per_item(
    db: AsyncSession,
    tenant: TenantScope,
    principal: Principal,
    action: Action,
    question_ids: List[str],
    mutate: Callable[[Question], Awaitable[None]],
) -> Tuple[BulkResult, Set[Optional[str]]]:
    """Run mutate on each question that is in the caller's scope right now.

    Scope is re-evaluated for every item and every item commits on its own,
    so one failure never undoes or blocks the others. Also returns the teams
    of the questions that were changed.
    """
    results: List[BulkItemResult] = []
    touched_teams: Set[Optional[str]] = set()
    for question_id in question_ids:
        result = await db.execute(tenant_select(Question, tenant).where(Question.id == question_id))
        question = result.scalar_one_or_none()
        if question is None:
            results.append(BulkItemResult(question_id=question_id, success=False, error="Question not found"))
            continue

        decision = await authorize(db, principal, action, Target.for_question(question))
        if isinstance(decision, Deny):
            results.append(BulkItemResult(question_id=question_id, success=False, error=decision.reason.value))
            continue
        if not team_in_scope(decision.scope, question.team_id):
            results.append(BulkItemResult(question_id=question_id, success=False, error="Out of scope"))
            continue

        team_id = question.team_id
        try:
            await mutate(question)
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            logger.exception(f"Bulk {action.value} failed for question {question_id}")
            results.append(BulkItemResult(question_id=question_id, success=False, error="Database error"))
            continue
        results.append(BulkItemResult(question_id=question_id, success=True))
        touched_teams.add(team_id)

    success_count = sum(1 for r in results if r.success)
    return BulkResult(
        success_count=success_count,
        error_count=len(results) - success_count,
        total=len(results),
        results=results,
    ), touched_teams


def _single_team(team_ids: Set[Optional[str]]) -> Optional[str]:
    return next(iter(team_ids)) if len(team_ids) == 1 else None


def _minutes_between(start, end) -> Optional[float]:
    if start is None or end is None:
        return None
    if (start.tzinfo is None) != (end.tzinfo is None):
        start, end = start.replace(tzinfo=None), end.replace(tzinfo=None)
    return (end - start).total_seconds() / 60


def _average(values: List[float]) -> Optional[float]:
    return round(sum(values) / len(values), 1) if values else None


# --- Endpoints ---

@router.get("/queue", response_model=QueueOut)
async def moderation_queue(
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    status: Optional[QuestionStatus] = None,
    team_id: Optional[str] = None,
    is_pinned: Optional[bool] = None,
    is_frozen: Optional[bool] = None,
    needs_review: Optional[bool] = None,
    reviewed_by: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    """Questions in the teams the caller moderates, pinned first, then most upvoted"""
    scope = await scope_for_team_filter(db, tenant, principal, Action.VIEW_MODERATION_QUEUE, team_id)

    conditions = [build_filter(scope, tenant, Question)]
    if status:
        conditions.append(Question.status == status)
    if is_pinned is not None:
        conditions.append(Question.is_pinned == is_pinned)
    if is_frozen is not None:
        conditions.append(Question.is_frozen == is_frozen)
    if needs_review:
        conditions.append(Question.reviewed_by.is_(None))
        conditions.append(Question.status == QuestionStatus.OPEN)
    if reviewed_by:
        conditions.append(Question.reviewed_by == reviewed_by)

    total = (await db.execute(select(func.count(Question.id)).where(*conditions))).scalar() or 0
    stmt = (
        select(Question)
        .where(*conditions)
        .order_by(Question.is_pinned.desc(), Question.upvotes.desc(), Question.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    result = await db.execute(stmt)
    questions = await questions_to_out(db, list(result.scalars().all()))
    return QueueOut(questions=questions, total=total, limit=limit, offset=offset)


@router.post("/bulk-tag", response_model=BulkResult)
async def bulk_tag(
    payload: BulkTagRequest,
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Add or remove one tag on many questions; per-question results"""
    await require(db, principal, Action.BULK_TAG, Target.tenant_wide(tenant.tenant_id))
    tag = (await db.execute(tenant_select(Tag, tenant).where(Tag.id == payload.tag_id))).scalar_one_or_none()
    if not tag:
        raise HTTPException(status_code=404, detail="Tag not found")
    tag_id, tag_name = tag.id, tag.name

    async def mutate(question: Question) -> None:
        link = (await db.execute(
            select(QuestionTag).where(QuestionTag.question_id == question.id, QuestionTag.tag_id == tag_id)
        )).scalar_one_or_none()
        if payload.action == "add" and link is None:
            db.add(QuestionTag(question_id=question.id, tag_id=tag_id, created_by=principal.id))
        elif payload.action == "remove" and link is not None:
            await db.delete(link)

    result, touched_teams = await _apply_per_item(
        db, tenant, principal, Action.BULK_TAG, payload.question_ids, mutate,
    )

    if result.success_count:
        audit.record(
            f"question.bulk_tag.{payload.action}", "Tag", tag_id,
            metadata={
                "tag_name": tag_name,
                "question_ids": [r.question_id for r in result.results if r.success],
                "success_count": result.success_count,
                "error_count": result.error_count,
            },
            team_id=_single_team(touched_teams),
        )
    return result


@router.post("/bulk-action", response_model=BulkResult)
async def bulk_action(
    payload: BulkActionRequest,
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Pin, unpin, freeze, unfreeze or delete many questions; delete needs admin"""
    action = BULK_ACTIONS[payload.action]
    await require(db, principal, action, Target.tenant_wide(tenant.tenant_id))

    async def mutate(question: Question) -> None:
        now = utcnow()
        if payload.action == "pin":
            question.is_pinned, question.pinned_by, question.pinned_at = True, principal.id, now
        elif payload.action == "unpin":
            question.is_pinned, question.pinned_by, question.pinned_at = False, None, None
        elif payload.action == "freeze":
            question.is_frozen, question.frozen_by, question.frozen_at = True, principal.id, now
        elif payload.action == "unfreeze":
            question.is_frozen, question.frozen_by, question.frozen_at = False, None, None
        elif payload.action == "delete":
            await db.execute(delete(QuestionTag).where(QuestionTag.question_id == question.id))
            await db.execute(delete(Upvote).where(Upvote.question_id == question.id))
            await db.delete(question)
            return
        db.add(question)

    result, touched_teams = await _apply_per_item(db, tenant, principal, action, payload.question_ids, mutate)

    if result.success_count:
        audit.record(
            f"question.bulk_{payload.action}", "Question", None,
            metadata={
                "question_ids": [r.question_id for r in result.results if r.success],
                "success_count": result.success_count,
                "error_count": result.error_count,
            },
            team_id=_single_team(touched_teams),
        )
    return result


@router.get("/stats")
async def moderation_stats(
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    team_id: Optional[str] = None,
):
    """Per-moderator activity over the questions in the caller's scope"""
    scope = await scope_for_team_filter(db, tenant, principal, Action.VIEW_MODERATION_STATS, team_id)
    result = await db.execute(select(Question).where(build_filter(scope, tenant, Question)))
    questions = list(result.scalars().all())

    activity: Dict[str, Dict[str, list]] = defaultdict(
        lambda: {"reviewed": [], "answered": [], "pinned": [], "frozen": [], "response_minutes": []}
    )
    for q in questions:
        if q.reviewed_by:
            activity[q.reviewed_by]["reviewed"].append(q.id)
            if q.status == QuestionStatus.ANSWERED:
                activity[q.reviewed_by]["answered"].append(q.id)
                minutes = _minutes_between(q.created_at, q.responded_at)
                if minutes is not None:
                    activity[q.reviewed_by]["response_minutes"].append(minutes)
        if q.is_pinned and q.pinned_by:
            activity[q.pinned_by]["pinned"].append(q.id)
        if q.is_frozen and q.frozen_by:
            activity[q.frozen_by]["frozen"].append(q.id)

    users: Dict[str, User] = {}
    if activity:
        user_result = await db.execute(tenant_select(User, tenant).where(User.id.in_(list(activity))))
        users = {u.id: u for u in user_result.scalars().all()}

    moderators = []
    for user_id, stats in activity.items():
        user = users.get(user_id)
        moderators.append({
            "user_id": user_id,
            "email": user.email if user else None,
            "name": user.name if user else None,
            "questions_reviewed": len(stats["reviewed"]),
            "questions_answered": len(stats["answered"]),
            "questions_pinned": len(stats["pinned"]),
            "questions_frozen": len(stats["frozen"]),
            "avg_response_time_minutes": _average(stats["response_minutes"]),
        })
    moderators.sort(key=lambda m: m["questions_reviewed"], reverse=True)

    all_minutes = [
        m for m in (_minutes_between(q.created_at, q.responded_at) for q in questions
                    if q.status == QuestionStatus.ANSWERED)
        if m is not None
    ]
    return {
        "moderators": moderators,
        "overall": {
            "total_questions": len(questions),
            "open": sum(1 for q in questions if q.status == QuestionStatus.OPEN),
            "answered": sum(1 for q in questions if q.status == QuestionStatus.ANSWERED),
            "under_review": sum(1 for q in questions if q.status == QuestionStatus.UNDER_REVIEW),
            "pinned": sum(1 for q in questions if q.is_pinned),
            "frozen": sum(1 for q in questions if q.is_frozen),
            "avg_response_time_minutes": _average(all_minutes),
        },
    }
