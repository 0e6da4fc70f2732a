# routers/teams.py — Teams and team membership management
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditRecorder, get_audit_recorder
from auth import Principal, TeamMemberPrincipal, get_principal
from authorization import Target, require
from database import get_db_session
from models import Question, QuestionStatus, Role, Team, TeamMembership, User
from rbac import Action, parse_role
from scoping import tenant_select
from settings_service import get_tenant_settings
from tenancy import TenantScope, get_tenant

router = APIRouter(prefix="/api/v1/teams", tags=["Teams"])

SLUG_PATTERN = r"^[a-z0-9-]+$"


# --- Schemas ---

class TeamCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    slug: str = Field(..., min_length=1, max_length=50, pattern=SLUG_PATTERN)
    description: Optional[str] = Field(default=None, max_length=500)


class TeamUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    is_active: Optional[bool] = None


class TeamOut(BaseModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    is_active: bool
    member_count: int = 0
    open_question_count: int = 0
    created_at: Optional[str] = None


class MemberAdd(BaseModel):
    user_id: str
    role: Optional[Role] = None


class MemberRoleUpdate(BaseModel):
    role: Role


class MemberOut(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    role: str
    joined_at: Optional[str] = None


# --- Helpers ---

def _team_to_out(team: Team, member_count: int = 0, open_count: int = 0) -> TeamOut:
    return TeamOut(
        id=team.id,
        name=team.name,
        slug=team.slug,
        description=team.description,
        is_active=bool(team.is_active),
        member_count=member_count,
        open_question_count=open_count,
        created_at=team.created_at.isoformat() if team.created_at else None,
    )


def _team_snapshot(team: Team) -> dict:
    return {"name": team.name, "description": team.description, "is_active": team.is_active}


async def _get_team_or_404(db: AsyncSession, tenant: TenantScope, team_id: str) -> Team:
    result = await db.execute(tenant_select(Team, tenant).where(Team.id == team_id))
    team = result.scalar_one_or_none()
    if not team:
        raise HTTPException(status_code=404, detail="Team not found")
    return team


async def _get_membership_or_404(db: AsyncSession, team: Team, user_id: str) -> TeamMembership:
    result = await db.execute(
        select(TeamMembership).where(TeamMembership.team_id == team.id, TeamMembership.user_id == user_id)
    )
    membership = result.scalar_one_or_none()
    if not membership:
        raise HTTPException(status_code=404, detail="Membership not found")
    return membership


def _counts_query(tenant: TenantScope):
    members = (
        select(TeamMembership.team_id, func.count(TeamMembership.id).label("members"))
        .group_by(TeamMembership.team_id)
        .subquery()
    )
    open_questions = (
        select(Question.team_id, func.count(Question.id).label("open"))
        .where(Question.tenant_id == tenant.tenant_id, Question.status == QuestionStatus.OPEN)
        .group_by(Question.team_id)
        .subquery()
    )
    return (
        select(Team, func.coalesce(members.c.members, 0), func.coalesce(open_questions.c.open, 0))
        .outerjoin(members, members.c.team_id == Team.id)
        .outerjoin(open_questions, open_questions.c.team_id == Team.id)
        .where(Team.tenant_id == tenant.tenant_id)
    )


# --- Endpoints ---

@router.get("", response_model=List[TeamOut])
async def list_teams(
    tenant: TenantScope = Depends(get_tenant),
    db: AsyncSession = Depends(get_db_session),
):
    """List active teams"""
    stmt = _counts_query(tenant).where(Team.is_active == True).order_by(Team.name)
    result = await db.execute(stmt)
    return [_team_to_out(team, members, open_count) for team, members, open_count in result.all()]


@router.get("/{slug}", response_model=TeamOut)
async def get_team_by_slug(
    slug: str,
    tenant: TenantScope = Depends(get_tenant),
    db: AsyncSession = Depends(get_db_session),
):
    result = await db.execute(_counts_query(tenant).where(Team.slug == slug))
    row = result.first()
    if not row:
        raise HTTPException(status_code=404, detail="Team not found")
    team, members, open_count = row
    return _team_to_out(team, members, open_count)


@router.post("", response_model=TeamOut, status_code=201)
async def create_team(
    payload: TeamCreate,
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Create a team. A signed-in creator becomes its owner."""
    await require(db, principal, Action.CREATE_TEAM, Target.tenant_wide(tenant.tenant_id))

    existing = await db.execute(tenant_select(Team, tenant).where(Team.slug == payload.slug))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=409, detail=f"Team slug '{payload.slug}' already exists")

    team = Team(
        tenant_id=tenant.tenant_id,
        name=payload.name.strip(),
        slug=payload.slug,
        description=payload.description,
        is_active=True,
    )
    db.add(team)
    await db.flush()
    if isinstance(principal, TeamMemberPrincipal):
        db.add(TeamMembership(user_id=principal.id, team_id=team.id, role=Role.OWNER))
    await db.commit()
    await db.refresh(team)

    audit.record(
        "team.create", "Team", team.id, after=_team_snapshot(team), metadata={"slug": team.slug}, team_id=team.id,
    )
    member_count = 1 if isinstance(principal, TeamMemberPrincipal) else 0
    return _team_to_out(team, member_count)


@router.patch("/{team_id}", response_model=TeamOut)
async def update_team(
    team_id: str,
    payload: TeamUpdate,
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    team = await _get_team_or_404(db, tenant, team_id)
    await require(db, principal, Action.MANAGE_TEAM_SETTINGS, Target.for_team(team))

    before = _team_snapshot(team)
    for field, value in payload.model_dump(exclude_unset=True).items():
        if field in ("name", "is_active") and value is None:
            continue
        setattr(team, field, value.strip() if field == "name" else value)
    db.add(team)
    await db.commit()
    await db.refresh(team)

    audit.record("team.update", "Team", team.id, before=before, after=_team_snapshot(team), team_id=team.id)
    return _team_to_out(team)


@router.delete("/{team_id}")
async def deactivate_team(
    team_id: str,
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Soft-delete: the team is deactivated, its questions and members are kept"""
    team = await _get_team_or_404(db, tenant, team_id)
    await require(db, principal, Action.MANAGE_TEAM_SETTINGS, Target.for_team(team))

    team.is_active = False
    db.add(team)
    await db.commit()

    audit.record(
        "team.deactivate", "Team", team.id,
        before={"is_active": True}, after={"is_active": False}, team_id=team.id,
    )
    return {"status": "deactivated", "team_id": team.id}


# --- Members ---

@router.get("/{team_id}/members", response_model=List[MemberOut])
async def list_members(
    team_id: str,
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
):
    team = await _get_team_or_404(db, tenant, team_id)
    stmt = (
        select(TeamMembership, User)
        .join(User, User.id == TeamMembership.user_id)
        .where(TeamMembership.team_id == team.id, User.tenant_id == tenant.tenant_id)
        .order_by(User.email)
    )
    result = await db.execute(stmt)
    return [
        MemberOut(
            user_id=user.id,
            email=user.email,
            name=user.name,
            role=membership.role.value,
            joined_at=membership.created_at.isoformat() if membership.created_at else None,
        )
        for membership, user in result.all()
    ]


@router.post("/{team_id}/members", response_model=MemberOut, status_code=201)
async def add_member(
    team_id: str,
    payload: MemberAdd,
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Add a user to the team. Role defaults to the tenant's users.default_role."""
    team = await _get_team_or_404(db, tenant, team_id)
    role = payload.role
    if role is None:
        settings = await get_tenant_settings(db, tenant.tenant_id)
        role = parse_role(settings["users"]["default_role"])

    target = Target(tenant_id=team.tenant_id, team_id=team.id, member_user_id=payload.user_id, new_role=role)
    await require(db, principal, Action.MANAGE_TEAM_MEMBERS, target)

    user = (await db.execute(tenant_select(User, tenant).where(User.id == payload.user_id))).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    existing = await db.execute(
        select(TeamMembership.id).where(TeamMembership.team_id == team.id, TeamMembership.user_id == user.id)
    )
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=409, detail="User is already a member of this team")

    membership = TeamMembership(user_id=user.id, team_id=team.id, role=role)
    db.add(membership)
    if user.primary_team_id is None:
        user.primary_team_id = team.id
        db.add(user)
    await db.commit()
    await db.refresh(membership)

    audit.record(
        "team.member.add", "TeamMembership", membership.id,
        after={"role": role.value},
        metadata={"team_id": team.id, "user_id": user.id},
    )
    return MemberOut(
        user_id=user.id, email=user.email, name=user.name, role=role.value,
        joined_at=membership.created_at.isoformat() if membership.created_at else None,
    )


@router.patch("/{team_id}/members/{user_id}", response_model=MemberOut)
async def change_member_role(
    team_id: str,
    user_id: str,
    payload: MemberRoleUpdate,
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Change a member's role. The last owner cannot be demoted."""
    team = await _get_team_or_404(db, tenant, team_id)
    membership = await _get_membership_or_404(db, team, user_id)
    # Owner count is read in this transaction and committed together with the change
    await require(db, principal, Action.CHANGE_MEMBER_ROLE, Target.for_membership(team, membership, payload.role))

    previous_role = membership.role
    membership.role = payload.role
    db.add(membership)
    await db.commit()

    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one()
    audit.record(
        "team.member.role_change", "TeamMembership", membership.id,
        before={"role": previous_role.value},
        after={"role": payload.role.value},
        metadata={"team_id": team.id, "user_id": user_id},
    )
    return MemberOut(
        user_id=user.id, email=user.email, name=user.name, role=payload.role.value,
        joined_at=membership.created_at.isoformat() if membership.created_at else None,
    )


@router.delete("/{team_id}/members/{user_id}")
async def remove_member(
    team_id: str,
    user_id: str,
    tenant: TenantScope = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Remove a member. The last owner cannot be removed, not even by themselves."""
    team = await _get_team_or_404(db, tenant, team_id)
    membership = await _get_membership_or_404(db, team, user_id)
    await require(db, principal, Action.REMOVE_TEAM_MEMBER, Target.for_membership(team, membership))

    removed_role = membership.role
    membership_id = membership.id
    await db.delete(membership)
    await db.commit()

    audit.record(
        "team.member.remove", "TeamMembership", membership_id,
        before={"role": removed_role.value},
        metadata={"team_id": team.id, "user_id": user_id},
    )
    return {"status": "removed", "team_id": team.id, "user_id": user_id}
