# routers/users.py — The signed-in user's profile, questions, teams and preferences
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import TeamMemberPrincipal, get_current_user
from database import get_db_session
from models import Question, Team, TeamMembership, User, UserPreferences
from routers.questions import QuestionOut, questions_to_out
from scoping import tenant_select
from tenancy import TenantScope, get_tenant

router = APIRouter(prefix="/api/v1/users", tags=["Users"])


# --- Schemas ---

class PreferencesUpdate(BaseModel):
    favorite_teams: Optional[List[str]] = None
    default_team_id: Optional[str] = None


# --- Helpers ---

async def _memberships(db: AsyncSession, tenant: TenantScope, user_id: str) -> List[dict]:
    stmt = (
        select(TeamMembership, Team)
        .join(Team, Team.id == TeamMembership.team_id)
        .where(TeamMembership.user_id == user_id, Team.tenant_id == tenant.tenant_id)
        .order_by(Team.name)
    )
    result = await db.execute(stmt)
    return [
        {
            "team_id": team.id,
            "name": team.name,
            "slug": team.slug,
            "is_active": team.is_active,
            "role": membership.role.value,
        }
        for membership, team in result.all()
    ]


# --- Endpoints ---

@router.get("/me")
async def get_me(
    tenant: TenantScope = Depends(get_tenant),
    user: TeamMemberPrincipal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    row = (await db.execute(tenant_select(User, tenant).where(User.id == user.id))).scalar_one()
    return {
        "id": row.id,
        "email": row.email,
        "name": row.name,
        "tenant_id": row.tenant_id,
        "primary_team_id": row.primary_team_id,
        "teams": await _memberships(db, tenant, row.id),
    }


@router.get("/me/questions", response_model=List[QuestionOut])
async def my_questions(
    tenant: TenantScope = Depends(get_tenant),
    user: TeamMemberPrincipal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    stmt = (
        tenant_select(Question, tenant)
        .where(Question.author_id == user.id)
        .order_by(Question.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    result = await db.execute(stmt)
    return await questions_to_out(db, list(result.scalars().all()))


@router.get("/me/teams")
async def my_teams(
    tenant: TenantScope = Depends(get_tenant),
    user: TeamMemberPrincipal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return await _memberships(db, tenant, user.id)


# --- Preferences ---

async def _preferences(db: AsyncSession, tenant: TenantScope, user_id: str) -> UserPreferences:
    result = await db.execute(tenant_select(UserPreferences, tenant).where(UserPreferences.user_id == user_id))
    prefs = result.scalar_one_or_none()
    if prefs is None:
        prefs = UserPreferences(user_id=user_id, tenant_id=tenant.tenant_id, favorite_teams=[])
        db.add(prefs)
    return prefs


async def _require_teams(db: AsyncSession, tenant: TenantScope, team_ids: List[str]) -> None:
    """404 unless every id is a team of this tenant"""
    if not team_ids:
        return
    result = await db.execute(tenant_select(Team, tenant).where(Team.id.in_(team_ids)))
    found = {t.id for t in result.scalars().all()}
    missing = [t for t in team_ids if t not in found]
    if missing:
        raise HTTPException(status_code=404, detail=f"Team not found: {missing[0]}")


def _preferences_to_out(prefs: UserPreferences) -> dict:
    return {"favorite_teams": list(prefs.favorite_teams or []), "default_team_id": prefs.default_team_id}


@router.get("/me/preferences")
async def get_preferences(
    tenant: TenantScope = Depends(get_tenant),
    user: TeamMemberPrincipal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    result = await db.execute(tenant_select(UserPreferences, tenant).where(UserPreferences.user_id == user.id))
    prefs = result.scalar_one_or_none()
    if prefs is None:
        return {"favorite_teams": [], "default_team_id": None}
    return _preferences_to_out(prefs)


@router.put("/me/preferences")
async def update_preferences(
    payload: PreferencesUpdate,
    tenant: TenantScope = Depends(get_tenant),
    user: TeamMemberPrincipal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Replace favorite teams and/or the default team; omitted fields are kept"""
    updates = payload.model_dump(exclude_unset=True)
    if updates.get("favorite_teams") is not None:
        # Keep the first occurrence of each id
        updates["favorite_teams"] = list(dict.fromkeys(updates["favorite_teams"]))
        await _require_teams(db, tenant, updates["favorite_teams"])
    if updates.get("default_team_id"):
        await _require_teams(db, tenant, [updates["default_team_id"]])

    prefs = await _preferences(db, tenant, user.id)
    if updates.get("favorite_teams") is not None:
        prefs.favorite_teams = updates["favorite_teams"]
    if "default_team_id" in updates:
        prefs.default_team_id = updates["default_team_id"]
    await db.commit()
    return _preferences_to_out(prefs)


@router.post("/me/teams/{team_id}/favorite")
async def toggle_favorite_team(
    team_id: str,
    tenant: TenantScope = Depends(get_tenant),
    user: TeamMemberPrincipal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _require_teams(db, tenant, [team_id])
    prefs = await _preferences(db, tenant, user.id)

    favorites = list(prefs.favorite_teams or [])
    if team_id in favorites:
        favorites.remove(team_id)
    else:
        favorites.append(team_id)
    # Assign a new list so the JSON column is flagged dirty
    prefs.favorite_teams = favorites
    await db.commit()
    return {"team_id": team_id, "is_favorite": team_id in favorites}
