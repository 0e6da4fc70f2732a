# authorization.py — Team-scoped authorization gate
# authorize(db, principal, action, target) -> Allow(scope) | Deny(reason)
#
# Evaluation order:
#   1. no principal                       -> NotAuthenticated
#   2. target in another tenant           -> CrossTenant
#   3. forbidden action / last owner      -> LastOwnerProtected (applies to the admin key too)
#   4. bootstrap principal                -> Allow(GlobalScope)
#   5. tenant-wide target                 -> Allow(TeamSetScope) over teams with role >= required
#   6. team target                        -> membership + rank check -> Allow(TeamScope)

import logging
from dataclasses import dataclass
from typing import FrozenSet, List, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import BootstrapPrincipal, Principal
from errors import AuthorizationError, DenyReason
from models import Question, Role, Team, TeamMembership
from rbac import (
    Action, FORBIDDEN, MEMBERSHIP_ACTIONS,
    at_least, rank, required_role, roles_at_least,
)

logger = logging.getLogger("pulsestage.authorization")


# ============================================================
# SCOPES & DECISIONS
# ============================================================

@dataclass(frozen=True)
class GlobalScope:
    """Whole tenant (bootstrap credential only)."""


@dataclass(frozen=True)
class TeamScope:
    team_id: str


@dataclass(frozen=True)
class TeamSetScope:
    team_ids: FrozenSet[str]


Scope = Union[GlobalScope, TeamScope, TeamSetScope]


@dataclass(frozen=True)
class Allow:
    scope: Scope
    allowed = True


@dataclass(frozen=True)
class Deny:
    reason: DenyReason
    message: str
    allowed = False


Decision = Union[Allow, Deny]


@dataclass(frozen=True)
class Target:
    """What an action is aimed at. team_id None means a tenant-wide resource."""
    tenant_id: str
    team_id: Optional[str] = None
    # Membership actions: the member being changed and the role being granted
    member_user_id: Optional[str] = None
    member_role: Optional[Role] = None
    new_role: Optional[Role] = None

    @classmethod
    def tenant_wide(cls, tenant_id: str) -> "Target":
        return cls(tenant_id=tenant_id)

    @classmethod
    def for_team(cls, team: Team) -> "Target":
        return cls(tenant_id=team.tenant_id, team_id=team.id)

    @classmethod
    def for_question(cls, question: Question) -> "Target":
        return cls(tenant_id=question.tenant_id, team_id=question.team_id)

    @classmethod
    def for_membership(
        cls, team: Team, membership: TeamMembership, new_role: Optional[Role] = None,
    ) -> "Target":
        return cls(
            tenant_id=team.tenant_id,
            team_id=team.id,
            member_user_id=membership.user_id,
            member_role=membership.role,
            new_role=new_role,
        )


# ============================================================
# MEMBERSHIP RESOLVER
# ============================================================

async def effective_role(
    db: AsyncSession, tenant_id: str, user_id: str, team_id: str,
) -> Optional[Role]:
    """Role of user in team, or None. Joined through Team so it never crosses tenants."""
    stmt = (
        select(TeamMembership.role)
        .join(Team, Team.id == TeamMembership.team_id)
        .where(
            TeamMembership.user_id == user_id,
            TeamMembership.team_id == team_id,
            Team.tenant_id == tenant_id,
        )
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def teams_with_role_at_least(
    db: AsyncSession, tenant_id: str, user_id: str, threshold: Role,
) -> List[str]:
    stmt = (
        select(TeamMembership.team_id)
        .join(Team, Team.id == TeamMembership.team_id)
        .where(
            TeamMembership.user_id == user_id,
            Team.tenant_id == tenant_id,
            TeamMembership.role.in_(roles_at_least(threshold)),
        )
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _has_any_membership(db: AsyncSession, tenant_id: str, user_id: str) -> bool:
    stmt = (
        select(func.count(TeamMembership.id))
        .join(Team, Team.id == TeamMembership.team_id)
        .where(TeamMembership.user_id == user_id, Team.tenant_id == tenant_id)
    )
    result = await db.execute(stmt)
    return (result.scalar() or 0) > 0


async def count_owners(db: AsyncSession, team_id: str) -> int:
    """Owner memberships of a team, row-locked where the database supports it.

    Runs inside the caller's transaction so the count and the following write
    see the same membership state.
    """
    stmt = (
        select(TeamMembership.id)
        .where(TeamMembership.team_id == team_id, TeamMembership.role == Role.OWNER)
        .with_for_update()
    )
    result = await db.execute(stmt)
    return len(result.scalars().all())


async def _would_remove_last_owner(db: AsyncSession, action: Action, target: Target) -> bool:
    if target.member_role != Role.OWNER or target.team_id is None:
        return False
    if action == Action.CHANGE_MEMBER_ROLE and target.new_role == Role.OWNER:
        return False
    return await count_owners(db, target.team_id) <= 1


# ============================================================
# GATE
# ============================================================

async def authorize(
    db: AsyncSession,
    principal: Optional[Principal],
    action: Action,
    target: Target,
) -> Decision:
    requirement = required_role(action)

    if principal is None:
        return Deny(DenyReason.NOT_AUTHENTICATED, "Authentication required")

    if target.tenant_id != principal.tenant_id:
        return Deny(DenyReason.CROSS_TENANT, "Not found")

    if requirement is FORBIDDEN:
        return Deny(DenyReason.LAST_OWNER_PROTECTED, "Cannot remove the last owner of a team")
    if action in MEMBERSHIP_ACTIONS and await _would_remove_last_owner(db, action, target):
        return Deny(
            DenyReason.LAST_OWNER_PROTECTED,
            "Cannot remove or demote the last owner of a team. Assign another owner first.",
        )

    if isinstance(principal, BootstrapPrincipal):
        return Allow(GlobalScope())

    if target.team_id is None:
        team_ids = await teams_with_role_at_least(db, target.tenant_id, principal.id, requirement)
        if team_ids:
            return Allow(TeamSetScope(frozenset(team_ids)))
        if await _has_any_membership(db, target.tenant_id, principal.id):
            return Deny(
                DenyReason.INSUFFICIENT_ROLE,
                f"Requires {requirement.value} role in at least one team",
            )
        return Deny(DenyReason.NOT_A_MEMBER, "You are not a member of any team")

    role = await effective_role(db, target.tenant_id, principal.id, target.team_id)
    if role is None:
        return Deny(DenyReason.NOT_A_MEMBER, "You are not a member of this team")
    if not at_least(role, requirement):
        return Deny(
            DenyReason.INSUFFICIENT_ROLE,
            f"Requires {requirement.value} role, you have {role.value}",
        )

    if target.member_role is not None and rank(target.member_role) > rank(role):
        return Deny(DenyReason.INSUFFICIENT_ROLE, "Cannot modify a member with a higher role than yours")
    if target.new_role is not None and rank(target.new_role) > rank(role):
        return Deny(DenyReason.INSUFFICIENT_ROLE, "Cannot grant a role higher than your own")

    return Allow(TeamScope(target.team_id))


def enforce(decision: Decision, action: Action) -> Scope:
    """Return the allowed scope or raise the deny as an AuthorizationError."""
    if isinstance(decision, Allow):
        return decision.scope
    logger.warning(f"Denied {action.value}: {decision.reason.value} ({decision.message})")
    raise AuthorizationError(decision.reason, decision.message)


async def require(
    db: AsyncSession,
    principal: Optional[Principal],
    action: Action,
    target: Target,
) -> Scope:
    return enforce(await authorize(db, principal, action, target), action)
