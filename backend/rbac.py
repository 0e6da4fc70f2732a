# rbac.py — Role hierarchy and permission matrix
# - Roles are per team, strictly ordered viewer < member < moderator < admin < owner
# - Every privileged action is registered with the minimum role it needs
# - The matrix is checked for completeness when this module is imported

from enum import Enum as PyEnum
from typing import Dict, Optional, Union

from models import Role


class InvalidRole(ValueError):
    """A role string that is not one of the five known roles."""


class UnknownAction(LookupError):
    """An action that was never registered in the permission matrix."""


# ============================================================
# ROLE HIERARCHY
# ============================================================

ROLE_ORDER = (Role.VIEWER, Role.MEMBER, Role.MODERATOR, Role.ADMIN, Role.OWNER)

ROLE_HIERARCHY: Dict[Role, int] = {role: level for level, role in enumerate(ROLE_ORDER, start=1)}

if set(ROLE_HIERARCHY) != set(Role):
    raise RuntimeError(f"ROLE_ORDER does not rank every role: {sorted(set(Role) - set(ROLE_HIERARCHY))}")


def parse_role(value: Union[str, Role]) -> Role:
    """Convert a raw role string to a Role. Raises InvalidRole instead of coercing."""
    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        raise InvalidRole(f"Unknown role: {value!r}") from None


def rank(role: Union[str, Role]) -> int:
    return ROLE_HIERARCHY[parse_role(role)]


def at_least(role: Union[str, Role], threshold: Union[str, Role]) -> bool:
    return rank(role) >= rank(threshold)


def roles_at_least(threshold: Role) -> list:
    """All roles ranked at or above threshold, lowest first."""
    return [r for r in ROLE_ORDER if at_least(r, threshold)]


# ============================================================
# PERMISSION MATRIX
# ============================================================

class Action(str, PyEnum):
    RESPOND_TO_QUESTION = "respondToQuestion"
    PIN_QUESTION = "pinQuestion"
    FREEZE_QUESTION = "freezeQuestion"
    TAG_QUESTION = "tagQuestion"
    BULK_TAG = "bulkTag"
    BULK_PIN = "bulkAction:pin"
    BULK_UNPIN = "bulkAction:unpin"
    BULK_FREEZE = "bulkAction:freeze"
    BULK_UNFREEZE = "bulkAction:unfreeze"
    BULK_DELETE = "bulkAction:delete"
    VIEW_MODERATION_QUEUE = "viewModerationQueue"
    VIEW_MODERATION_STATS = "viewModerationStats"
    CREATE_TAG = "createTag"
    MANAGE_TEAM_MEMBERS = "manageTeamMembers"
    CHANGE_MEMBER_ROLE = "changeMemberRole"
    REMOVE_TEAM_MEMBER = "removeTeamMember"
    MANAGE_TEAM_SETTINGS = "manageTeamSettings"
    CREATE_TEAM = "createTeam"
    VIEW_AUDIT_LOG = "viewAuditLog"
    MANAGE_TENANT_SETTINGS = "manageTenantSettings"
    VIEW_TENANT_USERS = "viewTenantUsers"
    EXPORT_DATA = "exportData"
    REMOVE_LAST_OWNER = "removeLastOwner"


# None marks an action no role may perform
FORBIDDEN = None

_REQUIRED_ROLES: Dict[Action, Optional[Role]] = {
    Action.RESPOND_TO_QUESTION: Role.MODERATOR,
    Action.PIN_QUESTION: Role.MODERATOR,
    Action.FREEZE_QUESTION: Role.MODERATOR,
    Action.TAG_QUESTION: Role.MODERATOR,
    Action.BULK_TAG: Role.MODERATOR,
    Action.BULK_PIN: Role.MODERATOR,
    Action.BULK_UNPIN: Role.MODERATOR,
    Action.BULK_FREEZE: Role.MODERATOR,
    Action.BULK_UNFREEZE: Role.MODERATOR,
    Action.BULK_DELETE: Role.ADMIN,
    Action.VIEW_MODERATION_QUEUE: Role.MODERATOR,
    Action.VIEW_MODERATION_STATS: Role.MODERATOR,
    Action.CREATE_TAG: Role.MODERATOR,
    Action.MANAGE_TEAM_MEMBERS: Role.ADMIN,
    Action.CHANGE_MEMBER_ROLE: Role.ADMIN,
    Action.REMOVE_TEAM_MEMBER: Role.ADMIN,
    Action.MANAGE_TEAM_SETTINGS: Role.ADMIN,
    Action.CREATE_TEAM: Role.ADMIN,
    Action.VIEW_AUDIT_LOG: Role.ADMIN,
    Action.MANAGE_TENANT_SETTINGS: Role.ADMIN,
    Action.VIEW_TENANT_USERS: Role.ADMIN,
    Action.EXPORT_DATA: Role.ADMIN,
    Action.REMOVE_LAST_OWNER: FORBIDDEN,
}

_unregistered = set(Action) - set(_REQUIRED_ROLES)
if _unregistered:
    raise RuntimeError(
        "Actions missing from the permission matrix: "
        + ", ".join(sorted(a.value for a in _unregistered))
    )

BULK_ACTIONS: Dict[str, Action] = {
    "pin": Action.BULK_PIN,
    "unpin": Action.BULK_UNPIN,
    "freeze": Action.BULK_FREEZE,
    "unfreeze": Action.BULK_UNFREEZE,
    "delete": Action.BULK_DELETE,
}

# Actions whose target is a single team membership
MEMBERSHIP_ACTIONS = frozenset({Action.CHANGE_MEMBER_ROLE, Action.REMOVE_TEAM_MEMBER})


def required_role(action: Action) -> Optional[Role]:
    """Minimum role for an action, or FORBIDDEN (None) when no role may perform it."""
    if not isinstance(action, Action):
        raise UnknownAction(f"Unregistered action: {action!r}")
    return _REQUIRED_ROLES[action]


def is_forbidden(action: Action) -> bool:
    return required_role(action) is FORBIDDEN
