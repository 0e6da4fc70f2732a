# settings_service.py — Tenant settings stored as JSON, merged over defaults
import copy
import re
from typing import Any, Dict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import TenantSettings
from rbac import InvalidRole, parse_role

DEFAULT_SETTINGS: Dict[str, Any] = {
    "questions": {
        "min_length": 10,
        "max_length": 2000,
    },
    "users": {
        "default_role": "member",
    },
    "security": {
        "session_timeout": 8,  # hours
    },
    "branding": {
        "primary_color": "#3B82F6",
        "accent_color": "#10B981",
        "logo_url": None,
    },
    "features": {
        "allow_anonymous_questions": True,
    },
}

_HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")


class SettingsValidationError(ValueError):
    pass


def deep_merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge updates into a copy of base. Non-dict values replace."""
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _int_in_range(settings: Dict[str, Any], section: str, key: str, low: int, high: int) -> int:
    value = settings[section][key]
    if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
        raise SettingsValidationError(f"{section}.{key} must be an integer between {low} and {high}")
    return value


def validate_settings(settings: Dict[str, Any]) -> None:
    for section in DEFAULT_SETTINGS:
        if not isinstance(settings.get(section), dict):
            raise SettingsValidationError(f"{section} must be an object")

    min_length = _int_in_range(settings, "questions", "min_length", 1, 2000)
    max_length = _int_in_range(settings, "questions", "max_length", 10, 5000)
    if min_length >= max_length:
        raise SettingsValidationError("questions.min_length must be less than questions.max_length")

    try:
        parse_role(settings["users"]["default_role"])
    except InvalidRole as e:
        raise SettingsValidationError(f"users.default_role: {e}") from None

    _int_in_range(settings, "security", "session_timeout", 1, 720)

    for key in ("primary_color", "accent_color"):
        color = settings["branding"].get(key)
        if color and not _HEX_COLOR.match(str(color)):
            raise SettingsValidationError(f"branding.{key} must be a hex color like #3B82F6")

    if not isinstance(settings["features"]["allow_anonymous_questions"], bool):
        raise SettingsValidationError("features.allow_anonymous_questions must be a boolean")


async def get_tenant_settings(db: AsyncSession, tenant_id: str) -> Dict[str, Any]:
    result = await db.execute(select(TenantSettings).where(TenantSettings.tenant_id == tenant_id))
    row = result.scalar_one_or_none()
    if row is None:
        return copy.deepcopy(DEFAULT_SETTINGS)
    return deep_merge(DEFAULT_SETTINGS, row.settings or {})


async def update_tenant_settings(
    db: AsyncSession, tenant_id: str, updates: Dict[str, Any],
) -> Dict[str, Any]:
    """Merge, validate and upsert. Raises SettingsValidationError; caller commits."""
    current = await get_tenant_settings(db, tenant_id)
    new_settings = deep_merge(current, updates)
    validate_settings(new_settings)

    result = await db.execute(select(TenantSettings).where(TenantSettings.tenant_id == tenant_id))
    row = result.scalar_one_or_none()
    if row is None:
        db.add(TenantSettings(tenant_id=tenant_id, settings=new_settings))
    else:
        row.settings = new_settings
        db.add(row)
    return new_settings
