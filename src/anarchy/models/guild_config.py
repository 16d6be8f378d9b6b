"""Per-guild configuration: permission-to-role mapping, admin lists, categories."""

from __future__ import annotations

from pydantic import BaseModel, Field

# Every capability a guild can map Discord roles onto.
PERMISSION_NAMES: tuple[str, ...] = (
    "admin",
    "senior-staff",
    "case",
    "config",
    "lawyer",
    "lead-attorney",
    "repair",
)

# Older permission names still accepted from stored configs and commands.
LEGACY_PERMISSION_ALIASES: dict[str, str] = {
    "hr": "senior-staff",
    "retainer": "lawyer",
}


def normalize_permission_name(name: str) -> str:
    return LEGACY_PERMISSION_ALIASES.get(name, name)


def _empty_permissions() -> dict[str, list[str]]:
    return {name: [] for name in PERMISSION_NAMES}


class GuildConfig(BaseModel):
    """Read-mostly settings for one guild."""

    guild_id: str
    permissions: dict[str, list[str]] = Field(default_factory=_empty_permissions)
    admin_roles: list[str] = Field(default_factory=list)
    admin_users: list[str] = Field(default_factory=list)
    case_review_category_id: str | None = None
    case_archive_category_id: str | None = None

    def roles_for(self, permission: str) -> list[str]:
        return self.permissions.get(normalize_permission_name(permission), [])
