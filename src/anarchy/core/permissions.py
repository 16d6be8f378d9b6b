"""Permission resolution against a guild's configuration.

Resolution order for a named permission:
    1. guild owner -> granted
    2. user in the guild's admin-user list -> granted
    3. any of the user's roles in the admin-role list -> granted
    4. any of the user's roles mapped to the permission -> granted
    otherwise denied.

Any failure while loading the guild config denies. This service never grants
on error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from anarchy.models.guild_config import PERMISSION_NAMES, normalize_permission_name

if TYPE_CHECKING:
    from anarchy.db.repository import GuildConfigRepository
    from anarchy.models.guild_config import GuildConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PermissionContext:
    """Who is acting, built fresh for each Discord interaction. Never persisted."""

    guild_id: str
    user_id: str
    user_roles: frozenset[str] = field(default_factory=frozenset)
    is_guild_owner: bool = False


class PermissionDeniedError(Exception):
    """Raised by services when the acting user lacks a required permission."""


class PermissionService:
    def __init__(self, guild_config_repo: GuildConfigRepository) -> None:
        self.guild_config_repo = guild_config_repo

    async def _load_config(self, context: PermissionContext) -> GuildConfig:
        return await self.guild_config_repo.ensure_guild_config(context.guild_id)

    async def has_action_permission(self, context: PermissionContext, permission: str) -> bool:
        permission = normalize_permission_name(permission)
        if context.is_guild_owner:
            return True
        try:
            config = await self._load_config(context)
        except Exception:  # Any lookup failure denies
            logger.exception(
                "permission_lookup_failed guild_id=%s user_id=%s permission=%s",
                context.guild_id,
                context.user_id,
                permission,
            )
            return False

        if context.user_id in config.admin_users:
            return True
        if context.user_roles & set(config.admin_roles):
            return True
        granted = bool(context.user_roles & set(config.roles_for(permission)))
        if not granted:
            logger.debug(
                "permission_denied guild_id=%s user_id=%s permission=%s",
                context.guild_id,
                context.user_id,
                permission,
            )
        return granted

    async def is_admin(self, context: PermissionContext) -> bool:
        return context.is_guild_owner or await self.has_action_permission(context, "admin")

    async def can_manage_config(self, context: PermissionContext) -> bool:
        return await self.is_admin(context) or await self.has_action_permission(context, "config")

    async def has_senior_staff_permission_with_context(self, context: PermissionContext) -> bool:
        return await self.has_action_permission(context, "senior-staff")

    async def has_lawyer_permission_with_context(self, context: PermissionContext) -> bool:
        return await self.has_action_permission(context, "lawyer")

    async def has_lead_attorney_permission_with_context(self, context: PermissionContext) -> bool:
        return await self.has_action_permission(context, "lead-attorney")

    # Legacy names kept for older command handlers.

    async def has_hr_permission_with_context(self, context: PermissionContext) -> bool:
        return await self.has_senior_staff_permission_with_context(context)

    async def has_retainer_permission_with_context(self, context: PermissionContext) -> bool:
        return await self.has_lawyer_permission_with_context(context)

    async def get_permission_summary(self, context: PermissionContext) -> dict[str, bool]:
        """Every known permission evaluated on its own, plus ``is_admin``/``is_guild_owner``.

        Admin status is reported under ``admin`` only. The other permissions are
        judged against the user's actual role membership so the summary shows
        what the roles grant, not what admin override implies.
        """
        summary: dict[str, bool] = {name: False for name in PERMISSION_NAMES}
        is_admin = await self.is_admin(context)
        try:
            config = await self._load_config(context)
        except Exception:  # Any lookup failure denies
            logger.exception("permission_summary_failed guild_id=%s", context.guild_id)
            config = None

        for name in PERMISSION_NAMES:
            if name == "admin":
                summary[name] = is_admin
            elif context.is_guild_owner:
                summary[name] = True
            elif config is not None:
                summary[name] = bool(context.user_roles & set(config.roles_for(name)))

        summary["is_admin"] = is_admin
        summary["is_guild_owner"] = context.is_guild_owner
        return summary
