"""Case channels, channel permission sync, and channel archiving.

ChannelPermissionManager: re-applies per-member overwrites when staff are
    hired, fired, promoted or demoted.
CaseChannelArchiveService: moves closed case channels into a read-only
    archive category.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import discord

from anarchy.core.permissions import PermissionContext, PermissionDeniedError
from anarchy.models.case import generate_channel_name

if TYPE_CHECKING:
    from anarchy.core.audit import AuditLogger
    from anarchy.core.business_rules import BusinessRuleValidationService
    from anarchy.core.permissions import PermissionService
    from anarchy.db.repository import CaseRepository, GuildConfigRepository
    from anarchy.models.case import Case

logger = logging.getLogger(__name__)

ARCHIVE_PREFIX = "archived-"
ARCHIVE_CATEGORY_NAME = "Case Archives"
ARCHIVE_RETENTION_DAYS = 7

CHANNEL_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("case", re.compile(r"^case-|^aa-\d{4}-\d+-", re.IGNORECASE)),
    ("staff", re.compile(r"^staff-|^lawyer-|^paralegal-|^team-", re.IGNORECASE)),
    ("admin", re.compile(r"^admin-|^modlog", re.IGNORECASE)),
    ("legal-team", re.compile(r"^legal-team|^lawyer-lounge", re.IGNORECASE)),
)


@dataclass(frozen=True)
class ChannelAccess:
    view: bool
    send: bool
    manage: bool
    read_history: bool
    required_permission: str | None = None


_FULL = {"view": True, "send": True, "manage": True, "read_history": True}
_MEMBER = {"view": True, "send": True, "manage": False, "read_history": True}

# channel type -> staff role -> access. A role missing from a type gets no access.
PERMISSION_MATRIX: dict[str, dict[str, ChannelAccess]] = {
    "case": {
        "Managing Partner": ChannelAccess(**_FULL),
        "Senior Partner": ChannelAccess(**_FULL),
        "Junior Partner": ChannelAccess(**_MEMBER),
        "Senior Associate": ChannelAccess(**_MEMBER),
        "Junior Associate": ChannelAccess(**_MEMBER),
        "Paralegal": ChannelAccess(**_MEMBER),
    },
    "staff": {
        "Managing Partner": ChannelAccess(**_FULL, required_permission="senior-staff"),
        "Senior Partner": ChannelAccess(**_FULL, required_permission="senior-staff"),
        "Junior Partner": ChannelAccess(**_MEMBER, required_permission="lawyer"),
        "Senior Associate": ChannelAccess(**_MEMBER, required_permission="lawyer"),
        "Junior Associate": ChannelAccess(**_MEMBER, required_permission="lawyer"),
        "Paralegal": ChannelAccess(**_MEMBER),
    },
    "admin": {
        "Managing Partner": ChannelAccess(**_FULL, required_permission="admin"),
    },
    "legal-team": {
        "Managing Partner": ChannelAccess(**_FULL, required_permission="lawyer"),
        "Senior Partner": ChannelAccess(**_FULL, required_permission="lawyer"),
        "Junior Partner": ChannelAccess(**_MEMBER, required_permission="lawyer"),
        "Senior Associate": ChannelAccess(**_MEMBER, required_permission="lawyer"),
        "Junior Associate": ChannelAccess(**_MEMBER, required_permission="lawyer"),
    },
}


def detect_channel_type(channel_name: str) -> str:
    for channel_type, pattern in CHANNEL_PATTERNS:
        if pattern.search(channel_name):
            return channel_type
    return "unknown"


def calculate_channel_permissions(channel_type: str, role: str | None) -> ChannelAccess | None:
    if role is None:
        return None
    return PERMISSION_MATRIX.get(channel_type, {}).get(role)


def member_context(guild: discord.Guild, member: discord.Member) -> PermissionContext:
    return PermissionContext(
        guild_id=str(guild.id),
        user_id=str(member.id),
        user_roles=frozenset(str(r.id) for r in member.roles),
        is_guild_owner=guild.owner_id == member.id,
    )


# ---------------------------------------------------------------------------
# Case channel lifecycle
# ---------------------------------------------------------------------------


async def create_case_channel(
    guild: discord.Guild, case: Case, category_id: str | None = None
) -> str:
    """Create a private text channel for *case*. Returns the channel id."""
    category = guild.get_channel(int(category_id)) if category_id else None
    overwrites: dict[discord.Role | discord.Member, discord.PermissionOverwrite] = {
        guild.default_role: discord.PermissionOverwrite(view_channel=False),
    }
    client = guild.get_member(int(case.client_id))
    if client is not None:
        overwrites[client] = discord.PermissionOverwrite(
            view_channel=True, send_messages=True, read_message_history=True
        )
    channel = await guild.create_text_channel(
        generate_channel_name(case.case_number),
        category=category if isinstance(category, discord.CategoryChannel) else None,
        overwrites=overwrites,
        topic=f"{case.case_number}: {case.title}"[:1024],
        reason=f"Case {case.case_number} created",
    )
    logger.info("case_channel_created case_number=%s channel_id=%s", case.case_number, channel.id)
    return str(channel.id)


async def delete_channel(guild: discord.Guild, channel_id: str, reason: str = "") -> None:
    channel = guild.get_channel(int(channel_id))
    if channel is None:
        return
    await channel.delete(reason=reason or None)
    logger.info("channel_deleted channel_id=%s", channel_id)


# ---------------------------------------------------------------------------
# Permission sync
# ---------------------------------------------------------------------------


@dataclass
class ChannelPermissionUpdate:
    channel_id: str
    channel_name: str
    affected_user_id: str
    old_role: str | None
    new_role: str | None
    permissions_granted: list[str] = field(default_factory=list)
    permissions_revoked: list[str] = field(default_factory=list)


class ChannelPermissionManager:
    def __init__(
        self,
        case_repo: CaseRepository,
        validation: BusinessRuleValidationService,
        audit: AuditLogger | None = None,
    ) -> None:
        self.case_repo = case_repo
        self.validation = validation
        self.audit = audit

    async def validate_channel_access(
        self, context: PermissionContext, channel_type: str, role: str
    ) -> bool:
        access = calculate_channel_permissions(channel_type, role)
        if access is None:
            return False
        if access.required_permission is None:
            return True
        result = await self.validation.validate_permission(context, access.required_permission)
        return result.valid

    async def _channels_for(
        self, guild: discord.Guild, member: discord.Member
    ) -> list[discord.abc.GuildChannel]:
        channels: list[discord.abc.GuildChannel] = [
            c
            for c in [*guild.text_channels, *guild.categories]
            if detect_channel_type(c.name) != "unknown" or member in c.overwrites
        ]
        for case in await self.case_repo.find_cases_by_user_id(str(guild.id), str(member.id)):
            if case.channel_id and case.status != "closed":
                channel = guild.get_channel(int(case.channel_id))
                if channel is not None and channel not in channels:
                    channels.append(channel)
        return channels

    async def handle_role_change(
        self,
        guild: discord.Guild,
        member: discord.Member,
        old_role: str | None,
        new_role: str | None,
        change_type: str = "promotion",
    ) -> list[ChannelPermissionUpdate]:
        """Re-apply *member*'s overwrites on every relevant channel.

        Firing (or no new role) removes the member's overwrite. A channel that
        fails to update is logged and skipped.
        """
        context = member_context(guild, member)
        updates: list[ChannelPermissionUpdate] = []
        for channel in await self._channels_for(guild, member):
            try:
                update = await self._update_channel(
                    channel, member, context, old_role, new_role, change_type
                )
            except discord.HTTPException:
                logger.exception(
                    "channel_permission_update_failed channel_id=%s user_id=%s",
                    channel.id,
                    member.id,
                )
                continue
            if update is not None:
                updates.append(update)

        if updates and self.audit is not None:
            await self.audit.log_action(
                guild_id=str(guild.id),
                action="channel_permissions_updated",
                actor_id="System",
                target_id=str(member.id),
                details={
                    "change_type": change_type,
                    "channels_affected": len(updates),
                    "channels": [
                        {
                            "channel_id": u.channel_id,
                            "granted": u.permissions_granted,
                            "revoked": u.permissions_revoked,
                        }
                        for u in updates
                    ],
                },
            )
        logger.info(
            "channel_permissions_synced guild_id=%s user_id=%s change=%s channels=%d",
            guild.id,
            member.id,
            change_type,
            len(updates),
        )
        return updates

    async def _update_channel(
        self,
        channel: discord.abc.GuildChannel,
        member: discord.Member,
        context: PermissionContext,
        old_role: str | None,
        new_role: str | None,
        change_type: str,
    ) -> ChannelPermissionUpdate | None:
        channel_type = detect_channel_type(channel.name)
        new_access = calculate_channel_permissions(channel_type, new_role)
        old_access = calculate_channel_permissions(channel_type, old_role)
        if new_access is None and old_access is None:
            return None

        update = ChannelPermissionUpdate(
            channel_id=str(channel.id),
            channel_name=channel.name,
            affected_user_id=str(member.id),
            old_role=old_role,
            new_role=new_role,
        )
        if change_type == "fire" or new_access is None or new_role is None:
            await channel.set_permissions(member, overwrite=None)
            update.permissions_revoked.append("all")
            return update

        if not await self.validate_channel_access(context, channel_type, new_role):
            await channel.set_permissions(member, overwrite=None)
            update.permissions_revoked.append("all")
            return update

        await channel.set_permissions(
            member,
            view_channel=new_access.view or None,
            send_messages=new_access.send or None,
            read_message_history=new_access.read_history or None,
            manage_messages=new_access.manage or None,
        )
        for name in ("view", "send", "manage", "read_history"):
            if getattr(new_access, name):
                update.permissions_granted.append(name)
        return update


# ---------------------------------------------------------------------------
# Archiving
# ---------------------------------------------------------------------------


@dataclass
class ChannelArchiveResult:
    success: bool
    channel_id: str = ""
    channel_name: str = ""
    archive_category_id: str = ""
    case_id: str | None = None
    case_number: str | None = None
    reason: str = ""
    error: str | None = None


class CaseChannelArchiveService:
    def __init__(
        self,
        guild_config_repo: GuildConfigRepository,
        case_repo: CaseRepository,
        permission_service: PermissionService,
        audit: AuditLogger | None = None,
        retention_days: int = ARCHIVE_RETENTION_DAYS,
    ) -> None:
        self.guild_config_repo = guild_config_repo
        self.case_repo = case_repo
        self.permission_service = permission_service
        self.audit = audit
        self.retention_days = retention_days

    async def _require(self, context: PermissionContext) -> None:
        if not await self.permission_service.has_action_permission(context, "case"):
            raise PermissionDeniedError("You do not have permission to archive case channels")

    async def get_or_create_archive_category(self, guild: discord.Guild) -> discord.CategoryChannel:
        """The configured archive category, an existing "archive" category, or a new one."""
        config = await self.guild_config_repo.ensure_guild_config(str(guild.id))
        if config.case_archive_category_id:
            existing = guild.get_channel(int(config.case_archive_category_id))
            if isinstance(existing, discord.CategoryChannel):
                return existing

        category = next((c for c in guild.categories if "archive" in c.name.lower()), None)
        if category is None:
            category = await guild.create_category(
                ARCHIVE_CATEGORY_NAME,
                overwrites={guild.default_role: discord.PermissionOverwrite(send_messages=False)},
                reason="Case channel archive",
            )
            logger.info("archive_category_created guild_id=%s id=%s", guild.id, category.id)
        await self.guild_config_repo.set_case_archive_category(str(guild.id), str(category.id))
        await self.guild_config_repo.session.commit()
        return category

    async def archive_case_channel(
        self,
        guild: discord.Guild,
        case: Case,
        context: PermissionContext,
        reason: str = "Case closed",
    ) -> ChannelArchiveResult:
        await self._require(context)
        base = {"case_id": case.id, "case_number": case.case_number, "reason": reason}
        if not case.channel_id:
            return ChannelArchiveResult(
                success=False, error="Case has no associated channel", **base
            )
        channel = guild.get_channel(int(case.channel_id))
        if not isinstance(channel, discord.TextChannel):
            return ChannelArchiveResult(
                success=False,
                channel_id=case.channel_id,
                error="Channel not found in guild",
                **base,
            )

        try:
            category = await self.get_or_create_archive_category(guild)
            result = await self._archive(channel, category, reason, base)
        except discord.HTTPException as exc:
            logger.exception("channel_archive_failed channel_id=%s", case.channel_id)
            return ChannelArchiveResult(
                success=False, channel_id=case.channel_id, error=str(exc), **base
            )

        if self.audit is not None:
            await self.audit.log_action(
                guild_id=str(guild.id),
                action="channel_archived",
                actor_id=context.user_id,
                target_id=case.id,
                details={
                    "channel_id": result.channel_id,
                    "channel_name": result.channel_name,
                    "case_number": case.case_number,
                    "reason": reason,
                },
            )
        logger.info(
            "channel_archived guild_id=%s channel_id=%s case_number=%s",
            guild.id,
            result.channel_id,
            case.case_number,
        )
        return result

    async def _archive(
        self,
        channel: discord.TextChannel,
        category: discord.CategoryChannel,
        reason: str,
        base: dict[str, str | None],
    ) -> ChannelArchiveResult:
        name = channel.name
        if not name.startswith(ARCHIVE_PREFIX):
            name = f"{ARCHIVE_PREFIX}{name}"[:100]
        stamp = datetime.now(UTC).date().isoformat()
        overwrites = dict(channel.overwrites)
        overwrites[channel.guild.default_role] = discord.PermissionOverwrite(
            send_messages=False, view_channel=True, read_message_history=True
        )
        await channel.edit(
            name=name,
            category=category,
            topic=f"{channel.topic or ''} | Archived: {stamp} | {reason}"[:1024],
            overwrites=overwrites,
            reason=reason,
        )
        return ChannelArchiveResult(
            success=True,
            channel_id=str(channel.id),
            channel_name=name,
            archive_category_id=str(category.id),
            **base,
        )

    async def archive_closed_case_channels(
        self,
        guild: discord.Guild,
        context: PermissionContext,
        now: datetime | None = None,
    ) -> list[ChannelArchiveResult]:
        """Archive channels of cases closed at least ``retention_days`` ago."""
        await self._require(context)
        cutoff = (now or datetime.now(UTC)) - timedelta(days=self.retention_days)
        closed = await self.case_repo.find_by_guild_and_status(str(guild.id), "closed")
        due = [
            c
            for c in closed
            if c.channel_id and c.closed_at is not None and c.closed_at <= cutoff
        ]
        results: list[ChannelArchiveResult] = []
        for case in due:
            channel = guild.get_channel(int(case.channel_id or 0))
            if channel is not None and channel.name.startswith(ARCHIVE_PREFIX):
                continue
            results.append(await self.archive_case_channel(guild, case, context))
        logger.info(
            "closed_case_channels_archived guild_id=%s archived=%d failed=%d",
            guild.id,
            sum(1 for r in results if r.success),
            sum(1 for r in results if not r.success),
        )
        return results
