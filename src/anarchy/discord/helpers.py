"""Discord bot helpers: permission context from an interaction, per-interaction service scope."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from anarchy.core.business_rules import BusinessRuleValidationService
from anarchy.core.cases import CaseService
from anarchy.core.cross_entity import CrossEntityValidationService
from anarchy.core.feedback import FeedbackService
from anarchy.core.permissions import PermissionContext, PermissionService
from anarchy.core.reminders import ReminderService
from anarchy.core.retainers import RetainerService
from anarchy.core.staff import StaffService
from anarchy.db.engine import get_session
from anarchy.db.repository import (
    CaseCounterRepository,
    CaseRepository,
    FeedbackRepository,
    GuildConfigRepository,
    ReminderRepository,
    RetainerRepository,
    StaffRepository,
)

if TYPE_CHECKING:
    import discord
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

    from anarchy.core.audit import AuditLogger

logger = logging.getLogger(__name__)


class GuildOnlyError(Exception):
    """Raised when a guild-scoped command is used outside a server."""


def build_permission_context(interaction: discord.Interaction) -> PermissionContext:
    """Resolve who is acting. Raises GuildOnlyError in DMs."""
    guild = interaction.guild
    if guild is None:
        raise GuildOnlyError("This command can only be used in a server.")
    roles = getattr(interaction.user, "roles", [])
    return PermissionContext(
        guild_id=str(guild.id),
        user_id=str(interaction.user.id),
        user_roles=frozenset(str(r.id) for r in roles),
        is_guild_owner=guild.owner_id == interaction.user.id,
    )


@dataclass(frozen=True)
class ServiceScope:
    """Everything a command handler needs, bound to one session."""

    session: AsyncSession
    guild_configs: GuildConfigRepository
    staff_repo: StaffRepository
    case_repo: CaseRepository
    reminder_repo: ReminderRepository
    retainer_repo: RetainerRepository
    feedback_repo: FeedbackRepository
    permissions: PermissionService
    validation: BusinessRuleValidationService
    cross_entity: CrossEntityValidationService
    cases: CaseService
    staff: StaffService
    reminders: ReminderService
    retainers: RetainerService
    feedback: FeedbackService


async def ensure_guild(engine: AsyncEngine, guild_id: str) -> None:
    """Create the guild's config row in its own short transaction.

    Keeps the first-access insert out of the handler's session, so permission
    lookups inside a scope are pure reads.
    """
    async with get_session(engine) as session:
        await GuildConfigRepository(session).ensure_guild_config(guild_id)


@asynccontextmanager
async def service_scope(
    engine: AsyncEngine, audit: AuditLogger | None = None
) -> AsyncGenerator[ServiceScope, None]:
    """Yield the service bundle bound to a fresh async session."""
    async with get_session(engine) as session:
        guild_configs = GuildConfigRepository(session)
        staff_repo = StaffRepository(session)
        case_repo = CaseRepository(session)
        reminder_repo = ReminderRepository(session)
        retainer_repo = RetainerRepository(session)
        feedback_repo = FeedbackRepository(session)
        permissions = PermissionService(guild_configs)
        validation = BusinessRuleValidationService(
            guild_configs, staff_repo, case_repo, permissions
        )
        yield ServiceScope(
            session=session,
            guild_configs=guild_configs,
            staff_repo=staff_repo,
            case_repo=case_repo,
            reminder_repo=reminder_repo,
            retainer_repo=retainer_repo,
            feedback_repo=feedback_repo,
            permissions=permissions,
            validation=validation,
            cross_entity=CrossEntityValidationService(staff_repo, case_repo, reminder_repo),
            cases=CaseService(
                case_repo, CaseCounterRepository(session), permissions, audit=audit
            ),
            staff=StaffService(staff_repo, permissions, validation, audit=audit),
            reminders=ReminderService(reminder_repo, staff_repo, case_repo),
            retainers=RetainerService(retainer_repo, permissions, audit=audit),
            feedback=FeedbackService(feedback_repo, staff_repo, audit=audit),
        )
