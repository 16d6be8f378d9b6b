"""Discord bot for Anarchy & Associates.

Slash commands for staff management, the case lifecycle, guild configuration,
reminders, client retainers and feedback. Every command runs its rule pipeline
through CommandValidationService before touching data; the guild owner may
override bypassable rules through a confirmation view.

The bot is optional: if DISCORD_BOT_TOKEN is not set, nothing starts.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import discord
from discord import Intents, app_commands
from discord.ext import commands
from sqlalchemy.exc import SQLAlchemyError

from anarchy.core.audit import AuditLogger
from anarchy.core.cases import CaseError
from anarchy.core.command_validation import (
    CommandValidationService,
    NamedRule,
    case_limit_rule,
    command_permission_rule,
    config_permission_rule,
    entity_rule,
    permission_rule,
    role_limit_rule,
    run_validation,
    staff_member_rule,
)
from anarchy.core.feedback import FeedbackError
from anarchy.core.permissions import PermissionDeniedError
from anarchy.core.reminders import ReminderError
from anarchy.core.retainers import RetainerError, format_retainer_agreement
from anarchy.core.rollback import RollbackService
from anarchy.core.transactional_cases import TransactionalCaseService
from anarchy.db.unit_of_work import UnitOfWorkFactory
from anarchy.discord.channels import (
    CaseChannelArchiveService,
    ChannelPermissionManager,
    create_case_channel,
    delete_channel,
)
from anarchy.discord.embeds import (
    build_bypass_embed,
    build_case_embed,
    build_case_list_embed,
    build_config_embed,
    build_error_embed,
    build_feedback_embed,
    build_firm_metrics_embed,
    build_integrity_report_embed,
    build_reminder_delivery_embed,
    build_reminder_embed,
    build_reminder_list_embed,
    build_retainer_agreement_embed,
    build_retainer_embed,
    build_retainer_list_embed,
    build_retainer_offer_embed,
    build_staff_embed,
    build_staff_list_embed,
    build_staff_metrics_embed,
    build_success_embed,
    build_validation_embed,
)
from anarchy.discord.helpers import (
    GuildOnlyError,
    ServiceScope,
    build_permission_context,
    ensure_guild,
    service_scope,
)
from anarchy.discord.views import BypassConfirmView
from anarchy.models.case import CaseCreationRequest
from anarchy.models.feedback import MAX_RATING, MIN_RATING
from anarchy.models.guild_config import PERMISSION_NAMES
from anarchy.models.staff import ROLE_HIERARCHY

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from anarchy.config import Settings
    from anarchy.core.permissions import PermissionContext
    from anarchy.models.case import Case
    from anarchy.models.reminder import Reminder
    from anarchy.models.staff import Staff, StaffOperationResult

logger = logging.getLogger(__name__)

RulesBuilder = Callable[[ServiceScope], Awaitable[list[NamedRule]]]
# Receives the scope and whether the guild owner confirmed an override.
Action = Callable[[ServiceScope, bool], Awaitable[discord.Embed]]

ROLE_CHOICES = [app_commands.Choice(name=role, value=role) for role in ROLE_HIERARCHY]
PRIORITY_CHOICES = [
    app_commands.Choice(name=p.capitalize(), value=p) for p in ("low", "medium", "high", "urgent")
]
RESULT_CHOICES = [
    app_commands.Choice(name=r.capitalize(), value=r)
    for r in ("win", "loss", "settlement", "dismissed", "withdrawn")
]
STATUS_CHOICES = [
    app_commands.Choice(name="Pending", value="pending"),
    app_commands.Choice(name="In Progress", value="in-progress"),
    app_commands.Choice(name="Closed", value="closed"),
]
PERMISSION_CHOICES = [app_commands.Choice(name=p, value=p) for p in PERMISSION_NAMES]

GENERIC_FAILURE = "Something went wrong. Please try again."
DATABASE_UNAVAILABLE = "The database is not available right now."


class CommandFailed(Exception):
    """A service reported failure without raising. The message is user-facing."""


def _staff_from_result(result: StaffOperationResult) -> Staff:
    if not result.success or result.staff is None:
        raise CommandFailed(result.error or GENERIC_FAILURE)
    return result.staff


def _require_guild(interaction: discord.Interaction) -> discord.Guild:
    if interaction.guild is None:
        raise CommandFailed("This command can only be used in a server.")
    return interaction.guild


class AnarchyBot(commands.Bot):
    """The Anarchy & Associates Discord bot."""

    def __init__(
        self,
        settings: Settings,
        engine: AsyncEngine | None = None,
    ) -> None:
        intents = Intents.default()
        intents.members = True  # Member lookups for channel overwrites and case clients

        super().__init__(
            command_prefix="!",
            intents=intents,
            description="Anarchy & Associates -- staff, cases, and reminders for the firm.",
        )
        self.settings = settings
        self.engine = engine
        self.audit = AuditLogger(engine) if engine is not None else None
        self.command_validation = CommandValidationService(
            bypass_ttl_seconds=settings.bypass_ttl_seconds
        )
        self.rollback_service = RollbackService(
            max_retries=settings.compensation_max_retries,
            base_delay=settings.compensation_retry_base_delay,
        )
        self.runner: asyncio.Task[None] | None = None
        self._setup_commands()

    def _setup_commands(self) -> None:
        """Register the slash command groups on the bot's command tree."""
        self._setup_staff_commands()
        self._setup_case_commands()
        self._setup_config_commands()
        self._setup_reminder_commands()
        self._setup_retainer_commands()
        self._setup_feedback_commands()

    # --- /staff ---

    def _setup_staff_commands(self) -> None:
        group = app_commands.Group(name="staff", description="Manage firm staff")

        @group.command(name="hire", description="Hire a new staff member")
        @app_commands.describe(
            user="The member to hire",
            role="Starting role",
            roblox_username="Their Roblox username",
            reason="Why they are being hired",
        )
        @app_commands.choices(role=ROLE_CHOICES)
        async def staff_hire(
            interaction: discord.Interaction,
            user: discord.Member,
            role: app_commands.Choice[str],
            roblox_username: str,
            reason: str = "",
        ) -> None:
            await self._handle_staff_hire(interaction, user, role.value, roblox_username, reason)

        @group.command(name="fire", description="Terminate a staff member")
        @app_commands.describe(user="The staff member to fire", reason="Why")
        async def staff_fire(
            interaction: discord.Interaction, user: discord.Member, reason: str = ""
        ) -> None:
            await self._handle_staff_fire(interaction, user, reason)

        @group.command(name="promote", description="Promote a staff member")
        @app_commands.describe(user="The staff member", role="Their new role", reason="Why")
        @app_commands.choices(role=ROLE_CHOICES)
        async def staff_promote(
            interaction: discord.Interaction,
            user: discord.Member,
            role: app_commands.Choice[str],
            reason: str = "",
        ) -> None:
            await self._handle_staff_role_change(interaction, user, role.value, reason, "promote")

        @group.command(name="demote", description="Demote a staff member")
        @app_commands.describe(user="The staff member", role="Their new role", reason="Why")
        @app_commands.choices(role=ROLE_CHOICES)
        async def staff_demote(
            interaction: discord.Interaction,
            user: discord.Member,
            role: app_commands.Choice[str],
            reason: str = "",
        ) -> None:
            await self._handle_staff_role_change(interaction, user, role.value, reason, "demote")

        @group.command(name="list", description="View the staff roster")
        @app_commands.describe(role="Only show this role")
        @app_commands.choices(role=ROLE_CHOICES)
        async def staff_list(
            interaction: discord.Interaction,
            role: app_commands.Choice[str] | None = None,
        ) -> None:
            await self._handle_staff_list(interaction, role.value if role else None)

        @group.command(name="info", description="View a staff member's record")
        @app_commands.describe(user="The staff member")
        async def staff_info(interaction: discord.Interaction, user: discord.Member) -> None:
            await self._handle_staff_info(interaction, user)

        self.tree.add_command(group)

    # --- /case ---

    def _setup_case_commands(self) -> None:
        group = app_commands.Group(name="case", description="Work with client cases")

        @group.command(name="create", description="Open a new case for a client")
        @app_commands.describe(
            client="The client",
            title="Short case title",
            description="What the case is about",
            priority="Case priority",
        )
        @app_commands.choices(priority=PRIORITY_CHOICES)
        async def case_create(
            interaction: discord.Interaction,
            client: discord.Member,
            title: str,
            description: str = "",
            priority: app_commands.Choice[str] | None = None,
        ) -> None:
            await self._handle_case_create(
                interaction, client, title, description, priority.value if priority else "medium"
            )

        @group.command(name="accept", description="Accept a pending case")
        @app_commands.describe(case_number="Case number (defaults to this channel's case)")
        async def case_accept(interaction: discord.Interaction, case_number: str = "") -> None:
            await self._handle_case_accept(interaction, case_number)

        @group.command(name="decline", description="Decline a case")
        @app_commands.describe(case_number="Case number", reason="Why it is declined")
        async def case_decline(
            interaction: discord.Interaction, case_number: str = "", reason: str = ""
        ) -> None:
            await self._handle_case_decline(interaction, case_number, reason)

        @group.command(name="close", description="Close an in-progress case")
        @app_commands.describe(
            result="Outcome of the case", notes="Closing notes", case_number="Case number"
        )
        @app_commands.choices(result=RESULT_CHOICES)
        async def case_close(
            interaction: discord.Interaction,
            result: app_commands.Choice[str],
            notes: str = "",
            case_number: str = "",
        ) -> None:
            await self._handle_case_close(interaction, case_number, result.value, notes)

        @group.command(name="assign", description="Assign a lawyer to a case")
        @app_commands.describe(
            lawyer="The lawyer to assign",
            lead="Make them lead attorney",
            case_number="Case number",
        )
        async def case_assign(
            interaction: discord.Interaction,
            lawyer: discord.Member,
            lead: bool = False,
            case_number: str = "",
        ) -> None:
            await self._handle_case_assign(interaction, case_number, lawyer, lead)

        @group.command(name="unassign", description="Remove a lawyer from a case")
        @app_commands.describe(lawyer="The lawyer to remove", case_number="Case number")
        async def case_unassign(
            interaction: discord.Interaction, lawyer: discord.Member, case_number: str = ""
        ) -> None:
            await self._handle_case_unassign(interaction, case_number, lawyer)

        @group.command(name="reassign", description="Move a lawyer from one case to another")
        @app_commands.describe(
            lawyer="The lawyer to move", from_case="Current case", to_case="New case"
        )
        async def case_reassign(
            interaction: discord.Interaction,
            lawyer: discord.Member,
            from_case: str,
            to_case: str,
        ) -> None:
            await self._handle_case_reassign(interaction, lawyer, from_case, to_case)

        @group.command(name="info", description="View a case")
        @app_commands.describe(case_number="Case number (defaults to this channel's case)")
        async def case_info(interaction: discord.Interaction, case_number: str = "") -> None:
            await self._handle_case_info(interaction, case_number)

        @group.command(name="list", description="List cases")
        @app_commands.describe(status="Only show this status")
        @app_commands.choices(status=STATUS_CHOICES)
        async def case_list(
            interaction: discord.Interaction,
            status: app_commands.Choice[str] | None = None,
        ) -> None:
            await self._handle_case_list(interaction, status.value if status else None)

        @group.command(name="note", description="Add a note to a case")
        @app_commands.describe(
            content="The note", internal="Staff-only note", case_number="Case number"
        )
        async def case_note(
            interaction: discord.Interaction,
            content: str,
            internal: bool = False,
            case_number: str = "",
        ) -> None:
            await self._handle_case_note(interaction, case_number, content, internal)

        @group.command(name="archive", description="Archive closed case channels")
        async def case_archive(interaction: discord.Interaction) -> None:
            await self._handle_case_archive(interaction)

        self.tree.add_command(group)

    # --- /config ---

    def _setup_config_commands(self) -> None:
        group = app_commands.Group(name="config", description="Server configuration")

        @group.command(name="set-permission", description="Map a Discord role onto a permission")
        @app_commands.describe(
            permission="The permission", role="The Discord role", remove="Remove the mapping"
        )
        @app_commands.choices(permission=PERMISSION_CHOICES)
        async def config_set_permission(
            interaction: discord.Interaction,
            permission: app_commands.Choice[str],
            role: discord.Role,
            remove: bool = False,
        ) -> None:
            await self._handle_config_set_permission(interaction, permission.value, role, remove)

        @group.command(name="add-admin", description="Grant a member admin rights")
        @app_commands.describe(user="The member")
        async def config_add_admin(interaction: discord.Interaction, user: discord.Member) -> None:
            await self._handle_config_admin(interaction, user, add=True)

        @group.command(name="remove-admin", description="Revoke a member's admin rights")
        @app_commands.describe(user="The member")
        async def config_remove_admin(
            interaction: discord.Interaction, user: discord.Member
        ) -> None:
            await self._handle_config_admin(interaction, user, add=False)

        @group.command(name="view", description="View the server configuration")
        async def config_view(interaction: discord.Interaction) -> None:
            await self._handle_config_view(interaction)

        @group.command(
            name="set-archive-category", description="Category that archived case channels move to"
        )
        @app_commands.describe(category="The category")
        async def config_set_archive_category(
            interaction: discord.Interaction, category: discord.CategoryChannel
        ) -> None:
            await self._handle_config_category(interaction, category, archive=True)

        @group.command(
            name="set-review-category", description="Category new case channels are created in"
        )
        @app_commands.describe(category="The category")
        async def config_set_review_category(
            interaction: discord.Interaction, category: discord.CategoryChannel
        ) -> None:
            await self._handle_config_category(interaction, category, archive=False)

        @group.command(name="integrity", description="Scan staff, cases and reminders for problems")
        async def config_integrity(interaction: discord.Interaction) -> None:
            await self._handle_config_integrity(interaction)

        self.tree.add_command(group)

    # --- /reminder ---

    def _setup_reminder_commands(self) -> None:
        group = app_commands.Group(name="reminder", description="Personal reminders")

        @group.command(name="set", description="Set a reminder")
        @app_commands.describe(time="When, e.g. 30m, 2h, 1d", message="What to remind you of")
        async def reminder_set(interaction: discord.Interaction, time: str, message: str) -> None:
            await self._handle_reminder_set(interaction, time, message)

        @group.command(name="list", description="View your active reminders")
        async def reminder_list(interaction: discord.Interaction) -> None:
            await self._handle_reminder_list(interaction)

        @group.command(name="cancel", description="Cancel one of your reminders")
        @app_commands.describe(reminder_id="Reminder ID (the first 8 characters are enough)")
        async def reminder_cancel(interaction: discord.Interaction, reminder_id: str) -> None:
            await self._handle_reminder_cancel(interaction, reminder_id)

        self.tree.add_command(group)

    # --- /retainer ---

    def _setup_retainer_commands(self) -> None:
        group = app_commands.Group(name="retainer", description="Client retainer agreements")

        @group.command(name="offer", description="Offer a retainer agreement to a client")
        @app_commands.describe(client="The client")
        async def retainer_offer(interaction: discord.Interaction, client: discord.Member) -> None:
            await self._handle_retainer_offer(interaction, client)

        @group.command(name="accept", description="Sign a retainer agreement offered to you")
        @app_commands.describe(
            retainer_id="Retainer ID from the offer", roblox_username="Your Roblox username"
        )
        async def retainer_accept(
            interaction: discord.Interaction, retainer_id: str, roblox_username: str
        ) -> None:
            await self._handle_retainer_accept(interaction, retainer_id, roblox_username)

        @group.command(name="cancel", description="Withdraw a pending retainer agreement")
        @app_commands.describe(retainer_id="Retainer ID")
        async def retainer_cancel(interaction: discord.Interaction, retainer_id: str) -> None:
            await self._handle_retainer_cancel(interaction, retainer_id)

        @group.command(name="list", description="Pending and active retainer agreements")
        async def retainer_list(interaction: discord.Interaction) -> None:
            await self._handle_retainer_list(interaction)

        @group.command(name="view", description="View a retainer agreement")
        @app_commands.describe(retainer_id="Retainer ID")
        async def retainer_view(interaction: discord.Interaction, retainer_id: str) -> None:
            await self._handle_retainer_view(interaction, retainer_id)

        self.tree.add_command(group)

    # --- /feedback ---

    def _setup_feedback_commands(self) -> None:
        group = app_commands.Group(name="feedback", description="Client feedback")

        @group.command(name="submit", description="Rate the firm or one of its staff")
        @app_commands.describe(
            rating="1 to 5 stars",
            comment="What went well or badly",
            staff="The staff member, or leave empty for the firm",
        )
        async def feedback_submit(
            interaction: discord.Interaction,
            rating: app_commands.Range[int, MIN_RATING, MAX_RATING],
            comment: str,
            staff: discord.Member | None = None,
        ) -> None:
            await self._handle_feedback_submit(interaction, rating, comment, staff)

        @group.command(name="view", description="Feedback for a staff member or the firm")
        @app_commands.describe(staff="The staff member, or leave empty for the firm")
        async def feedback_view(
            interaction: discord.Interaction, staff: discord.Member | None = None
        ) -> None:
            await self._handle_feedback_view(interaction, staff)

        self.tree.add_command(group)

    # --- Lifecycle ---

    async def setup_hook(self) -> None:
        """Called when the bot is ready to start. Syncs slash commands."""
        if self.settings.discord_guild_id:
            guild = discord.Object(id=int(self.settings.discord_guild_id))
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
            logger.info("discord_commands_synced guild_id=%s", self.settings.discord_guild_id)
        else:
            await self.tree.sync()
            logger.info("discord_commands_synced globally")

    async def on_ready(self) -> None:
        user = self.user
        logger.info("discord_bot_ready user=%s", user.name if user else "unknown")

    # --- Shared handler plumbing ---

    def _require_engine(self) -> AsyncEngine:
        if self.engine is None:
            raise CommandFailed(DATABASE_UNAVAILABLE)
        return self.engine

    async def _begin(
        self, interaction: discord.Interaction, ephemeral: bool = False
    ) -> PermissionContext | None:
        """Resolve the acting context and defer. Returns None after replying on failure."""
        if self.engine is None:
            await interaction.response.send_message(
                DATABASE_UNAVAILABLE, ephemeral=True
            )
            return None
        try:
            context = build_permission_context(interaction)
        except GuildOnlyError as exc:
            await interaction.response.send_message(str(exc), ephemeral=True)
            return None
        await interaction.response.defer(ephemeral=ephemeral)
        try:
            await ensure_guild(self.engine, context.guild_id)
        except SQLAlchemyError:
            logger.exception("discord_ensure_guild_failed guild_id=%s", context.guild_id)
            await interaction.followup.send(
                embed=build_error_embed(GENERIC_FAILURE), ephemeral=True
            )
            return None
        return context

    async def _perform(
        self,
        interaction: discord.Interaction,
        context: PermissionContext,
        command_name: str,
        action: Action,
        bypassed: bool = False,
        ephemeral: bool = False,
    ) -> None:
        """Run *action* in a fresh service scope and send its embed.

        Domain errors come back as an ephemeral error embed; database errors
        are logged and answered generically.
        """
        try:
            async with service_scope(self._require_engine(), self.audit) as scope:
                embed = await action(scope, bypassed)
        except (
            CaseError,
            ReminderError,
            RetainerError,
            FeedbackError,
            PermissionDeniedError,
            CommandFailed,
        ) as exc:
            await interaction.followup.send(embed=build_error_embed(str(exc)), ephemeral=True)
            return
        except SQLAlchemyError:
            logger.exception(
                "discord_command_failed command=%s guild_id=%s user_id=%s",
                command_name,
                context.guild_id,
                context.user_id,
            )
            await interaction.followup.send(
                embed=build_error_embed(GENERIC_FAILURE), ephemeral=True
            )
            return
        await interaction.followup.send(embed=embed, ephemeral=ephemeral)

    async def _guarded(
        self,
        interaction: discord.Interaction,
        context: PermissionContext,
        command_name: str,
        rules: RulesBuilder,
        action: Action,
        ephemeral: bool = False,
    ) -> None:
        """Validate, then act. The guild owner may confirm past bypassable failures."""
        try:
            async with service_scope(self._require_engine(), self.audit) as scope:
                result = await run_validation(
                    self.command_validation, context, await rules(scope), command_name
                )
        except CommandFailed as exc:
            await interaction.followup.send(embed=build_error_embed(str(exc)), ephemeral=True)
            return
        except SQLAlchemyError:
            logger.exception("discord_validation_failed command=%s", command_name)
            await interaction.followup.send(
                embed=build_error_embed(GENERIC_FAILURE), ephemeral=True
            )
            return

        if result.is_valid:
            await self._perform(interaction, context, command_name, action, ephemeral=ephemeral)
            return

        if not result.requires_confirmation or result.bypass_token is None:
            await interaction.followup.send(embed=build_validation_embed(result), ephemeral=True)
            return

        async def on_confirm(confirm_interaction: discord.Interaction) -> None:
            if self.audit is not None:
                await self.audit.log_action(
                    guild_id=context.guild_id,
                    action="guild_owner_bypass",
                    actor_id=context.user_id,
                    details={
                        "command": command_name,
                        "rules": [r.rule_name for r in result.bypass_requests],
                    },
                )
            logger.warning(
                "guild_owner_bypass_confirmed command=%s guild_id=%s user_id=%s",
                command_name,
                context.guild_id,
                context.user_id,
            )
            await self._perform(
                confirm_interaction,
                context,
                command_name,
                action,
                bypassed=True,
                ephemeral=ephemeral,
            )

        view = BypassConfirmView(
            original_user_id=interaction.user.id,
            bypass_token=result.bypass_token,
            validation_service=self.command_validation,
            on_confirm=on_confirm,
            timeout=self.settings.bypass_ttl_seconds,
        )
        await interaction.followup.send(embed=build_bypass_embed(result), view=view, ephemeral=True)

    async def _resolve_case(
        self,
        scope: ServiceScope,
        context: PermissionContext,
        interaction: discord.Interaction,
        case_number: str,
    ) -> Case:
        """Look a case up by number, or by the channel the command ran in."""
        if case_number.strip():
            case = await scope.cases.get_case_by_case_number(context, case_number.strip())
        else:
            case = await scope.cases.get_case_by_channel(context, str(interaction.channel_id))
        if case is None:
            raise CaseError("Case not found")
        return case

    async def _sync_member_channels(
        self,
        scope: ServiceScope,
        guild: discord.Guild | None,
        member: discord.Member,
        old_role: str | None,
        new_role: str | None,
        change_type: str,
    ) -> None:
        if guild is None:
            return
        manager = ChannelPermissionManager(scope.case_repo, scope.validation, self.audit)
        try:
            await manager.handle_role_change(guild, member, old_role, new_role, change_type)
        except discord.HTTPException:
            logger.exception("channel_permission_sync_failed user_id=%s", member.id)

    # --- /staff handlers ---

    async def _handle_staff_hire(
        self,
        interaction: discord.Interaction,
        user: discord.Member,
        role: str,
        roblox_username: str,
        reason: str,
    ) -> None:
        context = await self._begin(interaction)
        if context is None:
            return

        async def rules(scope: ServiceScope) -> list[NamedRule]:
            return [
                permission_rule(scope.validation, "senior-staff"),
                role_limit_rule(scope.validation, role),
            ]

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            staff = _staff_from_result(
                await scope.staff.hire_staff(
                    context,
                    str(user.id),
                    role,
                    roblox_username,
                    reason,
                    bypass_role_limit=bypassed,
                )
            )
            await self._sync_member_channels(scope, interaction.guild, user, None, role, "hire")
            return build_staff_embed(staff, title="Staff Member Hired")

        await self._guarded(interaction, context, "staff hire", rules, action)

    async def _handle_staff_fire(
        self, interaction: discord.Interaction, user: discord.Member, reason: str
    ) -> None:
        context = await self._begin(interaction)
        if context is None:
            return

        async def rules(scope: ServiceScope) -> list[NamedRule]:
            return [permission_rule(scope.validation, "senior-staff")]

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            existing = await scope.staff_repo.find_by_user_id(context.guild_id, str(user.id))
            old_role = existing.role if existing else None
            outcome = await scope.staff.fire_staff(context, str(user.id), reason)
            staff = _staff_from_result(outcome)
            await self._sync_member_channels(scope, interaction.guild, user, old_role, None, "fire")
            return build_staff_embed(staff, title="Staff Member Terminated")

        await self._guarded(interaction, context, "staff fire", rules, action)

    async def _handle_staff_role_change(
        self,
        interaction: discord.Interaction,
        user: discord.Member,
        new_role: str,
        reason: str,
        direction: str,
    ) -> None:
        context = await self._begin(interaction)
        if context is None:
            return

        async def rules(scope: ServiceScope) -> list[NamedRule]:
            checks = [permission_rule(scope.validation, "senior-staff")]
            if direction == "promote":
                checks.append(role_limit_rule(scope.validation, new_role))
            return checks

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            existing = await scope.staff_repo.find_by_user_id(context.guild_id, str(user.id))
            old_role = existing.role if existing else None
            if direction == "promote":
                outcome = await scope.staff.promote_staff(
                    context, str(user.id), new_role, reason, bypass_role_limit=bypassed
                )
            else:
                outcome = await scope.staff.demote_staff(context, str(user.id), new_role, reason)
            staff = _staff_from_result(outcome)
            change_type = "promotion" if direction == "promote" else "demotion"
            await self._sync_member_channels(
                scope, interaction.guild, user, old_role, new_role, change_type
            )
            title = "Staff Member Promoted" if direction == "promote" else "Staff Member Demoted"
            return build_staff_embed(staff, title=title)

        await self._guarded(interaction, context, f"staff {direction}", rules, action)

    async def _handle_staff_list(self, interaction: discord.Interaction, role: str | None) -> None:
        context = await self._begin(interaction, ephemeral=True)
        if context is None:
            return

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            staff = await scope.staff.get_staff_list(context, role_filter=role)
            counts = await scope.staff.get_role_counts(context)
            return build_staff_list_embed(staff, {r: n for r, n in counts.items() if n})

        await self._perform(interaction, context, "staff list", action, ephemeral=True)

    async def _handle_staff_info(
        self, interaction: discord.Interaction, user: discord.Member
    ) -> None:
        context = await self._begin(interaction, ephemeral=True)
        if context is None:
            return

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            staff = await scope.staff.get_staff_info(context, str(user.id))
            if staff is None:
                raise CommandFailed(f"{user.display_name} is not a staff member")
            return build_staff_embed(staff)

        await self._perform(interaction, context, "staff info", action, ephemeral=True)

    # --- /case handlers ---

    async def _handle_case_create(
        self,
        interaction: discord.Interaction,
        client: discord.Member,
        title: str,
        description: str,
        priority: str,
    ) -> None:
        context = await self._begin(interaction)
        if context is None:
            return

        async def rules(scope: ServiceScope) -> list[NamedRule]:
            checks = [case_limit_rule(scope.validation, str(client.id))]
            permission = command_permission_rule(scope.validation, "case")
            if permission is not None:
                checks.insert(0, permission)
            return checks

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            guild = _require_guild(interaction)
            config = await scope.guild_configs.ensure_guild_config(context.guild_id)

            async def open_channel(case: Case) -> str:
                return await create_case_channel(guild, case, config.case_review_category_id)

            async def remove_channel(channel_id: str) -> None:
                await delete_channel(guild, channel_id, reason="Case creation rolled back")

            async def notify(user_id: str, message: str) -> None:
                member = guild.get_member(int(user_id))
                if member is not None:
                    await member.send(message)

            service = TransactionalCaseService(
                UnitOfWorkFactory(self._require_engine()),
                self.rollback_service,
                scope.permissions,
                scope.validation,
                audit=self.audit,
                create_channel=open_channel,
                delete_channel=remove_channel,
                notify_user=notify,
            )
            try:
                request = CaseCreationRequest(
                    guild_id=context.guild_id,
                    client_id=str(client.id),
                    client_username=client.name,
                    title=title,
                    description=description,
                    priority=priority,
                )
            except ValueError as exc:
                raise CommandFailed(f"Invalid case details: {exc}") from exc
            case = await service.create_case(context, request)
            return build_case_embed(case, title=f"Case {case.case_number} Opened")

        await self._guarded(interaction, context, "case create", rules, action)

    async def _handle_case_accept(
        self, interaction: discord.Interaction, case_number: str
    ) -> None:
        context = await self._begin(interaction)
        if context is None:
            return

        async def rules(scope: ServiceScope) -> list[NamedRule]:
            return [permission_rule(scope.validation, "case")]

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            case = await self._resolve_case(scope, context, interaction, case_number)
            accepted = await scope.cases.accept_case(context, case.id)
            return build_case_embed(accepted, title=f"Case {accepted.case_number} Accepted")

        await self._guarded(interaction, context, "case accept", rules, action)

    async def _handle_case_decline(
        self, interaction: discord.Interaction, case_number: str, reason: str
    ) -> None:
        context = await self._begin(interaction)
        if context is None:
            return

        async def rules(scope: ServiceScope) -> list[NamedRule]:
            return [permission_rule(scope.validation, "case")]

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            case = await self._resolve_case(scope, context, interaction, case_number)
            declined = await scope.cases.decline_case(context, case.id, reason or None)
            return build_case_embed(declined, title=f"Case {declined.case_number} Declined")

        await self._guarded(interaction, context, "case decline", rules, action)

    async def _handle_case_close(
        self,
        interaction: discord.Interaction,
        case_number: str,
        result: str,
        notes: str,
    ) -> None:
        context = await self._begin(interaction)
        if context is None:
            return

        async def rules(scope: ServiceScope) -> list[NamedRule]:
            checks = [permission_rule(scope.validation, "case")]
            if case_number.strip():
                case = await scope.case_repo.find_by_case_number(
                    context.guild_id, case_number.strip()
                )
            else:
                found = await scope.case_repo.search(
                    context.guild_id, channel_id=str(interaction.channel_id), limit=1
                )
                case = found[0] if found else None
            checks.append(entity_rule(scope.cross_entity, "case", "close", case.id if case else ""))
            return checks

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            case = await self._resolve_case(scope, context, interaction, case_number)
            closed = await scope.cases.close_case(context, case.id, result, notes or None)
            return build_case_embed(closed, title=f"Case {closed.case_number} Closed")

        await self._guarded(interaction, context, "case close", rules, action)

    async def _handle_case_assign(
        self,
        interaction: discord.Interaction,
        case_number: str,
        lawyer: discord.Member,
        lead: bool,
    ) -> None:
        context = await self._begin(interaction)
        if context is None:
            return

        async def rules(scope: ServiceScope) -> list[NamedRule]:
            return [
                permission_rule(scope.validation, "case"),
                staff_member_rule(scope.validation, str(lawyer.id), ["lawyer"]),
            ]

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            case = await self._resolve_case(scope, context, interaction, case_number)
            service = TransactionalCaseService(
                UnitOfWorkFactory(self._require_engine()),
                self.rollback_service,
                scope.permissions,
                scope.validation,
                audit=self.audit,
            )
            # The lawyer was already checked by the pipeline, or overridden by the owner.
            updated = await service.assign_lawyer_transactional(
                context,
                case.id,
                [str(lawyer.id)],
                lead_attorney_id=str(lawyer.id) if lead else None,
                validate_lawyers=False,
            )
            return build_case_embed(updated, title=f"Lawyer Assigned to {updated.case_number}")

        await self._guarded(interaction, context, "case assign", rules, action)

    async def _handle_case_unassign(
        self, interaction: discord.Interaction, case_number: str, lawyer: discord.Member
    ) -> None:
        context = await self._begin(interaction)
        if context is None:
            return

        async def rules(scope: ServiceScope) -> list[NamedRule]:
            return [permission_rule(scope.validation, "case")]

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            case = await self._resolve_case(scope, context, interaction, case_number)
            updated = await scope.cases.unassign_lawyer(context, case.id, str(lawyer.id))
            return build_case_embed(updated, title=f"Lawyer Removed from {updated.case_number}")

        await self._guarded(interaction, context, "case unassign", rules, action)

    async def _handle_case_reassign(
        self,
        interaction: discord.Interaction,
        lawyer: discord.Member,
        from_case: str,
        to_case: str,
    ) -> None:
        context = await self._begin(interaction)
        if context is None:
            return

        async def rules(scope: ServiceScope) -> list[NamedRule]:
            return [
                permission_rule(scope.validation, "case"),
                staff_member_rule(scope.validation, str(lawyer.id), ["lawyer"]),
            ]

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            source = await self._resolve_case(scope, context, interaction, from_case)
            target = await self._resolve_case(scope, context, interaction, to_case)
            _, moved_to = await scope.cases.reassign_lawyer(
                context, source.id, target.id, str(lawyer.id)
            )
            return build_case_embed(
                moved_to,
                title=f"Lawyer Moved: {source.case_number} -> {moved_to.case_number}",
            )

        await self._guarded(interaction, context, "case reassign", rules, action)

    async def _handle_case_info(self, interaction: discord.Interaction, case_number: str) -> None:
        context = await self._begin(interaction, ephemeral=True)
        if context is None:
            return

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            case = await self._resolve_case(scope, context, interaction, case_number)
            return build_case_embed(case)

        await self._perform(interaction, context, "case info", action, ephemeral=True)

    async def _handle_case_list(self, interaction: discord.Interaction, status: str | None) -> None:
        context = await self._begin(interaction, ephemeral=True)
        if context is None:
            return

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            cases = await scope.cases.search_cases(context, status=status)
            title = f"Cases: {status}" if status else "Cases"
            return build_case_list_embed(cases, title=title)

        await self._perform(interaction, context, "case list", action, ephemeral=True)

    async def _handle_case_note(
        self,
        interaction: discord.Interaction,
        case_number: str,
        content: str,
        internal: bool,
    ) -> None:
        context = await self._begin(interaction, ephemeral=True)
        if context is None:
            return

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            case = await self._resolve_case(scope, context, interaction, case_number)
            updated = await scope.cases.add_note(context, case.id, content, is_internal=internal)
            return build_success_embed("Note Added", f"Added to case {updated.case_number}.")

        await self._perform(interaction, context, "case note", action, ephemeral=True)

    async def _handle_case_archive(self, interaction: discord.Interaction) -> None:
        context = await self._begin(interaction, ephemeral=True)
        if context is None:
            return

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            guild = _require_guild(interaction)
            service = CaseChannelArchiveService(
                scope.guild_configs, scope.case_repo, scope.permissions, self.audit
            )
            results = await service.archive_closed_case_channels(guild, context)
            archived = [r for r in results if r.success]
            failed = [r for r in results if not r.success]
            lines = [f"Archived {len(archived)} channel(s)."]
            lines.extend(f"{r.case_number}: {r.error}" for r in failed)
            return build_success_embed("Case Channels Archived", "\n".join(lines))

        await self._perform(interaction, context, "case archive", action, ephemeral=True)

    # --- /config handlers ---

    async def _handle_config_set_permission(
        self,
        interaction: discord.Interaction,
        permission: str,
        role: discord.Role,
        remove: bool,
    ) -> None:
        context = await self._begin(interaction, ephemeral=True)
        if context is None:
            return

        async def rules(scope: ServiceScope) -> list[NamedRule]:
            return [config_permission_rule(scope.permissions)]

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            config = await scope.guild_configs.ensure_guild_config(context.guild_id)
            role_ids = [r for r in config.roles_for(permission) if r != str(role.id)]
            if not remove:
                role_ids.append(str(role.id))
            config = await scope.guild_configs.set_permission_roles(
                context.guild_id, permission, role_ids
            )
            await scope.session.commit()
            if self.audit is not None:
                await self.audit.log_action(
                    guild_id=context.guild_id,
                    action="config_permission_updated",
                    actor_id=context.user_id,
                    target_id=str(role.id),
                    details={"permission": permission, "removed": remove},
                )
            logger.info(
                "config_permission_updated guild_id=%s permission=%s role_id=%s removed=%s",
                context.guild_id,
                permission,
                role.id,
                remove,
            )
            return build_config_embed(config)

        await self._guarded(interaction, context, "config set-permission", rules, action, True)

    async def _handle_config_admin(
        self, interaction: discord.Interaction, user: discord.Member, add: bool
    ) -> None:
        context = await self._begin(interaction, ephemeral=True)
        if context is None:
            return

        async def rules(scope: ServiceScope) -> list[NamedRule]:
            return [config_permission_rule(scope.permissions)]

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            if add:
                config = await scope.guild_configs.add_admin_user(context.guild_id, str(user.id))
            else:
                config = await scope.guild_configs.remove_admin_user(context.guild_id, str(user.id))
            await scope.session.commit()
            if self.audit is not None:
                await self.audit.log_action(
                    guild_id=context.guild_id,
                    action="admin_added" if add else "admin_removed",
                    actor_id=context.user_id,
                    target_id=str(user.id),
                )
            return build_config_embed(config)

        name = "config add-admin" if add else "config remove-admin"
        await self._guarded(interaction, context, name, rules, action, True)

    async def _handle_config_view(self, interaction: discord.Interaction) -> None:
        context = await self._begin(interaction, ephemeral=True)
        if context is None:
            return

        async def rules(scope: ServiceScope) -> list[NamedRule]:
            return [config_permission_rule(scope.permissions)]

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            return build_config_embed(
                await scope.guild_configs.ensure_guild_config(context.guild_id)
            )

        await self._guarded(interaction, context, "config view", rules, action, True)

    async def _handle_config_category(
        self,
        interaction: discord.Interaction,
        category: discord.CategoryChannel,
        archive: bool,
    ) -> None:
        context = await self._begin(interaction, ephemeral=True)
        if context is None:
            return

        async def rules(scope: ServiceScope) -> list[NamedRule]:
            return [config_permission_rule(scope.permissions)]

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            if archive:
                config = await scope.guild_configs.set_case_archive_category(
                    context.guild_id, str(category.id)
                )
            else:
                config = await scope.guild_configs.set_case_review_category(
                    context.guild_id, str(category.id)
                )
            await scope.session.commit()
            return build_config_embed(config)

        name = "config set-archive-category" if archive else "config set-review-category"
        await self._guarded(interaction, context, name, rules, action, True)

    async def _handle_config_integrity(self, interaction: discord.Interaction) -> None:
        context = await self._begin(interaction, ephemeral=True)
        if context is None:
            return

        async def rules(scope: ServiceScope) -> list[NamedRule]:
            return [config_permission_rule(scope.permissions)]

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            report = await scope.cross_entity.scan_for_integrity_issues(context.guild_id)
            return build_integrity_report_embed(report)

        await self._guarded(interaction, context, "config integrity", rules, action, True)

    # --- /reminder handlers ---

    async def _handle_reminder_set(
        self, interaction: discord.Interaction, time_string: str, message: str
    ) -> None:
        context = await self._begin(interaction, ephemeral=True)
        if context is None:
            return

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            reminder = await scope.reminders.create_reminder(
                context,
                interaction.user.name,
                message,
                time_string,
                channel_id=str(interaction.channel_id) if interaction.channel_id else None,
            )
            return build_reminder_embed(reminder)

        await self._perform(interaction, context, "reminder set", action, ephemeral=True)

    async def _handle_reminder_list(self, interaction: discord.Interaction) -> None:
        context = await self._begin(interaction, ephemeral=True)
        if context is None:
            return

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            return build_reminder_list_embed(await scope.reminders.get_user_reminders(context))

        await self._perform(interaction, context, "reminder list", action, ephemeral=True)

    async def _handle_reminder_cancel(
        self, interaction: discord.Interaction, reminder_id: str
    ) -> None:
        context = await self._begin(interaction, ephemeral=True)
        if context is None:
            return

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            wanted = reminder_id.strip()
            mine = await scope.reminders.get_user_reminders(context)
            matches = [r for r in mine if r.id == wanted or r.id.startswith(wanted)]
            if len(matches) > 1:
                raise ReminderError("That ID matches several reminders; use more characters")
            full_id = matches[0].id if matches else wanted
            cancelled = await scope.reminders.cancel_reminder(context, full_id)
            return build_reminder_embed(cancelled, title="Reminder Cancelled")

        await self._perform(interaction, context, "reminder cancel", action, ephemeral=True)

    # --- /retainer handlers ---

    async def _handle_retainer_offer(
        self, interaction: discord.Interaction, client: discord.Member
    ) -> None:
        context = await self._begin(interaction)
        if context is None:
            return

        async def rules(scope: ServiceScope) -> list[NamedRule]:
            permission = command_permission_rule(scope.validation, "retainer")
            return [permission] if permission is not None else []

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            guild = _require_guild(interaction)
            retainer = await scope.retainers.create_retainer(context, str(client.id))
            try:
                await client.send(embed=build_retainer_offer_embed(retainer, guild.name))
            except discord.HTTPException:
                logger.warning(
                    "retainer_offer_dm_failed retainer_id=%s client_id=%s",
                    retainer.id,
                    client.id,
                )
            return build_retainer_embed(retainer, title="Retainer Offered")

        await self._guarded(interaction, context, "retainer offer", rules, action)

    async def _handle_retainer_accept(
        self, interaction: discord.Interaction, retainer_id: str, roblox_username: str
    ) -> None:
        context = await self._begin(interaction, ephemeral=True)
        if context is None:
            return

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            signed = await scope.retainers.sign_retainer(
                context, retainer_id.strip(), roblox_username
            )
            return build_retainer_embed(signed, title="Retainer Signed")

        await self._perform(interaction, context, "retainer accept", action, ephemeral=True)

    async def _handle_retainer_cancel(
        self, interaction: discord.Interaction, retainer_id: str
    ) -> None:
        context = await self._begin(interaction)
        if context is None:
            return

        async def rules(scope: ServiceScope) -> list[NamedRule]:
            permission = command_permission_rule(scope.validation, "retainer")
            return [permission] if permission is not None else []

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            cancelled = await scope.retainers.cancel_retainer(context, retainer_id.strip())
            return build_retainer_embed(cancelled, title="Retainer Cancelled")

        await self._guarded(interaction, context, "retainer cancel", rules, action)

    async def _handle_retainer_list(self, interaction: discord.Interaction) -> None:
        context = await self._begin(interaction, ephemeral=True)
        if context is None:
            return

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            return build_retainer_list_embed(
                await scope.retainers.get_pending_retainers(context),
                await scope.retainers.get_active_retainers(context),
                await scope.retainers.get_retainer_stats(context),
            )

        await self._perform(interaction, context, "retainer list", action, ephemeral=True)

    async def _handle_retainer_view(
        self, interaction: discord.Interaction, retainer_id: str
    ) -> None:
        context = await self._begin(interaction, ephemeral=True)
        if context is None:
            return

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            retainer = await scope.retainers.get_retainer(context, retainer_id.strip())
            if not retainer.is_active:
                return build_retainer_embed(retainer)
            guild = _require_guild(interaction)
            client = guild.get_member(int(retainer.client_id))
            lawyer = guild.get_member(int(retainer.lawyer_id))
            agreement = format_retainer_agreement(
                retainer,
                client.display_name if client else f"<@{retainer.client_id}>",
                lawyer.display_name if lawyer else f"<@{retainer.lawyer_id}>",
            )
            return build_retainer_agreement_embed(agreement)

        await self._perform(interaction, context, "retainer view", action, ephemeral=True)

    # --- /feedback handlers ---

    async def _handle_feedback_submit(
        self,
        interaction: discord.Interaction,
        rating: int,
        comment: str,
        staff: discord.Member | None,
    ) -> None:
        context = await self._begin(interaction, ephemeral=True)
        if context is None:
            return

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            feedback = await scope.feedback.submit_feedback(
                context,
                interaction.user.name,
                rating,
                comment,
                target_staff_id=str(staff.id) if staff else None,
                target_staff_username=staff.name if staff else None,
            )
            return build_feedback_embed(feedback)

        await self._perform(interaction, context, "feedback submit", action, ephemeral=True)

    async def _handle_feedback_view(
        self, interaction: discord.Interaction, staff: discord.Member | None
    ) -> None:
        context = await self._begin(interaction, ephemeral=True)
        if context is None:
            return

        async def action(scope: ServiceScope, bypassed: bool) -> discord.Embed:
            if staff is None:
                firm = await scope.feedback.get_firm_performance_metrics(context.guild_id)
                return build_firm_metrics_embed(firm)
            metrics = await scope.feedback.get_staff_performance_metrics(
                context.guild_id, str(staff.id)
            )
            if metrics is None:
                raise CommandFailed(f"No feedback yet for {staff.mention}.")
            return build_staff_metrics_embed(metrics)

        await self._perform(interaction, context, "feedback view", action, ephemeral=True)

    # --- Reminder delivery ---

    async def deliver_reminder(self, reminder: Reminder) -> None:
        """Post a due reminder where it was set, or DM it when there is no channel."""
        embed = build_reminder_delivery_embed(reminder)
        if reminder.channel_id:
            channel = self.get_channel(int(reminder.channel_id))
            if isinstance(channel, discord.abc.Messageable):
                await channel.send(content=f"<@{reminder.user_id}>", embed=embed)
                return
        user = self.get_user(int(reminder.user_id)) or await self.fetch_user(
            int(reminder.user_id)
        )
        await user.send(embed=embed)


def is_discord_enabled(settings: Settings) -> bool:
    """Check whether Discord integration should be started.

    False in development so a local run never connects to the production guild.
    """
    if settings.anarchy_env == "development":
        logger.info("discord_bot_skipped_in_development")
        return False
    return bool(settings.discord_enabled and settings.discord_bot_token)


async def start_discord_bot(
    settings: Settings,
    engine: AsyncEngine | None = None,
) -> AnarchyBot:
    """Create and start the Discord bot in the current event loop.

    The bot runs as a background task; this returns the instance immediately
    so the caller can stop it during shutdown.
    """
    bot = AnarchyBot(settings=settings, engine=engine)

    async def _run_bot() -> None:
        try:
            await bot.start(settings.discord_bot_token)
        except asyncio.CancelledError:
            logger.info("discord_bot_cancelled")
        except Exception:  # Last-resort handler: bot.start raises connection and auth errors
            logger.exception("discord_bot_error")
        finally:
            if not bot.is_closed():
                await bot.close()

    bot.runner = asyncio.create_task(_run_bot(), name="discord-bot")
    logger.info("discord_bot_started")
    return bot
