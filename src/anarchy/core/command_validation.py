"""Per-command validation pipeline.

A command handler builds an ordered list of NamedRule objects and calls
``run_validation`` before doing anything. Results fold the same way as
``BusinessRuleValidationService.validate_multiple``. When the acting user is
the guild owner and every failing rule offers a bypass, the result asks for
confirmation instead of denying outright. Each pending bypass is keyed by user
and a one-time token, and lives until it is confirmed, cancelled, or expired.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from anarchy.core.business_rules import fold_results
from anarchy.models.validation import BypassRequest, CommandValidationResult, ValidationResult

if TYPE_CHECKING:
    from anarchy.core.business_rules import BusinessRuleValidationService
    from anarchy.core.cross_entity import CrossEntityValidationService
    from anarchy.core.permissions import PermissionContext, PermissionService

logger = logging.getLogger(__name__)

DEFAULT_BYPASS_TTL_SECONDS = 300

# Slash-command group -> permission every subcommand in it requires.
COMMAND_PERMISSIONS: dict[str, str] = {
    "staff": "senior-staff",
    "case": "case",
    "admin": "admin",
    "config": "config",
    "retainer": "lawyer",
}

RuleCheck = Callable[["PermissionContext"], Awaitable["ValidationResult"]]


@dataclass(frozen=True)
class NamedRule:
    """One check a command must pass. ``bypassable=False`` rules can never be overridden."""

    name: str
    validate: RuleCheck
    bypassable: bool = True


@dataclass
class PendingBypass:
    command_name: str
    requests: list[BypassRequest]
    expires_at: float
    payload: dict[str, Any] = field(default_factory=dict)


class CommandValidationService:
    """Runs rule pipelines and holds guild-owner bypasses awaiting confirmation.

    One instance lives for the life of the bot; rules carry their own
    session-bound services.
    """

    def __init__(
        self,
        bypass_ttl_seconds: float = DEFAULT_BYPASS_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.bypass_ttl_seconds = bypass_ttl_seconds
        self._clock = clock
        self._pending: dict[tuple[str, str], PendingBypass] = {}

    async def validate_command(
        self,
        context: PermissionContext,
        rules: Sequence[NamedRule],
        command_name: str = "",
    ) -> CommandValidationResult:
        results: list[ValidationResult] = []
        bypass_requests: list[BypassRequest] = []
        blocked = False
        try:
            for rule in rules:
                result = await rule.validate(context)
                results.append(result)
                if not result.valid and result.bypass_available and rule.bypassable:
                    bypass_requests.append(
                        BypassRequest(
                            rule_name=rule.name,
                            bypass_type=result.bypass_type or "guild-owner",
                            errors=list(result.errors),
                            metadata=dict(result.metadata),
                        )
                    )
                elif not result.valid:
                    blocked = True
        except Exception:  # A crashing rule denies the command
            logger.exception(
                "command_validation_error command=%s guild_id=%s user_id=%s",
                command_name,
                context.guild_id,
                context.user_id,
            )
            return CommandValidationResult(
                is_valid=False,
                errors=["An error occurred during validation. Please try again."],
            )

        folded = fold_results(results)
        outcome = CommandValidationResult(
            is_valid=folded.valid,
            errors=folded.errors,
            warnings=folded.warnings,
            bypass_requests=bypass_requests,
        )
        if not outcome.is_valid and bypass_requests and not blocked and context.is_guild_owner:
            outcome.requires_confirmation = True
            outcome.bypass_token = self.store_bypass(
                context.user_id, command_name, bypass_requests
            )

        logger.info(
            "command_validated command=%s guild_id=%s user_id=%s valid=%s errors=%d "
            "warnings=%d confirmation=%s",
            command_name,
            context.guild_id,
            context.user_id,
            outcome.is_valid,
            len(outcome.errors),
            len(outcome.warnings),
            outcome.requires_confirmation,
        )
        return outcome

    # --- Pending bypasses ---

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [key for key, pending in self._pending.items() if pending.expires_at <= now]
        for key in expired:
            del self._pending[key]

    def store_bypass(
        self,
        user_id: str,
        command_name: str,
        requests: list[BypassRequest],
        payload: dict[str, Any] | None = None,
    ) -> str:
        """Remember a bypass awaiting confirmation and return the token that claims it."""
        self._purge_expired()
        token = uuid.uuid4().hex
        self._pending[(user_id, token)] = PendingBypass(
            command_name=command_name,
            requests=requests,
            expires_at=self._clock() + self.bypass_ttl_seconds,
            payload=payload or {},
        )
        return token

    def get_pending_bypass(self, user_id: str, token: str) -> PendingBypass | None:
        self._purge_expired()
        return self._pending.get((user_id, token))

    def pending_count(self, user_id: str) -> int:
        self._purge_expired()
        return sum(1 for uid, _ in self._pending if uid == user_id)

    def consume_bypass(self, user_id: str, token: str) -> PendingBypass | None:
        """Take one pending bypass, or None if the token is unknown or expired."""
        self._purge_expired()
        pending = self._pending.pop((user_id, token), None)
        if pending is not None:
            for request in pending.requests:
                logger.warning(
                    "validation_bypass_confirmed user_id=%s command=%s rule=%s errors=%s",
                    user_id,
                    pending.command_name,
                    request.rule_name,
                    request.errors,
                )
        return pending

    def cancel_bypass(self, user_id: str, token: str) -> bool:
        return self._pending.pop((user_id, token), None) is not None


async def run_validation(
    service: CommandValidationService,
    context: PermissionContext,
    rules: Sequence[NamedRule],
    command_name: str = "",
) -> CommandValidationResult:
    """Entry point for command handlers. Stop the handler unless ``is_valid``."""
    return await service.validate_command(context, rules, command_name=command_name)


# ---------------------------------------------------------------------------
# Rule builders
# ---------------------------------------------------------------------------


def permission_rule(validation: BusinessRuleValidationService, permission: str) -> NamedRule:
    async def check(context: PermissionContext) -> ValidationResult:
        return await validation.validate_permission(context, permission)

    return NamedRule(name=f"permission:{permission}", validate=check)


def command_permission_rule(
    validation: BusinessRuleValidationService, command_name: str
) -> NamedRule | None:
    """The permission rule implied by a command group, or None for open commands."""
    permission = COMMAND_PERMISSIONS.get(command_name)
    if permission is None:
        return None
    return permission_rule(validation, permission)


def role_limit_rule(validation: BusinessRuleValidationService, role: str) -> NamedRule:
    async def check(context: PermissionContext) -> ValidationResult:
        return await validation.validate_role_limit(context, role)

    return NamedRule(name="role-limit", validate=check)


def case_limit_rule(validation: BusinessRuleValidationService, client_id: str) -> NamedRule:
    async def check(context: PermissionContext) -> ValidationResult:
        return await validation.validate_client_case_limit(client_id, context.guild_id)

    return NamedRule(name="client-case-limit", validate=check, bypassable=False)


def staff_member_rule(
    validation: BusinessRuleValidationService,
    user_id: str,
    required_permissions: Sequence[str] = (),
) -> NamedRule:
    async def check(context: PermissionContext) -> ValidationResult:
        return await validation.validate_staff_member(context, user_id, required_permissions)

    return NamedRule(name="staff-member", validate=check)


def entity_rule(
    cross_entity: CrossEntityValidationService,
    entity_type: str,
    operation: str,
    payload: Any,
) -> NamedRule:
    async def check(context: PermissionContext) -> ValidationResult:
        return await cross_entity.validate_before_operation(
            entity_type, operation, context.guild_id, payload
        )

    return NamedRule(name=f"entity:{entity_type}:{operation}", validate=check, bypassable=False)


def config_permission_rule(permissions: PermissionService) -> NamedRule:
    """Guild owner or configured admins only; never bypassable."""

    async def check(context: PermissionContext) -> ValidationResult:
        if await permissions.can_manage_config(context):
            return ValidationResult(valid=True)
        return ValidationResult(
            valid=False, errors=["You do not have permission to manage server configuration"]
        )

    return NamedRule(name="permission:config", validate=check, bypassable=False)
