"""Rollback and compensation for work that spans the database and Discord.

The database half of a failed operation is undone by rolling back its unit of
work. Discord side effects (a channel already created, say) are not part of
that transaction, so callers register compensation actions against the
transaction id *before* attempting the risky step. On failure
``perform_rollback`` rolls the unit back, then runs the registered actions
highest priority first. Each action is retried with exponential backoff; an
action that keeps failing is logged and reported in the result, never raised.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from anarchy.core.audit import AuditLogger
    from anarchy.db.unit_of_work import SqlAlchemyUnitOfWork

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0


@dataclass(frozen=True)
class CompensationAction:
    """An idempotent undo step. ``max_retries=None`` uses the service default."""

    action_id: str
    description: str
    execute: Callable[[], Awaitable[None]]
    priority: int = 0
    retryable: bool = True
    max_retries: int | None = None


@dataclass
class RollbackContext:
    failed_operation: str
    error: BaseException | None = None
    transaction_id: str | None = None
    guild_id: str | None = None
    user_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class RollbackResult:
    success: bool = False
    compensations_executed: list[str] = field(default_factory=list)
    compensations_failed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration: float = 0.0


class RollbackService:
    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep
        self._actions: dict[str, list[CompensationAction]] = {}

    def create_rollback_context(
        self,
        uow: SqlAlchemyUnitOfWork,
        operation: str,
        error: BaseException | None = None,
        guild_id: str | None = None,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RollbackContext:
        return RollbackContext(
            failed_operation=operation,
            error=error,
            transaction_id=uow.transaction_id,
            guild_id=guild_id,
            user_id=user_id,
            metadata=metadata or {},
        )

    def register_compensation_action(self, transaction_id: str, action: CompensationAction) -> None:
        actions = self._actions.setdefault(transaction_id, [])
        actions.append(action)
        # Stable sort: equal priorities keep registration order.
        actions.sort(key=lambda a: a.priority, reverse=True)
        logger.debug(
            "compensation_registered transaction_id=%s action=%s priority=%d",
            transaction_id,
            action.action_id,
            action.priority,
        )

    def get_compensation_actions(self, transaction_id: str) -> list[CompensationAction]:
        return list(self._actions.get(transaction_id, []))

    def clear_transaction(self, transaction_id: str) -> None:
        """Forget a transaction's compensations. Call after a successful commit."""
        self._actions.pop(transaction_id, None)

    async def perform_rollback(
        self, uow: SqlAlchemyUnitOfWork, context: RollbackContext
    ) -> RollbackResult:
        start = time.monotonic()
        result = RollbackResult()
        logger.info(
            "rollback_started transaction_id=%s operation=%s guild_id=%s error=%s",
            context.transaction_id,
            context.failed_operation,
            context.guild_id,
            context.error,
        )

        if uow.is_active:
            try:
                await uow.rollback()
            except Exception as exc:  # Compensations still run
                logger.exception("uow_rollback_failed transaction_id=%s", context.transaction_id)
                result.errors.append(f"Failed to roll back transaction: {exc}")

        if context.transaction_id is not None:
            for action in self._actions.pop(context.transaction_id, []):
                await self._execute(action, context, result)

        try:
            await uow.dispose()
        except Exception:  # Cleanup only
            logger.exception("uow_dispose_failed transaction_id=%s", context.transaction_id)

        result.success = not result.errors
        result.duration = time.monotonic() - start
        logger.info(
            "rollback_completed transaction_id=%s success=%s executed=%d failed=%d",
            context.transaction_id,
            result.success,
            len(result.compensations_executed),
            len(result.compensations_failed),
        )
        return result

    async def _execute(
        self, action: CompensationAction, context: RollbackContext, result: RollbackResult
    ) -> None:
        attempts = (action.max_retries or self.max_retries) if action.retryable else 1
        for attempt in range(1, attempts + 1):
            try:
                await action.execute()
            except Exception as exc:  # Undo failures are reported, never raised
                logger.warning(
                    "compensation_failed transaction_id=%s action=%s attempt=%d/%d error=%s",
                    context.transaction_id,
                    action.action_id,
                    attempt,
                    attempts,
                    exc,
                )
                if attempt == attempts:
                    result.compensations_failed.append(action.action_id)
                    result.errors.append(
                        f"Compensation action '{action.action_id}' failed after "
                        f"{attempts} attempts: {exc}"
                    )
                else:
                    await self._sleep(self.base_delay * 2 ** (attempt - 1))
            else:
                result.compensations_executed.append(action.action_id)
                return


# ---------------------------------------------------------------------------
# Compensation factories
# ---------------------------------------------------------------------------


def audit_log_compensation(
    audit: AuditLogger,
    guild_id: str,
    actor_id: str,
    operation: str,
    reason: str,
    target_id: str | None = None,
) -> CompensationAction:
    async def execute() -> None:
        await audit.log_action(
            guild_id=guild_id,
            action="transaction_rolled_back",
            actor_id=actor_id,
            target_id=target_id,
            details={"operation": operation, "reason": reason},
        )

    return CompensationAction(
        action_id=f"audit-log-{operation}",
        description=f"Record rollback of {operation}",
        execute=execute,
        priority=5,
        max_retries=2,
    )


def notification_compensation(
    notify: Callable[[str, str], Awaitable[None]],
    recipients: Iterable[str],
    message: str,
) -> CompensationAction:
    recipients = list(recipients)

    async def execute() -> None:
        for user_id in recipients:
            await notify(user_id, message)

    return CompensationAction(
        action_id=f"notify-{'-'.join(recipients)}",
        description=f"Notify {len(recipients)} user(s) of the failure",
        execute=execute,
        priority=1,
        max_retries=2,
    )


def channel_deletion_compensation(
    delete_channel: Callable[[str], Awaitable[None]],
    get_channel_id: Callable[[], str | None],
    label: str = "case",
) -> CompensationAction:
    """Delete the channel if one was created.

    ``get_channel_id`` is read at rollback time, so this can be registered
    before the channel exists.
    """

    async def execute() -> None:
        channel_id = get_channel_id()
        if channel_id is None:
            return
        await delete_channel(channel_id)
        logger.info("compensation_channel_deleted channel_id=%s", channel_id)

    return CompensationAction(
        action_id=f"channel-deletion-{label}",
        description=f"Delete Discord channel for {label}",
        execute=execute,
        priority=10,
    )
