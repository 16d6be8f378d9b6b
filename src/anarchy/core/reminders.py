"""Staff reminders: creation, cancellation, and scheduled delivery."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from anarchy.db.engine import get_session
from anarchy.db.repository import ReminderRepository
from anarchy.models.reminder import MAX_REMINDER_MESSAGE_LENGTH, validate_reminder_time

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from anarchy.core.permissions import PermissionContext
    from anarchy.db.repository import CaseRepository, StaffRepository
    from anarchy.models.reminder import Reminder

logger = logging.getLogger(__name__)

ReminderSender = Callable[["Reminder"], Awaitable[None]]


class ReminderError(Exception):
    """A reminder request was rejected. The message is safe to show users."""


class ReminderService:
    def __init__(
        self,
        reminder_repo: ReminderRepository,
        staff_repo: StaffRepository,
        case_repo: CaseRepository,
    ) -> None:
        self.reminder_repo = reminder_repo
        self.staff_repo = staff_repo
        self.case_repo = case_repo

    async def create_reminder(
        self,
        context: PermissionContext,
        username: str,
        message: str,
        time_string: str,
        channel_id: str | None = None,
        case_id: str | None = None,
        now: datetime | None = None,
    ) -> Reminder:
        """Schedule a reminder. Set in a case channel, it is linked to that case."""
        staff = await self.staff_repo.find_by_user_id(context.guild_id, context.user_id)
        if staff is None or not staff.is_active:
            raise ReminderError("Only staff members can set reminders")
        message = message.strip()
        if not message:
            raise ReminderError("Reminder message cannot be empty")
        if len(message) > MAX_REMINDER_MESSAGE_LENGTH:
            raise ReminderError(
                f"Reminder message cannot exceed {MAX_REMINDER_MESSAGE_LENGTH} characters"
            )
        parsed, error = validate_reminder_time(time_string)
        if parsed is None:
            raise ReminderError(error or "Invalid time format")

        if channel_id and not case_id:
            cases = await self.case_repo.search(context.guild_id, channel_id=channel_id, limit=1)
            if cases:
                case_id = cases[0].id

        scheduled_for = (now or datetime.now(UTC)) + parsed.delta
        reminder = await self.reminder_repo.add(
            guild_id=context.guild_id,
            user_id=context.user_id,
            username=username,
            message=message,
            scheduled_for=scheduled_for,
            channel_id=channel_id,
            case_id=case_id,
        )
        await self.reminder_repo.session.commit()
        logger.info(
            "reminder_created reminder_id=%s user_id=%s due_in=%s case_id=%s",
            reminder.id,
            context.user_id,
            parsed.describe(),
            case_id,
        )
        return reminder

    async def cancel_reminder(self, context: PermissionContext, reminder_id: str) -> Reminder:
        reminder = await self.reminder_repo.find_by_id(reminder_id)
        if reminder is None or reminder.guild_id != context.guild_id:
            raise ReminderError("Reminder not found")
        if reminder.user_id != context.user_id:
            raise ReminderError("You can only cancel your own reminders")
        if not reminder.is_active:
            raise ReminderError("Reminder is already inactive")
        cancelled = await self.reminder_repo.cancel(reminder_id)
        if cancelled is None:
            raise ReminderError("Reminder not found")
        await self.reminder_repo.session.commit()
        logger.info("reminder_cancelled reminder_id=%s user_id=%s", reminder_id, context.user_id)
        return cancelled

    async def get_user_reminders(
        self, context: PermissionContext, active_only: bool = True
    ) -> list[Reminder]:
        return await self.reminder_repo.get_user_reminders(
            context.guild_id, context.user_id, active_only=active_only
        )

    async def get_case_reminders(self, case_id: str, active_only: bool = True) -> list[Reminder]:
        return await self.reminder_repo.get_case_reminders(case_id, active_only=active_only)


async def deliver_due_reminders(
    engine: AsyncEngine, send: ReminderSender, now: datetime | None = None
) -> int:
    """Send every due reminder and mark it delivered. Returns the number sent.

    A reminder whose send fails stays active and is retried on the next poll.
    """
    delivered = 0
    async with get_session(engine) as session:
        repo = ReminderRepository(session)
        for reminder in await repo.get_due_reminders(now or datetime.now(UTC)):
            try:
                await send(reminder)
            except Exception:  # One bad recipient must not stall the rest
                logger.exception(
                    "reminder_delivery_failed reminder_id=%s user_id=%s",
                    reminder.id,
                    reminder.user_id,
                )
                continue
            await repo.mark_delivered(reminder.id)
            await session.commit()
            delivered += 1
    if delivered:
        logger.info("reminders_delivered count=%d", delivered)
    return delivered
