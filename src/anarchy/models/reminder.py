"""Reminder models and the short time-string format (``10m``, ``2h``, ``1d``)."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, Field

MAX_REMINDER_DAYS = 7
MAX_REMINDER_DELTA = timedelta(days=MAX_REMINDER_DAYS)
MIN_REMINDER_DELTA = timedelta(minutes=1)
MAX_REMINDER_MESSAGE_LENGTH = 500

_TIME_RE = re.compile(
    r"^(\d+)(m|min|mins|minute|minutes|h|hr|hrs|hour|hours|d|day|days)$", re.IGNORECASE
)

_UNIT_ALIASES: dict[str, str] = {
    **dict.fromkeys(("m", "min", "mins", "minute", "minutes"), "minutes"),
    **dict.fromkeys(("h", "hr", "hrs", "hour", "hours"), "hours"),
    **dict.fromkeys(("d", "day", "days"), "days"),
}


@dataclass(frozen=True)
class ParsedTime:
    value: int
    unit: str  # "minutes" | "hours" | "days"
    original: str

    @property
    def delta(self) -> timedelta:
        return timedelta(**{self.unit: self.value})

    def describe(self) -> str:
        """Human-readable form, e.g. ``2 hours``."""
        singular = self.unit[:-1]
        return f"{self.value} {singular if self.value == 1 else self.unit}"


def parse_time_string(time_string: str) -> ParsedTime | None:
    match = _TIME_RE.match(time_string.strip())
    if match is None:
        return None
    return ParsedTime(
        value=int(match.group(1)),
        unit=_UNIT_ALIASES[match.group(2).lower()],
        original=time_string,
    )


def validate_reminder_time(time_string: str) -> tuple[ParsedTime | None, str | None]:
    """Parse and bound-check a time string. Returns (parsed, error)."""
    parsed = parse_time_string(time_string)
    if parsed is None:
        return None, "Invalid time format. Use formats like: 10m, 2h, 1d (max 7 days)"
    if parsed.delta > MAX_REMINDER_DELTA:
        return None, f"Maximum reminder time is {MAX_REMINDER_DAYS} days"
    if parsed.delta < MIN_REMINDER_DELTA:
        return None, "Minimum reminder time is 1 minute"
    return parsed, None


def format_time_until(scheduled_for: datetime, now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    remaining = scheduled_for - now
    if remaining.total_seconds() <= 0:
        return "Overdue"
    days = remaining.days
    hours, rem = divmod(remaining.seconds, 3600)
    minutes = rem // 60
    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


class Reminder(BaseModel):
    id: str
    guild_id: str
    user_id: str
    username: str
    message: str
    scheduled_for: datetime
    channel_id: str | None = None  # None means deliver by DM
    case_id: str | None = None
    is_active: bool = True
    delivered_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
