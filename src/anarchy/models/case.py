"""Case models, case numbering, and channel naming.

Case numbers look like ``2026-0042-username``: creation year, a per-guild
sequence padded to four digits, and the sanitized client username.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field

CaseStatus = Literal["pending", "in-progress", "closed"]
CasePriority = Literal["low", "medium", "high", "urgent"]
CaseResult = Literal["win", "loss", "settlement", "dismissed", "withdrawn"]

CASE_STATUSES: tuple[str, ...] = ("pending", "in-progress", "closed")
CASE_PRIORITIES: tuple[str, ...] = ("low", "medium", "high", "urgent")
CASE_RESULTS: tuple[str, ...] = ("win", "loss", "settlement", "dismissed", "withdrawn")

# Statuses that count toward a client's active case load.
ACTIVE_CASE_STATUSES: tuple[str, ...] = ("pending", "in-progress")

MAX_CHANNEL_NAME_LENGTH = 100

_CASE_NUMBER_RE = re.compile(r"^(\d{4})-(\d{4})-(.+)$")
_USERNAME_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_-]")
_CHANNEL_UNSAFE_RE = re.compile(r"[^a-z0-9-]")


class CaseDocument(BaseModel):
    id: str
    title: str
    content: str
    created_by: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class CaseNote(BaseModel):
    id: str
    content: str
    created_by: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    is_internal: bool = False  # hidden from the client


class Case(BaseModel):
    """A client's legal case within one guild."""

    id: str
    guild_id: str
    case_number: str
    client_id: str
    client_username: str
    title: str
    description: str = ""
    status: CaseStatus = "pending"
    priority: CasePriority = "medium"
    lead_attorney_id: str | None = None
    assigned_lawyer_ids: list[str] = Field(default_factory=list)
    channel_id: str | None = None
    result: CaseResult | None = None
    result_notes: str | None = None
    closed_by: str | None = None
    closed_at: datetime | None = None
    documents: list[CaseDocument] = Field(default_factory=list)
    notes: list[CaseNote] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_CASE_STATUSES


class CaseCreationRequest(BaseModel):
    guild_id: str
    client_id: str
    client_username: str
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    priority: CasePriority = "medium"


class CaseUpdateRequest(BaseModel):
    """Partial update. Fields left as None are not touched."""

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    priority: CasePriority | None = None
    channel_id: str | None = None


def sanitize_username(username: str) -> str:
    """Replace characters that are unsafe in case numbers with hyphens."""
    return _USERNAME_UNSAFE_RE.sub("-", username)


def generate_case_number(year: int, count: int, username: str) -> str:
    return f"{year}-{count:04d}-{username}"


def parse_case_number(case_number: str) -> tuple[int, int, str] | None:
    """Split a case number into (year, sequence, username), or None if malformed."""
    match = _CASE_NUMBER_RE.match(case_number)
    if match is None:
        return None
    return int(match.group(1)), int(match.group(2)), match.group(3)


def generate_channel_name(case_number: str) -> str:
    name = _CHANNEL_UNSAFE_RE.sub("-", f"case-{case_number}".lower())
    return name[:MAX_CHANNEL_NAME_LENGTH]
