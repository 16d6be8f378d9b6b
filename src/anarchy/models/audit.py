"""Audit log entries. Append-only record of what staff and clients did."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

AuditAction = Literal[
    "staff_hired",
    "staff_fired",
    "staff_promoted",
    "staff_demoted",
    "case_created",
    "case_accepted",
    "case_assigned",
    "case_unassigned",
    "case_closed",
    "case_declined",
    "case_updated",
    "case_archived",
    "lead_attorney_changed",
    "channel_archived",
    "channel_permissions_updated",
    "config_updated",
    "config_permission_updated",
    "admin_added",
    "admin_removed",
    "role_limit_bypassed",
    "guild_owner_bypass",
    "business_rule_violation",
    "transaction_rolled_back",
    "retainer_created",
    "retainer_signed",
    "retainer_cancelled",
    "feedback_submitted",
]


class AuditLogEntry(BaseModel):
    guild_id: str
    action: AuditAction
    actor_id: str
    target_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
