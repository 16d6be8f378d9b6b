"""Staff models and the firm's role hierarchy.

Roles are ordered by level (Paralegal=1 ... Managing Partner=6). Each role has a
fixed hiring cap per guild and implies a permission level used by the
business-rule checks.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field

StaffRole = Literal[
    "Managing Partner",
    "Senior Partner",
    "Junior Partner",
    "Senior Associate",
    "Junior Associate",
    "Paralegal",
]

StaffStatus = Literal["active", "terminated"]

# Highest first. Levels are 6..1; 0 means "not a staff role".
ROLE_HIERARCHY: tuple[str, ...] = (
    "Managing Partner",
    "Senior Partner",
    "Junior Partner",
    "Senior Associate",
    "Junior Associate",
    "Paralegal",
)

ROLE_LEVELS: dict[str, int] = {
    "Managing Partner": 6,
    "Senior Partner": 5,
    "Junior Partner": 4,
    "Senior Associate": 3,
    "Junior Associate": 2,
    "Paralegal": 1,
}

ROLE_MAX_COUNTS: dict[str, int] = {
    "Managing Partner": 1,
    "Senior Partner": 3,
    "Junior Partner": 5,
    "Senior Associate": 10,
    "Junior Associate": 10,
    "Paralegal": 10,
}

# Minimum role level for each named permission when judged by staff role.
# Independent of the guild's configurable permission-to-role mapping.
PERMISSION_LEVEL_THRESHOLDS: dict[str, int] = {
    "admin": 6,
    "senior-staff": 5,
    "lead-attorney": 3,
    "lawyer": 2,
    "case": 2,
}

# Recommended number of in-progress cases per lawyer, by role.
ROLE_WORKLOAD_LIMITS: dict[str, int] = {
    "Managing Partner": 20,
    "Senior Partner": 15,
    "Junior Partner": 12,
    "Senior Associate": 10,
    "Junior Associate": 8,
    "Paralegal": 5,
}


def is_valid_role(role: str) -> bool:
    return role in ROLE_LEVELS


def get_role_level(role: str) -> int:
    """Return the numeric level for a role, 0 for anything unknown."""
    return ROLE_LEVELS.get(role, 0)


def get_role_max_count(role: str) -> int:
    return ROLE_MAX_COUNTS.get(role, 0)


def get_next_promotion(role: str) -> str | None:
    """Return the role one step above *role*, or None at the top."""
    if role not in ROLE_LEVELS:
        return None
    index = ROLE_HIERARCHY.index(role)
    return ROLE_HIERARCHY[index - 1] if index > 0 else None


def get_previous_demotion(role: str) -> str | None:
    """Return the role one step below *role*, or None at the bottom."""
    if role not in ROLE_LEVELS:
        return None
    index = ROLE_HIERARCHY.index(role)
    return ROLE_HIERARCHY[index + 1] if index < len(ROLE_HIERARCHY) - 1 else None


def is_superior_role(role: str, other: str) -> bool:
    return get_role_level(role) > get_role_level(other)


def role_has_permission(role: str | None, permission: str) -> bool:
    """Check a named permission against a role's level.

    Unknown permissions are never granted by role level alone.
    """
    if role is None:
        return False
    threshold = PERMISSION_LEVEL_THRESHOLDS.get(permission)
    if threshold is None:
        return False
    return get_role_level(role) >= threshold


class PromotionRecord(BaseModel):
    """One entry in a staff member's role history."""

    from_role: str
    to_role: str
    promoted_by: str
    promoted_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    reason: str = ""
    action_type: Literal["hire", "promotion", "demotion", "fire"]


class Staff(BaseModel):
    """A staff member of the firm in one guild."""

    id: str
    guild_id: str
    user_id: str
    roblox_username: str = ""
    role: StaffRole
    status: StaffStatus = "active"
    hired_by: str
    hired_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    terminated_by: str | None = None
    terminated_at: datetime | None = None
    promotion_history: list[PromotionRecord] = Field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def level(self) -> int:
        return get_role_level(self.role)


class StaffOperationResult(BaseModel):
    """Outcome of a hire/fire/promote/demote request."""

    success: bool
    staff: Staff | None = None
    error: str | None = None
