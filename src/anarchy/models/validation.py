"""Validation result models shared by every rule check.

A ValidationResult never signals failure by raising. Callers read ``valid`` and
show ``errors``; ``bypass_available`` tells the command layer that a privileged
user may confirm and override.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

BypassType = Literal["guild-owner", "admin"]


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    bypass_available: bool = False
    bypass_type: BypassType | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class RoleLimitValidationResult(ValidationResult):
    current_count: int
    max_count: int
    role_name: str


class ClientCaseLimitValidationResult(ValidationResult):
    current_count: int
    max_count: int
    client_id: str


class StaffValidationResult(ValidationResult):
    is_active_staff: bool
    current_role: str | None = None
    has_required_permissions: bool


class PermissionValidationResult(ValidationResult):
    has_permission: bool
    required_permission: str
    granted_permissions: list[str] = Field(default_factory=list)


class BypassRequest(BaseModel):
    """Enough context to replay a rule after the guild owner confirms an override."""

    rule_name: str
    bypass_type: BypassType
    errors: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class CommandValidationResult(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    requires_confirmation: bool = False
    bypass_requests: list[BypassRequest] = Field(default_factory=list)
    bypass_token: str | None = None


IssueSeverity = Literal["critical", "warning", "info"]


class IntegrityIssue(BaseModel):
    """A problem found by a cross-entity rule."""

    severity: IssueSeverity
    entity_type: str
    entity_id: str
    field: str = ""
    message: str
    rule_name: str = ""


class IntegrityReport(BaseModel):
    guild_id: str
    total_entities: int = 0
    issues: list[IntegrityIssue] = Field(default_factory=list)

    @property
    def issues_by_severity(self) -> dict[str, int]:
        counts = {"critical": 0, "warning": 0, "info": 0}
        for issue in self.issues:
            counts[issue.severity] += 1
        return counts
