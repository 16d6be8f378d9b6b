"""Business-rule checks: role hiring caps, client case load, staff status, permissions.

Every check returns a ValidationResult subtype and never raises for a denial.
Storage failures are converted into a failed result, so a broken lookup can
never read as "allowed".
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

from anarchy.models.case import ACTIVE_CASE_STATUSES
from anarchy.models.staff import get_role_max_count, role_has_permission
from anarchy.models.validation import (
    ClientCaseLimitValidationResult,
    PermissionValidationResult,
    RoleLimitValidationResult,
    StaffValidationResult,
    ValidationResult,
)

if TYPE_CHECKING:
    from anarchy.core.permissions import PermissionContext, PermissionService
    from anarchy.db.repository import CaseRepository, GuildConfigRepository, StaffRepository

logger = logging.getLogger(__name__)

# Applies to every client, guild owners included. Not configurable.
MAX_ACTIVE_CASES_PER_CLIENT = 5
CASE_LIMIT_WARNING_THRESHOLD = 3


def fold_results(results: Sequence[ValidationResult]) -> ValidationResult:
    """Combine results: valid is AND, errors/warnings concatenate in order, bypass is OR."""
    bypass_available = any(r.bypass_available for r in results)
    return ValidationResult(
        valid=all(r.valid for r in results),
        errors=[e for r in results for e in r.errors],
        warnings=[w for r in results for w in r.warnings],
        bypass_available=bypass_available,
        bypass_type="guild-owner" if bypass_available else None,
        metadata={
            "rule_type": "multiple-validation",
            "validation_count": len(results),
            "valid_results": sum(1 for r in results if r.valid),
            "invalid_results": sum(1 for r in results if not r.valid),
        },
    )


class BusinessRuleValidationService:
    def __init__(
        self,
        guild_config_repo: GuildConfigRepository,
        staff_repo: StaffRepository,
        case_repo: CaseRepository,
        permission_service: PermissionService,
    ) -> None:
        self.guild_config_repo = guild_config_repo
        self.staff_repo = staff_repo
        self.case_repo = case_repo
        self.permission_service = permission_service

    async def validate_role_limit(
        self, context: PermissionContext, role: str
    ) -> RoleLimitValidationResult:
        """Check that one more *role* can be hired in the guild.

        The guild owner is offered a bypass when the cap is hit; the reported
        counts are never adjusted.
        """
        try:
            current = await self.staff_repo.get_staff_count_by_role(context.guild_id, role)
        except Exception:  # Fail closed: a broken count never permits a hire
            logger.exception(
                "role_limit_validation_failed guild_id=%s role=%s", context.guild_id, role
            )
            return RoleLimitValidationResult(
                valid=False,
                errors=["Failed to validate role limits"],
                current_count=0,
                max_count=0,
                role_name=role,
            )

        maximum = get_role_max_count(role)
        can_hire = current < maximum
        owner_bypass = not can_hire and context.is_guild_owner
        logger.debug(
            "role_limit_checked guild_id=%s role=%s current=%d max=%d valid=%s",
            context.guild_id,
            role,
            current,
            maximum,
            can_hire,
        )
        return RoleLimitValidationResult(
            valid=can_hire,
            errors=[]
            if can_hire
            else [f"Cannot hire {role}. Maximum limit of {maximum} reached (current: {current})"],
            bypass_available=owner_bypass,
            bypass_type="guild-owner" if owner_bypass else None,
            current_count=current,
            max_count=maximum,
            role_name=role,
            metadata={
                "rule_type": "role-limit",
                "role": role,
                "current_count": current,
                "max_count": maximum,
            },
        )

    async def validate_client_case_limit(
        self, client_id: str, guild_id: str
    ) -> ClientCaseLimitValidationResult:
        """Check the client's open case load in this guild. No bypass exists."""
        try:
            cases = await self.case_repo.find_by_client(client_id)
        except Exception:  # Fail closed
            logger.exception(
                "case_limit_validation_failed guild_id=%s client_id=%s", guild_id, client_id
            )
            return ClientCaseLimitValidationResult(
                valid=False,
                errors=["Failed to validate client case limits"],
                current_count=0,
                max_count=MAX_ACTIVE_CASES_PER_CLIENT,
                client_id=client_id,
            )

        active = sum(
            1 for c in cases if c.guild_id == guild_id and c.status in ACTIVE_CASE_STATUSES
        )
        maximum = MAX_ACTIVE_CASES_PER_CLIENT
        can_create = active < maximum
        warnings = []
        if active >= CASE_LIMIT_WARNING_THRESHOLD:
            warnings.append(f"Client has {active} active cases (limit: {maximum})")
        return ClientCaseLimitValidationResult(
            valid=can_create,
            errors=[]
            if can_create
            else [
                f"Client has reached maximum active case limit ({maximum}). "
                f"Current active cases: {active}"
            ],
            warnings=warnings,
            current_count=active,
            max_count=maximum,
            client_id=client_id,
            metadata={
                "rule_type": "case-limit",
                "client_id": client_id,
                "current_count": active,
                "max_count": maximum,
            },
        )

    async def validate_staff_member(
        self,
        context: PermissionContext,
        user_id: str,
        required_permissions: Sequence[str] = (),
    ) -> StaffValidationResult:
        """Check that *user_id* is active staff whose role level covers each permission."""
        try:
            staff = await self.staff_repo.find_by_user_id(context.guild_id, user_id)
        except Exception:  # Fail closed
            logger.exception(
                "staff_validation_failed guild_id=%s user_id=%s", context.guild_id, user_id
            )
            return StaffValidationResult(
                valid=False,
                errors=["Failed to validate staff member"],
                is_active_staff=False,
                has_required_permissions=False,
            )

        is_active = staff is not None and staff.status == "active"
        role = staff.role if staff else None
        granted = [p for p in required_permissions if role_has_permission(role, p)]
        missing = [p for p in required_permissions if p not in granted]

        errors = []
        if not is_active:
            errors.append("User is not an active staff member")
        if missing:
            errors.append(f"User lacks required permissions: {', '.join(missing)}")

        return StaffValidationResult(
            valid=is_active and not missing,
            errors=errors,
            bypass_available=context.is_guild_owner,
            bypass_type="guild-owner" if context.is_guild_owner else None,
            is_active_staff=is_active,
            current_role=role,
            has_required_permissions=not missing,
            metadata={
                "rule_type": "staff-validation",
                "user_id": user_id,
                "current_role": role,
                "required_permissions": list(required_permissions),
                "granted_permissions": granted,
            },
        )

    async def validate_permission(
        self, context: PermissionContext, required_permission: str
    ) -> PermissionValidationResult:
        if context.is_guild_owner:
            return PermissionValidationResult(
                valid=True,
                bypass_available=True,
                bypass_type="guild-owner",
                has_permission=True,
                required_permission=required_permission,
                granted_permissions=[required_permission],
                metadata={
                    "rule_type": "permission-validation",
                    "required_permission": required_permission,
                    "bypass_reason": "guild-owner",
                },
            )

        try:
            has_permission = await self._check_permission(context, required_permission)
            summary = await self.permission_service.get_permission_summary(context)
            granted = [
                name
                for name, value in summary.items()
                if value and name not in ("is_admin", "is_guild_owner")
            ]
        except Exception:  # A failed check is indistinguishable from a missing permission
            logger.exception(
                "permission_validation_failed guild_id=%s user_id=%s permission=%s",
                context.guild_id,
                context.user_id,
                required_permission,
            )
            has_permission = False
            granted = []

        return PermissionValidationResult(
            valid=has_permission,
            errors=(
                [] if has_permission else [f"Missing required permission: {required_permission}"]
            ),
            has_permission=has_permission,
            required_permission=required_permission,
            granted_permissions=granted,
            metadata={
                "rule_type": "permission-validation",
                "required_permission": required_permission,
                "granted_permissions": granted,
            },
        )

    async def _check_permission(self, context: PermissionContext, permission: str) -> bool:
        service = self.permission_service
        if permission in ("senior-staff", "hr"):
            return await service.has_senior_staff_permission_with_context(context)
        if permission in ("lawyer", "retainer"):
            return await service.has_lawyer_permission_with_context(context)
        if permission == "lead-attorney":
            return await service.has_lead_attorney_permission_with_context(context)
        return await service.has_action_permission(context, permission)

    def validate_multiple(self, results: Sequence[ValidationResult]) -> ValidationResult:
        return fold_results(results)
