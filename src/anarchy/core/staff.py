"""Staff lifecycle: hire, fire, promote, demote.

Mutations return a StaffOperationResult rather than raising for expected
denials. Read methods raise PermissionDeniedError. Every change is appended to
the staff member's promotion history and written to the audit log after the
change commits.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from anarchy.core.permissions import PermissionDeniedError
from anarchy.models.staff import (
    ROLE_HIERARCHY,
    PromotionRecord,
    StaffOperationResult,
    get_role_level,
    is_valid_role,
)

if TYPE_CHECKING:
    from anarchy.core.audit import AuditLogger
    from anarchy.core.business_rules import BusinessRuleValidationService
    from anarchy.core.permissions import PermissionContext, PermissionService
    from anarchy.db.repository import StaffRepository
    from anarchy.models.staff import Staff

logger = logging.getLogger(__name__)

_ROBLOX_USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,20}$")


def validate_roblox_username(username: str) -> str | None:
    """Return an error message, or None if the username is acceptable."""
    if not _ROBLOX_USERNAME_RE.match(username):
        return (
            "Username must be 3-20 characters and contain only letters, numbers, "
            "and underscores"
        )
    if username.startswith("_") or username.endswith("_"):
        return "Username cannot start or end with an underscore"
    return None


def _failure(error: str) -> StaffOperationResult:
    return StaffOperationResult(success=False, error=error)


class StaffService:
    def __init__(
        self,
        staff_repo: StaffRepository,
        permission_service: PermissionService,
        validation: BusinessRuleValidationService,
        audit: AuditLogger | None = None,
    ) -> None:
        self.staff_repo = staff_repo
        self.permission_service = permission_service
        self.validation = validation
        self.audit = audit

    async def _can_manage(self, context: PermissionContext) -> bool:
        service = self.permission_service
        return await service.has_senior_staff_permission_with_context(
            context
        ) or await service.is_admin(context)

    async def _require(self, context: PermissionContext, action: str) -> None:
        if not await self._can_manage(context):
            raise PermissionDeniedError(f"You do not have permission to {action}")

    async def _audit(
        self,
        context: PermissionContext,
        action: str,
        target_id: str,
        details: dict[str, object],
    ) -> None:
        if self.audit is not None:
            await self.audit.log_action(
                guild_id=context.guild_id,
                action=action,
                actor_id=context.user_id,
                target_id=target_id,
                details=details,
            )

    async def _check_role_limit(
        self, context: PermissionContext, user_id: str, role: str, bypass: bool, reason: str
    ) -> str | None:
        """Return an error if *role* is full and the limit is not being bypassed."""
        limit = await self.validation.validate_role_limit(context, role)
        if limit.valid:
            return None
        if not (bypass and limit.bypass_available):
            return ", ".join(limit.errors)
        await self._audit(
            context,
            "role_limit_bypassed",
            user_id,
            {
                "role": role,
                "current_count": limit.current_count,
                "max_count": limit.max_count,
                "reason": reason,
            },
        )
        logger.warning(
            "role_limit_bypassed guild_id=%s role=%s current=%d max=%d by=%s",
            context.guild_id,
            role,
            limit.current_count,
            limit.max_count,
            context.user_id,
        )
        return None

    # --- Mutations ---

    async def hire_staff(
        self,
        context: PermissionContext,
        user_id: str,
        role: str,
        roblox_username: str,
        reason: str = "",
        bypass_role_limit: bool = False,
    ) -> StaffOperationResult:
        if not await self._can_manage(context):
            return _failure("You do not have permission to hire staff members")
        if not is_valid_role(role):
            return _failure(f"Invalid role: {role}")
        username_error = validate_roblox_username(roblox_username)
        if username_error:
            return _failure(username_error)

        try:
            existing = await self.staff_repo.find_by_user_id(context.guild_id, user_id)
            if existing is not None and existing.is_active:
                return _failure("User is already an active staff member")
            taken = await self.staff_repo.find_by_roblox_username(
                context.guild_id, roblox_username
            )
            if taken is not None and taken.user_id != user_id:
                return _failure("Roblox username is already associated with another staff member")

            limit_error = await self._check_role_limit(
                context, user_id, role, bypass_role_limit, reason
            )
            if limit_error:
                return _failure(limit_error)

            staff = await self.staff_repo.add(
                guild_id=context.guild_id,
                user_id=user_id,
                role=role,
                hired_by=context.user_id,
                roblox_username=roblox_username,
                promotion_history=[
                    PromotionRecord(
                        from_role=role,
                        to_role=role,
                        promoted_by=context.user_id,
                        reason=reason,
                        action_type="hire",
                    )
                ],
            )
            await self.staff_repo.session.commit()
        except SQLAlchemyError:
            await self.staff_repo.session.rollback()
            logger.exception("staff_hire_failed guild_id=%s user_id=%s", context.guild_id, user_id)
            return _failure("Failed to hire staff member")

        await self._audit(
            context,
            "staff_hired",
            user_id,
            {"role": role, "roblox_username": roblox_username, "reason": reason},
        )
        logger.info("staff_hired guild_id=%s user_id=%s role=%s", context.guild_id, user_id, role)
        return StaffOperationResult(success=True, staff=staff)

    async def fire_staff(
        self, context: PermissionContext, user_id: str, reason: str = ""
    ) -> StaffOperationResult:
        if not await self._can_manage(context):
            return _failure("You do not have permission to fire staff members")
        try:
            staff = await self.staff_repo.find_by_user_id(context.guild_id, user_id)
            if staff is None or not staff.is_active:
                return _failure("Staff member not found or inactive")
            fired = await self.staff_repo.terminate(
                context.guild_id,
                user_id,
                context.user_id,
                PromotionRecord(
                    from_role=staff.role,
                    to_role=staff.role,
                    promoted_by=context.user_id,
                    reason=reason,
                    action_type="fire",
                ),
            )
            await self.staff_repo.session.commit()
        except SQLAlchemyError:
            await self.staff_repo.session.rollback()
            logger.exception("staff_fire_failed guild_id=%s user_id=%s", context.guild_id, user_id)
            return _failure("Failed to fire staff member")

        await self._audit(context, "staff_fired", user_id, {"role": staff.role, "reason": reason})
        logger.info("staff_fired guild_id=%s user_id=%s", context.guild_id, user_id)
        return StaffOperationResult(success=True, staff=fired)

    async def promote_staff(
        self,
        context: PermissionContext,
        user_id: str,
        new_role: str,
        reason: str = "",
        bypass_role_limit: bool = False,
    ) -> StaffOperationResult:
        if not await self._can_manage(context):
            return _failure("You do not have permission to promote staff members")
        if user_id == context.user_id:
            return _failure("Staff members cannot promote themselves")
        if not is_valid_role(new_role):
            return _failure(f"Invalid role: {new_role}")
        return await self._change_role(
            context, user_id, new_role, reason, "promotion", bypass_role_limit
        )

    async def demote_staff(
        self, context: PermissionContext, user_id: str, new_role: str, reason: str = ""
    ) -> StaffOperationResult:
        if not await self._can_manage(context):
            return _failure("You do not have permission to demote staff members")
        if not is_valid_role(new_role):
            return _failure(f"Invalid role: {new_role}")
        return await self._change_role(context, user_id, new_role, reason, "demotion", False)

    async def _change_role(
        self,
        context: PermissionContext,
        user_id: str,
        new_role: str,
        reason: str,
        action_type: str,
        bypass_role_limit: bool,
    ) -> StaffOperationResult:
        verb = "promote" if action_type == "promotion" else "demote"
        try:
            staff = await self.staff_repo.find_by_user_id(context.guild_id, user_id)
            if staff is None or not staff.is_active:
                return _failure("Staff member not found or inactive")

            old_level, new_level = get_role_level(staff.role), get_role_level(new_role)
            if action_type == "promotion":
                if new_level <= old_level:
                    return _failure("New role must be higher than current role for promotion")
                limit_error = await self._check_role_limit(
                    context, user_id, new_role, bypass_role_limit, reason
                )
                if limit_error:
                    return _failure(limit_error)
            elif new_level >= old_level:
                return _failure("New role must be lower than current role for demotion")

            updated = await self.staff_repo.update_role(
                context.guild_id,
                user_id,
                new_role,
                PromotionRecord(
                    from_role=staff.role,
                    to_role=new_role,
                    promoted_by=context.user_id,
                    reason=reason,
                    action_type=action_type,
                ),
            )
            if updated is None:
                return _failure("Failed to update staff role")
            await self.staff_repo.session.commit()
        except SQLAlchemyError:
            await self.staff_repo.session.rollback()
            logger.exception(
                "staff_%s_failed guild_id=%s user_id=%s", verb, context.guild_id, user_id
            )
            return _failure(f"Failed to {verb} staff member")

        action = "staff_promoted" if action_type == "promotion" else "staff_demoted"
        await self._audit(
            context,
            action,
            user_id,
            {"from_role": staff.role, "to_role": new_role, "reason": reason},
        )
        logger.info(
            "%s guild_id=%s user_id=%s from=%s to=%s",
            action,
            context.guild_id,
            user_id,
            staff.role,
            new_role,
        )
        return StaffOperationResult(success=True, staff=updated)

    # --- Queries ---

    async def get_staff_list(
        self, context: PermissionContext, role_filter: str | None = None
    ) -> list[Staff]:
        """Active staff, highest role first."""
        await self._require(context, "view staff list")
        staff = await self.staff_repo.find_by_guild(context.guild_id, status="active")
        if role_filter is not None:
            staff = [s for s in staff if s.role == role_filter]
        return sorted(staff, key=lambda s: s.level, reverse=True)

    async def get_staff_info(self, context: PermissionContext, user_id: str) -> Staff | None:
        await self._require(context, "view staff information")
        return await self.staff_repo.find_by_user_id(context.guild_id, user_id)

    async def get_role_counts(self, context: PermissionContext) -> dict[str, int]:
        await self._require(context, "view role counts")
        return {
            role: await self.staff_repo.get_staff_count_by_role(context.guild_id, role)
            for role in ROLE_HIERARCHY
        }
