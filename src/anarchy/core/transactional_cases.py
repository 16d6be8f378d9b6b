"""Case mutations that run inside a single unit of work.

Case creation draws the next guild sequence number, inserts the case, and
writes its audit entry in one transaction, so a failure at any step leaves no
case and no gap in what other readers see. Discord side effects (the case
channel, a DM to the client) are outside that transaction; their undo steps
are registered with the RollbackService before they are attempted.

Callers only ever see a generic CaseError after a rollback. Permission and
case-limit denials are raised before any transaction starts.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING

from anarchy.core.cases import CaseError, build_case_number
from anarchy.core.permissions import PermissionDeniedError
from anarchy.core.rollback import (
    audit_log_compensation,
    channel_deletion_compensation,
    notification_compensation,
)
from anarchy.db.repository import AuditLogRepository, CaseCounterRepository, CaseRepository
from anarchy.models.audit import AuditLogEntry

if TYPE_CHECKING:
    from anarchy.core.audit import AuditLogger
    from anarchy.core.business_rules import BusinessRuleValidationService
    from anarchy.core.permissions import PermissionContext, PermissionService
    from anarchy.core.rollback import RollbackService
    from anarchy.db.unit_of_work import UnitOfWorkFactory
    from anarchy.models.case import Case, CaseCreationRequest, CaseUpdateRequest

logger = logging.getLogger(__name__)

ChannelCreator = Callable[["Case"], Awaitable["str | None"]]
ChannelDeleter = Callable[[str], Awaitable[None]]
UserNotifier = Callable[[str, str], Awaitable[None]]

CREATION_FAILED_NOTICE = (
    "Case creation failed and has been rolled back. Please try again or contact support."
)


class TransactionalCaseService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        rollback_service: RollbackService,
        permission_service: PermissionService,
        validation: BusinessRuleValidationService,
        audit: AuditLogger | None = None,
        create_channel: ChannelCreator | None = None,
        delete_channel: ChannelDeleter | None = None,
        notify_user: UserNotifier | None = None,
    ) -> None:
        self.uow_factory = uow_factory
        self.rollback_service = rollback_service
        self.permission_service = permission_service
        self.validation = validation
        self.audit = audit
        self.create_channel = create_channel
        self.delete_channel = delete_channel
        self.notify_user = notify_user

    async def _require(self, context: PermissionContext, action: str) -> None:
        if not await self.permission_service.has_action_permission(context, "case"):
            raise PermissionDeniedError(f"You do not have permission to {action}")

    def _register_creation_compensations(
        self,
        transaction_id: str,
        context: PermissionContext,
        request: CaseCreationRequest,
        channel: dict[str, str],
    ) -> None:
        register = self.rollback_service.register_compensation_action
        if self.audit is not None:
            register(
                transaction_id,
                audit_log_compensation(
                    self.audit,
                    guild_id=request.guild_id,
                    actor_id=context.user_id,
                    operation="create_case",
                    reason=f"Case creation failed for: {request.title}",
                    target_id=request.client_id,
                ),
            )
        if self.notify_user is not None:
            register(
                transaction_id,
                notification_compensation(
                    self.notify_user, [request.client_id], CREATION_FAILED_NOTICE
                ),
            )
        if self.create_channel is not None and self.delete_channel is not None:
            register(
                transaction_id,
                channel_deletion_compensation(self.delete_channel, lambda: channel.get("id")),
            )

    async def create_case(self, context: PermissionContext, request: CaseCreationRequest) -> Case:
        await self._require(context, "create cases")
        limit = await self.validation.validate_client_case_limit(
            request.client_id, request.guild_id
        )
        if not limit.valid:
            raise CaseError(", ".join(limit.errors))

        uow = self.uow_factory.create()
        channel: dict[str, str] = {}
        try:
            transaction_id = await uow.begin()
            self._register_creation_compensations(transaction_id, context, request, channel)

            case_repo = uow.get_repository(CaseRepository)
            sequence = await uow.get_repository(CaseCounterRepository).get_next_case_number(
                request.guild_id
            )
            case_number = build_case_number(sequence, request.client_username)
            case = await case_repo.add(
                guild_id=request.guild_id,
                case_number=case_number,
                client_id=request.client_id,
                client_username=request.client_username,
                title=request.title,
                description=request.description,
                priority=request.priority,
            )
            await uow.get_repository(AuditLogRepository).log_action(
                AuditLogEntry(
                    guild_id=request.guild_id,
                    action="case_created",
                    actor_id=context.user_id,
                    target_id=request.client_id,
                    details={
                        "case_id": case.id,
                        "case_number": case_number,
                        "title": request.title,
                        "priority": request.priority,
                        "transaction_id": transaction_id,
                    },
                )
            )

            if self.create_channel is not None:
                channel_id = None
                try:
                    channel_id = await self.create_channel(case)
                except Exception:  # A missing channel does not block the case
                    logger.warning(
                        "case_channel_create_failed case_number=%s", case_number, exc_info=True
                    )
                if channel_id:
                    channel["id"] = channel_id
                    case = await case_repo.update(case.id, {"channel_id": channel_id}) or case

            await uow.commit()
        except Exception as exc:
            rollback_context = self.rollback_service.create_rollback_context(
                uow,
                "create_case",
                exc,
                guild_id=request.guild_id,
                user_id=context.user_id,
                metadata={"client_id": request.client_id, "title": request.title},
            )
            result = await self.rollback_service.perform_rollback(uow, rollback_context)
            logger.exception(
                "case_create_failed guild_id=%s client_id=%s rollback_success=%s",
                request.guild_id,
                request.client_id,
                result.success,
            )
            raise CaseError("Failed to create case") from exc

        self.rollback_service.clear_transaction(transaction_id)
        await uow.dispose()
        logger.info(
            "case_created case_id=%s case_number=%s transaction_id=%s",
            case.id,
            case.case_number,
            transaction_id,
        )
        return case

    async def assign_lawyer_transactional(
        self,
        context: PermissionContext,
        case_id: str,
        lawyer_ids: Sequence[str],
        lead_attorney_id: str | None = None,
        validate_lawyers: bool = True,
    ) -> Case:
        """Assign several lawyers, and optionally a lead, all or nothing."""
        await self._require(context, "assign lawyers to cases")
        if validate_lawyers:
            for lawyer_id in lawyer_ids:
                check = await self.validation.validate_staff_member(context, lawyer_id, ["lawyer"])
                if not check.valid:
                    raise CaseError(
                        f"User {lawyer_id} cannot be assigned to case: {', '.join(check.errors)}"
                    )

        uow = self.uow_factory.create()
        try:
            transaction_id = await uow.begin()
            case_repo = uow.get_repository(CaseRepository)
            existing = await case_repo.find_by_id(case_id)
            if existing is None:
                raise CaseError("Case not found")

            updated = existing
            for lawyer_id in lawyer_ids:
                assigned = await case_repo.assign_lawyer(case_id, lawyer_id)
                if assigned is None:
                    raise CaseError("Case assignment failed")
                updated = assigned
            if lead_attorney_id is not None:
                led = await case_repo.set_lead_attorney(case_id, lead_attorney_id)
                if led is None:
                    raise CaseError("Failed to set lead attorney")
                updated = led

            await uow.get_repository(AuditLogRepository).log_action(
                AuditLogEntry(
                    guild_id=context.guild_id,
                    action="case_assigned",
                    actor_id=context.user_id,
                    target_id=",".join(lawyer_ids),
                    details={
                        "case_id": case_id,
                        "case_number": existing.case_number,
                        "lawyer_ids": list(lawyer_ids),
                        "lead_attorney_id": lead_attorney_id,
                        "transaction_id": transaction_id,
                    },
                )
            )
            await uow.commit()
        except Exception as exc:
            rollback_context = self.rollback_service.create_rollback_context(
                uow,
                "assign_lawyer",
                exc,
                guild_id=context.guild_id,
                user_id=context.user_id,
                metadata={"case_id": case_id, "lawyer_ids": list(lawyer_ids)},
            )
            await self.rollback_service.perform_rollback(uow, rollback_context)
            logger.exception("case_assign_failed case_id=%s", case_id)
            raise CaseError("Failed to assign lawyer to case") from exc

        await uow.dispose()
        logger.info(
            "lawyers_assigned case_id=%s lawyer_ids=%s transaction_id=%s",
            case_id,
            ",".join(lawyer_ids),
            transaction_id,
        )
        return updated

    async def update_case_transactional(
        self, context: PermissionContext, case_id: str, request: CaseUpdateRequest
    ) -> Case:
        await self._require(context, "update cases")
        values = request.model_dump(exclude_none=True)

        uow = self.uow_factory.create()
        try:
            transaction_id = await uow.begin()
            case_repo = uow.get_repository(CaseRepository)
            existing = await case_repo.find_by_id(case_id)
            if existing is None:
                raise CaseError("Case not found")
            updated = await case_repo.update(case_id, values)
            if updated is None:
                raise CaseError("Case update failed")

            await uow.get_repository(AuditLogRepository).log_action(
                AuditLogEntry(
                    guild_id=context.guild_id,
                    action="case_updated",
                    actor_id=context.user_id,
                    target_id=case_id,
                    details={
                        "case_number": existing.case_number,
                        "fields_updated": sorted(values),
                        "before": {k: getattr(existing, k) for k in values},
                        "after": {k: getattr(updated, k) for k in values},
                        "transaction_id": transaction_id,
                    },
                )
            )
            await uow.commit()
        except Exception as exc:
            rollback_context = self.rollback_service.create_rollback_context(
                uow,
                "update_case",
                exc,
                guild_id=context.guild_id,
                user_id=context.user_id,
                metadata={"case_id": case_id, "fields": sorted(values)},
            )
            await self.rollback_service.perform_rollback(uow, rollback_context)
            logger.exception("case_update_failed case_id=%s", case_id)
            raise CaseError("Failed to update case") from exc

        await uow.dispose()
        logger.info("case_updated case_id=%s fields=%s", case_id, ",".join(sorted(values)))
        return updated
