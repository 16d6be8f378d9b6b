"""Case lifecycle: numbering, status transitions, lawyer assignment.

State machine: pending --accept--> in-progress --close--> closed. Decline moves
pending or in-progress straight to closed with result ``dismissed``. Every
transition is a compare-and-swap on the current status, so when two staff
accept the same case at once exactly one succeeds and the other gets
"Case cannot be accepted - current status: in-progress".

Each mutation commits before its audit entry is written; an audit failure
never undoes a committed change.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from anarchy.core.permissions import PermissionDeniedError
from anarchy.models.case import (
    Case,
    CaseCreationRequest,
    CaseUpdateRequest,
    generate_case_number,
    sanitize_username,
)

if TYPE_CHECKING:
    from anarchy.core.audit import AuditLogger
    from anarchy.core.permissions import PermissionContext, PermissionService
    from anarchy.db.repository import CaseCounterRepository, CaseRepository

logger = logging.getLogger(__name__)


class CaseError(Exception):
    """A case operation could not complete. The message is safe to show users."""


def build_case_number(
    guild_sequence: int, client_username: str, now: datetime | None = None
) -> str:
    year = (now or datetime.now(UTC)).year
    return generate_case_number(year, guild_sequence, sanitize_username(client_username))


class CaseService:
    def __init__(
        self,
        case_repo: CaseRepository,
        counter_repo: CaseCounterRepository,
        permission_service: PermissionService,
        audit: AuditLogger | None = None,
    ) -> None:
        self.case_repo = case_repo
        self.counter_repo = counter_repo
        self.permission_service = permission_service
        self.audit = audit

    async def _require(self, context: PermissionContext, action: str) -> None:
        if not await self.permission_service.has_action_permission(context, "case"):
            raise PermissionDeniedError(f"You do not have permission to {action}")

    async def _commit_and_audit(
        self,
        context: PermissionContext,
        action: str,
        target_id: str,
        details: dict[str, object] | None = None,
    ) -> None:
        await self.case_repo.session.commit()
        if self.audit is not None:
            await self.audit.log_action(
                guild_id=context.guild_id,
                action=action,
                actor_id=context.user_id,
                target_id=target_id,
                details=details,
            )

    # --- Creation ---

    async def create_case(self, context: PermissionContext, request: CaseCreationRequest) -> Case:
        await self._require(context, "create cases")
        sequence = await self.counter_repo.get_next_case_number(request.guild_id)
        case_number = build_case_number(sequence, request.client_username)
        case = await self.case_repo.add(
            guild_id=request.guild_id,
            case_number=case_number,
            client_id=request.client_id,
            client_username=request.client_username,
            title=request.title,
            description=request.description,
            priority=request.priority,
        )
        await self._commit_and_audit(
            context,
            "case_created",
            case.id,
            {"case_number": case_number, "client_id": case.client_id},
        )
        logger.info("case_created case_id=%s case_number=%s", case.id, case_number)
        return case

    # --- Status transitions ---

    async def accept_case(
        self, context: PermissionContext, case_id: str, channel_id: str | None = None
    ) -> Case:
        """Move a pending case to in-progress with the acting user as lead."""
        await self._require(context, "accept cases")
        existing = await self.case_repo.find_by_id(case_id)
        if existing is None:
            raise CaseError("Case not found")
        if existing.status != "pending":
            raise CaseError(f"Case cannot be accepted - current status: {existing.status}")

        values: dict[str, object] = {
            "status": "in-progress",
            "lead_attorney_id": context.user_id,
            "assigned_lawyer_ids": [context.user_id],
        }
        if channel_id is not None:
            values["channel_id"] = channel_id
        updated = await self.case_repo.conditional_update(case_id, "pending", values)
        if updated is None:
            # Another accept won between the read and the write.
            current = await self.case_repo.find_by_id(case_id)
            if current is None:
                raise CaseError("Case not found")
            raise CaseError(f"Case cannot be accepted - current status: {current.status}")

        await self._commit_and_audit(context, "case_accepted", case_id)
        logger.info("case_accepted case_id=%s actor=%s", case_id, context.user_id)
        return updated

    async def decline_case(
        self, context: PermissionContext, case_id: str, reason: str | None = None
    ) -> Case:
        await self._require(context, "decline cases")
        values: dict[str, object] = {
            "status": "closed",
            "result": "dismissed",
            "result_notes": reason or "Case declined by staff",
            "closed_at": datetime.now(UTC),
            "closed_by": context.user_id,
        }
        updated = await self.case_repo.conditional_update(case_id, "pending", values)
        if updated is None:
            updated = await self.case_repo.conditional_update(case_id, "in-progress", values)
        if updated is None:
            current = await self.case_repo.find_by_id(case_id)
            if current is None:
                raise CaseError("Case not found")
            raise CaseError(f"Case cannot be declined - current status: {current.status}")

        await self._commit_and_audit(context, "case_declined", case_id, {"reason": reason})
        logger.info("case_declined case_id=%s actor=%s", case_id, context.user_id)
        return updated

    async def close_case(
        self,
        context: PermissionContext,
        case_id: str,
        result: str,
        result_notes: str | None = None,
    ) -> Case:
        """Close an in-progress case. Any other status is rejected before writing."""
        await self._require(context, "close cases")
        existing = await self.case_repo.find_by_id(case_id)
        if existing is None:
            raise CaseError("Case not found")
        if existing.status != "in-progress":
            raise CaseError(f"Case cannot be closed - current status: {existing.status}")

        updated = await self.case_repo.conditional_update(
            case_id,
            "in-progress",
            {
                "status": "closed",
                "result": result,
                "result_notes": result_notes,
                "closed_at": datetime.now(UTC),
                "closed_by": context.user_id,
            },
        )
        if updated is None:
            current = await self.case_repo.find_by_id(case_id)
            if current is None:
                raise CaseError("Case not found")
            raise CaseError(f"Case cannot be closed - current status: {current.status}")

        await self._commit_and_audit(context, "case_closed", case_id, {"result": result})
        logger.info("case_closed case_id=%s result=%s actor=%s", case_id, result, context.user_id)
        return updated

    # --- Lawyer assignment ---

    async def assign_lawyer(self, context: PermissionContext, case_id: str, lawyer_id: str) -> Case:
        """Idempotent: assigning an already-assigned lawyer returns the case unchanged."""
        await self._require(context, "assign lawyers to cases")
        existing = await self.case_repo.find_by_id(case_id)
        if existing is not None and lawyer_id in existing.assigned_lawyer_ids:
            return existing
        updated = await self.case_repo.assign_lawyer(case_id, lawyer_id)
        if updated is None:
            raise CaseError("Case not found or assignment failed")
        await self._commit_and_audit(context, "case_assigned", case_id, {"lawyer_id": lawyer_id})
        logger.info("lawyer_assigned case_id=%s lawyer_id=%s", case_id, lawyer_id)
        return updated

    async def unassign_lawyer(
        self, context: PermissionContext, case_id: str, lawyer_id: str
    ) -> Case:
        await self._require(context, "unassign lawyers from cases")
        updated = await self.case_repo.unassign_lawyer(case_id, lawyer_id)
        if updated is None:
            raise CaseError("Case not found or unassignment failed")
        await self._commit_and_audit(context, "case_unassigned", case_id, {"lawyer_id": lawyer_id})
        logger.info("lawyer_unassigned case_id=%s lawyer_id=%s", case_id, lawyer_id)
        return updated

    async def reassign_lawyer(
        self,
        context: PermissionContext,
        from_case_id: str,
        to_case_id: str,
        lawyer_id: str,
    ) -> tuple[Case, Case]:
        """Move a lawyer between cases. Same source and target is a no-op."""
        await self._require(context, "reassign lawyers between cases")
        if from_case_id == to_case_id:
            case = await self.case_repo.find_by_id(from_case_id)
            if case is None:
                raise CaseError("One or both cases not found, or reassignment failed")
            return case, case

        from_case = await self.case_repo.unassign_lawyer(from_case_id, lawyer_id)
        to_case = await self.case_repo.assign_lawyer(to_case_id, lawyer_id) if from_case else None
        if from_case is None or to_case is None:
            await self.case_repo.session.rollback()
            raise CaseError("One or both cases not found, or reassignment failed")
        await self._commit_and_audit(
            context,
            "case_assigned",
            to_case_id,
            {"lawyer_id": lawyer_id, "from_case_id": from_case_id},
        )
        logger.info(
            "lawyer_reassigned lawyer_id=%s from=%s to=%s", lawyer_id, from_case_id, to_case_id
        )
        return from_case, to_case

    async def set_lead_attorney(
        self, context: PermissionContext, case_id: str, lawyer_id: str
    ) -> Case:
        await self._require(context, "set lead attorney")
        updated = await self.case_repo.set_lead_attorney(case_id, lawyer_id)
        if updated is None:
            raise CaseError("Failed to update lead attorney")
        await self._commit_and_audit(
            context, "lead_attorney_changed", case_id, {"lead_attorney_id": lawyer_id}
        )
        return updated

    # --- Details ---

    async def update_case(
        self, context: PermissionContext, case_id: str, request: CaseUpdateRequest
    ) -> Case:
        await self._require(context, "update cases")
        values = request.model_dump(exclude_none=True)
        updated = await self.case_repo.update(case_id, values)
        if updated is None:
            raise CaseError("Case not found or update failed")
        await self._commit_and_audit(context, "case_updated", case_id, {"fields": sorted(values)})
        return updated

    async def add_document(
        self, context: PermissionContext, case_id: str, title: str, content: str
    ) -> Case:
        await self._require(context, "add documents to cases")
        updated = await self.case_repo.add_document(case_id, title, content, context.user_id)
        if updated is None:
            raise CaseError("Case not found or document addition failed")
        await self.case_repo.session.commit()
        return updated

    async def add_note(
        self, context: PermissionContext, case_id: str, content: str, is_internal: bool = False
    ) -> Case:
        await self._require(context, "add notes to cases")
        updated = await self.case_repo.add_note(case_id, content, context.user_id, is_internal)
        if updated is None:
            raise CaseError("Case not found or note addition failed")
        await self.case_repo.session.commit()
        return updated

    # --- Queries ---

    async def get_case_by_id(self, context: PermissionContext, case_id: str) -> Case | None:
        await self._require(context, "view case details")
        return await self.case_repo.find_by_id(case_id)

    async def get_case_by_case_number(
        self, context: PermissionContext, case_number: str
    ) -> Case | None:
        await self._require(context, "view case details")
        return await self.case_repo.find_by_case_number(context.guild_id, case_number)

    async def get_case_by_channel(self, context: PermissionContext, channel_id: str) -> Case | None:
        await self._require(context, "view case details")
        cases = await self.case_repo.search(context.guild_id, channel_id=channel_id, limit=1)
        return cases[0] if cases else None

    async def search_cases(
        self,
        context: PermissionContext,
        status: str | None = None,
        priority: str | None = None,
        lead_attorney_id: str | None = None,
        client_id: str | None = None,
        limit: int | None = None,
    ) -> list[Case]:
        await self._require(context, "view case details")
        return await self.case_repo.search(
            context.guild_id,
            status=status,
            priority=priority,
            lead_attorney_id=lead_attorney_id,
            client_id=client_id,
            limit=limit,
        )

    async def get_cases_by_client(self, context: PermissionContext, client_id: str) -> list[Case]:
        await self._require(context, "view case details")
        return await self.case_repo.search(context.guild_id, client_id=client_id)

    async def get_cases_by_lawyer(self, context: PermissionContext, lawyer_id: str) -> list[Case]:
        await self._require(context, "view case details")
        return await self.case_repo.find_assigned_to_lawyer(context.guild_id, lawyer_id)

    async def get_active_cases(self, context: PermissionContext) -> list[Case]:
        await self._require(context, "view case details")
        return await self.case_repo.find_by_guild_and_status(context.guild_id, "in-progress")

    async def get_pending_cases(self, context: PermissionContext) -> list[Case]:
        await self._require(context, "view case details")
        return await self.case_repo.find_by_guild_and_status(context.guild_id, "pending")

    async def get_case_stats(self, context: PermissionContext) -> dict[str, int]:
        await self._require(context, "view case statistics")
        return await self.case_repo.get_case_stats(context.guild_id)
