"""Retainer agreements: a lawyer offers, the client signs, or the offer is withdrawn.

A client holds at most one pending and one signed retainer per guild. Signing
and cancelling are compare-and-swap on ``pending`` so a cancel racing a
signature cannot both succeed.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from anarchy.core.permissions import PermissionDeniedError
from anarchy.core.staff import validate_roblox_username
from anarchy.models.retainer import FormattedRetainerAgreement

if TYPE_CHECKING:
    from anarchy.core.audit import AuditLogger
    from anarchy.core.permissions import PermissionContext, PermissionService
    from anarchy.db.repository import RetainerRepository
    from anarchy.models.retainer import Retainer, RetainerStats

logger = logging.getLogger(__name__)


class RetainerError(Exception):
    """A retainer request was rejected. The message is safe to show users."""


def format_retainer_agreement(
    retainer: Retainer, client_name: str, lawyer_name: str
) -> FormattedRetainerAgreement:
    """Fill the agreement template of a signed retainer."""
    if retainer.status != "signed":
        raise RetainerError("Cannot format unsigned retainer agreement")
    if not retainer.client_roblox_username or retainer.signed_at is None:
        raise RetainerError("Retainer agreement is missing signature information")
    text = (
        retainer.agreement_template.replace("[CLIENT_NAME]", client_name)
        .replace("[SIGNATURE]", retainer.digital_signature or retainer.client_roblox_username)
        .replace("[DATE]", retainer.signed_at.strftime("%B %d, %Y"))
        .replace("[LAWYER_NAME]", lawyer_name)
    )
    return FormattedRetainerAgreement(
        client_name=client_name,
        client_roblox_username=retainer.client_roblox_username,
        lawyer_name=lawyer_name,
        signed_at=retainer.signed_at,
        agreement_text=text,
    )


class RetainerService:
    def __init__(
        self,
        retainer_repo: RetainerRepository,
        permission_service: PermissionService,
        audit: AuditLogger | None = None,
    ) -> None:
        self.retainer_repo = retainer_repo
        self.permission_service = permission_service
        self.audit = audit

    async def _require(self, context: PermissionContext, action: str) -> None:
        if not await self.permission_service.has_lawyer_permission_with_context(context):
            raise PermissionDeniedError(f"You do not have permission to {action}")

    async def _commit_and_audit(
        self,
        context: PermissionContext,
        action: str,
        retainer: Retainer,
    ) -> None:
        await self.retainer_repo.session.commit()
        if self.audit is not None:
            await self.audit.log_action(
                guild_id=context.guild_id,
                action=action,
                actor_id=context.user_id,
                target_id=retainer.id,
                details={"client_id": retainer.client_id, "lawyer_id": retainer.lawyer_id},
            )

    async def _get(self, context: PermissionContext, retainer_id: str) -> Retainer:
        retainer = await self.retainer_repo.find_by_id(retainer_id)
        if retainer is None or retainer.guild_id != context.guild_id:
            raise RetainerError("Retainer agreement not found")
        return retainer

    async def create_retainer(self, context: PermissionContext, client_id: str) -> Retainer:
        """Offer the standard agreement to *client_id*, with the acting lawyer representing."""
        await self._require(context, "create retainer agreements")
        if await self.retainer_repo.has_pending_retainer(context.guild_id, client_id):
            raise RetainerError("Client already has a pending retainer agreement")
        if await self.retainer_repo.has_active_retainer(context.guild_id, client_id):
            raise RetainerError("Client already has an active retainer agreement")

        retainer = await self.retainer_repo.add(context.guild_id, client_id, context.user_id)
        await self._commit_and_audit(context, "retainer_created", retainer)
        logger.info(
            "retainer_created retainer_id=%s client_id=%s lawyer_id=%s",
            retainer.id,
            client_id,
            context.user_id,
        )
        return retainer

    async def sign_retainer(
        self,
        context: PermissionContext,
        retainer_id: str,
        client_roblox_username: str,
        now: datetime | None = None,
    ) -> Retainer:
        """The client signs their own pending retainer with their Roblox username."""
        username = client_roblox_username.strip()
        if not username:
            raise RetainerError("A Roblox username is required to sign")
        retainer = await self._get(context, retainer_id)
        if retainer.client_id != context.user_id:
            raise RetainerError("Only the client can sign this retainer agreement")
        if retainer.status != "pending":
            raise RetainerError("Retainer agreement is not in pending status")
        problem = validate_roblox_username(username)
        if problem is not None:
            # Usernames are not verified against Roblox; a suspicious one is still accepted.
            logger.warning(
                "retainer_signature_username_suspicious retainer_id=%s username=%s reason=%s",
                retainer_id,
                username,
                problem,
            )

        signed = await self.retainer_repo.conditional_update(
            retainer_id,
            "pending",
            {
                "status": "signed",
                "client_roblox_username": username,
                "digital_signature": username,
                "signed_at": now or datetime.now(UTC),
            },
        )
        if signed is None:
            raise RetainerError("Retainer agreement is not in pending status")
        await self._commit_and_audit(context, "retainer_signed", signed)
        logger.info("retainer_signed retainer_id=%s client_id=%s", retainer_id, context.user_id)
        return signed

    async def cancel_retainer(self, context: PermissionContext, retainer_id: str) -> Retainer:
        await self._require(context, "cancel retainer agreements")
        retainer = await self._get(context, retainer_id)
        if retainer.status != "pending":
            raise RetainerError("Only pending retainer agreements can be cancelled")
        cancelled = await self.retainer_repo.conditional_update(
            retainer_id, "pending", {"status": "cancelled"}
        )
        if cancelled is None:
            raise RetainerError("Only pending retainer agreements can be cancelled")
        await self._commit_and_audit(context, "retainer_cancelled", cancelled)
        logger.info("retainer_cancelled retainer_id=%s actor=%s", retainer_id, context.user_id)
        return cancelled

    async def get_retainer(self, context: PermissionContext, retainer_id: str) -> Retainer:
        """The client may view their own retainer; lawyers may view any in the guild."""
        retainer = await self._get(context, retainer_id)
        if retainer.client_id != context.user_id:
            await self._require(context, "view this retainer agreement")
        return retainer

    async def get_active_retainers(self, context: PermissionContext) -> list[Retainer]:
        await self._require(context, "view retainer agreements")
        return await self.retainer_repo.find_active_retainers(context.guild_id)

    async def get_pending_retainers(self, context: PermissionContext) -> list[Retainer]:
        await self._require(context, "view pending retainer agreements")
        return await self.retainer_repo.find_pending_retainers(context.guild_id)

    async def get_client_retainers(
        self, context: PermissionContext, client_id: str, include_all: bool = False
    ) -> list[Retainer]:
        if client_id != context.user_id:
            await self._require(context, "view these retainer agreements")
        return await self.retainer_repo.find_client_retainers(
            context.guild_id, client_id, include_all=include_all
        )

    async def get_retainer_stats(self, context: PermissionContext) -> RetainerStats:
        await self._require(context, "view retainer statistics")
        return await self.retainer_repo.get_retainer_stats(context.guild_id)
