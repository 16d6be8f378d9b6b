"""Discord UI views.

BypassConfirmView: Confirm/Cancel for a guild-owner rule override.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import discord

from anarchy.discord.embeds import build_error_embed

if TYPE_CHECKING:
    from anarchy.core.command_validation import CommandValidationService

logger = logging.getLogger(__name__)

OnConfirm = Callable[[discord.Interaction], Awaitable[None]]


class BypassConfirmView(discord.ui.View):
    """Lets the guild owner confirm an override of failed, bypassable rules.

    The pending bypass lives in CommandValidationService under ``bypass_token``.
    Confirming consumes that one bypass and runs ``on_confirm``; an expired
    bypass is refused.
    """

    def __init__(
        self,
        *,
        original_user_id: int,
        bypass_token: str,
        validation_service: CommandValidationService,
        on_confirm: OnConfirm,
        timeout: float = 300,
    ) -> None:
        super().__init__(timeout=timeout)
        self.original_user_id = original_user_id
        self.bypass_token = bypass_token
        self.validation_service = validation_service
        self.on_confirm = on_confirm

    async def _check_user(self, interaction: discord.Interaction) -> bool:
        if interaction.user.id != self.original_user_id:
            await interaction.response.send_message(
                "Only the server owner who ran this command can use these buttons.",
                ephemeral=True,
            )
            return False
        return True

    def _disable_all(self) -> None:
        for item in self.children:
            if isinstance(item, discord.ui.Button):
                item.disabled = True

    @discord.ui.button(label="Confirm Override", style=discord.ButtonStyle.danger)
    async def confirm(
        self,
        interaction: discord.Interaction,
        button: discord.ui.Button,  # noqa: ARG002
    ) -> None:
        if not await self._check_user(interaction):
            return
        self._disable_all()
        pending = self.validation_service.consume_bypass(
            str(self.original_user_id), self.bypass_token
        )
        if pending is None:
            await interaction.response.edit_message(
                embed=build_error_embed(
                    "This override has expired. Run the command again.", title="Expired"
                ),
                view=self,
            )
            self.stop()
            return
        await interaction.response.edit_message(view=self)
        self.stop()
        await self.on_confirm(interaction)

    @discord.ui.button(label="Cancel", style=discord.ButtonStyle.secondary)
    async def cancel(
        self,
        interaction: discord.Interaction,
        button: discord.ui.Button,  # noqa: ARG002
    ) -> None:
        if not await self._check_user(interaction):
            return
        self.validation_service.cancel_bypass(str(self.original_user_id), self.bypass_token)
        self._disable_all()
        await interaction.response.edit_message(
            embed=discord.Embed(title="Cancelled", description="No changes were made."),
            view=self,
        )
        self.stop()

    async def on_timeout(self) -> None:
        self.validation_service.cancel_bypass(str(self.original_user_id), self.bypass_token)
        self._disable_all()
