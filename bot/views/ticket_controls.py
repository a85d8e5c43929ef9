from __future__ import annotations

from typing import TYPE_CHECKING

import discord

from core.errors import handle_view_error
from services.ticket_service import Actor
from utils.constants import InteractionKind
from utils.embeds import error_embed, success_embed

if TYPE_CHECKING:
    from core.bot import TicketBot


class TicketControlsView(discord.ui.View):
    """Claim/close buttons posted in every ticket channel; one registered instance serves all tickets."""

    def __init__(self, bot: TicketBot) -> None:
        super().__init__(timeout=None)
        self.bot = bot

    def _actor(self, interaction: discord.Interaction) -> Actor | None:
        if not interaction.guild or not isinstance(interaction.user, discord.Member):
            return None
        return Actor.from_member(interaction.user, self.bot.config.discord.admin_role_id)

    @discord.ui.button(
        label="Claim",
        style=discord.ButtonStyle.primary,
        emoji="🛠️",
        custom_id=InteractionKind.CLAIM.value,
    )
    async def claim_button(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        actor = self._actor(interaction)
        if actor is None or interaction.channel_id is None:
            await interaction.response.send_message(embed=error_embed("Guild context is required."), ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        await self.bot.ticket_service.claim(interaction.guild.id, interaction.channel_id, actor)  # type: ignore[union-attr]
        await interaction.followup.send(embed=success_embed("You claimed this ticket."), ephemeral=True)

    @discord.ui.button(
        label="Close",
        style=discord.ButtonStyle.danger,
        emoji="🔒",
        custom_id=InteractionKind.CLOSE.value,
    )
    async def close_button(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        actor = self._actor(interaction)
        if actor is None or interaction.channel_id is None:
            await interaction.response.send_message(embed=error_embed("Guild context is required."), ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        await self.bot.ticket_service.close(interaction.guild.id, interaction.channel_id, actor)  # type: ignore[union-attr]
        await interaction.followup.send(embed=success_embed("Ticket closed."), ephemeral=True)

    async def on_error(
        self, interaction: discord.Interaction, error: Exception, item: discord.ui.Item[discord.ui.View]
    ) -> None:
        await handle_view_error(interaction, error)
