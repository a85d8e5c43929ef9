from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord

from core.errors import handle_view_error
from database.models import TicketPanel
from services.ticket_service import Actor
from utils.constants import TICKET_CATEGORIES, InteractionKind
from utils.embeds import panel_embed, success_embed

if TYPE_CHECKING:
    from core.bot import TicketBot

LOGGER = logging.getLogger(__name__)


class CategorySelect(discord.ui.Select["TicketPanelView"]):
    def __init__(self) -> None:
        super().__init__(
            custom_id=InteractionKind.CATEGORY_SELECT.value,
            placeholder="Select the option that best fits your problem...",
            min_values=1,
            max_values=1,
            options=[
                discord.SelectOption(
                    label=category.label,
                    value=category.key,
                    description=category.description,
                    emoji=category.emoji,
                )
                for category in TICKET_CATEGORIES.values()
            ],
        )

    async def callback(self, interaction: discord.Interaction) -> None:
        assert self.view is not None
        bot = self.view.bot
        if not interaction.guild or not isinstance(interaction.user, discord.Member):
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        actor = Actor.from_member(interaction.user, bot.config.discord.admin_role_id)
        ticket = await bot.ticket_service.open(interaction.guild.id, actor, self.values[0])
        await interaction.followup.send(
            embed=success_embed(f"Your ticket has been created: <#{ticket.channel_id}>"),
            ephemeral=True,
        )


class TicketPanelView(discord.ui.View):
    def __init__(self, bot: TicketBot) -> None:
        super().__init__(timeout=None)
        self.bot = bot
        self.add_item(CategorySelect())

    async def on_error(
        self, interaction: discord.Interaction, error: Exception, item: discord.ui.Item[discord.ui.View]
    ) -> None:
        await handle_view_error(interaction, error)


async def post_panel(bot: TicketBot, channel: discord.TextChannel, purge_limit: int = 50) -> discord.Message:
    """Replace the guild's ticket panel with a fresh message in `channel`."""
    try:
        await channel.purge(limit=purge_limit)
    except discord.HTTPException:
        LOGGER.warning("Could not clear messages in panel channel %s", channel.id, exc_info=True)
    message = await channel.send(embed=panel_embed(), view=TicketPanelView(bot))
    await bot.panel_repo.upsert(
        TicketPanel(guild_id=channel.guild.id, channel_id=channel.id, message_id=message.id)
    )
    LOGGER.info("Ticket panel posted in channel %s (message %s)", channel.id, message.id)
    return message
