from __future__ import annotations

import logging

import discord
from discord.ext import commands

from core.bot import TicketBot
from views.ticket_panel import post_panel

LOGGER = logging.getLogger(__name__)


class EventsCog(commands.Cog):
    def __init__(self, bot: TicketBot) -> None:
        self.bot = bot
        self._startup_done = False

    @commands.Cog.listener()
    async def on_ready(self) -> None:
        # on_ready fires again after every gateway resume.
        if self._startup_done:
            return
        self._startup_done = True
        await self._ensure_panel()
        guild_id = self.bot.config.discord.guild_id
        try:
            await self.bot.reconciliation_service.reconcile(guild_id)
        except Exception:
            LOGGER.exception("Startup reconciliation failed for guild %s", guild_id)

    async def _ensure_panel(self) -> None:
        channel_id = self.bot.config.discord.ticket_channel_id
        if not channel_id or not self.bot.config.tickets.auto_panel_on_start:
            return
        channel = self.bot.get_channel(channel_id)
        if not isinstance(channel, discord.TextChannel):
            LOGGER.warning("Ticket panel channel %s not found or not a text channel", channel_id)
            return
        try:
            await post_panel(self.bot, channel)
        except discord.HTTPException:
            LOGGER.exception("Could not post the ticket panel in channel %s", channel_id)

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or not message.guild:
            return
        reply = await self.bot.keyword_service.response_for(message.channel.id, message.author.id, message.content)
        if reply is None:
            return
        try:
            await message.reply(reply, mention_author=False)
        except discord.HTTPException:
            LOGGER.warning("Keyword reply failed in channel %s", message.channel.id, exc_info=True)


async def setup(bot: TicketBot) -> None:
    await bot.add_cog(EventsCog(bot))
