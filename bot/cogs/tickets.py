from __future__ import annotations

import logging

import discord
from discord import app_commands
from discord.ext import commands, tasks

from core.bot import TicketBot
from core.errors import ValidationError
from services.ticket_service import Actor
from utils.constants import TICKET_CATEGORIES
from utils.decorators import staff_only
from utils.embeds import make_embed, success_embed, ticket_info_embed

LOGGER = logging.getLogger(__name__)


class TicketsCog(commands.Cog):
    def __init__(self, bot: TicketBot) -> None:
        self.bot = bot

    async def cog_load(self) -> None:
        self.reconcile_worker.change_interval(seconds=self.bot.config.tickets.reconcile_interval_seconds)
        self.reconcile_worker.start()

    async def cog_unload(self) -> None:
        self.reconcile_worker.cancel()

    def _context(self, ctx: commands.Context[TicketBot]) -> tuple[int, int, Actor]:
        if not ctx.guild or not isinstance(ctx.author, discord.Member):
            raise ValidationError("Ticket commands can only be used in a server.")
        actor = Actor.from_member(ctx.author, self.bot.config.discord.admin_role_id)
        return ctx.guild.id, ctx.channel.id, actor

    @tasks.loop(seconds=300)
    async def reconcile_worker(self) -> None:
        # The first sweep belongs to on_ready; the loop covers the ones after it.
        if self.reconcile_worker.current_loop == 0:
            return
        guild_id = self.bot.config.discord.guild_id
        try:
            await self.bot.reconciliation_service.reconcile(guild_id)
        except Exception:
            LOGGER.exception("Scheduled reconciliation failed for guild %s", guild_id)

    @reconcile_worker.before_loop
    async def before_reconcile_worker(self) -> None:
        await self.bot.wait_until_ready()

    @commands.hybrid_group(name="ticket", with_app_command=True, description="Ticket command group.")
    @commands.guild_only()
    async def ticket(self, ctx: commands.Context[TicketBot]) -> None:
        if ctx.invoked_subcommand is None:
            await ctx.reply(
                embed=make_embed(
                    "Ticket Commands",
                    "`/ticket claim` to claim\n"
                    "`/ticket close` to close\n"
                    "`/ticket transfer <category>` to move category\n"
                    "`/ticket add|remove <member>` to manage access\n"
                    "`/ticket rename <name>`\n"
                    "`/ticket notifyadmin <member> [reason]`\n"
                    "`/ticket info`",
                ),
                mention_author=False,
            )

    @ticket.command(name="claim", description="Claim the current ticket.")
    async def ticket_claim(self, ctx: commands.Context[TicketBot]) -> None:
        guild_id, channel_id, actor = self._context(ctx)
        await self.bot.ticket_service.claim(guild_id, channel_id, actor)
        await ctx.reply(embed=success_embed("You claimed this ticket."), mention_author=False, ephemeral=True)

    @ticket.command(name="close", description="Close the current ticket and archive its transcript.")
    async def ticket_close(self, ctx: commands.Context[TicketBot]) -> None:
        guild_id, channel_id, actor = self._context(ctx)
        await ctx.defer(ephemeral=True)
        await self.bot.ticket_service.close(guild_id, channel_id, actor)
        await ctx.reply(embed=success_embed("Ticket closed."), mention_author=False, ephemeral=True)

    @ticket.command(name="transfer", description="Move the current ticket to another category.")
    @app_commands.describe(category="New ticket category")
    async def ticket_transfer(self, ctx: commands.Context[TicketBot], category: str) -> None:
        guild_id, channel_id, actor = self._context(ctx)
        ticket = await self.bot.ticket_service.transfer(guild_id, channel_id, actor, category)
        label = TICKET_CATEGORIES[ticket.category].label
        await ctx.reply(embed=success_embed(f"Ticket moved to **{label}**."), mention_author=False, ephemeral=True)

    @ticket_transfer.autocomplete("category")
    async def ticket_transfer_autocomplete(
        self, interaction: discord.Interaction, current: str
    ) -> list[app_commands.Choice[str]]:
        needle = current.lower()
        return [
            app_commands.Choice(name=c.label, value=c.key)
            for c in TICKET_CATEGORIES.values()
            if needle in c.label.lower() or needle in c.short_name
        ][:25]

    @ticket.command(name="add", description="Give a member access to the current ticket.")
    async def ticket_add(self, ctx: commands.Context[TicketBot], member: discord.Member) -> None:
        guild_id, channel_id, actor = self._context(ctx)
        await self.bot.ticket_service.add_participant(guild_id, channel_id, actor, member.id)
        await ctx.reply(embed=success_embed(f"Added {member.mention}."), mention_author=False, ephemeral=True)

    @ticket.command(name="remove", description="Remove a member from the current ticket.")
    async def ticket_remove(self, ctx: commands.Context[TicketBot], member: discord.Member) -> None:
        guild_id, channel_id, actor = self._context(ctx)
        await self.bot.ticket_service.remove_participant(guild_id, channel_id, actor, member.id)
        await ctx.reply(embed=success_embed(f"Removed {member.mention}."), mention_author=False, ephemeral=True)

    @ticket.command(name="rename", description="Rename the current ticket channel.")
    async def ticket_rename(self, ctx: commands.Context[TicketBot], *, name: str) -> None:
        guild_id, channel_id, actor = self._context(ctx)
        clean = await self.bot.ticket_service.rename(guild_id, channel_id, actor, name)
        await ctx.reply(embed=success_embed(f"Channel renamed to `{clean}`."), mention_author=False, ephemeral=True)

    @ticket.command(name="notifyadmin", description="Bring an administrator into the current ticket.")
    async def ticket_notify_admin(
        self, ctx: commands.Context[TicketBot], member: discord.Member, *, reason: str | None = None
    ) -> None:
        guild_id, channel_id, actor = self._context(ctx)
        await self.bot.ticket_service.notify_admin(guild_id, channel_id, actor, member.id, reason)
        await ctx.reply(embed=success_embed(f"{member.mention} was notified."), mention_author=False, ephemeral=True)

    @ticket.command(name="info", description="Show details of the current ticket.")
    async def ticket_info(self, ctx: commands.Context[TicketBot]) -> None:
        guild_id, channel_id, _ = self._context(ctx)
        ticket = await self.bot.ticket_service.get_ticket_for_channel(guild_id, channel_id)
        await ctx.reply(embed=ticket_info_embed(ticket), mention_author=False, ephemeral=True)

    @ticket.command(name="reconcile", description="Repair drift between ticket records and channels.")
    @staff_only()
    async def ticket_reconcile(self, ctx: commands.Context[TicketBot]) -> None:
        guild_id, _, _ = self._context(ctx)
        await ctx.defer(ephemeral=True)
        report = await self.bot.reconciliation_service.reconcile(guild_id)
        await ctx.reply(
            embed=make_embed("Reconciliation Complete", report.summary(), color=discord.Color.gold()),
            mention_author=False,
            ephemeral=True,
        )


async def setup(bot: TicketBot) -> None:
    await bot.add_cog(TicketsCog(bot))
