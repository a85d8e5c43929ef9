from __future__ import annotations

import discord
from discord.ext import commands

from core.bot import TicketBot
from core.errors import ValidationError
from core.extensions import reload_extensions
from utils.decorators import guild_admin_only
from utils.embeds import error_embed, make_embed, success_embed
from views.ticket_panel import post_panel


class AdminCog(commands.Cog):
    def __init__(self, bot: TicketBot) -> None:
        self.bot = bot

    @commands.hybrid_group(name="admin", with_app_command=True, description="Admin ticket operations.")
    @commands.guild_only()
    async def admin(self, ctx: commands.Context[TicketBot]) -> None:
        if ctx.invoked_subcommand is None:
            await ctx.reply(
                embed=make_embed(
                    "Admin Commands",
                    "`/admin setup [channel]`\n`/admin status`\n`/admin reload`",
                ),
                mention_author=False,
            )

    @admin.command(name="setup", description="Post the ticket panel in a channel.")
    @guild_admin_only()
    async def admin_setup(
        self, ctx: commands.Context[TicketBot], channel: discord.TextChannel | None = None
    ) -> None:
        target = channel or ctx.channel
        if not isinstance(target, discord.TextChannel):
            raise ValidationError("The ticket panel must be posted in a text channel.")
        await ctx.defer(ephemeral=True)
        message = await post_panel(self.bot, target)
        await ctx.reply(
            embed=success_embed(f"Ticket panel posted in {target.mention} ({message.jump_url})."),
            mention_author=False,
            ephemeral=True,
        )

    @admin.command(name="status", description="Show ticket and reconciliation status.")
    @guild_admin_only()
    async def admin_status(self, ctx: commands.Context[TicketBot]) -> None:
        guild_id = ctx.guild.id  # type: ignore[union-attr]
        open_tickets = await self.bot.ticket_service.list_open_tickets(guild_id)
        panel = await self.bot.panel_repo.get(guild_id)
        report = self.bot.reconciliation_service.last_report(guild_id)
        embed = make_embed("Ticket Status", f"Open tickets: **{len(open_tickets)}**")
        embed.add_field(
            name="Panel",
            value=f"<#{panel.channel_id}> (updated {panel.updated_at})" if panel else "Not configured",
            inline=False,
        )
        embed.add_field(
            name="Last reconciliation",
            value=f"{report.summary()}\nFinished: {report.finished_at}" if report else "Not run yet",
            inline=False,
        )
        await ctx.reply(embed=embed, mention_author=False, ephemeral=True)

    @admin.command(name="reload", description="Reload bot extensions.")
    @guild_admin_only()
    async def admin_reload(self, ctx: commands.Context[TicketBot]) -> None:
        failed = await reload_extensions(self.bot, self.bot.config.enabled_extensions)
        if failed:
            await ctx.reply(
                embed=error_embed(f"Failed to reload: {', '.join(failed)}"), mention_author=False, ephemeral=True
            )
            return
        await ctx.reply(embed=success_embed("Extensions reloaded."), mention_author=False, ephemeral=True)


async def setup(bot: TicketBot) -> None:
    await bot.add_cog(AdminCog(bot))
