from __future__ import annotations

from datetime import UTC, datetime

import discord

from database.models import TicketRecord
from utils.constants import TICKET_CATEGORIES

FOOTER_TEXT = "PCRP Support"


def make_embed(
    title: str,
    description: str,
    color: discord.Color | None = None,
    footer: str | None = None,
) -> discord.Embed:
    resolved_color = color if color is not None else discord.Color.blurple()
    embed = discord.Embed(
        title=title,
        description=description,
        color=resolved_color,
        timestamp=datetime.now(UTC),
    )
    if footer:
        embed.set_footer(text=footer)
    return embed


def success_embed(message: str) -> discord.Embed:
    return make_embed(title="Success", description=message, color=discord.Color.green())


def error_embed(message: str) -> discord.Embed:
    return make_embed(title="Error", description=message, color=discord.Color.red())


def panel_embed() -> discord.Embed:
    lines = [f"{c.emoji} **{c.label}** - {c.description}" for c in TICKET_CATEGORIES.values()]
    return make_embed(
        "Support Tickets",
        "Select the option that best fits your problem to open a private ticket.\n\n" + "\n".join(lines),
        footer=FOOTER_TEXT,
    )


def ticket_info_embed(ticket: TicketRecord) -> discord.Embed:
    category = TICKET_CATEGORIES.get(ticket.category)
    embed = make_embed(f"Ticket {ticket.id}", f"Status: **{ticket.status}**", footer=FOOTER_TEXT)
    embed.add_field(name="Requester", value=f"<@{ticket.requester_id}>", inline=True)
    embed.add_field(name="Category", value=category.label if category else ticket.category, inline=True)
    embed.add_field(
        name="Claimed by",
        value=f"<@{ticket.claimed_by_id}>" if ticket.claimed_by_id else "Unclaimed",
        inline=True,
    )
    embed.add_field(name="Opened", value=ticket.created_at or "-", inline=False)
    return embed
