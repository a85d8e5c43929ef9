from __future__ import annotations

from typing import TYPE_CHECKING

import discord

from core.errors import ValidationError, handle_view_error
from utils.constants import InteractionKind
from utils.embeds import error_embed, success_embed

if TYPE_CHECKING:
    from core.bot import TicketBot

FOOTER_PREFIX = "Ticket ID: "


def feedback_footer(ticket_id: str) -> str:
    return f"{FOOTER_PREFIX}{ticket_id}"


def ticket_id_from_message(message: discord.Message | None) -> str | None:
    """The feedback button is persistent, so the ticket id travels in the prompt's embed footer."""
    if message is None:
        return None
    for embed in message.embeds:
        text = embed.footer.text if embed.footer else None
        if text and text.startswith(FOOTER_PREFIX):
            return text[len(FOOTER_PREFIX):].strip() or None
    return None


def parse_rating(raw: str) -> int | None:
    value = raw.strip()
    if not value:
        return None
    if not value.isdigit() or not 1 <= int(value) <= 5:
        raise ValidationError("Rating must be a whole number from 1 to 5.")
    return int(value)


class FeedbackModal(discord.ui.Modal, title="Ticket Feedback"):
    rating = discord.ui.TextInput(
        label="Rating (1-5)",
        placeholder="5",
        style=discord.TextStyle.short,
        max_length=1,
        required=True,
    )
    comment = discord.ui.TextInput(
        label="Comments",
        placeholder="Anything we could do better?",
        style=discord.TextStyle.long,
        max_length=1000,
        required=False,
    )

    def __init__(self, bot: TicketBot, ticket_id: str) -> None:
        super().__init__(timeout=600)
        self.bot = bot
        self.ticket_id = ticket_id

    async def on_submit(self, interaction: discord.Interaction) -> None:
        await self.bot.ticket_service.record_feedback(
            ticket_id=self.ticket_id,
            user_id=interaction.user.id,
            rating=parse_rating(str(self.rating)),
            comment=str(self.comment),
        )
        await interaction.response.send_message(
            embed=success_embed("Thank you for your feedback!"), ephemeral=True
        )

    async def on_error(self, interaction: discord.Interaction, error: Exception) -> None:
        await handle_view_error(interaction, error)


class FeedbackPromptView(discord.ui.View):
    def __init__(self, bot: TicketBot) -> None:
        super().__init__(timeout=None)
        self.bot = bot

    @discord.ui.button(
        label="Leave Feedback",
        style=discord.ButtonStyle.success,
        emoji="⭐",
        custom_id=InteractionKind.FEEDBACK.value,
    )
    async def feedback_button(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        ticket_id = ticket_id_from_message(interaction.message)
        if ticket_id is None:
            await interaction.response.send_message(
                embed=error_embed("This feedback prompt is no longer valid."), ephemeral=True
            )
            return
        await interaction.response.send_modal(FeedbackModal(self.bot, ticket_id))

    async def on_error(
        self, interaction: discord.Interaction, error: Exception, item: discord.ui.Item[discord.ui.View]
    ) -> None:
        await handle_view_error(interaction, error)
