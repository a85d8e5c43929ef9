from __future__ import annotations

import logging

import discord
from discord import app_commands
from discord.ext import commands

LOGGER = logging.getLogger(__name__)


class BotError(RuntimeError):
    """Failure that is reported to the invoking actor as `user_message`."""

    default_message = "An unexpected error occurred."

    def __init__(self, user_message: str | None = None) -> None:
        self.user_message = user_message or self.default_message
        super().__init__(self.user_message)


class PermissionDeniedError(BotError):
    default_message = "You do not have permission to run this action."


class TicketNotFoundError(BotError):
    default_message = "This is not a valid ticket channel."


class DuplicateOpenTicketError(BotError):
    default_message = (
        "You already have an open ticket! Please close your existing ticket before creating a new one."
    )


class AlreadyClaimedError(BotError):
    default_message = "This ticket is already claimed."


class InvalidCategoryError(BotError):
    default_message = "Unknown ticket category."


class ValidationError(BotError):
    default_message = "The provided input is not valid."


class StaleTicketError(BotError):
    default_message = "The ticket changed while your action was running. Please try again."


class ChannelProviderError(BotError):
    default_message = "Discord rejected the channel operation."


class ChannelNotFoundError(ChannelProviderError):
    default_message = "The ticket channel no longer exists."


class TranscriptError(BotError):
    default_message = "The transcript could not be saved; the ticket was left open."


async def send_error_response(
    target: commands.Context[commands.Bot] | discord.Interaction[commands.Bot], message: str
) -> None:
    embed = discord.Embed(title="Error", description=message, color=discord.Color.red())
    if isinstance(target, commands.Context):
        await target.reply(embed=embed, mention_author=False, ephemeral=True)
        return
    if target.response.is_done():
        await target.followup.send(embed=embed, ephemeral=True)
    else:
        await target.response.send_message(embed=embed, ephemeral=True)


def humanize_error(error: BaseException) -> str:
    # Hybrid and app commands wrap the raised exception.
    original = getattr(error, "original", None)
    if isinstance(original, BaseException):
        error = original
    if isinstance(error, BotError):
        return error.user_message
    if isinstance(error, (commands.CommandOnCooldown, app_commands.CommandOnCooldown)):
        return f"Cooldown active. Retry in {error.retry_after:.1f} seconds."
    if isinstance(error, commands.MissingPermissions):
        return "You are missing required Discord permissions."
    if isinstance(error, (commands.CheckFailure, app_commands.CheckFailure)):
        return "You are not authorized for this command."
    if isinstance(error, (commands.BadArgument, commands.MissingRequiredArgument)):
        return "Command argument was invalid."
    return "An unexpected error occurred."


def _is_expected(error: BaseException) -> bool:
    original = getattr(error, "original", None)
    return isinstance(original or error, (BotError, commands.CheckFailure, app_commands.CheckFailure))


async def handle_prefix_command_error(
    ctx: commands.Context[commands.Bot], error: commands.CommandError
) -> None:
    message = humanize_error(error)
    if _is_expected(error):
        LOGGER.info(
            "Command rejected. command=%s guild=%s user=%s reason=%s",
            getattr(ctx.command, "qualified_name", None),
            getattr(ctx.guild, "id", None),
            ctx.author.id,
            message,
        )
    else:
        LOGGER.exception(
            "Prefix command failed. command=%s guild=%s user=%s",
            getattr(ctx.command, "qualified_name", None),
            getattr(ctx.guild, "id", None),
            ctx.author.id,
            exc_info=error,
        )
    await send_error_response(ctx, message)


async def handle_app_command_error(
    interaction: discord.Interaction[commands.Bot], error: app_commands.AppCommandError
) -> None:
    message = humanize_error(error)
    if _is_expected(error):
        LOGGER.info(
            "Slash command rejected. command=%s guild=%s user=%s reason=%s",
            getattr(interaction.command, "qualified_name", None),
            getattr(interaction.guild, "id", None),
            interaction.user.id if interaction.user else None,
            message,
        )
    else:
        LOGGER.exception(
            "Slash command failed. command=%s guild=%s user=%s",
            getattr(interaction.command, "qualified_name", None),
            getattr(interaction.guild, "id", None),
            interaction.user.id if interaction.user else None,
            exc_info=error,
        )
    await send_error_response(interaction, message)


async def handle_view_error(interaction: discord.Interaction[commands.Bot], error: Exception) -> None:
    message = humanize_error(error)
    custom_id = (interaction.data or {}).get("custom_id")
    if _is_expected(error):
        LOGGER.info(
            "Component interaction rejected. custom_id=%s guild=%s user=%s reason=%s",
            custom_id,
            getattr(interaction.guild, "id", None),
            interaction.user.id if interaction.user else None,
            message,
        )
    else:
        LOGGER.exception(
            "Component interaction failed. custom_id=%s guild=%s user=%s",
            custom_id,
            getattr(interaction.guild, "id", None),
            interaction.user.id if interaction.user else None,
            exc_info=error,
        )
    await send_error_response(interaction, message)
