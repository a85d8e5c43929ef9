from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from core.errors import ChannelNotFoundError, ChannelProviderError
from services.channel_provider import DiscordChannelProvider, OutboundMessage, Principal
from services.ticket_service import HIDDEN_GRANT, REQUESTER_GRANT, STAFF_ROLE_GRANT, Actor


def _http_error(cls: type[discord.HTTPException], status: int) -> discord.HTTPException:
    return cls(MagicMock(status=status, reason="error"), "error")


def _guild() -> MagicMock:
    guild = MagicMock()
    guild.id = 123
    guild.default_role = object()
    guild.me = object()
    guild.get_role = MagicMock(return_value=object())
    guild.get_member = MagicMock(side_effect=lambda user_id: MagicMock(id=user_id))
    guild.get_channel = MagicMock(return_value=None)
    guild.create_text_channel = AsyncMock(return_value=SimpleNamespace(id=987654321))
    return guild


def _text_channel() -> MagicMock:
    channel = MagicMock(spec=discord.TextChannel)
    channel.id = 555
    channel.guild = _guild()
    return channel


@pytest.mark.asyncio
async def test_create_channel_with_mocked_discord_objects() -> None:
    guild = _guild()
    bot = MagicMock()
    bot.get_guild = MagicMock(return_value=guild)
    provider = DiscordChannelProvider(bot)

    channel_id = await provider.create_channel(
        123,
        "pcrp-r-billing",
        "Ticket for r (999) - Category: Billing Support",
        {
            Principal.everyone(123): HIDDEN_GRANT,
            Principal.member(999): REQUESTER_GRANT,
            Principal.role(42): STAFF_ROLE_GRANT,
        },
    )

    assert channel_id == 987654321
    kwargs = guild.create_text_channel.await_args.kwargs
    assert kwargs["name"] == "pcrp-r-billing"
    assert kwargs["category"] is None
    overwrites = kwargs["overwrites"]
    assert overwrites[guild.default_role].view_channel is False
    assert overwrites[guild.me].manage_channels is True
    assert overwrites[guild.get_role.return_value].send_messages is False
    assert len(overwrites) == 4


@pytest.mark.asyncio
async def test_create_channel_failure_is_reported() -> None:
    guild = _guild()
    guild.create_text_channel = AsyncMock(side_effect=_http_error(discord.Forbidden, 403))
    bot = MagicMock()
    bot.get_guild = MagicMock(return_value=guild)

    with pytest.raises(ChannelProviderError):
        await DiscordChannelProvider(bot).create_channel(123, "pcrp-r-billing", "topic", {})


@pytest.mark.asyncio
async def test_delete_of_vanished_channel_maps_to_not_found() -> None:
    channel = _text_channel()
    channel.delete = AsyncMock(side_effect=_http_error(discord.NotFound, 404))
    bot = MagicMock()
    bot.get_channel = MagicMock(return_value=channel)

    with pytest.raises(ChannelNotFoundError):
        await DiscordChannelProvider(bot).delete_channel(555)


@pytest.mark.asyncio
async def test_unknown_channel_maps_to_not_found() -> None:
    bot = MagicMock()
    bot.get_channel = MagicMock(return_value=None)
    bot.fetch_channel = AsyncMock(side_effect=_http_error(discord.NotFound, 404))

    with pytest.raises(ChannelNotFoundError):
        await DiscordChannelProvider(bot).rename_channel(555, "pcrp-new")


@pytest.mark.asyncio
async def test_history_is_returned_oldest_first() -> None:
    def message(author_id: int, content: str, minute: int) -> SimpleNamespace:
        author = MagicMock()
        author.id = author_id
        author.__str__.return_value = f"user{author_id}"
        return SimpleNamespace(
            author=author,
            content=content,
            created_at=datetime(2024, 5, 1, 10, minute, tzinfo=UTC),
            attachments=[SimpleNamespace(url="https://cdn.example/a.png")] if minute == 0 else [],
        )

    newest_first = [message(2, "second", 1), message(1, "first", 0)]

    async def history(limit: int):
        for item in newest_first[:limit]:
            yield item

    channel = _text_channel()
    channel.history = history
    bot = MagicMock()
    bot.get_channel = MagicMock(return_value=channel)

    messages = await DiscordChannelProvider(bot).fetch_recent_messages(555, 100)

    assert [m.content for m in messages] == ["first", "second"]
    assert messages[0].author_name == "user1"
    assert messages[0].attachments == ["https://cdn.example/a.png"]


@pytest.mark.asyncio
async def test_send_message_renders_embed() -> None:
    channel = _text_channel()
    channel.send = AsyncMock(return_value=SimpleNamespace(id=777))
    bot = MagicMock()
    bot.get_channel = MagicMock(return_value=channel)

    message_id = await DiscordChannelProvider(bot).send_message(
        555, OutboundMessage(content="hi", title="Ticket Closed", description="bye")
    )

    assert message_id == 777
    kwargs = channel.send.await_args.kwargs
    assert kwargs["content"] == "hi"
    assert kwargs["embed"].title == "Ticket Closed"
    assert "view" not in kwargs


def test_actor_from_member_detects_staff() -> None:
    member = MagicMock()
    member.id = 10
    member.name = "alice"
    member.__str__.return_value = "alice"
    member.guild_permissions.administrator = False
    member.roles = [SimpleNamespace(id=1), SimpleNamespace(id=42)]

    assert Actor.from_member(member, admin_role_id=42).is_staff
    assert not Actor.from_member(member, admin_role_id=43).is_staff

    member.guild_permissions.administrator = True
    assert Actor.from_member(member, admin_role_id=43).is_staff
