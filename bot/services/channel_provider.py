"""Channel operations the ticket core depends on, and their discord.py implementation.

The lifecycle and reconciliation services only talk to :class:`ChannelProvider`,
so they can run against an in-memory fake in tests.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Protocol

import discord

from core.errors import ChannelNotFoundError, ChannelProviderError
from utils.embeds import make_embed

if TYPE_CHECKING:
    from core.bot import TicketBot

LOGGER = logging.getLogger(__name__)


class PrincipalKind(str, Enum):
    MEMBER = "member"
    ROLE = "role"
    EVERYONE = "everyone"


@dataclass(frozen=True, slots=True)
class Principal:
    kind: PrincipalKind
    id: int

    @classmethod
    def member(cls, user_id: int) -> Principal:
        return cls(PrincipalKind.MEMBER, user_id)

    @classmethod
    def role(cls, role_id: int) -> Principal:
        return cls(PrincipalKind.ROLE, role_id)

    @classmethod
    def everyone(cls, guild_id: int) -> Principal:
        # The @everyone role shares the guild's id.
        return cls(PrincipalKind.EVERYONE, guild_id)


@dataclass(frozen=True, slots=True)
class PermissionGrant:
    """Per-principal overwrite. `None` leaves the permission inherited."""

    view_channel: bool | None = None
    send_messages: bool | None = None
    read_message_history: bool | None = None
    manage_messages: bool | None = None
    manage_channels: bool | None = None

    def as_overwrite(self) -> discord.PermissionOverwrite:
        values = {
            "view_channel": self.view_channel,
            "send_messages": self.send_messages,
            "read_message_history": self.read_message_history,
            "manage_messages": self.manage_messages,
            "manage_channels": self.manage_channels,
        }
        return discord.PermissionOverwrite(**{k: v for k, v in values.items() if v is not None})


@dataclass(frozen=True, slots=True)
class ChannelInfo:
    id: int
    name: str
    topic: str | None = None


@dataclass(slots=True)
class ChannelMessage:
    author_id: int
    author_name: str
    content: str
    created_at: datetime
    attachments: list[str] = field(default_factory=list)


@dataclass(slots=True)
class OutboundMessage:
    content: str | None = None
    title: str | None = None
    description: str | None = None
    attachment_name: str | None = None
    attachment_text: str | None = None
    with_ticket_controls: bool = False
    feedback_ticket_id: str | None = None


class ChannelProvider(Protocol):
    async def create_channel(
        self,
        guild_id: int,
        name: str,
        topic: str,
        overwrites: dict[Principal, PermissionGrant],
        parent_id: int | None = None,
    ) -> int: ...
    async def rename_channel(self, channel_id: int, name: str) -> None: ...
    async def set_topic(self, channel_id: int, topic: str) -> None: ...
    async def delete_channel(self, channel_id: int, reason: str | None = None) -> None: ...
    async def edit_permission(self, channel_id: int, principal: Principal, grant: PermissionGrant) -> None: ...
    async def remove_permission(self, channel_id: int, principal: Principal) -> None: ...
    async def fetch_recent_messages(self, channel_id: int, limit: int) -> list[ChannelMessage]: ...
    async def send_message(self, channel_id: int, message: OutboundMessage) -> int: ...
    async def list_channels(self, guild_id: int) -> list[ChannelInfo]: ...
    async def send_direct_message(self, user_id: int, message: OutboundMessage) -> None: ...


class DiscordChannelProvider(ChannelProvider):
    def __init__(self, bot: TicketBot) -> None:
        self.bot = bot

    def _guild(self, guild_id: int) -> discord.Guild:
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            raise ChannelProviderError(f"The bot is not connected to guild {guild_id}.")
        return guild

    async def _text_channel(self, channel_id: int) -> discord.TextChannel:
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            try:
                channel = await self.bot.fetch_channel(channel_id)
            except discord.NotFound as exc:
                raise ChannelNotFoundError() from exc
            except discord.HTTPException as exc:
                raise ChannelProviderError() from exc
        if not isinstance(channel, discord.TextChannel):
            raise ChannelNotFoundError("The ticket channel is not a text channel.")
        return channel

    async def _target(
        self, guild: discord.Guild, principal: Principal
    ) -> discord.Role | discord.Member:
        if principal.kind is PrincipalKind.EVERYONE:
            return guild.default_role
        if principal.kind is PrincipalKind.ROLE:
            role = guild.get_role(principal.id)
            if role is None:
                raise ChannelProviderError(f"Role {principal.id} does not exist.")
            return role
        member = guild.get_member(principal.id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(principal.id)
        except discord.HTTPException as exc:
            raise ChannelProviderError(f"Member {principal.id} is not in this server.") from exc

    def _render(self, message: OutboundMessage) -> dict[str, object]:
        # Local imports: the views depend on the ticket service, which imports this module.
        from views.feedback import FeedbackPromptView, feedback_footer
        from views.ticket_controls import TicketControlsView

        kwargs: dict[str, object] = {}
        if message.content:
            kwargs["content"] = message.content
        if message.title or message.description:
            embed = make_embed(message.title or "", message.description or "")
            if message.feedback_ticket_id:
                embed.set_footer(text=feedback_footer(message.feedback_ticket_id))
            kwargs["embed"] = embed
        if message.attachment_name and message.attachment_text is not None:
            kwargs["file"] = discord.File(
                io.BytesIO(message.attachment_text.encode("utf-8")), filename=message.attachment_name
            )
        if message.with_ticket_controls:
            kwargs["view"] = TicketControlsView(self.bot)
        elif message.feedback_ticket_id:
            kwargs["view"] = FeedbackPromptView(self.bot)
        return kwargs

    async def create_channel(
        self,
        guild_id: int,
        name: str,
        topic: str,
        overwrites: dict[Principal, PermissionGrant],
        parent_id: int | None = None,
    ) -> int:
        guild = self._guild(guild_id)
        resolved: dict[discord.Role | discord.Member, discord.PermissionOverwrite] = {}
        for principal, grant in overwrites.items():
            resolved[await self._target(guild, principal)] = grant.as_overwrite()
        resolved[guild.me] = discord.PermissionOverwrite(
            view_channel=True,
            send_messages=True,
            read_message_history=True,
            manage_channels=True,
            manage_messages=True,
        )
        parent = guild.get_channel(parent_id) if parent_id else None
        if not isinstance(parent, discord.CategoryChannel):
            parent = None
        try:
            channel = await guild.create_text_channel(
                name=name,
                topic=topic,
                overwrites=resolved,
                category=parent,
                reason="Ticket opened",
            )
        except discord.HTTPException as exc:
            raise ChannelProviderError("Failed to create the ticket channel.") from exc
        return channel.id

    async def rename_channel(self, channel_id: int, name: str) -> None:
        channel = await self._text_channel(channel_id)
        try:
            await channel.edit(name=name)
        except discord.NotFound as exc:
            raise ChannelNotFoundError() from exc
        except discord.HTTPException as exc:
            raise ChannelProviderError("Failed to rename the ticket channel.") from exc

    async def set_topic(self, channel_id: int, topic: str) -> None:
        channel = await self._text_channel(channel_id)
        try:
            await channel.edit(topic=topic)
        except discord.NotFound as exc:
            raise ChannelNotFoundError() from exc
        except discord.HTTPException as exc:
            raise ChannelProviderError("Failed to update the channel topic.") from exc

    async def delete_channel(self, channel_id: int, reason: str | None = None) -> None:
        channel = await self._text_channel(channel_id)
        try:
            await channel.delete(reason=reason)
        except discord.NotFound as exc:
            raise ChannelNotFoundError() from exc
        except discord.HTTPException as exc:
            raise ChannelProviderError("Failed to delete the ticket channel.") from exc

    async def edit_permission(self, channel_id: int, principal: Principal, grant: PermissionGrant) -> None:
        channel = await self._text_channel(channel_id)
        target = await self._target(channel.guild, principal)
        try:
            await channel.set_permissions(target, overwrite=grant.as_overwrite())
        except discord.NotFound as exc:
            raise ChannelNotFoundError() from exc
        except discord.HTTPException as exc:
            raise ChannelProviderError("Failed to update channel permissions.") from exc

    async def remove_permission(self, channel_id: int, principal: Principal) -> None:
        channel = await self._text_channel(channel_id)
        target = await self._target(channel.guild, principal)
        try:
            await channel.set_permissions(target, overwrite=None)
        except discord.NotFound as exc:
            raise ChannelNotFoundError() from exc
        except discord.HTTPException as exc:
            raise ChannelProviderError("Failed to update channel permissions.") from exc

    async def fetch_recent_messages(self, channel_id: int, limit: int) -> list[ChannelMessage]:
        channel = await self._text_channel(channel_id)
        messages: list[ChannelMessage] = []
        try:
            async for msg in channel.history(limit=limit):
                messages.append(
                    ChannelMessage(
                        author_id=msg.author.id,
                        author_name=str(msg.author),
                        content=msg.content or "",
                        created_at=msg.created_at,
                        attachments=[a.url for a in msg.attachments],
                    )
                )
        except discord.NotFound as exc:
            raise ChannelNotFoundError() from exc
        except discord.HTTPException as exc:
            raise ChannelProviderError("Failed to read the channel history.") from exc
        # history() yields newest first.
        messages.reverse()
        return messages

    async def send_message(self, channel_id: int, message: OutboundMessage) -> int:
        channel = await self._text_channel(channel_id)
        try:
            sent = await channel.send(**self._render(message))  # type: ignore[arg-type]
        except discord.NotFound as exc:
            raise ChannelNotFoundError() from exc
        except discord.HTTPException as exc:
            raise ChannelProviderError("Failed to send a message to the channel.") from exc
        return sent.id

    async def list_channels(self, guild_id: int) -> list[ChannelInfo]:
        guild = self._guild(guild_id)
        return [ChannelInfo(id=c.id, name=c.name, topic=c.topic) for c in guild.text_channels]

    async def send_direct_message(self, user_id: int, message: OutboundMessage) -> None:
        user = self.bot.get_user(user_id)
        try:
            if user is None:
                user = await self.bot.fetch_user(user_id)
            await user.send(**self._render(message))  # type: ignore[arg-type]
        except discord.HTTPException as exc:
            raise ChannelProviderError(f"Could not send a direct message to {user_id}.") from exc
