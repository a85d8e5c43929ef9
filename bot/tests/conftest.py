from __future__ import annotations

import itertools
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import pytest
import pytest_asyncio

from core.config import AppConfig, DiscordConfig, TicketConfig, TranscriptConfig
from core.errors import ChannelNotFoundError, ChannelProviderError
from database.base import Database
from database.migrations.runner import run_migrations
from database.repositories import EventRepository, FeedbackRepository, TicketRepository, TranscriptRepository
from services.channel_provider import ChannelInfo, ChannelMessage, OutboundMessage, PermissionGrant, Principal
from services.notification_service import NotificationService
from services.reconciliation_service import ReconciliationService
from services.ticket_service import TicketService, TicketServiceDeps
from services.transcript_service import TranscriptService

GUILD_ID = 100000000000000001
ADMIN_ROLE_ID = 200000000000000002


@dataclass
class FakeChannel:
    id: int
    guild_id: int
    name: str
    topic: str | None
    parent_id: int | None = None
    overwrites: dict[Principal, PermissionGrant] = field(default_factory=dict)
    history: list[ChannelMessage] = field(default_factory=list)
    sent: list[OutboundMessage] = field(default_factory=list)


class FakeChannelProvider:
    """In-memory stand-in for the Discord guild; tests mutate `channels` to simulate drift."""

    def __init__(self) -> None:
        self.channels: dict[int, FakeChannel] = {}
        self.direct_messages: list[tuple[int, OutboundMessage]] = []
        self.created: list[int] = []
        self.deleted: list[int] = []
        self.fail_create = False
        self.fail_delete = False
        self.fail_history = False
        self.fail_dm = False
        self._ids = itertools.count(900000000000000001)

    def add_channel(self, name: str, topic: str | None = None, guild_id: int = GUILD_ID) -> int:
        channel_id = next(self._ids)
        self.channels[channel_id] = FakeChannel(id=channel_id, guild_id=guild_id, name=name, topic=topic)
        return channel_id

    def say(self, channel_id: int, author_id: int, content: str) -> None:
        self.channels[channel_id].history.append(
            ChannelMessage(
                author_id=author_id,
                author_name=f"user{author_id}",
                content=content,
                created_at=datetime.now(UTC),
            )
        )

    def _get(self, channel_id: int) -> FakeChannel:
        channel = self.channels.get(channel_id)
        if channel is None:
            raise ChannelNotFoundError()
        return channel

    async def create_channel(
        self,
        guild_id: int,
        name: str,
        topic: str,
        overwrites: dict[Principal, PermissionGrant],
        parent_id: int | None = None,
    ) -> int:
        if self.fail_create:
            raise ChannelProviderError("Failed to create the ticket channel.")
        channel_id = self.add_channel(name, topic, guild_id)
        self.channels[channel_id].overwrites = dict(overwrites)
        self.channels[channel_id].parent_id = parent_id
        self.created.append(channel_id)
        return channel_id

    async def rename_channel(self, channel_id: int, name: str) -> None:
        self._get(channel_id).name = name

    async def set_topic(self, channel_id: int, topic: str) -> None:
        self._get(channel_id).topic = topic

    async def delete_channel(self, channel_id: int, reason: str | None = None) -> None:
        if self.fail_delete:
            raise ChannelProviderError("Failed to delete the ticket channel.")
        self._get(channel_id)
        del self.channels[channel_id]
        self.deleted.append(channel_id)

    async def edit_permission(self, channel_id: int, principal: Principal, grant: PermissionGrant) -> None:
        self._get(channel_id).overwrites[principal] = grant

    async def remove_permission(self, channel_id: int, principal: Principal) -> None:
        self._get(channel_id).overwrites.pop(principal, None)

    async def fetch_recent_messages(self, channel_id: int, limit: int) -> list[ChannelMessage]:
        if self.fail_history:
            raise ChannelProviderError("Failed to read the channel history.")
        return list(self._get(channel_id).history[-limit:])

    async def send_message(self, channel_id: int, message: OutboundMessage) -> int:
        channel = self._get(channel_id)
        channel.sent.append(message)
        return len(channel.sent)

    async def list_channels(self, guild_id: int) -> list[ChannelInfo]:
        return [
            ChannelInfo(id=c.id, name=c.name, topic=c.topic)
            for c in self.channels.values()
            if c.guild_id == guild_id
        ]

    async def send_direct_message(self, user_id: int, message: OutboundMessage) -> None:
        if self.fail_dm:
            raise ChannelProviderError(f"Could not send a direct message to {user_id}.")
        self.direct_messages.append((user_id, message))


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        discord=DiscordConfig(token="test-token", guild_id=GUILD_ID, admin_role_id=ADMIN_ROLE_ID),
        tickets=TicketConfig(close_delay_seconds=0),
        transcripts=TranscriptConfig(storage_directory=str(tmp_path / "transcripts")),
    )


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> AsyncIterator[Database]:
    db = Database(url=f"sqlite:///{tmp_path / 'tickets.db'}")
    await db.connect()
    await run_migrations(db)
    yield db
    await db.close()


@pytest.fixture
def provider() -> FakeChannelProvider:
    return FakeChannelProvider()


@pytest.fixture
def deps(config: AppConfig, database: Database, provider: FakeChannelProvider) -> TicketServiceDeps:
    return TicketServiceDeps(
        ticket_repo=TicketRepository(database),
        transcript_repo=TranscriptRepository(database),
        feedback_repo=FeedbackRepository(database),
        event_repo=EventRepository(database),
        provider=provider,
        transcripts=TranscriptService(config.transcripts),
        notifier=NotificationService(config, provider),
    )


@pytest.fixture
def reconciler(config: AppConfig, deps: TicketServiceDeps) -> ReconciliationService:
    return ReconciliationService(config, deps)


@pytest.fixture
def service(config: AppConfig, deps: TicketServiceDeps, reconciler: ReconciliationService) -> TicketService:
    return TicketService(config, deps, reconciler=reconciler)
