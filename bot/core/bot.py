from __future__ import annotations

import logging
from pathlib import Path

import discord
from discord.ext import commands

from core.config import AppConfig
from core.errors import handle_app_command_error, handle_prefix_command_error
from core.extensions import load_extensions
from database.base import Database
from database.migrations.runner import run_migrations
from database.repositories import (
    EventRepository,
    FeedbackRepository,
    PanelRepository,
    TicketRepository,
    TranscriptRepository,
)
from services.cache import CacheBackend, build_cache
from services.channel_provider import DiscordChannelProvider
from services.keyword_service import KeywordService
from services.notification_service import NotificationService
from services.reconciliation_service import ReconciliationService
from services.ticket_service import TicketService, TicketServiceDeps
from services.transcript_service import TranscriptService
from views.feedback import FeedbackPromptView
from views.ticket_controls import TicketControlsView
from views.ticket_panel import TicketPanelView

LOGGER = logging.getLogger(__name__)


class TicketBot(commands.Bot):
    def __init__(self, config: AppConfig) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = True
        intents.messages = True
        intents.message_content = True

        super().__init__(
            command_prefix=config.discord.prefix,
            intents=intents,
            application_id=config.discord.application_id,
            allowed_mentions=discord.AllowedMentions(everyone=False, roles=True, users=True, replied_user=False),
            help_command=None,
        )
        self.config = config
        self.root_dir = Path(__file__).resolve().parent.parent
        self.database = Database(
            url=config.database.url,
            timeout_seconds=config.database.timeout_seconds,
            pool_min_size=config.database.pool_min_size,
            pool_max_size=config.database.pool_max_size,
        )
        self.cache: CacheBackend | None = None
        self.provider = DiscordChannelProvider(self)
        self.notifier = NotificationService(config, self.provider)

        # Repositories and services are initialized during setup_hook.
        self.panel_repo: PanelRepository
        self.ticket_repo: TicketRepository
        self.transcript_repo: TranscriptRepository
        self.feedback_repo: FeedbackRepository
        self.event_repo: EventRepository

        self.ticket_service: TicketService
        self.reconciliation_service: ReconciliationService
        self.keyword_service: KeywordService

    async def setup_hook(self) -> None:
        await self.database.connect()
        applied = await run_migrations(self.database)
        if applied:
            LOGGER.info("Applied migrations: %s", ", ".join(applied))
        self.cache = await build_cache(self.config.redis, max_entries=self.config.keywords.cache_max_entries)

        self.panel_repo = PanelRepository(self.database)
        self.ticket_repo = TicketRepository(self.database)
        self.transcript_repo = TranscriptRepository(self.database)
        self.feedback_repo = FeedbackRepository(self.database)
        self.event_repo = EventRepository(self.database)

        deps = TicketServiceDeps(
            ticket_repo=self.ticket_repo,
            transcript_repo=self.transcript_repo,
            feedback_repo=self.feedback_repo,
            event_repo=self.event_repo,
            provider=self.provider,
            transcripts=TranscriptService(self.config.transcripts),
            notifier=self.notifier,
        )
        self.reconciliation_service = ReconciliationService(self.config, deps)
        self.ticket_service = TicketService(self.config, deps, reconciler=self.reconciliation_service)
        self.keyword_service = KeywordService(self.config.keywords, self.cache)

        # Persistent views double as the custom_id -> handler table for component interactions.
        self.add_view(TicketPanelView(self))
        self.add_view(TicketControlsView(self))
        self.add_view(FeedbackPromptView(self))

        await load_extensions(self, self.config.enabled_extensions)

        if self.config.discord.sync_commands_on_start:
            guild = discord.Object(id=self.config.discord.guild_id)
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
            LOGGER.info("Synced %s application commands", len(synced))

        self.tree.on_error = handle_app_command_error  # type: ignore[assignment]

    async def on_ready(self) -> None:
        LOGGER.info("Bot ready as %s (%s)", self.user, self.user.id if self.user else "n/a")
        activity_type = self.config.discord.activity_type.lower()
        if activity_type == "playing":
            activity = discord.Game(name=self.config.discord.status_text)
        elif activity_type == "listening":
            activity = discord.Activity(
                type=discord.ActivityType.listening, name=self.config.discord.status_text
            )
        else:
            activity = discord.Activity(
                type=discord.ActivityType.watching, name=self.config.discord.status_text
            )
        await self.change_presence(status=discord.Status.online, activity=activity)

    async def on_command_error(self, ctx: commands.Context[commands.Bot], error: commands.CommandError) -> None:
        if ctx.command and ctx.command.has_error_handler():
            return
        await handle_prefix_command_error(ctx, error)

    async def close(self) -> None:
        if hasattr(self, "ticket_service"):
            await self.ticket_service.drain_deletions()
        await super().close()
        await self.notifier.close()
        await self.database.close()
        if self.cache:
            await self.cache.close()
