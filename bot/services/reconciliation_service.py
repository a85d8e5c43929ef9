"""Repairs drift between open ticket rows and the live channels of a guild.

A sweep runs in this order:

1. duplicate open rows for one channel collapse to the newest;
2. open rows whose channel is gone are closed;
3. open rows whose channel was renamed out of the ``<prefix>-`` convention are closed;
4. every live ticket-named channel without an open row is adopted, trying in turn
   a closed row on the same channel (reopen), a row whose id equals the channel
   name (repoint), and finally a new row recovered from the channel topic.

Each row or channel is handled in isolation; a failure is counted, logged and
resolved towards a closed row.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from core.config import AppConfig
from core.errors import StaleTicketError
from database.models import TicketRecord
from services.channel_provider import ChannelInfo
from services.ticket_service import TicketServiceDeps
from utils.constants import DEFAULT_CATEGORY_KEY, TICKET_CATEGORIES, TicketEventType
from utils.naming import is_ticket_channel_name, parse_channel_name, parse_topic
from utils.time import now_iso

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ReconciliationReport:
    guild_id: int
    reconnected: int = 0
    closed_missing: int = 0
    closed_renamed: int = 0
    closed_duplicate: int = 0
    reopened: int = 0
    repointed: int = 0
    created: int = 0
    unmanaged: int = 0
    failed: int = 0
    started_at: str = field(default_factory=now_iso)
    finished_at: str | None = None

    @property
    def mutations(self) -> int:
        return (
            self.closed_missing
            + self.closed_renamed
            + self.closed_duplicate
            + self.reopened
            + self.repointed
            + self.created
        )

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def summary(self) -> str:
        return (
            f"Reconciliation for guild {self.guild_id}: "
            f"{self.reconnected} reconnected, {self.reopened} reopened, {self.repointed} repointed, "
            f"{self.created} created, {self.closed_missing} closed (missing), "
            f"{self.closed_renamed} closed (renamed), {self.closed_duplicate} closed (duplicate), "
            f"{self.unmanaged} unmanaged, {self.failed} failed"
        )


class ReconciliationService:
    def __init__(self, config: AppConfig, deps: TicketServiceDeps) -> None:
        self.config = config
        self.deps = deps
        self._locks: dict[int, asyncio.Lock] = {}
        self._last_reports: dict[int, ReconciliationReport] = {}

    @property
    def prefix(self) -> str:
        return self.config.tickets.channel_prefix

    def last_report(self, guild_id: int) -> ReconciliationReport | None:
        return self._last_reports.get(guild_id)

    async def reconcile(self, guild_id: int) -> ReconciliationReport:
        lock = self._locks.setdefault(guild_id, asyncio.Lock())
        async with lock, self.deps.open_lock:
            report = await self._sweep(guild_id)
        self._last_reports[guild_id] = report
        LOGGER.info(report.summary(), extra={"guild_id": guild_id})
        if report.mutations or report.failed:
            await self.deps.notifier.webhook(report.summary())
        return report

    async def _sweep(self, guild_id: int) -> ReconciliationReport:
        report = ReconciliationReport(guild_id=guild_id)
        pending = set(self.deps.pending_deletions)
        # A provider failure here aborts the sweep; closing rows against an unknown channel set is never safe.
        live = {
            channel.id: channel
            for channel in await self.deps.provider.list_channels(guild_id)
            if channel.id not in pending
        }

        open_rows = [t for t in await self.deps.ticket_repo.list_open(guild_id) if t.channel_id not in pending]
        open_rows = await self._collapse_duplicates(open_rows, report)

        claimed_channels: set[int] = set()
        for ticket in open_rows:
            try:
                channel = live.get(ticket.channel_id)
                if channel is None:
                    if await self._close(ticket, "channel_missing"):
                        report.closed_missing += 1
                elif not is_ticket_channel_name(channel.name, self.prefix):
                    if await self._close(ticket, "channel_renamed"):
                        report.closed_renamed += 1
                else:
                    claimed_channels.add(channel.id)
                    report.reconnected += 1
            except Exception:
                report.failed += 1
                LOGGER.exception("Reconciling ticket %s failed", ticket.id, extra={"ticket_id": ticket.id})
                await self._defensive_close(ticket.id)

        orphans = [
            channel
            for channel in live.values()
            if channel.id not in claimed_channels and is_ticket_channel_name(channel.name, self.prefix)
        ]
        # Matching by channel runs for every orphan before any matching by name.
        unmatched: list[ChannelInfo] = []
        for channel in orphans:
            if await self._guarded(channel, report, self._adopt_by_channel(channel, report)):
                unmatched.append(channel)
        for channel in unmatched:
            await self._guarded(channel, report, self._adopt_by_name_or_topic(guild_id, channel, live, report))

        report.finished_at = now_iso()
        return report

    async def _guarded(
        self, channel: ChannelInfo, report: ReconciliationReport, step: Awaitable[bool]
    ) -> bool:
        """Run one adoption step; returns True when the channel is still unmatched."""
        try:
            return await step
        except Exception:
            report.failed += 1
            LOGGER.exception("Adopting channel %s failed", channel.id, extra={"channel_id": channel.id})
            existing = await self._safe_open_row(channel.id)
            if existing is not None:
                await self._defensive_close(existing.id)
            return False

    async def _collapse_duplicates(
        self, rows: list[TicketRecord], report: ReconciliationReport
    ) -> list[TicketRecord]:
        by_channel: dict[int, list[TicketRecord]] = {}
        for row in rows:
            by_channel.setdefault(row.channel_id, []).append(row)

        survivors: list[TicketRecord] = []
        for group in by_channel.values():
            group.sort(key=lambda t: (t.created_at or "", t.id), reverse=True)
            survivors.append(group[0])
            for extra in group[1:]:
                try:
                    if await self._close(extra, "duplicate_open_row"):
                        report.closed_duplicate += 1
                except Exception:
                    report.failed += 1
                    LOGGER.exception("Closing duplicate ticket %s failed", extra.id)
        return survivors

    async def _adopt_by_channel(self, channel: ChannelInfo, report: ReconciliationReport) -> bool:
        same_channel = await self.deps.ticket_repo.get_any_by_channel(channel.id)
        if same_channel is None:
            return True
        if same_channel.is_closed:
            if await self._reopen(same_channel):
                report.reopened += 1
            return False
        LOGGER.warning(
            "Channel %s is held by ticket %s of another guild; leaving it alone",
            channel.id,
            same_channel.id,
        )
        report.unmanaged += 1
        return False

    async def _adopt_by_name_or_topic(
        self,
        guild_id: int,
        channel: ChannelInfo,
        live: dict[int, ChannelInfo],
        report: ReconciliationReport,
    ) -> bool:
        same_name = await self.deps.ticket_repo.get_by_id(channel.name)
        if same_name is not None:
            if same_name.is_open and same_name.channel_id in live:
                LOGGER.warning(
                    "Channel %s is named after ticket %s, which is still open on channel %s",
                    channel.id,
                    same_name.id,
                    same_name.channel_id,
                )
                report.unmanaged += 1
                return False
            await self._repoint(same_name, channel.id)
            report.repointed += 1
            return False

        parsed = parse_topic(channel.topic)
        if parsed is None:
            LOGGER.warning(
                "Channel %s (%s) has no recoverable requester; leaving it unmanaged", channel.id, channel.name
            )
            report.unmanaged += 1
            return False

        name_parts = parse_channel_name(channel.name, self.prefix)
        category = (
            parsed.category
            or (name_parts.category if name_parts else None)
            or TICKET_CATEGORIES[DEFAULT_CATEGORY_KEY]
        )
        # The channel name carries the requester fragment that later renames must reproduce.
        requester_name = (
            name_parts.requester if name_parts else parsed.requester_tag or str(parsed.requester_id)
        )
        ticket = TicketRecord(
            id=await self._free_id(channel.name),
            guild_id=guild_id,
            channel_id=channel.id,
            requester_id=parsed.requester_id,
            requester_name=requester_name,
            requester_tag=parsed.requester_tag,
            category=category.key,
            created_at=now_iso(),
        )
        await self.deps.ticket_repo.insert(ticket)
        await self._record(ticket, TicketEventType.ADOPT, {"channel_id": channel.id})
        report.created += 1
        LOGGER.info("Adopted channel %s as ticket %s", channel.id, ticket.id)
        return False

    async def _free_id(self, name: str) -> str:
        candidate = name
        n = 1
        while await self.deps.ticket_repo.id_exists(candidate):
            n += 1
            candidate = f"{name}-{n}"
        return candidate

    async def _conditional(
        self,
        ticket: TicketRecord,
        applies: Callable[[TicketRecord], bool],
        write: Callable[[TicketRecord], Awaitable[bool]],
    ) -> bool:
        """Compare-and-swap with one re-read; False when the refreshed row no longer applies."""
        current = ticket
        for _ in range(2):
            if not applies(current):
                return False
            if await write(current):
                return True
            reread = await self.deps.ticket_repo.get_by_id(current.id)
            if reread is None:
                return False
            current = reread
        raise StaleTicketError()

    async def _close(self, ticket: TicketRecord, reason: str) -> bool:
        changed = await self._conditional(
            ticket,
            lambda t: t.is_open,
            lambda t: self.deps.ticket_repo.close(t.id, t.version, now_iso()),
        )
        if changed:
            await self._record(ticket, TicketEventType.CLOSE, {"reason": reason})
            LOGGER.info("Closed ticket %s (%s)", ticket.id, reason, extra={"ticket_id": ticket.id})
        return changed

    async def _reopen(self, ticket: TicketRecord) -> bool:
        changed = await self._conditional(
            ticket,
            lambda t: t.is_closed and t.channel_id == ticket.channel_id,
            lambda t: self.deps.ticket_repo.reopen(t.id, t.version),
        )
        if changed:
            await self._record(ticket, TicketEventType.REOPEN, {"channel_id": ticket.channel_id})
            LOGGER.info("Reopened ticket %s on live channel %s", ticket.id, ticket.channel_id)
        return changed

    async def _repoint(self, ticket: TicketRecord, channel_id: int) -> None:
        moved = await self._conditional(
            ticket,
            lambda t: t.channel_id != channel_id,
            lambda t: self.deps.ticket_repo.repoint_channel(t.id, t.version, channel_id),
        )
        current = await self.deps.ticket_repo.get_by_id(ticket.id)
        if current is None:
            return
        if current.is_closed and await self._conditional(
            current,
            lambda t: t.is_closed,
            lambda t: self.deps.ticket_repo.reopen(t.id, t.version),
        ):
            await self._record(current, TicketEventType.REOPEN, {"channel_id": channel_id})
            LOGGER.info("Reopened ticket %s on recreated channel %s", current.id, channel_id)
        if moved:
            await self._record(
                ticket, TicketEventType.REPOINT, {"from": ticket.channel_id, "to": channel_id}
            )
            LOGGER.info("Repointed ticket %s from channel %s to %s", ticket.id, ticket.channel_id, channel_id)

    async def _safe_open_row(self, channel_id: int) -> TicketRecord | None:
        try:
            return await self.deps.ticket_repo.get_open_by_channel(channel_id)
        except Exception:
            LOGGER.exception("Could not read the open row for channel %s", channel_id)
            return None

    async def _defensive_close(self, ticket_id: str) -> None:
        try:
            current = await self.deps.ticket_repo.get_by_id(ticket_id)
            if current is not None and current.is_open:
                await self.deps.ticket_repo.close(current.id, current.version, now_iso())
                LOGGER.warning("Defensively closed ticket %s after a failed repair", ticket_id)
        except Exception:
            LOGGER.exception("Defensive close of ticket %s failed", ticket_id)

    async def _record(
        self, ticket: TicketRecord, event_type: TicketEventType, payload: dict[str, Any]
    ) -> None:
        try:
            await self.deps.event_repo.log(
                ticket_id=ticket.id,
                guild_id=ticket.guild_id,
                actor_id=None,
                event_type=event_type.value,
                payload=payload,
            )
        except Exception:
            LOGGER.warning("Could not record %s event for ticket %s", event_type.value, ticket.id, exc_info=True)
