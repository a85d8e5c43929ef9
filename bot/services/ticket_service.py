from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import discord

from core.config import AppConfig
from core.errors import (
    AlreadyClaimedError,
    ChannelNotFoundError,
    ChannelProviderError,
    DuplicateOpenTicketError,
    InvalidCategoryError,
    PermissionDeniedError,
    StaleTicketError,
    TicketNotFoundError,
    TranscriptError,
    ValidationError,
)
from database.models import FeedbackRecord, TicketRecord
from database.repositories import (
    EventRepository,
    FeedbackRepository,
    TicketRepository,
    TranscriptRepository,
)
from services.channel_provider import ChannelProvider, OutboundMessage, PermissionGrant, Principal
from services.notification_service import NotificationService
from services.transcript_service import TranscriptService
from utils.constants import TICKET_CATEGORIES, TicketCategory, TicketEventType, find_category
from utils.decorators import is_staff_member
from utils.naming import (
    MAX_CHANNEL_NAME,
    build_channel_name,
    build_topic,
    is_ticket_channel_name,
    parse_channel_name,
    sanitize_channel_fragment,
)
from utils.time import now_iso

if TYPE_CHECKING:
    from services.reconciliation_service import ReconciliationService

LOGGER = logging.getLogger(__name__)

REQUESTER_GRANT = PermissionGrant(view_channel=True, send_messages=True, read_message_history=True)
STAFF_ROLE_GRANT = PermissionGrant(view_channel=True, send_messages=False, read_message_history=True)
CLAIMER_GRANT = PermissionGrant(view_channel=True, send_messages=True, read_message_history=True)
PARTICIPANT_GRANT = PermissionGrant(view_channel=True, send_messages=True, read_message_history=True)
HIDDEN_GRANT = PermissionGrant(view_channel=False)


@dataclass(frozen=True, slots=True)
class Actor:
    """Who is performing an operation, detached from discord.py objects."""

    id: int
    name: str
    tag: str
    is_staff: bool = False

    @classmethod
    def from_member(cls, member: discord.Member, admin_role_id: int) -> Actor:
        return cls(
            id=member.id,
            name=member.name,
            tag=str(member),
            is_staff=is_staff_member(member, admin_role_id),
        )


@dataclass(slots=True)
class TicketServiceDeps:
    ticket_repo: TicketRepository
    transcript_repo: TranscriptRepository
    feedback_repo: FeedbackRepository
    event_repo: EventRepository
    provider: ChannelProvider
    transcripts: TranscriptService
    notifier: NotificationService
    # Channels closed and waiting for their deferred deletion; reconciliation skips them.
    pending_deletions: set[int] = field(default_factory=set)
    open_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class TicketService:
    def __init__(
        self,
        config: AppConfig,
        deps: TicketServiceDeps,
        reconciler: ReconciliationService | None = None,
    ) -> None:
        self.config = config
        self.deps = deps
        self.reconciler = reconciler
        self._deletion_tasks: set[asyncio.Task[None]] = set()

    @property
    def prefix(self) -> str:
        return self.config.tickets.channel_prefix

    # -- lookups ---------------------------------------------------------

    async def get_ticket_for_channel(self, guild_id: int, channel_id: int) -> TicketRecord:
        """Open ticket hosted by `channel_id`, reconciling the guild once before giving up."""
        ticket = await self.deps.ticket_repo.get_open_by_channel(channel_id)
        if ticket:
            return ticket
        if self.reconciler is not None:
            LOGGER.info("No open ticket for channel %s; reconciling guild %s", channel_id, guild_id)
            await self.reconciler.reconcile(guild_id)
            ticket = await self.deps.ticket_repo.get_open_by_channel(channel_id)
            if ticket:
                return ticket
        raise TicketNotFoundError()

    async def list_open_tickets(self, guild_id: int) -> list[TicketRecord]:
        return await self.deps.ticket_repo.list_open(guild_id)

    # -- helpers ---------------------------------------------------------

    def _require_staff(self, actor: Actor, action: str) -> None:
        if not actor.is_staff:
            raise PermissionDeniedError(f"Only staff can {action}.")

    @staticmethod
    def _resolve_category(value: str) -> TicketCategory:
        category = find_category(value)
        if category is None:
            valid = ", ".join(c.short_name for c in TICKET_CATEGORIES.values())
            raise InvalidCategoryError(f"Unknown ticket category `{value}`. Use one of: {valid}.")
        return category

    async def _allocate_id(self, requester_name: str, category: TicketCategory) -> str:
        candidate = build_channel_name(self.prefix, requester_name, category)
        n = 1
        while await self.deps.ticket_repo.id_exists(candidate):
            n += 1
            candidate = build_channel_name(self.prefix, requester_name, category, n)
        return candidate

    async def _transition(
        self,
        ticket: TicketRecord,
        check: Callable[[TicketRecord], None],
        write: Callable[[TicketRecord], Awaitable[bool]],
    ) -> TicketRecord:
        """Compare-and-swap `write` against the row's version, re-reading once on a lost race.

        `check` raises when the (possibly refreshed) row no longer permits the transition.
        """
        current = ticket
        for _ in range(2):
            check(current)
            if await write(current):
                refreshed = await self.deps.ticket_repo.get_by_id(current.id)
                if refreshed is None:
                    raise TicketNotFoundError()
                return refreshed
            reread = await self.deps.ticket_repo.get_by_id(current.id)
            if reread is None:
                raise TicketNotFoundError()
            current = reread
        raise StaleTicketError()

    @staticmethod
    def _must_be_open(ticket: TicketRecord) -> None:
        if not ticket.is_open:
            raise TicketNotFoundError("This ticket is already closed.")

    async def _record_event(
        self,
        ticket: TicketRecord,
        actor_id: int | None,
        event_type: TicketEventType,
        payload: dict[str, Any] | None = None,
    ) -> None:
        try:
            await self.deps.event_repo.log(
                ticket_id=ticket.id,
                guild_id=ticket.guild_id,
                actor_id=actor_id,
                event_type=event_type.value,
                payload=payload,
            )
        except Exception:
            LOGGER.warning("Could not record %s event for ticket %s", event_type.value, ticket.id, exc_info=True)

    async def _post(self, channel_id: int, message: OutboundMessage) -> bool:
        try:
            await self.deps.provider.send_message(channel_id, message)
        except ChannelProviderError:
            LOGGER.warning("Could not post to ticket channel %s", channel_id, exc_info=True)
            return False
        return True

    # -- lifecycle -------------------------------------------------------

    async def open(self, guild_id: int, requester: Actor, category_value: str) -> TicketRecord:
        category = self._resolve_category(category_value)
        if self.reconciler is not None and await self.deps.ticket_repo.list_open_by_requester(guild_id, requester.id):
            # The open row may point at a channel deleted out-of-band; repair before refusing.
            LOGGER.info("Requester %s has an open ticket; reconciling guild %s", requester.id, guild_id)
            try:
                await self.reconciler.reconcile(guild_id)
            except ChannelProviderError:
                LOGGER.warning("Reconciliation before open failed for guild %s", guild_id, exc_info=True)

        async with self.deps.open_lock:
            existing = await self.deps.ticket_repo.list_open_by_requester(guild_id, requester.id)
            if existing:
                raise DuplicateOpenTicketError(
                    f"You already have an open ticket: <#{existing[0].channel_id}>. "
                    "Please close it before creating a new one."
                )

            ticket_id = await self._allocate_id(requester.name, category)
            overwrites = {
                Principal.everyone(guild_id): HIDDEN_GRANT,
                Principal.member(requester.id): REQUESTER_GRANT,
                Principal.role(self.config.discord.admin_role_id): STAFF_ROLE_GRANT,
            }
            # Nothing is persisted if the channel cannot be created.
            channel_id = await self.deps.provider.create_channel(
                guild_id,
                ticket_id,
                build_topic(requester.tag, requester.id, category),
                overwrites,
                parent_id=self.config.tickets.category_channel_id,
            )

            record = TicketRecord(
                id=ticket_id,
                guild_id=guild_id,
                channel_id=channel_id,
                requester_id=requester.id,
                requester_name=requester.name,
                requester_tag=requester.tag,
                category=category.key,
                created_at=now_iso(),
            )
            try:
                await self.deps.ticket_repo.insert(record)
            except Exception:
                LOGGER.exception("Ticket row insert failed; deleting orphan channel %s", channel_id)
                try:
                    await self.deps.provider.delete_channel(channel_id, reason="Ticket could not be saved")
                except ChannelProviderError:
                    LOGGER.warning("Orphan channel %s could not be deleted", channel_id, exc_info=True)
                raise

        await self._record_event(record, requester.id, TicketEventType.CREATE, {"category": category.key})
        await self._post(
            channel_id,
            OutboundMessage(
                content=f"<@{requester.id}> <@&{self.config.discord.admin_role_id}>",
                title=f"{category.emoji} {category.label}",
                description=(
                    f"Thank you for contacting support, <@{requester.id}>.\n"
                    "Please describe your issue in detail. A staff member will claim this ticket shortly."
                ),
                with_ticket_controls=True,
            ),
        )
        LOGGER.info(
            "Ticket opened. ticket=%s channel=%s requester=%s category=%s",
            record.id,
            channel_id,
            requester.id,
            category.key,
            extra={"guild_id": guild_id, "ticket_id": record.id, "channel_id": channel_id},
        )
        return record

    async def claim(self, guild_id: int, channel_id: int, actor: Actor) -> TicketRecord:
        self._require_staff(actor, "claim tickets")
        ticket = await self.get_ticket_for_channel(guild_id, channel_id)

        def check(current: TicketRecord) -> None:
            self._must_be_open(current)
            if current.is_claimed:
                raise AlreadyClaimedError(f"This ticket is already claimed by <@{current.claimed_by_id}>.")

        claimed = await self._transition(
            ticket, check, lambda t: self.deps.ticket_repo.set_claimed_by(t.id, t.version, actor.id)
        )
        try:
            await self.deps.provider.edit_permission(channel_id, Principal.member(actor.id), CLAIMER_GRANT)
        except ChannelProviderError:
            await self.deps.notifier.warn(
                f"Ticket `{claimed.id}` was claimed by <@{actor.id}> but posting rights could not be granted."
            )
        await self._record_event(claimed, actor.id, TicketEventType.CLAIM)
        await self._post(
            channel_id,
            OutboundMessage(title="Ticket Claimed", description=f"This ticket has been claimed by <@{actor.id}>."),
        )
        LOGGER.info("Ticket claimed. ticket=%s staff=%s", claimed.id, actor.id)
        return claimed

    async def transfer(
        self, guild_id: int, channel_id: int, actor: Actor, category_value: str
    ) -> TicketRecord:
        self._require_staff(actor, "transfer tickets")
        category = self._resolve_category(category_value)
        ticket = await self.get_ticket_for_channel(guild_id, channel_id)
        previous = TICKET_CATEGORIES.get(ticket.category)

        transferred = await self._transition(
            ticket,
            self._must_be_open,
            lambda t: self.deps.ticket_repo.set_category(t.id, t.version, category.key),
        )

        parsed = parse_channel_name(transferred.id, self.prefix)
        new_name = build_channel_name(
            self.prefix,
            transferred.requester_name,
            category,
            parsed.disambiguator if parsed else None,
        )
        try:
            await self.deps.provider.rename_channel(channel_id, new_name)
            tag = transferred.requester_tag or transferred.requester_name
            await self.deps.provider.set_topic(channel_id, build_topic(tag, transferred.requester_id, category))
        except ChannelProviderError:
            await self.deps.notifier.warn(
                f"Ticket `{transferred.id}` moved to {category.label} but the channel could not be updated."
            )
        await self._record_event(
            transferred,
            actor.id,
            TicketEventType.TRANSFER,
            {"from": previous.key if previous else ticket.category, "to": category.key},
        )
        await self._post(
            channel_id,
            OutboundMessage(
                title="Ticket Transferred",
                description=(
                    f"This ticket was transferred from **{previous.label if previous else ticket.category}** "
                    f"to **{category.label}** by <@{actor.id}>."
                ),
            ),
        )
        LOGGER.info("Ticket transferred. ticket=%s category=%s", transferred.id, category.key)
        return transferred

    async def close(self, guild_id: int, channel_id: int, actor: Actor) -> TicketRecord:
        ticket = await self.get_ticket_for_channel(guild_id, channel_id)
        if not (actor.is_staff or actor.id == ticket.requester_id):
            raise PermissionDeniedError("Only staff or the ticket requester can close this ticket.")

        self.deps.pending_deletions.add(channel_id)
        try:
            closed, transcript = await self._close_and_archive(ticket, channel_id)
        except Exception:
            self.deps.pending_deletions.discard(channel_id)
            raise

        await self._record_event(closed, actor.id, TicketEventType.CLOSE, {"by_requester": actor.id == closed.requester_id})
        self.deps.transcripts.export(closed, transcript)

        category = TICKET_CATEGORIES.get(closed.category)
        await self.deps.notifier.audit(
            OutboundMessage(
                title="Ticket Closed",
                description=(
                    f"**Ticket:** `{closed.id}`\n"
                    f"**Requester:** <@{closed.requester_id}>\n"
                    f"**Category:** {category.label if category else closed.category}\n"
                    f"**Claimed by:** {f'<@{closed.claimed_by_id}>' if closed.claimed_by_id else 'Unclaimed'}\n"
                    f"**Closed by:** <@{actor.id}>"
                ),
                attachment_name=f"{closed.id}.txt" if self.config.transcripts.attach_to_audit else None,
                attachment_text=transcript if self.config.transcripts.attach_to_audit else None,
            )
        )
        delivered = await self.deps.notifier.direct(
            closed.requester_id,
            OutboundMessage(
                title="Your ticket was closed",
                description=(
                    f"Your ticket `{closed.id}` has been closed. "
                    "We'd appreciate a quick rating of the support you received."
                ),
                feedback_ticket_id=closed.id,
            ),
        )
        if not delivered:
            await self.deps.notifier.warn(f"Could not DM <@{closed.requester_id}> about closed ticket `{closed.id}`.")

        delay = self.config.tickets.close_delay_seconds
        await self._post(
            channel_id,
            OutboundMessage(
                title="Ticket Closed",
                description=f"Closed by <@{actor.id}>. This channel will be deleted in {delay:g} seconds.",
            ),
        )
        self._schedule_deletion(closed, delay)
        LOGGER.info(
            "Ticket closed. ticket=%s actor=%s",
            closed.id,
            actor.id,
            extra={"guild_id": guild_id, "ticket_id": closed.id, "channel_id": channel_id},
        )
        return closed

    async def _close_and_archive(self, ticket: TicketRecord, channel_id: int) -> tuple[TicketRecord, str]:
        limit = self.config.tickets.transcript_message_limit
        # The history must be readable before anything is persisted.
        messages = await self.deps.provider.fetch_recent_messages(channel_id, limit)
        transcript = self.deps.transcripts.render(ticket, messages, limit)

        closed = await self._transition(
            ticket,
            self._must_be_open,
            lambda t: self.deps.ticket_repo.close(t.id, t.version, now_iso()),
        )
        try:
            saved = await self.deps.transcript_repo.save(closed.id, transcript, len(messages))
        except Exception as exc:
            LOGGER.exception("Transcript save failed for ticket %s; reopening", closed.id)
            await self._transition(
                closed,
                lambda t: None,
                lambda t: self.deps.ticket_repo.reopen(t.id, t.version),
            )
            raise TranscriptError() from exc
        if not saved:
            LOGGER.info("Ticket %s already has a transcript; keeping the original", closed.id)
        return closed, transcript

    def _schedule_deletion(self, ticket: TicketRecord, delay: float) -> None:
        task = asyncio.create_task(self._delete_later(ticket, delay), name=f"ticket-delete-{ticket.id}")
        self._deletion_tasks.add(task)
        task.add_done_callback(self._deletion_tasks.discard)

    async def _delete_later(self, ticket: TicketRecord, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            await self.deps.provider.delete_channel(ticket.channel_id, reason=f"Ticket {ticket.id} closed")
            LOGGER.info("Deleted channel %s of closed ticket %s", ticket.channel_id, ticket.id)
        except ChannelNotFoundError:
            LOGGER.info("Channel %s of ticket %s was already gone", ticket.channel_id, ticket.id)
        except ChannelProviderError:
            LOGGER.exception(
                "Deleting channel %s failed; reconciliation will reopen ticket %s",
                ticket.channel_id,
                ticket.id,
            )
        finally:
            self.deps.pending_deletions.discard(ticket.channel_id)

    async def drain_deletions(self) -> None:
        """Wait for every scheduled channel deletion to finish."""
        if self._deletion_tasks:
            await asyncio.gather(*list(self._deletion_tasks), return_exceptions=True)

    # -- staff utilities -------------------------------------------------

    async def add_participant(self, guild_id: int, channel_id: int, actor: Actor, user_id: int) -> TicketRecord:
        self._require_staff(actor, "add users to tickets")
        ticket = await self.get_ticket_for_channel(guild_id, channel_id)
        await self.deps.provider.edit_permission(channel_id, Principal.member(user_id), PARTICIPANT_GRANT)
        await self._record_event(ticket, actor.id, TicketEventType.ADD_PARTICIPANT, {"user_id": user_id})
        await self._post(
            channel_id,
            OutboundMessage(content=f"<@{user_id}> has been added to this ticket by <@{actor.id}>."),
        )
        return ticket

    async def remove_participant(self, guild_id: int, channel_id: int, actor: Actor, user_id: int) -> TicketRecord:
        self._require_staff(actor, "remove users from tickets")
        ticket = await self.get_ticket_for_channel(guild_id, channel_id)
        if user_id == ticket.requester_id:
            raise ValidationError("The ticket requester cannot be removed from their own ticket.")
        await self.deps.provider.remove_permission(channel_id, Principal.member(user_id))
        await self._record_event(ticket, actor.id, TicketEventType.REMOVE_PARTICIPANT, {"user_id": user_id})
        await self._post(
            channel_id,
            OutboundMessage(content=f"<@{user_id}> has been removed from this ticket by <@{actor.id}>."),
        )
        return ticket

    async def rename(self, guild_id: int, channel_id: int, actor: Actor, new_name: str) -> str:
        self._require_staff(actor, "rename tickets")
        ticket = await self.get_ticket_for_channel(guild_id, channel_id)
        clean = sanitize_channel_fragment(new_name, fallback="", max_length=MAX_CHANNEL_NAME)
        if not clean:
            raise ValidationError("Please provide a valid name for the channel.")
        if not is_ticket_channel_name(clean, self.prefix):
            raise ValidationError(f"Ticket channel names must start with `{self.prefix}-`.")
        await self.deps.provider.rename_channel(channel_id, clean)
        await self._record_event(ticket, actor.id, TicketEventType.RENAME, {"name": clean})
        await self._post(
            channel_id,
            OutboundMessage(content=f"This ticket has been renamed to **{clean}** by <@{actor.id}>."),
        )
        return clean

    async def notify_admin(
        self, guild_id: int, channel_id: int, actor: Actor, admin_id: int, reason: str | None = None
    ) -> TicketRecord:
        self._require_staff(actor, "escalate tickets")
        ticket = await self.get_ticket_for_channel(guild_id, channel_id)
        await self.deps.provider.edit_permission(channel_id, Principal.member(admin_id), PARTICIPANT_GRANT)
        note = reason.strip() if reason and reason.strip() else "No reason provided"
        await self._post(
            channel_id,
            OutboundMessage(
                content=f"<@{admin_id}>",
                title="Ticket Escalated",
                description=f"<@{actor.id}> requested the attention of <@{admin_id}>.\n**Reason:** {note}",
            ),
        )
        await self.deps.notifier.direct(
            admin_id,
            OutboundMessage(
                title="Ticket needs your attention",
                description=f"<@{actor.id}> escalated ticket <#{channel_id}> (`{ticket.id}`).\n**Reason:** {note}",
            ),
        )
        await self._record_event(ticket, actor.id, TicketEventType.NOTIFY_ADMIN, {"admin_id": admin_id, "reason": note})
        return ticket

    async def record_feedback(
        self, ticket_id: str, user_id: int, rating: int | None, comment: str | None = None
    ) -> FeedbackRecord:
        if rating is not None and not 1 <= rating <= 5:
            raise ValidationError("Rating must be between 1 and 5.")
        comment = comment.strip() if comment and comment.strip() else None
        if rating is None and comment is None:
            raise ValidationError("Please provide a rating or a comment.")
        ticket = await self.deps.ticket_repo.get_by_id(ticket_id)
        if ticket is None:
            raise TicketNotFoundError("That ticket no longer exists.")
        if ticket.requester_id != user_id:
            raise PermissionDeniedError("Only the ticket requester can leave feedback.")
        record = await self.deps.feedback_repo.save(ticket.id, user_id, rating, comment)
        await self._record_event(ticket, user_id, TicketEventType.FEEDBACK, {"rating": rating})
        LOGGER.info("Feedback recorded. ticket=%s rating=%s", ticket.id, rating)
        return record
