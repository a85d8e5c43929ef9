from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from utils.constants import TICKET_STATUS_CLOSED, TICKET_STATUS_OPEN


@dataclass(slots=True)
class TicketRecord:
    id: str
    guild_id: int
    channel_id: int
    requester_id: int
    requester_name: str
    category: str
    requester_tag: str | None = None
    status: str = TICKET_STATUS_OPEN
    claimed_by_id: int | None = None
    claimed_at: str | None = None
    version: int = 1
    created_at: str | None = None
    updated_at: str | None = None
    closed_at: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status == TICKET_STATUS_OPEN

    @property
    def is_closed(self) -> bool:
        return self.status == TICKET_STATUS_CLOSED

    @property
    def is_claimed(self) -> bool:
        return self.claimed_by_id is not None


@dataclass(slots=True)
class TicketPanel:
    guild_id: int
    channel_id: int
    message_id: int
    updated_at: str | None = None


@dataclass(slots=True)
class TranscriptRecord:
    ticket_id: str
    content: str
    message_count: int
    created_at: str | None = None


@dataclass(slots=True)
class FeedbackRecord:
    id: str
    ticket_id: str
    user_id: int
    rating: int | None = None
    comment: str | None = None
    created_at: str | None = None


@dataclass(slots=True)
class TicketEvent:
    id: str
    ticket_id: str
    guild_id: int
    actor_id: int | None
    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None
