from __future__ import annotations

import json
from typing import Any
from uuid import uuid4

from database.base import Database
from database.models import FeedbackRecord, TicketEvent, TicketPanel, TicketRecord, TranscriptRecord
from utils.constants import TICKET_STATUS_CLOSED, TICKET_STATUS_OPEN
from utils.time import now_iso


def _json_load(value: str | None, default: Any) -> Any:
    if value is None:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _json_dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, separators=(",", ":"))


def _optional_int(value: Any) -> int | None:
    return int(value) if value is not None else None


class TicketRepository:
    """Ticket rows. Every mutation is conditional on the caller's `expected_version`."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def insert(self, ticket: TicketRecord) -> None:
        created_at = ticket.created_at or now_iso()
        await self.db.execute(
            """
            INSERT INTO tickets(
                id, guild_id, channel_id, requester_id, requester_name, requester_tag, category,
                claimed_by_id, claimed_at, status, version, created_at, updated_at, closed_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                ticket.id,
                ticket.guild_id,
                ticket.channel_id,
                ticket.requester_id,
                ticket.requester_name,
                ticket.requester_tag,
                ticket.category,
                ticket.claimed_by_id,
                ticket.claimed_at,
                ticket.status,
                ticket.version,
                created_at,
                ticket.updated_at or created_at,
                ticket.closed_at,
            ],
        )

    async def get_by_id(self, ticket_id: str) -> TicketRecord | None:
        row = await self.db.fetchone("SELECT * FROM tickets WHERE id = ?;", [ticket_id])
        return self._row_to_ticket(row) if row else None

    async def id_exists(self, ticket_id: str) -> bool:
        row = await self.db.fetchone("SELECT 1 AS present FROM tickets WHERE id = ?;", [ticket_id])
        return row is not None

    async def get_open_by_channel(self, channel_id: int) -> TicketRecord | None:
        row = await self.db.fetchone(
            "SELECT * FROM tickets WHERE channel_id = ? AND status = ?;",
            [channel_id, TICKET_STATUS_OPEN],
        )
        return self._row_to_ticket(row) if row else None

    async def get_any_by_channel(self, channel_id: int) -> TicketRecord | None:
        row = await self.db.fetchone(
            """
            SELECT * FROM tickets
            WHERE channel_id = ?
            ORDER BY CASE WHEN status = ? THEN 0 ELSE 1 END, created_at DESC, id DESC
            LIMIT 1;
            """,
            [channel_id, TICKET_STATUS_OPEN],
        )
        return self._row_to_ticket(row) if row else None

    async def list_open(self, guild_id: int) -> list[TicketRecord]:
        rows = await self.db.fetchall(
            """
            SELECT * FROM tickets
            WHERE guild_id = ? AND status = ?
            ORDER BY created_at DESC, id DESC;
            """,
            [guild_id, TICKET_STATUS_OPEN],
        )
        return [self._row_to_ticket(row) for row in rows]

    async def list_open_by_requester(self, guild_id: int, requester_id: int) -> list[TicketRecord]:
        rows = await self.db.fetchall(
            """
            SELECT * FROM tickets
            WHERE guild_id = ? AND requester_id = ? AND status = ?
            ORDER BY created_at DESC;
            """,
            [guild_id, requester_id, TICKET_STATUS_OPEN],
        )
        return [self._row_to_ticket(row) for row in rows]

    async def set_claimed_by(self, ticket_id: str, expected_version: int, staff_id: int) -> bool:
        changed = await self.db.execute(
            """
            UPDATE tickets
            SET claimed_by_id = ?, claimed_at = ?, version = version + 1, updated_at = ?
            WHERE id = ? AND version = ? AND status = ? AND claimed_by_id IS NULL;
            """,
            [staff_id, now_iso(), now_iso(), ticket_id, expected_version, TICKET_STATUS_OPEN],
        )
        return changed > 0

    async def set_category(self, ticket_id: str, expected_version: int, category: str) -> bool:
        changed = await self.db.execute(
            """
            UPDATE tickets
            SET category = ?, version = version + 1, updated_at = ?
            WHERE id = ? AND version = ? AND status = ?;
            """,
            [category, now_iso(), ticket_id, expected_version, TICKET_STATUS_OPEN],
        )
        return changed > 0

    async def close(self, ticket_id: str, expected_version: int, closed_at: str | None = None) -> bool:
        stamp = closed_at or now_iso()
        changed = await self.db.execute(
            """
            UPDATE tickets
            SET status = ?, closed_at = ?, version = version + 1, updated_at = ?
            WHERE id = ? AND version = ? AND status = ?;
            """,
            [TICKET_STATUS_CLOSED, stamp, stamp, ticket_id, expected_version, TICKET_STATUS_OPEN],
        )
        return changed > 0

    async def reopen(self, ticket_id: str, expected_version: int) -> bool:
        changed = await self.db.execute(
            """
            UPDATE tickets
            SET status = ?, closed_at = NULL, version = version + 1, updated_at = ?
            WHERE id = ? AND version = ? AND status = ?;
            """,
            [TICKET_STATUS_OPEN, now_iso(), ticket_id, expected_version, TICKET_STATUS_CLOSED],
        )
        return changed > 0

    async def repoint_channel(self, ticket_id: str, expected_version: int, new_channel_id: int) -> bool:
        changed = await self.db.execute(
            """
            UPDATE tickets
            SET channel_id = ?, version = version + 1, updated_at = ?
            WHERE id = ? AND version = ?;
            """,
            [new_channel_id, now_iso(), ticket_id, expected_version],
        )
        return changed > 0

    def _row_to_ticket(self, row: dict[str, Any]) -> TicketRecord:
        return TicketRecord(
            id=row["id"],
            guild_id=int(row["guild_id"]),
            channel_id=int(row["channel_id"]),
            requester_id=int(row["requester_id"]),
            requester_name=row["requester_name"],
            requester_tag=row["requester_tag"],
            category=row["category"],
            status=row["status"],
            claimed_by_id=_optional_int(row["claimed_by_id"]),
            claimed_at=row["claimed_at"],
            version=int(row["version"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            closed_at=row["closed_at"],
        )


class PanelRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def upsert(self, panel: TicketPanel) -> None:
        await self.db.execute(
            """
            INSERT INTO ticket_panels(guild_id, channel_id, message_id, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(guild_id) DO UPDATE SET
                channel_id = excluded.channel_id,
                message_id = excluded.message_id,
                updated_at = excluded.updated_at;
            """,
            [panel.guild_id, panel.channel_id, panel.message_id, panel.updated_at or now_iso()],
        )

    async def get(self, guild_id: int) -> TicketPanel | None:
        row = await self.db.fetchone("SELECT * FROM ticket_panels WHERE guild_id = ?;", [guild_id])
        if not row:
            return None
        return TicketPanel(
            guild_id=int(row["guild_id"]),
            channel_id=int(row["channel_id"]),
            message_id=int(row["message_id"]),
            updated_at=row["updated_at"],
        )


class TranscriptRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def save(self, ticket_id: str, content: str, message_count: int) -> bool:
        """Write-once; returns False when a transcript already exists for the ticket."""
        changed = await self.db.execute(
            """
            INSERT INTO transcripts(ticket_id, content, message_count, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(ticket_id) DO NOTHING;
            """,
            [ticket_id, content, message_count, now_iso()],
        )
        return changed > 0

    async def get(self, ticket_id: str) -> TranscriptRecord | None:
        row = await self.db.fetchone("SELECT * FROM transcripts WHERE ticket_id = ?;", [ticket_id])
        if not row:
            return None
        return TranscriptRecord(
            ticket_id=row["ticket_id"],
            content=row["content"],
            message_count=int(row["message_count"]),
            created_at=row["created_at"],
        )


class FeedbackRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def save(
        self, ticket_id: str, user_id: int, rating: int | None, comment: str | None
    ) -> FeedbackRecord:
        record = FeedbackRecord(
            id=str(uuid4()),
            ticket_id=ticket_id,
            user_id=user_id,
            rating=rating,
            comment=comment,
            created_at=now_iso(),
        )
        await self.db.execute(
            """
            INSERT INTO ticket_feedback(id, ticket_id, user_id, rating, comment, created_at)
            VALUES (?, ?, ?, ?, ?, ?);
            """,
            [record.id, ticket_id, user_id, rating, comment, record.created_at],
        )
        return record

    async def list_for_ticket(self, ticket_id: str) -> list[FeedbackRecord]:
        rows = await self.db.fetchall(
            "SELECT * FROM ticket_feedback WHERE ticket_id = ? ORDER BY created_at ASC;",
            [ticket_id],
        )
        return [
            FeedbackRecord(
                id=row["id"],
                ticket_id=row["ticket_id"],
                user_id=int(row["user_id"]),
                rating=_optional_int(row["rating"]),
                comment=row["comment"],
                created_at=row["created_at"],
            )
            for row in rows
        ]


class EventRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def log(
        self,
        ticket_id: str,
        guild_id: int,
        actor_id: int | None,
        event_type: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        await self.db.execute(
            """
            INSERT INTO ticket_events(id, ticket_id, guild_id, actor_id, event_type, payload_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?);
            """,
            [str(uuid4()), ticket_id, guild_id, actor_id, event_type, _json_dump(payload or {}), now_iso()],
        )

    async def list_for_ticket(self, ticket_id: str, limit: int = 50) -> list[TicketEvent]:
        rows = await self.db.fetchall(
            """
            SELECT * FROM ticket_events
            WHERE ticket_id = ?
            ORDER BY created_at ASC
            LIMIT ?;
            """,
            [ticket_id, limit],
        )
        return [
            TicketEvent(
                id=row["id"],
                ticket_id=row["ticket_id"],
                guild_id=int(row["guild_id"]),
                actor_id=_optional_int(row["actor_id"]),
                event_type=row["event_type"],
                payload=dict(_json_load(row["payload_json"], {})),
                created_at=row["created_at"],
            )
            for row in rows
        ]
