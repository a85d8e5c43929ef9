from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from core.config import TranscriptConfig
from database.models import TicketRecord
from services.channel_provider import ChannelMessage
from utils.constants import TICKET_CATEGORIES
from utils.time import now_iso

LOGGER = logging.getLogger(__name__)


class TranscriptService:
    def __init__(self, config: TranscriptConfig) -> None:
        self.config = config
        self.base_dir = Path(config.storage_directory)

    def render(self, ticket: TicketRecord, messages: list[ChannelMessage], limit: int) -> str:
        """Plain-text transcript. The header is always present, so the result is never empty."""
        category = TICKET_CATEGORIES.get(ticket.category)
        header = [
            f"Transcript for ticket {ticket.id}",
            f"Requester: {ticket.requester_name} ({ticket.requester_id})",
            f"Category: {category.label if category else ticket.category}",
            f"Claimed by: {ticket.claimed_by_id or '-'}",
            f"Generated: {now_iso()}",
            f"Messages captured: {len(messages)} (most recent {limit} at most)",
            "",
        ]
        return "\n".join(header + self._build_text(messages))

    @staticmethod
    def _build_text(messages: Iterable[ChannelMessage]) -> list[str]:
        lines: list[str] = []
        for msg in messages:
            author = f"{msg.author_name} ({msg.author_id})"
            lines.append(f"[{msg.created_at.isoformat()}] {author}: {msg.content}")
            for url in msg.attachments:
                lines.append(f"  attachment: {url}")
        return lines

    def export(self, ticket: TicketRecord, content: str) -> Path | None:
        """Write the transcript to `<storage>/<guild>/<ticket>.txt` when text export is enabled."""
        if not self.config.txt_enabled:
            return None
        guild_dir = self.base_dir / str(ticket.guild_id)
        try:
            guild_dir.mkdir(parents=True, exist_ok=True)
            path = guild_dir / f"{ticket.id}.txt"
            path.write_text(content, encoding="utf-8")
        except OSError:
            LOGGER.warning("Could not write transcript file for ticket %s", ticket.id, exc_info=True)
            return None
        return path
