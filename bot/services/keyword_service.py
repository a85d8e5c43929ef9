from __future__ import annotations

import logging
import re

from core.config import KeywordConfig
from services.cache import CacheBackend

LOGGER = logging.getLogger(__name__)


class KeywordService:
    """Configured trigger -> reply, at most once per (channel, user, trigger) per cooldown."""

    def __init__(self, config: KeywordConfig, cache: CacheBackend) -> None:
        self.config = config
        self.cache = cache
        self._patterns = [
            (trigger, re.compile(rf"(?<!\w){re.escape(trigger)}(?!\w)"), reply)
            for trigger, reply in config.responses.items()
        ]

    def match(self, content: str) -> tuple[str, str] | None:
        text = content.lower()
        for trigger, pattern, reply in self._patterns:
            if pattern.search(text):
                return trigger, reply
        return None

    async def response_for(self, channel_id: int, user_id: int, content: str) -> str | None:
        if not self.config.enabled or not content:
            return None
        matched = self.match(content)
        if matched is None:
            return None
        trigger, reply = matched
        key = f"keyword:{channel_id}:{user_id}:{trigger}"
        if not await self.cache.add(key, "1", ttl=self.config.cooldown_seconds):
            LOGGER.debug("Keyword reply suppressed by cooldown. key=%s", key)
            return None
        return reply
