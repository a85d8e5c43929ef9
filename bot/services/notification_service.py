from __future__ import annotations

import logging

import aiohttp

from core.config import AppConfig
from core.errors import ChannelProviderError
from services.channel_provider import ChannelProvider, OutboundMessage

LOGGER = logging.getLogger(__name__)


class NotificationService:
    """Best-effort notifications: audit channel, direct messages and the webhook log.

    Nothing here raises; failures are logged and reported as a `False` return.
    """

    def __init__(self, config: AppConfig, provider: ChannelProvider) -> None:
        self.config = config
        self.provider = provider
        self._session: aiohttp.ClientSession | None = None

    async def audit(self, message: OutboundMessage) -> bool:
        channel_id = self.config.discord.logs_channel_id
        if not channel_id:
            return False
        try:
            await self.provider.send_message(channel_id, message)
        except ChannelProviderError:
            LOGGER.warning("Audit message to channel %s failed", channel_id, exc_info=True)
            return False
        return True

    async def direct(self, user_id: int, message: OutboundMessage) -> bool:
        try:
            await self.provider.send_direct_message(user_id, message)
        except ChannelProviderError:
            LOGGER.warning("Direct message to user %s failed", user_id, exc_info=True)
            return False
        return True

    async def warn(self, text: str) -> None:
        """Soft warning: visible to staff but never fails the calling operation."""
        LOGGER.warning(text)
        await self.audit(OutboundMessage(title="Warning", description=text))
        await self.webhook(f"Warning: {text}")

    async def webhook(self, content: str) -> bool:
        cfg = self.config.webhook_log
        if not cfg.enabled or not cfg.url:
            return False
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10))
        try:
            async with self._session.post(cfg.url, json={"content": content[:2000]}) as response:
                if response.status >= 400:
                    LOGGER.warning("Webhook log rejected message with status %s", response.status)
                    return False
        except aiohttp.ClientError:
            LOGGER.warning("Webhook log request failed", exc_info=True)
            return False
        return True

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
