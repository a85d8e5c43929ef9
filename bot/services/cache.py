from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import redis.asyncio as redis

from core.config import RedisConfig


class CacheBackend(Protocol):
    async def get(self, key: str) -> Any: ...
    async def set(self, key: str, value: Any, ttl: int | None = None) -> None: ...
    async def add(self, key: str, value: Any, ttl: int | None = None) -> bool: ...
    async def delete(self, key: str) -> None: ...
    async def close(self) -> None: ...


@dataclass(slots=True)
class _MemoryValue:
    value: Any
    expires_at: float | None


class MemoryCache(CacheBackend):
    """Process-local cache bounded by `max_entries`; evicts expired keys, then least recently used."""

    def __init__(self, max_entries: int = 1024, clock: Callable[[], float] = time.monotonic) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._clock = clock
        self._store: OrderedDict[str, _MemoryValue] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._store)

    def _is_expired(self, entry: _MemoryValue) -> bool:
        if entry.expires_at is None:
            return False
        return self._clock() >= entry.expires_at

    def _live(self, key: str) -> _MemoryValue | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        if self._is_expired(entry):
            del self._store[key]
            return None
        self._store.move_to_end(key)
        return entry

    def _put(self, key: str, value: Any, ttl: int | None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        self._store[key] = _MemoryValue(value=value, expires_at=expires_at)
        self._store.move_to_end(key)
        if len(self._store) <= self.max_entries:
            return
        for stale in [k for k, v in self._store.items() if self._is_expired(v)]:
            del self._store[stale]
        while len(self._store) > self.max_entries:
            self._store.popitem(last=False)

    async def get(self, key: str) -> Any:
        async with self._lock:
            entry = self._live(key)
            return entry.value if entry else None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        async with self._lock:
            self._put(key, value, ttl)

    async def add(self, key: str, value: Any, ttl: int | None = None) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._put(key, value, ttl)
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def close(self) -> None:
        self._store.clear()


class RedisCache(CacheBackend):
    def __init__(self, url: str) -> None:
        self._client = redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Any:
        return await self._client.get(key)

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        if ttl:
            await self._client.set(key, value, ex=ttl)
        else:
            await self._client.set(key, value)

    async def add(self, key: str, value: Any, ttl: int | None = None) -> bool:
        created = await self._client.set(key, value, ex=ttl or None, nx=True)
        return bool(created)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def close(self) -> None:
        await self._client.aclose()


async def build_cache(config: RedisConfig, max_entries: int = 1024) -> CacheBackend:
    if config.enabled:
        return RedisCache(config.url)
    return MemoryCache(max_entries=max_entries)
