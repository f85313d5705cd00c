"""
Session Storage
===============

One capability, two backends:

    InMemorySessionStore   process-local dict with per-key expiry
    RedisSessionStore      redis keys with server-side TTL

Both expose get / set-with-TTL / delete plus ``take``, an atomic
get-and-delete used to consume single-use nonces. ``take`` is the only
check-and-set primitive the session manager relies on: of two concurrent
callers, at most one receives the value.
"""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


class SessionStore(ABC):
    """Key/value storage with TTL for auth sessions and nonce index entries."""

    kind = "abstract"

    @abstractmethod
    async def get(self, key: str) -> Optional[Record]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Record, ttl: float) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def take(self, key: str) -> Optional[Record]:
        """Atomically fetch and remove ``key``."""
        pass

    async def purge_expired(self) -> int:
        """Drop expired entries. Backends with native TTL need not override."""
        return 0

    async def close(self) -> None:
        pass


class InMemorySessionStore(SessionStore):
    """Dict-backed store. Sessions do not survive a restart."""

    kind = "in-memory"

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[float, str]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str, now: float) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if expires_at <= now:
            del self._data[key]
            return None
        return raw

    async def get(self, key: str) -> Optional[Record]:
        with self._lock:
            raw = self._live(key, self._clock())
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Record, ttl: float) -> None:
        raw = json.dumps(value)
        with self._lock:
            self._data[key] = (self._clock() + ttl, raw)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def take(self, key: str) -> Optional[Record]:
        with self._lock:
            raw = self._live(key, self._clock())
            if raw is not None:
                del self._data[key]
        return json.loads(raw) if raw is not None else None

    async def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (expires_at, _) in self._data.items() if expires_at <= now]
            for key in expired:
                del self._data[key]
        if expired:
            logger.info(f"Purged {len(expired)} expired auth entries")
        return len(expired)

    def __len__(self) -> int:
        return len(self._data)


class RedisSessionStore(SessionStore):
    """
    Redis-backed store for multi-instance deployments.

    Requires redis-py >= 4.2 (``redis.asyncio``) and Redis >= 6.2 for GETDEL.
    """

    kind = "redis"

    def __init__(self, url: str, client: Any = None):
        if client is None:
            try:
                import redis.asyncio as aioredis
            except ImportError:
                logger.error("redis-py not installed. Run: pip install 'goldenpie[redis]'")
                raise
            client = aioredis.Redis.from_url(url, decode_responses=True)
        self.url = url
        self._client = client

    @staticmethod
    def _ttl_ms(ttl: float) -> int:
        return max(1, int(math.ceil(ttl * 1000)))

    async def get(self, key: str) -> Optional[Record]:
        raw = await self._client.get(key)
        return json.loads(raw) if raw else None

    async def set(self, key: str, value: Record, ttl: float) -> None:
        await self._client.set(key, json.dumps(value), px=self._ttl_ms(ttl))

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def take(self, key: str) -> Optional[Record]:
        raw = await self._client.getdel(key)
        return json.loads(raw) if raw else None

    async def close(self) -> None:
        await self._client.aclose()


def create_store(redis_url: Optional[str] = None) -> SessionStore:
    """Redis when a URL is configured, else in-memory."""
    if redis_url:
        logger.info("Using Redis for session storage")
        return RedisSessionStore(redis_url)
    logger.info("Using in-memory storage (sessions will not persist)")
    return InMemorySessionStore()
