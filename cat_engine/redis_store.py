"""
Redis-backed session store and exposure ledger.

For deployments running several engine processes: session state and exposure
counters live in Redis so every process sees the same values. Exposure
counters are bucketed per window (24h by default) and updated with a
MULTI/EXEC pipeline, so increments from concurrent sessions are never lost.
"""

import logging
import time
from collections.abc import Callable

import redis.asyncio as redis

from .session import TestSession

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "cat"


def connect(url: str) -> redis.Redis:
    """Client shared by the store and ledger; no connection is made until first use."""
    return redis.from_url(url, decode_responses=True)


class RedisSessionStore:
    """Stores serialized ``TestSession`` values under ``SET ... EX ttl``.

    A sorted set of session ids scored by expiry time backs ``count_active``.
    """

    def __init__(
        self,
        client: redis.Redis,
        ttl_seconds: int = 3600,
        namespace: str = DEFAULT_NAMESPACE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.namespace = namespace
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisSessionStore":
        return cls(connect(url), **kwargs)

    def _key(self, session_id: str) -> str:
        return f"{self.namespace}:session:{session_id}"

    @property
    def _index_key(self) -> str:
        return f"{self.namespace}:sessions:active"

    async def load(self, session_id: str) -> TestSession | None:
        raw = await self.client.get(self._key(session_id))
        if raw is None:
            return None
        return TestSession.from_json(raw)

    async def save(self, session: TestSession) -> None:
        expires_at = self._clock() + self.ttl_seconds
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(self._key(session.session_id), session.to_json(), ex=self.ttl_seconds)
            pipe.zadd(self._index_key, {session.session_id: expires_at})
            await pipe.execute()

    async def delete(self, session_id: str) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.delete(self._key(session_id))
            pipe.zrem(self._index_key, session_id)
            await pipe.execute()

    async def count_active(self) -> int:
        """Number of sessions whose TTL has not run out."""
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(self._index_key, "-inf", self._clock())
            pipe.zcard(self._index_key)
            evicted, count = await pipe.execute()
        if evicted:
            logger.info("Dropped %d expired sessions from the active index", evicted)
        return int(count)

    async def close(self) -> None:
        await self.client.aclose()


class RedisExposureLedger:
    """Shared exposure counters with atomic increment-and-read.

    Keys are ``<namespace>:exposure:<window>:<item_id>`` plus a per-window
    total, so rates restart from zero at every window boundary. Keys expire
    after two windows.
    """

    def __init__(
        self,
        client: redis.Redis,
        window_seconds: int = 86_400,
        namespace: str = DEFAULT_NAMESPACE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.window_seconds = window_seconds
        self.namespace = namespace
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisExposureLedger":
        return cls(connect(url), **kwargs)

    def _window(self) -> int:
        return int(self._clock() // self.window_seconds)

    def _item_key(self, window: int, item_id: str) -> str:
        return f"{self.namespace}:exposure:{window}:item:{item_id}"

    def _total_key(self, window: int) -> str:
        return f"{self.namespace}:exposure:{window}:total"

    async def get_exposure_rate(self, item_id: str) -> float:
        window = self._window()
        count, total = await self.client.mget(
            self._item_key(window, item_id), self._total_key(window)
        )
        total = int(total or 0)
        if total == 0:
            return 0.0
        return int(count or 0) / total

    async def increment_exposure(self, item_id: str) -> int:
        window = self._window()
        item_key = self._item_key(window, item_id)
        total_key = self._total_key(window)
        ttl = self.window_seconds * 2

        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incr(item_key)
            pipe.incr(total_key)
            pipe.expire(item_key, ttl)
            pipe.expire(total_key, ttl)
            count, total, _, _ = await pipe.execute()

        logger.debug("Exposure for item %s: %s of %s in window %d", item_id, count, total, window)
        return int(count)

    async def close(self) -> None:
        await self.client.aclose()
