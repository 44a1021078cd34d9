"""
Set-once-with-TTL stores used to reject reused proof identifiers.
"""

import time
from typing import Dict, Optional

import redis.asyncio as redis

from shared.errors import BackendDegradedError
from shared.logging import get_logger


class ReplayCache:
    """Interface for jti consumption markers."""

    backend = "none"

    async def set_if_absent(self, key: str, ttl_seconds: float) -> bool:
        """Atomically mark ``key`` as consumed. Returns False if it already was."""
        raise NotImplementedError

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class RedisReplayCache(ReplayCache):
    """Replay cache shared across instances through Redis ``SET NX PX``."""

    backend = "redis"

    def __init__(self, redis_url: str, key_prefix: str = "dpop_jti:"):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.logger = get_logger("gateway.replay_cache")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    async def set_if_absent(self, key: str, ttl_seconds: float) -> bool:
        try:
            redis_client = await self._get_redis()
            result = await redis_client.set(
                f"{self.key_prefix}{key}",
                "1",
                px=int(ttl_seconds * 1000),
                nx=True,
            )
        except Exception as e:
            self.logger.error("Replay cache write failed", error=str(e))
            raise BackendDegradedError("replay_cache", str(e)) from e
        return bool(result)

    async def health_check(self) -> bool:
        try:
            redis_client = await self._get_redis()
            await redis_client.ping()
            return True
        except Exception:
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class InMemoryReplayCache(ReplayCache):
    """Process-local replay cache for single-instance and development setups.

    The check and the write happen without an intervening await, so they are
    atomic with respect to other tasks on the event loop.
    """

    backend = "memory"

    def __init__(self, max_entries: int = 100_000, clock=time.monotonic):
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, float] = {}

    async def set_if_absent(self, key: str, ttl_seconds: float) -> bool:
        now = self._clock()
        expires_at = self._entries.get(key)
        if expires_at is not None and expires_at > now:
            return False
        if len(self._entries) >= self.max_entries:
            self._purge(now)
        self._entries[key] = now + ttl_seconds
        return True

    def _purge(self, now: float) -> None:
        self._entries = {k: exp for k, exp in self._entries.items() if exp > now}
        # Still full of live markers: drop the oldest inserted ones.
        overflow = len(self._entries) - self.max_entries + 1
        for key in list(self._entries)[:max(0, overflow)]:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


def create_replay_cache(redis_url: Optional[str]) -> ReplayCache:
    """Redis-backed cache when a URL is configured, in-process otherwise."""
    if redis_url:
        return RedisReplayCache(redis_url)
    return InMemoryReplayCache()
