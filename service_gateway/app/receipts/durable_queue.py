"""
FIFO store for usage and receipt records.

Items are kept in a Redis list when a backend URL is configured. Without
one, or whenever a backend call fails, items go to an in-process buffer
instead. That buffer does not survive a restart, so every push reports
whether the item landed durably or best-effort.
"""

from __future__ import annotations

import json
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, Optional

import redis.asyncio as redis

from shared.logging import get_logger
from shared.metrics import MetricsCollector


class Durability(str, Enum):
    DURABLE = "durable"
    BEST_EFFORT = "best_effort"


@dataclass
class QueueItem:
    """Pending usage or receipt record."""

    id: str
    payload: Dict[str, Any]
    kind: str = "usage"
    enqueued_at: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_json(self) -> str:
        return json.dumps({
            "id": self.id,
            "kind": self.kind,
            "enqueued_at": self.enqueued_at,
            "payload": self.payload,
        }, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: Any) -> "QueueItem":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
        return cls(
            id=data["id"],
            payload=data.get("payload") or {},
            kind=data.get("kind", "usage"),
            enqueued_at=int(data["enqueued_at"]),
        )


@dataclass(frozen=True)
class EnqueueResult:
    item_id: str
    durability: Durability

    @property
    def durable(self) -> bool:
        return self.durability is Durability.DURABLE


class DurableQueue:
    """Redis list backed FIFO with an in-process fallback buffer."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        key: str = "gateway:queue",
        metrics: Optional[MetricsCollector] = None,
    ):
        self.redis_url = redis_url
        self.key = key
        self.metrics = metrics
        self.logger = get_logger("gateway.receipts.queue")

        self._redis: Optional[redis.Redis] = None
        self._fallback: Deque[QueueItem] = deque()
        self._degraded = False
        self.last_error: Optional[str] = None
        self._report_durability()

    @property
    def has_backend(self) -> bool:
        return bool(self.redis_url)

    @property
    def degraded(self) -> bool:
        """True while the configured backend is failing."""
        return self._degraded

    @property
    def durable(self) -> bool:
        """True when a push right now is expected to reach the backend."""
        return self.has_backend and not self._degraded

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    async def push(self, item: QueueItem) -> EnqueueResult:
        if self.has_backend:
            try:
                redis_client = await self._get_redis()
                await redis_client.rpush(self.key, item.to_json())
                self._mark_healthy()
                return self._enqueued(item, Durability.DURABLE)
            except Exception as e:
                self._mark_degraded("push", e)

        self._fallback.append(item)
        return self._enqueued(item, Durability.BEST_EFFORT)

    async def pop(self) -> Optional[QueueItem]:
        """Pop the oldest item from the backend, then from the fallback buffer.

        FIFO holds within each store; items buffered during an outage may
        come out after items pushed to the backend once it recovers.
        """
        while self.has_backend:
            try:
                redis_client = await self._get_redis()
                raw = await redis_client.lpop(self.key)
                self._mark_healthy()
            except Exception as e:
                self._mark_degraded("pop", e)
                break
            if raw is None:
                break
            try:
                return QueueItem.from_json(raw)
            except (ValueError, KeyError, TypeError, RecursionError) as e:
                self.logger.error("Dropping undecodable queue item", error=str(e))

        if self._fallback:
            return self._fallback.popleft()
        return None

    async def size(self) -> int:
        backend_size = 0
        if self.has_backend:
            try:
                redis_client = await self._get_redis()
                backend_size = int(await redis_client.llen(self.key))
                self._mark_healthy()
            except Exception as e:
                self._mark_degraded("size", e)
        return backend_size + len(self._fallback)

    async def health_check(self) -> bool:
        if not self.has_backend:
            return False
        try:
            redis_client = await self._get_redis()
            await redis_client.ping()
            self._mark_healthy()
            return True
        except Exception as e:
            self._mark_degraded("ping", e)
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _enqueued(self, item: QueueItem, durability: Durability) -> EnqueueResult:
        if self.metrics:
            self.metrics.increment_counter("queue_enqueued_total", kind=item.kind, durability=durability.value)
        return EnqueueResult(item_id=item.id, durability=durability)

    def _mark_degraded(self, operation: str, error: Exception) -> None:
        self.last_error = f"{operation}: {error}"
        if not self._degraded:
            self.logger.warning(
                "Queue backend unavailable, buffering in memory",
                operation=operation,
                error=str(error),
            )
        else:
            self.logger.debug("Queue backend still unavailable", operation=operation, error=str(error))
        self._degraded = True
        self._report_durability()

    def _mark_healthy(self) -> None:
        if self._degraded:
            self.logger.info("Queue backend recovered", buffered=len(self._fallback))
            self._degraded = False
            self.last_error = None
        self._report_durability()

    def _report_durability(self) -> None:
        if self.metrics:
            self.metrics.set_gauge("queue_durable", 1 if self.durable else 0)
