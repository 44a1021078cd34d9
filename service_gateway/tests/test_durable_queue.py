"""
Unit tests for DurableQueue.
"""

from unittest.mock import AsyncMock, patch

import pytest

from shared.metrics import MetricsCollector
from service_gateway.app.receipts import Durability, DurableQueue, QueueItem


def item(item_id: str, kind: str = "usage") -> QueueItem:
    return QueueItem(id=item_id, payload={"n": item_id}, kind=kind, enqueued_at=1_700_000_000_000)


class TestInMemoryQueue:
    """Queue without a configured backend."""

    @pytest.mark.asyncio
    async def test_fifo_order(self):
        queue = DurableQueue()
        for name in ("A", "B", "C"):
            await queue.push(item(name))

        popped = [(await queue.pop()).id for _ in range(3)]

        assert popped == ["A", "B", "C"]
        assert await queue.pop() is None

    @pytest.mark.asyncio
    async def test_push_is_best_effort(self):
        queue = DurableQueue()

        result = await queue.push(item("A"))

        assert result.durability is Durability.BEST_EFFORT
        assert result.durable is False
        assert queue.durable is False
        assert queue.degraded is False

    @pytest.mark.asyncio
    async def test_size(self):
        queue = DurableQueue()
        await queue.push(item("A"))
        await queue.push(item("B"))

        assert await queue.size() == 2
        await queue.pop()
        assert await queue.size() == 1


class TestRedisBackedQueue:
    """Queue with a Redis backend (mocked)."""

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("gateway")

    @pytest.fixture
    def queue(self, metrics):
        return DurableQueue("redis://localhost:6379/0", key="test:queue", metrics=metrics)

    @pytest.mark.asyncio
    async def test_push_uses_rpush_and_is_durable(self, queue, metrics):
        mock_redis = AsyncMock()

        with patch.object(queue, "_get_redis", new_callable=AsyncMock) as mock_get_redis:
            mock_get_redis.return_value = mock_redis
            result = await queue.push(item("A"))

        assert result.durability is Durability.DURABLE
        mock_redis.rpush.assert_awaited_once_with("test:queue", item("A").to_json())
        assert metrics.sample("queue_enqueued_total", kind="usage", durability="durable") == 1.0
        assert metrics.sample("queue_durable") == 1.0

    @pytest.mark.asyncio
    async def test_pop_decodes_lpop(self, queue):
        mock_redis = AsyncMock()
        mock_redis.lpop.return_value = item("A", kind="receipt").to_json()

        with patch.object(queue, "_get_redis", new_callable=AsyncMock) as mock_get_redis:
            mock_get_redis.return_value = mock_redis
            popped = await queue.pop()

        assert popped == item("A", kind="receipt")
        mock_redis.lpop.assert_awaited_once_with("test:queue")

    @pytest.mark.asyncio
    async def test_backend_failure_falls_back_and_is_observable(self, queue, metrics):
        mock_redis = AsyncMock()
        mock_redis.rpush.side_effect = ConnectionError("refused")

        with patch.object(queue, "_get_redis", new_callable=AsyncMock) as mock_get_redis:
            mock_get_redis.return_value = mock_redis
            result = await queue.push(item("A"))

        assert result.durability is Durability.BEST_EFFORT
        assert queue.degraded is True
        assert "refused" in queue.last_error
        assert metrics.sample("queue_durable") == 0.0
        assert metrics.sample("queue_enqueued_total", kind="usage", durability="best_effort") == 1.0

    @pytest.mark.asyncio
    async def test_buffered_items_drained_after_recovery(self, queue):
        failing = AsyncMock()
        failing.rpush.side_effect = ConnectionError("refused")
        healthy = AsyncMock()
        healthy.lpop.return_value = None
        healthy.llen.return_value = 0

        with patch.object(queue, "_get_redis", new_callable=AsyncMock) as mock_get_redis:
            mock_get_redis.return_value = failing
            await queue.push(item("A"))

            mock_get_redis.return_value = healthy
            assert await queue.size() == 1
            assert queue.degraded is False
            popped = await queue.pop()

        assert popped.id == "A"

    @pytest.mark.asyncio
    async def test_size_adds_backend_and_buffer(self, queue):
        mock_redis = AsyncMock()
        mock_redis.llen.return_value = 4

        with patch.object(queue, "_get_redis", new_callable=AsyncMock) as mock_get_redis:
            mock_get_redis.return_value = mock_redis
            queue._fallback.append(item("X"))
            assert await queue.size() == 5

    @pytest.mark.asyncio
    async def test_undecodable_item_is_dropped(self, queue):
        mock_redis = AsyncMock()
        mock_redis.lpop.side_effect = ["{not json", None]

        with patch.object(queue, "_get_redis", new_callable=AsyncMock) as mock_get_redis:
            mock_get_redis.return_value = mock_redis
            assert await queue.pop() is None

    @pytest.mark.asyncio
    async def test_pop_skips_undecodable_item_in_front_of_valid_one(self, queue):
        mock_redis = AsyncMock()
        mock_redis.lpop.side_effect = ["not json", "[" * 3000 + "]" * 3000, item("B").to_json()]

        with patch.object(queue, "_get_redis", new_callable=AsyncMock) as mock_get_redis:
            mock_get_redis.return_value = mock_redis
            popped = await queue.pop()

        assert popped == item("B")
        assert mock_redis.lpop.await_count == 3


    @pytest.mark.asyncio
    async def test_backend_items_come_before_buffered_ones(self, queue):
        mock_redis = AsyncMock()
        mock_redis.lpop.side_effect = [item("B").to_json(), None]
        queue._fallback.append(item("A"))

        with patch.object(queue, "_get_redis", new_callable=AsyncMock) as mock_get_redis:
            mock_get_redis.return_value = mock_redis
            popped = [(await queue.pop()).id, (await queue.pop()).id]

        assert popped == ["B", "A"]

def test_queue_item_json_round_trip():
    original = QueueItem(id="rx-1", payload={"units": 5}, kind="usage", enqueued_at=42)

    assert QueueItem.from_json(original.to_json()) == original
