"""Tests for work queue backends and the real-time publisher."""
import json
from unittest.mock import AsyncMock

import pytest

from job_queue.publisher import InMemoryPublisher, RedisPublisher, create_publisher
from job_queue.queues import (
    InMemoryWorkQueue, QueueNames, RedisWorkQueue, create_work_queue,
)


class TestInMemoryWorkQueue:
    @pytest.mark.asyncio
    async def test_fifo(self, queue):
        for n in range(3):
            await queue.push(QueueNames.INBOUND, f"event-{n}")

        popped = [await queue.pop(QueueNames.INBOUND, timeout=0.1) for _ in range(3)]
        assert popped == ["event-0", "event-1", "event-2"]

    @pytest.mark.asyncio
    async def test_pop_times_out(self, queue):
        assert await queue.pop(QueueNames.MARKETING, timeout=0.02) is None

    @pytest.mark.asyncio
    async def test_queues_are_independent(self, queue):
        await queue.push(QueueNames.INBOUND, "a")
        await queue.push_json(QueueNames.MARKETING, {"type": "CAMPAIGN_SEND", "itemId": "item-1"})

        assert await queue.length(QueueNames.INBOUND) == 1
        raw = await queue.pop(QueueNames.MARKETING, timeout=0.1)
        assert json.loads(raw) == {"type": "CAMPAIGN_SEND", "itemId": "item-1"}
        assert await queue.length(QueueNames.MARKETING) == 0


class TestRedisWorkQueue:
    @pytest.mark.asyncio
    async def test_pop_unwraps_brpop(self):
        q = RedisWorkQueue()
        q._redis = AsyncMock()
        q._redis.brpop.return_value = (QueueNames.INBOUND, '{"id": "evt-1"}')

        assert await q.pop(QueueNames.INBOUND, timeout=5) == '{"id": "evt-1"}'
        q._redis.brpop.assert_awaited_once_with([QueueNames.INBOUND], timeout=5)

    @pytest.mark.asyncio
    async def test_pop_timeout(self):
        q = RedisWorkQueue()
        q._redis = AsyncMock()
        q._redis.brpop.return_value = None

        assert await q.pop(QueueNames.MARKETING, timeout=0) is None
        assert q._redis.brpop.await_args.kwargs["timeout"] == 0.01

    @pytest.mark.asyncio
    async def test_push_is_lpush(self):
        q = RedisWorkQueue()
        q._redis = AsyncMock()
        await q.push(QueueNames.MARKETING, "job")
        q._redis.lpush.assert_awaited_once_with(QueueNames.MARKETING, "job")


class TestPublisher:
    @pytest.mark.asyncio
    async def test_subscribers_receive_wire_shape(self, publisher):
        inbox = publisher.subscribe("chat_events")
        await publisher.publish("chat_events", {"id": "m1", "tenant_id": "t1", "count": 2})

        event = inbox.get_nowait()
        assert event == {"id": "m1", "tenant_id": "t1", "count": 2}
        assert publisher.published == [("chat_events", event)]

    @pytest.mark.asyncio
    async def test_redis_publish_serializes(self):
        pub = RedisPublisher()
        pub._redis = AsyncMock()
        pub._redis.publish.return_value = 1

        await pub.publish("chat_events", {"id": "m1"})
        pub._redis.publish.assert_awaited_once_with("chat_events", '{"id": "m1"}')


class TestFactories:
    def test_work_queue_backends(self):
        assert isinstance(create_work_queue("memory"), InMemoryWorkQueue)
        assert isinstance(create_work_queue("redis", "redis://r:6379"), RedisWorkQueue)

    def test_publisher_backends(self):
        assert isinstance(create_publisher(), InMemoryPublisher)
        assert isinstance(create_publisher("redis"), RedisPublisher)
