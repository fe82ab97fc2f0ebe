"""
Real-time publisher — fans persisted message rows out to live subscribers.

One JSON message per persisted row on the chat channel; the payload carries
tenant_id so presentation layers can route it. Delivery is best-effort and
callers run it as a post-commit hook.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from abc import ABC, abstractmethod
from typing import Any, Optional

logger = structlog.get_logger()


class RealtimePublisher(ABC):

    @abstractmethod
    async def connect(self):
        ...

    @abstractmethod
    async def close(self):
        ...

    @abstractmethod
    async def publish(self, channel: str, event: dict[str, Any]) -> None:
        ...


class RedisPublisher(RealtimePublisher):
    """PUBLISH on a Redis pub/sub channel."""

    def __init__(self, redis_url: str = "redis://localhost:6379"):
        self._redis_url = redis_url
        self._redis = None

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        await self._redis.ping()
        logger.info("redis_publisher_connected", url=self._redis_url)

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, channel: str, event: dict[str, Any]) -> None:
        receivers = await self._redis.publish(channel, json.dumps(event, default=str))
        logger.debug("realtime_published",
                     channel=channel, message_id=event.get("id"), receivers=receivers)


class InMemoryPublisher(RealtimePublisher):
    """
    Development/test publisher. Keeps every published event and hands
    copies to subscribers registered with subscribe().
    """

    def __init__(self):
        self.published: list[tuple[str, dict[str, Any]]] = []
        self._subscribers: dict[str, list[asyncio.Queue]] = {}

    async def connect(self):
        logger.info("inmemory_publisher_connected")

    async def close(self):
        self._subscribers.clear()

    def subscribe(self, channel: str) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(channel, []).append(q)
        return q

    async def publish(self, channel: str, event: dict[str, Any]) -> None:
        # round-trip through JSON so consumers see the wire shape
        payload = json.loads(json.dumps(event, default=str))
        self.published.append((channel, payload))
        for q in self._subscribers.get(channel, []):
            q.put_nowait(payload)


def create_publisher(backend: str = "memory", redis_url: str = "") -> RealtimePublisher:
    if backend == "redis":
        return RedisPublisher(redis_url=redis_url or "redis://localhost:6379")
    return InMemoryPublisher()
