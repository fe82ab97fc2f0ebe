"""
Work queues — Abstract interface with Redis list and in-memory backends.

Queue Topology:
  inbound_events    — webhook envelopes {id, channel, receivedAt, payload}
  marketing_queue   — campaign / badge jobs tagged by "type"

Producers LPUSH, the worker BRPOPs, so each list is FIFO. There is no
acknowledgement: an entry is gone once popped (at-least-once on the
producer side, at-most-once per pop).
"""
from __future__ import annotations

import asyncio
import json
import structlog
from abc import ABC, abstractmethod
from typing import Any, Optional

logger = structlog.get_logger()


class QueueNames:
    INBOUND = "inbound_events"
    MARKETING = "marketing_queue"


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class WorkQueue(ABC):
    """Abstract blocking work queue."""

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def push(self, queue: str, payload: str) -> None:
        """Append a raw entry."""
        ...

    @abstractmethod
    async def pop(self, queue: str, timeout: float) -> Optional[str]:
        """Block up to timeout seconds; None when nothing arrived."""
        ...

    @abstractmethod
    async def length(self, queue: str) -> int:
        ...

    async def push_json(self, queue: str, data: dict[str, Any]) -> None:
        await self.push(queue, json.dumps(data, default=str))


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

class RedisWorkQueue(WorkQueue):
    """Production queue backed by Redis lists (LPUSH / BRPOP)."""

    def __init__(self, redis_url: str = "redis://localhost:6379"):
        self._redis_url = redis_url
        self._redis = None

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url)

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def push(self, queue: str, payload: str) -> None:
        await self._redis.lpush(queue, payload)

    async def pop(self, queue: str, timeout: float) -> Optional[str]:
        # redis-py accepts float timeouts; 0 would block forever
        result = await self._redis.brpop([queue], timeout=max(timeout, 0.01))
        if result is None:
            return None
        _, payload = result
        return payload

    async def length(self, queue: str) -> int:
        return await self._redis.llen(queue)


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryWorkQueue(WorkQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only, no persistence.
    """

    def __init__(self):
        self._queues: dict[str, asyncio.Queue] = {}

    def _get_queue(self, name: str) -> asyncio.Queue:
        if name not in self._queues:
            self._queues[name] = asyncio.Queue()
        return self._queues[name]

    async def connect(self):
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._queues.clear()

    async def push(self, queue: str, payload: str) -> None:
        await self._get_queue(queue).put(payload)

    async def pop(self, queue: str, timeout: float) -> Optional[str]:
        try:
            return await asyncio.wait_for(self._get_queue(queue).get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def length(self, queue: str) -> int:
        return self._get_queue(queue).qsize()


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_work_queue(backend: str = "memory", redis_url: str = "") -> WorkQueue:
    """Factory: create the appropriate queue backend."""
    if backend == "redis":
        return RedisWorkQueue(redis_url=redis_url or "redis://localhost:6379")
    return InMemoryWorkQueue()
