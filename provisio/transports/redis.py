"""Redis transport for cross-process work queues."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import RunMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Redis list used as a FIFO queue (``LPUSH`` / ``BRPOP``).

    Each topic maps to the list ``provisio:<topic>``. A popped message is
    gone from Redis, so ``nack`` pushes it back to the consuming end.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self._options = {"host": host, "port": port, "db": db, "password": password}
        self._redis: Optional[Any] = None
        self._topic: Optional[str] = None

    async def _client(self) -> Any:
        if self._redis is None:
            await self.connect()
        return self._redis

    async def connect(self) -> None:
        client = redis.Redis(decode_responses=True, **self._options)
        await client.ping()
        self._redis = client
        logger.info(f"Connected to Redis at {self._options['host']}:{self._options['port']}")

    async def disconnect(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    @staticmethod
    def _queue_name(topic: str) -> str:
        return f"provisio:{topic}"

    async def publish(self, topic: str, message: RunMessage) -> None:
        client = await self._client()
        await client.lpush(self._queue_name(topic), message.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, RunMessage]]:
        client = await self._client()
        self._topic = topic
        queue_name = self._queue_name(topic)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None

        while deadline is None or loop.time() < deadline:
            popped = await client.brpop(queue_name, timeout=1)
            if not popped:
                continue
            raw = popped[1]
            try:
                message = RunMessage.from_json(raw)
            except ValidationError:
                logger.warning(f"Dropping malformed message on {queue_name}")
                continue
            yield raw, message

    async def ack(self, raw_message: str) -> None:
        pass

    async def nack(self, raw_message: str, requeue: bool = True) -> None:
        if requeue and self._redis is not None and self._topic:
            await self._redis.rpush(self._queue_name(self._topic), raw_message)
