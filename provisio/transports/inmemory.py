"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import RunMessage
from .base import BaseTransport

RawMessage = Tuple[str, str]


class InMemoryTransport(BaseTransport[RawMessage]):
    """Simple in-process queue. ``nack`` with ``requeue`` puts a message back."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[RawMessage]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, message: RunMessage) -> None:
        async with self._lock:
            self._queues[topic].append((topic, message.to_json()))

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, RunMessage]]:
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            async with self._lock:
                raw = self._queues[topic].popleft() if self._queues[topic] else None
            if raw is not None:
                yield raw, RunMessage.from_json(raw[1])
                continue

            await asyncio.sleep(0.05)

    async def ack(self, raw_message: RawMessage) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        if requeue:
            async with self._lock:
                self._queues[raw_message[0]].append(raw_message)

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])
