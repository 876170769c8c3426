"""Consumes queued runs and executes them with bounded concurrency."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Set

from .errors import RunNotFound
from .orchestrator import Orchestrator
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class Worker:
    """Executes runs published by :class:`~provisio.dispatch.RunDispatcher`.

    At most ``concurrency`` runs execute at once. On start the worker first
    resumes runs stalled for longer than ``stalled_after`` seconds. A delivery
    whose run raises is requeued up to ``max_deliveries`` times.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        transport: BaseTransport,
        topic: str = "provisio.runs",
        concurrency: int = 4,
        stalled_after: Optional[float] = 300.0,
        max_deliveries: int = 3,
    ) -> None:
        self._orchestrator = orchestrator
        self._transport = transport
        self.topic = topic
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._stalled_after = stalled_after
        self._max_deliveries = max(1, max_deliveries)
        self._failures: Dict[str, int] = {}
        self._tasks: Set[asyncio.Task] = set()
        self.executed: list[str] = []

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume the queue; stop after ``lifespan`` seconds when given."""
        if self._stalled_after is not None:
            recovered = await self._orchestrator.recover(self._stalled_after)
            if recovered:
                logger.info(f"Recovered {len(recovered)} stalled run(s)")

        try:
            async for raw_message, message in self._transport.subscribe(
                self.topic, lifespan=lifespan
            ):
                await self._semaphore.acquire()
                task = asyncio.create_task(self._handle(raw_message, message.run_id))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        finally:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _handle(self, raw_message, run_id: str) -> None:
        try:
            run = await self._orchestrator.execute(run_id)
        except RunNotFound:
            logger.warning(f"Dropping message for unknown run {run_id}")
            await self._transport.ack(raw_message)
        except Exception as exc:
            failures = self._failures.get(run_id, 0) + 1
            self._failures[run_id] = failures
            logger.error(
                f"Run {run_id} could not be executed: {type(exc).__name__} "
                f"(delivery {failures}/{self._max_deliveries})"
            )
            if failures < self._max_deliveries:
                await self._transport.nack(raw_message, requeue=True)
            else:
                # Left running in the repository; recovery resumes it.
                await self._transport.ack(raw_message)
        else:
            logger.info(f"Run {run_id} finished as {run.status.value}")
            self.executed.append(run_id)
            self._failures.pop(run_id, None)
            await self._transport.ack(raw_message)
        finally:
            self._semaphore.release()
