"""Hands slow runs to the work queue, or to a background task in-process."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Optional, Set

from .contracts import RunMessage
from .transports import BaseTransport

if TYPE_CHECKING:
    from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)


class RunDispatcher:
    """Service responsible for getting admitted runs executed asynchronously.

    With a transport, runs are published for a :class:`~provisio.worker.Worker`
    to pick up. Without one, they execute as tasks on the current event loop.
    """

    def __init__(
        self,
        orchestrator: "Orchestrator",
        transport: Optional[BaseTransport] = None,
        topic: str = "provisio.runs",
    ) -> None:
        self._orchestrator = orchestrator
        self._transport = transport
        self.topic = topic
        self._tasks: Set[asyncio.Task] = set()

    async def dispatch(self, run_id: str, operation_key: Optional[str] = None) -> None:
        if self._transport is not None:
            message = RunMessage(run_id=run_id, operation_key=operation_key)
            await self._transport.publish(self.topic, message)
            logger.info(f"Run {run_id} queued on {self.topic}")
            return

        task = asyncio.create_task(self._orchestrator.execute(run_id))
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        logger.info(f"Run {run_id} executing in background")

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Background run failed with {type(task.exception()).__name__}; "
                "it will be picked up by recovery"
            )

    async def drain(self) -> None:
        """Wait for in-process runs started by :meth:`dispatch`."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
