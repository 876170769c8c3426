"""Interface of the run work queue."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import RunMessage

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Queue of :class:`RunMessage` items shared by dispatchers and workers.

    ``RawMessageT`` is whatever the backend needs to acknowledge a delivery.
    A delivery that is neither acked nor nacked counts as in progress.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, message: RunMessage) -> None:
        """Append ``message`` to the queue named ``topic``."""

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, RunMessage]]:
        """Yield deliveries from ``topic`` until ``lifespan`` seconds pass (forever if None)."""

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Drop a delivery once its run has been executed."""

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Give a delivery back; backends without requeue support just ack it."""
        await self.ack(raw_message)
