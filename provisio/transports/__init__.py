"""Work queues that carry admitted slow runs to workers."""

from __future__ import annotations

from typing import Optional

from ..config import ProvisioConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[ProvisioConfig] = None
) -> BaseTransport:
    """Open the work queue named by ``backend`` or by the transport config."""
    config = config or load_config()
    name = (backend or config.transport.backend).lower()
    if name == "inmemory":
        return InMemoryTransport()
    if name == "redis":
        from .redis import RedisTransport

        return RedisTransport(**config.transport.redis.model_dump())
    raise ValueError(f"Unsupported transport backend: {name}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
