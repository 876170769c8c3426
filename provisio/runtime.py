"""Wires configuration into a ready-to-use orchestrator."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .config import ProvisioConfig, load_config
from .dispatch import RunDispatcher
from .execute import StepExecutor
from .host import DatabaseProvider, HostCapabilities, LocalHost
from .orchestrator import Orchestrator
from .persistence import WorkflowRepository, get_repository
from .transports import BaseTransport, get_transport
from .vault import get_secret_store

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: ProvisioConfig
    repository: WorkflowRepository
    executor: StepExecutor
    orchestrator: Orchestrator
    transport: Optional[BaseTransport]
    dispatcher: RunDispatcher


def build_runtime(
    config: Optional[ProvisioConfig] = None,
    host: Optional[HostCapabilities] = None,
    queue: Optional[bool] = None,
) -> Runtime:
    """Assemble repository, host, vault, executor and orchestrator from ``config``.

    With ``queue`` false slow runs execute as in-process tasks instead of
    being published to the configured transport. By default only a
    cross-process transport (Redis) is used as a queue.
    """
    from . import workflows  # noqa: F401  registers the built-in workflows

    config = config or load_config()
    repository = (
        get_repository(config.database_url) if config.database_url else get_repository()
    )
    if host is None:
        database = DatabaseProvider(config.host.mysql_url) if config.host.mysql_url else None
        if database is None:
            logger.warning("No MySQL URL configured; database steps will fail")
        host = LocalHost(database)
    executor = StepExecutor(host, get_secret_store(config=config), config)
    orchestrator = Orchestrator(executor, repository, heartbeat=config.worker.heartbeat)
    if queue is None:
        queue = config.transport.backend != "inmemory"
    transport = get_transport(config=config) if queue else None
    dispatcher = RunDispatcher(orchestrator, transport, topic=config.transport.topic)
    return Runtime(config, repository, executor, orchestrator, transport, dispatcher)
