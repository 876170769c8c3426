"""Persistence layer for provisioning runs and the resource ledger."""

from __future__ import annotations

from typing import Callable, Dict, Optional

from ..config import ProvisioConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import (
    ErrorDetail,
    LedgerStatus,
    ResourceLedgerEntry,
    ResourceType,
    RunStatus,
    StepRecord,
    StepStatus,
    WorkflowRun,
)
from .postgres import PostgresWorkflowRepository
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

_BACKENDS: Dict[str, Callable[[str], WorkflowRepository]] = {
    "sqlite": lambda url: SQLiteWorkflowRepository(url.split("://", 1)[1]),
    "postgres": PostgresWorkflowRepository,
    "postgresql": PostgresWorkflowRepository,
}

_repository_instance: WorkflowRepository | None = None


def _open(database_url: Optional[str]) -> WorkflowRepository:
    if not database_url:
        return InMemoryWorkflowRepository()
    scheme = database_url.split("://", 1)[0].lower()
    factory = _BACKENDS.get(scheme)
    if factory is None or "://" not in database_url:
        raise ValueError(f"Unsupported state store: {scheme}")
    return factory(database_url)


def get_repository(
    database_url: Optional[str] = None, config: Optional[ProvisioConfig] = None
) -> WorkflowRepository:
    """Return the process-wide run repository.

    The first call (or any call naming a ``database_url`` or ``config``)
    opens the backend for ``sqlite://<path>`` or ``postgresql://...`` URLs,
    taken from the argument or from :func:`~provisio.config.load_config`,
    which honours ``PROVISIO_DATABASE_URL`` and ``DATABASE_URL``. Without a
    URL runs are kept in memory.
    """
    global _repository_instance
    if _repository_instance is None or database_url is not None or config is not None:
        if database_url is None:
            database_url = (config or load_config()).database_url
        _repository_instance = _open(database_url)
    return _repository_instance


__all__ = [
    "ErrorDetail",
    "InMemoryWorkflowRepository",
    "LedgerStatus",
    "PostgresWorkflowRepository",
    "ResourceLedgerEntry",
    "ResourceType",
    "RunStatus",
    "SQLiteWorkflowRepository",
    "StepRecord",
    "StepStatus",
    "WorkflowRepository",
    "WorkflowRun",
    "get_repository",
]
