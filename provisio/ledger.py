"""Durable record of what has been provisioned on the host."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .persistence import WorkflowRepository, get_repository
from .persistence.models import LedgerStatus, ResourceLedgerEntry, ResourceType

logger = logging.getLogger(__name__)


class ResourceLedger:
    """Read access for everyone, write access for the orchestrator.

    ``(resource_type, natural_key)`` is unique among entries that are not
    ``rolled_back``; the repository enforces it atomically.
    """

    def __init__(self, repository: WorkflowRepository | None = None) -> None:
        self._repository = repository or get_repository()

    async def lookup(
        self, resource_type: ResourceType, natural_key: str
    ) -> Optional[ResourceLedgerEntry]:
        return await self._repository.find_ledger_entry(resource_type, natural_key)

    async def list_entries(
        self, resource_type: Optional[ResourceType] = None
    ) -> list[ResourceLedgerEntry]:
        return await self._repository.list_ledger_entries(resource_type)

    async def reserve(
        self,
        resource_type: ResourceType,
        natural_key: str,
        run_id: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> ResourceLedgerEntry:
        """Record a ``pending`` entry; raises ``LedgerConflict`` if another run holds the key."""
        entry = ResourceLedgerEntry(
            resource_type=resource_type,
            natural_key=natural_key,
            run_id=run_id,
            details=details or {},
        )
        stored = await self._repository.reserve_ledger_entry(entry)
        logger.info(f"Ledger: {resource_type.value} '{natural_key}' pending for run {run_id}")
        return stored

    async def _set(
        self,
        resource_type: ResourceType,
        natural_key: str,
        run_id: str,
        status: LedgerStatus,
    ) -> None:
        await self._repository.update_ledger_status(
            resource_type, natural_key, run_id, status
        )
        logger.info(f"Ledger: {resource_type.value} '{natural_key}' {status.value}")

    async def activate(self, resource_type: ResourceType, natural_key: str, run_id: str) -> None:
        await self._set(resource_type, natural_key, run_id, LedgerStatus.ACTIVE)

    async def roll_back(self, resource_type: ResourceType, natural_key: str, run_id: str) -> None:
        await self._set(resource_type, natural_key, run_id, LedgerStatus.ROLLED_BACK)

    async def mark_failed(self, resource_type: ResourceType, natural_key: str, run_id: str) -> None:
        await self._set(resource_type, natural_key, run_id, LedgerStatus.FAILED)
