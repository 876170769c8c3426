"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from typing import Dict, Iterable, Optional

from ..errors import LedgerConflict
from .models import (
    LedgerStatus,
    ResourceLedgerEntry,
    ResourceType,
    RunStatus,
    WorkflowRun,
    utcnow,
)
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, str] = {}
        self._cancelled: set[str] = set()
        self._operation_keys: Dict[str, str] = {}
        self._ledger: list[ResourceLedgerEntry] = []
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_run(self, run: WorkflowRun) -> None:
        self._runs[run.run_id] = run.to_json()

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        data = self._runs.get(run_id)
        if data is None:
            return None
        run = WorkflowRun.from_json(data)
        run.cancel_requested = run_id in self._cancelled
        return run

    async def list_runs(
        self, statuses: Optional[Iterable[RunStatus]] = None
    ) -> list[WorkflowRun]:
        wanted = set(statuses) if statuses is not None else None
        runs = [await self.get_run(run_id) for run_id in list(self._runs)]
        return [r for r in runs if r and (wanted is None or r.status in wanted)]

    async def request_cancel(self, run_id: str) -> None:
        if run_id in self._runs:
            self._cancelled.add(run_id)

    # ------------------------------------------------------------------
    async def claim_operation_key(
        self, operation_key: str, run_id: str, replace_run_id: Optional[str] = None
    ) -> str:
        async with self._lock:
            current = self._operation_keys.get(operation_key)
            if current is None or (replace_run_id and current == replace_run_id):
                self._operation_keys[operation_key] = run_id
                return run_id
            return current

    # ------------------------------------------------------------------
    def _live(
        self, resource_type: ResourceType, natural_key: str
    ) -> ResourceLedgerEntry | None:
        for entry in self._ledger:
            if (
                entry.resource_type == resource_type
                and entry.natural_key == natural_key
                and entry.status != LedgerStatus.ROLLED_BACK
            ):
                return entry
        return None

    async def reserve_ledger_entry(
        self, entry: ResourceLedgerEntry
    ) -> ResourceLedgerEntry:
        async with self._lock:
            existing = self._live(entry.resource_type, entry.natural_key)
            if existing is not None:
                if existing.run_id != entry.run_id:
                    raise LedgerConflict(
                        f"{entry.resource_type.value} '{entry.natural_key}' already exists"
                    )
                return existing.model_copy()
            self._ledger.append(entry.model_copy())
            return entry

    async def update_ledger_status(
        self,
        resource_type: ResourceType,
        natural_key: str,
        run_id: str,
        status: LedgerStatus,
    ) -> None:
        async with self._lock:
            existing = self._live(resource_type, natural_key)
            if existing is not None and existing.run_id == run_id:
                existing.status = status
                existing.updated_at = utcnow()

    async def find_ledger_entry(
        self, resource_type: ResourceType, natural_key: str
    ) -> ResourceLedgerEntry | None:
        existing = self._live(resource_type, natural_key)
        return existing.model_copy() if existing else None

    async def list_ledger_entries(
        self, resource_type: Optional[ResourceType] = None
    ) -> list[ResourceLedgerEntry]:
        return [
            e.model_copy()
            for e in self._ledger
            if resource_type is None or e.resource_type == resource_type
        ]
