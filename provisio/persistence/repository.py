"""Repository abstraction for workflow and ledger persistence."""

from __future__ import annotations

from typing import Iterable, Optional, Protocol

from .models import (
    LedgerStatus,
    ResourceLedgerEntry,
    ResourceType,
    RunStatus,
    WorkflowRun,
)


class WorkflowRepository(Protocol):
    """Protocol for state persistence backends."""

    async def save_run(self, run: WorkflowRun) -> None:
        """Insert or replace the run document."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run by id, including its cancellation flag."""

    async def list_runs(
        self, statuses: Optional[Iterable[RunStatus]] = None
    ) -> list[WorkflowRun]:
        """Return persisted runs, optionally filtered by status."""

    async def request_cancel(self, run_id: str) -> None:
        """Flag a run for cancellation at its next step boundary."""

    async def claim_operation_key(
        self, operation_key: str, run_id: str, replace_run_id: Optional[str] = None
    ) -> str:
        """Atomically bind ``operation_key`` to ``run_id``.

        The key is bound when it is unbound, or when it is currently bound to
        ``replace_run_id``. Returns the run id bound to the key after the call,
        which equals ``run_id`` only when the claim succeeded.
        """

    async def reserve_ledger_entry(
        self, entry: ResourceLedgerEntry
    ) -> ResourceLedgerEntry:
        """Insert ``entry`` unless a live entry holds the same natural key.

        Returns the existing entry when it belongs to the same run. Raises
        :class:`~provisio.errors.LedgerConflict` when another run holds it.
        """

    async def update_ledger_status(
        self,
        resource_type: ResourceType,
        natural_key: str,
        run_id: str,
        status: LedgerStatus,
    ) -> None:
        """Set the status of the live entry owned by ``run_id``."""

    async def find_ledger_entry(
        self, resource_type: ResourceType, natural_key: str
    ) -> ResourceLedgerEntry | None:
        """Return the live (not rolled back) entry for a natural key."""

    async def list_ledger_entries(
        self, resource_type: Optional[ResourceType] = None
    ) -> list[ResourceLedgerEntry]:
        """Return all ledger entries, oldest first."""
