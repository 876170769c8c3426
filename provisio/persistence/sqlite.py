"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

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

_LEDGER_COLUMNS = (
    "resource_type, natural_key, status, run_id, details, created_at, updated_at"
)


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                operation_key TEXT NOT NULL,
                status TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE TABLE IF NOT EXISTS run_cancellations (run_id TEXT PRIMARY KEY)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS operation_keys (
                operation_key TEXT PRIMARY KEY,
                run_id TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ledger (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                resource_type TEXT NOT NULL,
                natural_key TEXT NOT NULL,
                status TEXT NOT NULL,
                run_id TEXT NOT NULL,
                details TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ledger_live_key
            ON ledger (resource_type, natural_key)
            WHERE status != 'rolled_back'
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _entry_from_row(row: sqlite3.Row) -> ResourceLedgerEntry:
        return ResourceLedgerEntry(
            resource_type=ResourceType(row["resource_type"]),
            natural_key=row["natural_key"],
            status=LedgerStatus(row["status"]),
            run_id=row["run_id"],
            details=json.loads(row["details"]) if row["details"] else {},
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _live_row(
        self, resource_type: ResourceType, natural_key: str
    ) -> sqlite3.Row | None:
        return self._fetchone(
            f"SELECT {_LEDGER_COLUMNS} FROM ledger "
            "WHERE resource_type = ? AND natural_key = ? AND status != 'rolled_back'",
            resource_type.value,
            natural_key,
        )

    def _claim(
        self, operation_key: str, run_id: str, replace_run_id: Optional[str]
    ) -> str:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "INSERT OR IGNORE INTO operation_keys (operation_key, run_id) VALUES (?, ?)",
                (operation_key, run_id),
            )
            if replace_run_id:
                cur.execute(
                    "UPDATE operation_keys SET run_id = ? WHERE operation_key = ? AND run_id = ?",
                    (run_id, operation_key, replace_run_id),
                )
            self._conn.commit()
            cur.execute(
                "SELECT run_id FROM operation_keys WHERE operation_key = ?",
                (operation_key,),
            )
            return cur.fetchone()["run_id"]

    def _reserve(self, entry: ResourceLedgerEntry) -> ResourceLedgerEntry:
        existing = self._live_row(entry.resource_type, entry.natural_key)
        if existing is None:
            try:
                self._execute(
                    f"INSERT INTO ledger ({_LEDGER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    entry.resource_type.value,
                    entry.natural_key,
                    entry.status.value,
                    entry.run_id,
                    json.dumps(entry.details),
                    entry.created_at.isoformat(),
                    entry.updated_at.isoformat(),
                )
                return entry
            except sqlite3.IntegrityError:
                existing = self._live_row(entry.resource_type, entry.natural_key)
                if existing is None:
                    raise
        current = self._entry_from_row(existing)
        if current.run_id != entry.run_id:
            raise LedgerConflict(
                f"{entry.resource_type.value} '{entry.natural_key}' already exists"
            )
        return current

    # ------------------------------------------------------------------
    # Repository API
    async def save_run(self, run: WorkflowRun) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO runs (run_id, workflow_name, operation_key, status, updated_at, document)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id) DO UPDATE SET
                status = excluded.status,
                updated_at = excluded.updated_at,
                document = excluded.document
            """,
            run.run_id,
            run.workflow_name,
            run.operation_key,
            run.status.value,
            run.updated_at.isoformat(),
            run.to_json(),
        )

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone,
            """
            SELECT r.document, c.run_id AS cancelled
            FROM runs r LEFT JOIN run_cancellations c ON c.run_id = r.run_id
            WHERE r.run_id = ?
            """,
            run_id,
        )
        if not row:
            return None
        run = WorkflowRun.from_json(row["document"])
        run.cancel_requested = row["cancelled"] is not None
        return run

    async def list_runs(
        self, statuses: Optional[Iterable[RunStatus]] = None
    ) -> list[WorkflowRun]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT r.document, c.run_id AS cancelled
            FROM runs r LEFT JOIN run_cancellations c ON c.run_id = r.run_id
            ORDER BY r.updated_at
            """,
        )
        wanted = set(statuses) if statuses is not None else None
        runs: list[WorkflowRun] = []
        for row in rows:
            run = WorkflowRun.from_json(row["document"])
            run.cancel_requested = row["cancelled"] is not None
            if wanted is None or run.status in wanted:
                runs.append(run)
        return runs

    async def request_cancel(self, run_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR IGNORE INTO run_cancellations (run_id) VALUES (?)",
            run_id,
        )

    async def claim_operation_key(
        self, operation_key: str, run_id: str, replace_run_id: Optional[str] = None
    ) -> str:
        return await asyncio.to_thread(
            self._claim, operation_key, run_id, replace_run_id
        )

    async def reserve_ledger_entry(
        self, entry: ResourceLedgerEntry
    ) -> ResourceLedgerEntry:
        return await asyncio.to_thread(self._reserve, entry)

    async def update_ledger_status(
        self,
        resource_type: ResourceType,
        natural_key: str,
        run_id: str,
        status: LedgerStatus,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE ledger SET status = ?, updated_at = ?
            WHERE resource_type = ? AND natural_key = ? AND run_id = ?
              AND status != 'rolled_back'
            """,
            status.value,
            utcnow().isoformat(),
            resource_type.value,
            natural_key,
            run_id,
        )

    async def find_ledger_entry(
        self, resource_type: ResourceType, natural_key: str
    ) -> ResourceLedgerEntry | None:
        row = await asyncio.to_thread(self._live_row, resource_type, natural_key)
        return self._entry_from_row(row) if row else None

    async def list_ledger_entries(
        self, resource_type: Optional[ResourceType] = None
    ) -> list[ResourceLedgerEntry]:
        if resource_type is None:
            rows = await asyncio.to_thread(
                self._fetchall, f"SELECT {_LEDGER_COLUMNS} FROM ledger ORDER BY id"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_LEDGER_COLUMNS} FROM ledger WHERE resource_type = ? ORDER BY id",
                resource_type.value,
            )
        return [self._entry_from_row(r) for r in rows]
