"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from typing import Iterable, Optional

import asyncpg

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


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                operation_key TEXT NOT NULL,
                status TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE TABLE IF NOT EXISTS run_cancellations (run_id TEXT PRIMARY KEY)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS operation_keys (
                operation_key TEXT PRIMARY KEY,
                run_id TEXT NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ledger (
                id SERIAL PRIMARY KEY,
                resource_type TEXT NOT NULL,
                natural_key TEXT NOT NULL,
                status TEXT NOT NULL,
                run_id TEXT NOT NULL,
                details JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ledger_live_key
            ON ledger (resource_type, natural_key)
            WHERE status <> 'rolled_back'
            """
        )

    @staticmethod
    def _entry_from_row(row: asyncpg.Record) -> ResourceLedgerEntry:
        details = row["details"]
        return ResourceLedgerEntry(
            resource_type=ResourceType(row["resource_type"]),
            natural_key=row["natural_key"],
            status=LedgerStatus(row["status"]),
            run_id=row["run_id"],
            details=json.loads(details) if details else {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _run_from_row(row: asyncpg.Record) -> WorkflowRun:
        run = WorkflowRun.from_json(row["document"])
        run.cancel_requested = row["cancelled"] is not None
        return run

    # ------------------------------------------------------------------
    async def save_run(self, run: WorkflowRun) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO runs (run_id, workflow_name, operation_key, status, updated_at, document)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (run_id) DO UPDATE SET
                    status = EXCLUDED.status,
                    updated_at = EXCLUDED.updated_at,
                    document = EXCLUDED.document
                """,
                run.run_id,
                run.workflow_name,
                run.operation_key,
                run.status.value,
                run.updated_at,
                run.to_json(),
            )
        finally:
            await conn.close()

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                SELECT r.document::text AS document, c.run_id AS cancelled
                FROM runs r LEFT JOIN run_cancellations c ON c.run_id = r.run_id
                WHERE r.run_id = $1
                """,
                run_id,
            )
        finally:
            await conn.close()
        return self._run_from_row(row) if row else None

    async def list_runs(
        self, statuses: Optional[Iterable[RunStatus]] = None
    ) -> list[WorkflowRun]:
        conn = await self._connect()
        try:
            if statuses is None:
                rows = await conn.fetch(
                    """
                    SELECT r.document::text AS document, c.run_id AS cancelled
                    FROM runs r LEFT JOIN run_cancellations c ON c.run_id = r.run_id
                    ORDER BY r.updated_at
                    """
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT r.document::text AS document, c.run_id AS cancelled
                    FROM runs r LEFT JOIN run_cancellations c ON c.run_id = r.run_id
                    WHERE r.status = ANY($1::text[])
                    ORDER BY r.updated_at
                    """,
                    [s.value for s in statuses],
                )
        finally:
            await conn.close()
        return [self._run_from_row(r) for r in rows]

    async def request_cancel(self, run_id: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO run_cancellations (run_id) VALUES ($1) ON CONFLICT DO NOTHING",
                run_id,
            )
        finally:
            await conn.close()

    async def claim_operation_key(
        self, operation_key: str, run_id: str, replace_run_id: Optional[str] = None
    ) -> str:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO operation_keys (operation_key, run_id) VALUES ($1, $2)
                    ON CONFLICT (operation_key) DO NOTHING
                    """,
                    operation_key,
                    run_id,
                )
                if replace_run_id:
                    await conn.execute(
                        """
                        UPDATE operation_keys SET run_id = $1
                        WHERE operation_key = $2 AND run_id = $3
                        """,
                        run_id,
                        operation_key,
                        replace_run_id,
                    )
                return await conn.fetchval(
                    "SELECT run_id FROM operation_keys WHERE operation_key = $1",
                    operation_key,
                )
        finally:
            await conn.close()

    async def reserve_ledger_entry(
        self, entry: ResourceLedgerEntry
    ) -> ResourceLedgerEntry:
        conn = await self._connect()
        try:
            try:
                await conn.execute(
                    f"INSERT INTO ledger ({_LEDGER_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7)",
                    entry.resource_type.value,
                    entry.natural_key,
                    entry.status.value,
                    entry.run_id,
                    json.dumps(entry.details),
                    entry.created_at,
                    entry.updated_at,
                )
                return entry
            except asyncpg.UniqueViolationError:
                row = await conn.fetchrow(
                    f"SELECT {_LEDGER_COLUMNS} FROM ledger "
                    "WHERE resource_type = $1 AND natural_key = $2 AND status <> 'rolled_back'",
                    entry.resource_type.value,
                    entry.natural_key,
                )
        finally:
            await conn.close()
        if row is None:
            raise LedgerConflict(
                f"{entry.resource_type.value} '{entry.natural_key}' is being modified"
            )
        current = self._entry_from_row(row)
        if current.run_id != entry.run_id:
            raise LedgerConflict(
                f"{entry.resource_type.value} '{entry.natural_key}' already exists"
            )
        return current

    async def update_ledger_status(
        self,
        resource_type: ResourceType,
        natural_key: str,
        run_id: str,
        status: LedgerStatus,
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE ledger SET status = $1, updated_at = $2
                WHERE resource_type = $3 AND natural_key = $4 AND run_id = $5
                  AND status <> 'rolled_back'
                """,
                status.value,
                utcnow(),
                resource_type.value,
                natural_key,
                run_id,
            )
        finally:
            await conn.close()

    async def find_ledger_entry(
        self, resource_type: ResourceType, natural_key: str
    ) -> ResourceLedgerEntry | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_LEDGER_COLUMNS} FROM ledger "
                "WHERE resource_type = $1 AND natural_key = $2 AND status <> 'rolled_back'",
                resource_type.value,
                natural_key,
            )
        finally:
            await conn.close()
        return self._entry_from_row(row) if row else None

    async def list_ledger_entries(
        self, resource_type: Optional[ResourceType] = None
    ) -> list[ResourceLedgerEntry]:
        conn = await self._connect()
        try:
            if resource_type is None:
                rows = await conn.fetch(
                    f"SELECT {_LEDGER_COLUMNS} FROM ledger ORDER BY id"
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_LEDGER_COLUMNS} FROM ledger WHERE resource_type = $1 ORDER BY id",
                    resource_type.value,
                )
        finally:
            await conn.close()
        return [self._entry_from_row(r) for r in rows]
