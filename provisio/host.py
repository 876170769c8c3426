"""Capabilities through which steps touch the managed host.

Nothing outside the step actions calls into this module. Commands are run
from argument vectors without a shell, and SQL goes through bound
parameters, so user-supplied values are never spliced into command text.
"""

from __future__ import annotations

import asyncio
import logging
import os
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping, Optional, Protocol, Sequence

from anyio import Path
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from .errors import FatalStepError, TransientInfraError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of an external command.

    ``stdout``/``stderr`` are for the calling action only; they are never
    copied into errors, run state or logs.
    """

    argv: tuple[str, ...]
    exit_code: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class HostCapabilities(Protocol):
    """Side-effect surface available to step actions."""

    async def run_command(
        self, argv: Sequence[str], timeout: float, cwd: Optional[str] = None
    ) -> CommandResult:
        """Run ``argv`` without a shell, killing it after ``timeout`` seconds."""

    async def write_file(self, path: str, data: bytes, mode: int = 0o644) -> None:
        """Atomically replace ``path`` with ``data``."""

    async def read_file(self, path: str) -> bytes | None:
        """Return file contents, or ``None`` when the file does not exist."""

    async def query_database(
        self, sql: str, params: Optional[Mapping[str, Any]] = None
    ) -> list[dict[str, Any]]:
        """Execute one statement with bound parameters."""


class DatabaseProvider:
    """Scoped access to the MySQL server being provisioned.

    One connection is acquired per statement and released afterwards.
    """

    def __init__(self, url: str, engine: Optional[AsyncEngine] = None) -> None:
        self.engine = engine or create_async_engine(url, pool_pre_ping=True)

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[AsyncConnection]:
        async with self.engine.begin() as conn:
            yield conn

    async def query(
        self, sql: str, params: Optional[Mapping[str, Any]] = None
    ) -> list[dict[str, Any]]:
        try:
            async with self.connect() as conn:
                result = await conn.execute(text(sql), dict(params or {}))
                if not result.returns_rows:
                    return []
                return [dict(row._mapping) for row in result]
        except OperationalError as exc:
            logger.warning(f"Database operation failed: {type(exc.orig).__name__}")
            raise TransientInfraError("database server unavailable") from None
        except SQLAlchemyError as exc:
            logger.warning(f"Database statement rejected: {type(exc).__name__}")
            raise FatalStepError("database statement failed") from None

    async def dispose(self) -> None:
        await self.engine.dispose()


def _write_private(path: str, data: bytes, mode: int) -> None:
    # The file never exists with wider permissions than ``mode``.
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode & 0o600)
    with os.fdopen(fd, "wb") as f:
        os.fchmod(f.fileno(), mode)
        f.write(data)


class LocalHost(HostCapabilities):
    """Capabilities backed by the local operating system."""

    def __init__(self, database: Optional[DatabaseProvider] = None) -> None:
        self._database = database

    async def run_command(
        self, argv: Sequence[str], timeout: float, cwd: Optional[str] = None
    ) -> CommandResult:
        argv = tuple(str(a) for a in argv)
        if not argv:
            raise ValueError("argv must not be empty")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=cwd,
            )
        except FileNotFoundError:
            raise FatalStepError(f"command not found: {argv[0]}") from None
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TransientInfraError(
                f"{argv[0]} timed out after {timeout:g}s"
            ) from None
        logger.debug(f"{argv[0]} exited with status {proc.returncode}")
        return CommandResult(
            argv=argv, exit_code=proc.returncode, stdout=stdout, stderr=stderr
        )

    async def write_file(self, path: str, data: bytes, mode: int = 0o644) -> None:
        target = Path(path)
        await target.parent.mkdir(parents=True, exist_ok=True)
        tmp = f"{path}.provisio-{os.getpid()}-{secrets.token_hex(4)}.tmp"
        try:
            await asyncio.to_thread(_write_private, tmp, data, mode)
            await Path(tmp).rename(target)
        except BaseException:
            await Path(tmp).unlink(missing_ok=True)
            raise

    async def read_file(self, path: str) -> bytes | None:
        target = Path(path)
        if not await target.exists():
            return None
        return await target.read_bytes()

    async def query_database(
        self, sql: str, params: Optional[Mapping[str, Any]] = None
    ) -> list[dict[str, Any]]:
        if self._database is None:
            raise FatalStepError("no database server configured")
        return await self._database.query(sql, params)
