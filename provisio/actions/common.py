"""Helpers shared by the step actions."""

from __future__ import annotations

import asyncio
import logging
import re
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Collection, Dict, List, Optional, Sequence

from ..contracts import StepContext
from ..errors import FatalStepError, TransientInfraError
from ..host import CommandResult

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_]{1,64}$")
_ENTRY_RE = re.compile(r"^[A-Za-z0-9_@%+=,.-][A-Za-z0-9_@%+=,. -]*$")

# Serializes read-modify-write edits of shared host files (postfix maps,
# dovecot users) between runs in this process.
_file_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)


def quote_identifier(name: str) -> str:
    """Return ``name`` as a backtick-quoted MySQL identifier."""
    if not _IDENTIFIER_RE.match(name):
        raise FatalStepError("invalid SQL identifier")
    return f"`{name}`"


async def run_checked(
    ctx: StepContext,
    argv: Sequence[str],
    *,
    cwd: Optional[str] = None,
    transient_codes: Collection[int] = (),
    ok_codes: Collection[int] = (0,),
) -> CommandResult:
    """Run ``argv`` on the host and raise on an unexpected exit status.

    Exit statuses listed in ``transient_codes`` raise
    :class:`TransientInfraError` so that retryable steps try again.
    """
    result = await ctx.host.run_command(argv, timeout=ctx.timeout, cwd=cwd)
    if result.exit_code in ok_codes:
        return result
    message = f"{argv[0]} exited with status {result.exit_code}"
    logger.info(f"Step {ctx.step.name} of run {ctx.run_id}: {message}")
    if result.exit_code in transient_codes:
        raise TransientInfraError(message)
    raise FatalStepError(message)


async def path_exists(ctx: StepContext, path: str) -> bool:
    result = await ctx.host.run_command(["test", "-e", path], timeout=ctx.timeout)
    return result.ok


async def list_entries(ctx: StepContext, directory: str) -> List[str]:
    """Top-level entries of ``directory``; names that are unsafe to handle are rejected."""
    result = await run_checked(ctx, ["ls", "-A", directory])
    names = [n for n in result.stdout.decode("utf-8", "replace").splitlines() if n]
    for name in names:
        if name in (".", "..") or "/" in name or not _ENTRY_RE.match(name):
            raise FatalStepError(f"unexpected entry in {directory}")
    return names


def docroot(ctx: StepContext) -> str:
    site = ctx.params.get("fqdn") or ctx.params["domain"]
    return f"{ctx.host_config.web_root.rstrip('/')}/{site}"


def staging_dir(ctx: StepContext) -> str:
    return f"{ctx.host_config.staging_dir.rstrip('/')}/{ctx.run_id}"


@asynccontextmanager
async def file_lock(path: str) -> AsyncIterator[None]:
    async with _file_locks[path]:
        yield


def _read_lines(data: bytes | None) -> List[str]:
    return data.decode("utf-8").splitlines() if data else []


async def ensure_line(
    ctx: StepContext,
    path: str,
    line: str,
    *,
    replace_prefix: Optional[str] = None,
    mode: int = 0o644,
) -> bool:
    """Make ``line`` present in ``path``.

    With ``replace_prefix`` any other line starting with that prefix is
    replaced. Returns ``True`` when the file was changed.
    """
    async with file_lock(path):
        lines = _read_lines(await ctx.host.read_file(path))
        if replace_prefix is not None:
            wanted = [l for l in lines if not l.startswith(replace_prefix)] + [line]
            if [l for l in lines if l.startswith(replace_prefix)] == [line]:
                return False
        else:
            if line in lines:
                return False
            wanted = lines + [line]
        await ctx.host.write_file(path, ("\n".join(wanted) + "\n").encode("utf-8"), mode)
        return True


async def remove_line(
    ctx: StepContext, path: str, prefix: str, *, mode: int = 0o644
) -> bool:
    """Drop every line of ``path`` starting with ``prefix``."""
    async with file_lock(path):
        data = await ctx.host.read_file(path)
        if data is None:
            return False
        lines = _read_lines(data)
        kept = [l for l in lines if not l.startswith(prefix)]
        if len(kept) == len(lines):
            return False
        body = "\n".join(kept) + "\n" if kept else ""
        await ctx.host.write_file(path, body.encode("utf-8"), mode)
        return True


async def reload_service(ctx: StepContext, service: str) -> None:
    await run_checked(ctx, ["systemctl", "reload", service])
