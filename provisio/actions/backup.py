"""Database dumps and site archives written to the backup directory."""

from __future__ import annotations

from typing import Any, Dict

from ..contracts import StepContext
from ..errors import FatalStepError
from . import action
from .common import quote_identifier, run_checked


def _backup_path(ctx: StepContext) -> str:
    return f"{ctx.host_config.backup_dir.rstrip('/')}/{ctx.params['backup_file']}"


@action("ensure-backup-dir")
async def ensure_backup_dir(ctx: StepContext) -> Dict[str, Any]:
    directory = ctx.host_config.backup_dir
    await run_checked(ctx, ["mkdir", "-p", directory])
    await run_checked(ctx, ["chmod", "0700", directory])
    return {"backup_dir": directory}


@action("write-backup")
async def write_backup(ctx: StepContext) -> Dict[str, Any]:
    path = _backup_path(ctx)
    name = ctx.params["name"]
    kind = ctx.params["backup_type"]
    if kind == "database":
        quote_identifier(name)
        # Credentials come from the service user's option file, never argv.
        argv = ["mysqldump", "--single-transaction", "--routines", f"--result-file={path}", name]
    elif kind == "website":
        argv = ["tar", "-czf", path, "-C", ctx.host_config.web_root, name]
    else:
        raise FatalStepError(f"unsupported backup type '{kind}'")
    await run_checked(ctx, argv)
    return {"backup_file": path, "type": kind}


@action("remove-backup")
async def remove_backup(ctx: StepContext) -> None:
    await run_checked(ctx, ["rm", "-f", "--", _backup_path(ctx)])


@action("protect-backup")
async def protect_backup(ctx: StepContext) -> Dict[str, Any]:
    await run_checked(ctx, ["chmod", "0600", _backup_path(ctx)])
    return {"mode": "0600"}
