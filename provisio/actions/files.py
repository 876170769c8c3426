"""Release downloads and placement of application files in a document root.

Everything is unpacked into a per-run staging directory first and then
copied into the document root, so that the entries placed there are known
and can be removed again on compensation.
"""

from __future__ import annotations

from typing import Any, Dict, List

from ..contracts import StepContext
from ..errors import FatalStepError
from . import action
from .common import docroot, list_entries, run_checked, staging_dir

# wget: 4 is a network failure; everything else (404, TLS, disk) is fatal.
WGET_NETWORK_FAILURE = 4

# Entries an application may overwrite in a fresh document root.
REPLACEABLE = frozenset({"index.html"})


def _extract_dir(ctx: StepContext) -> str:
    return f"{staging_dir(ctx)}/extract"


async def place_files(ctx: StepContext, source: str) -> List[str]:
    """Copy the contents of ``source`` into the document root.

    Only the welcome page may be overwritten. Returns the names that were
    not in the document root before, which are the ones compensation removes.
    """
    names = await list_entries(ctx, source)
    if not names:
        raise FatalStepError("release archive is empty")
    existing = set(ctx.output_of("inspect-document-root")["existing"])
    clashes = sorted((existing & set(names)) - REPLACEABLE)
    if clashes:
        raise FatalStepError(f"document root already contains {clashes}")
    await run_checked(ctx, ["cp", "-a", f"{source}/.", f"{docroot(ctx)}/"])
    return [name for name in names if name not in existing]


@action("inspect-document-root")
async def inspect_document_root(ctx: StepContext) -> Dict[str, Any]:
    return {"existing": await list_entries(ctx, docroot(ctx))}


@action("download-release")
async def download_release(ctx: StepContext) -> Dict[str, Any]:
    archive = f"{staging_dir(ctx)}/{ctx.params['archive']}"
    await run_checked(ctx, ["mkdir", "-p", staging_dir(ctx)])
    await run_checked(
        ctx,
        ["wget", "-q", "-O", archive, ctx.params["url"]],
        transient_codes=(WGET_NETWORK_FAILURE,),
    )
    return {"archive": archive}


@action("remove-download")
async def remove_download(ctx: StepContext) -> None:
    archive = ctx.output.get("archive")
    if archive:
        await run_checked(ctx, ["rm", "-f", "--", archive])


@action("extract-and-place-files")
async def extract_and_place_files(ctx: StepContext) -> Dict[str, Any]:
    archive = ctx.output_of("download-release")["archive"]
    target = _extract_dir(ctx)
    await run_checked(ctx, ["rm", "-rf", "--", target])
    await run_checked(ctx, ["mkdir", "-p", target])
    if archive.endswith(".zip"):
        await run_checked(ctx, ["unzip", "-q", "-o", archive, "-d", target])
    else:
        await run_checked(ctx, ["tar", "-xzf", archive, "-C", target])
    strip = ctx.params.get("strip")
    source = f"{target}/{strip}" if strip else target
    return {"placed": await place_files(ctx, source)}


@action("place-files")
async def place_staged_files(ctx: StepContext) -> Dict[str, Any]:
    source = ctx.find("source")
    if not source:
        raise FatalStepError("no staged project to place")
    return {"placed": await place_files(ctx, source)}


@action("remove-placed-files")
async def remove_placed_files(ctx: StepContext) -> None:
    root = docroot(ctx)
    paths = [f"{root}/{name}" for name in ctx.output.get("placed", [])]
    if paths:
        await run_checked(ctx, ["rm", "-rf", "--", *paths])


@action("set-permissions")
async def set_permissions(ctx: StepContext) -> Dict[str, Any]:
    root = docroot(ctx)
    owner = f"{ctx.host_config.web_user}:{ctx.host_config.web_group}"
    await run_checked(ctx, ["chown", "-R", owner, root])
    await run_checked(ctx, ["chmod", "-R", "u=rwX,g=rX,o=rX", root])
    writable = [f"{root}/{d}" for d in ctx.params.get("writable", "").split(",") if d]
    if writable:
        await run_checked(ctx, ["chmod", "-R", "ug+w", *writable])
    private = [f"{root}/{f}" for f in ctx.params.get("private", "").split(",") if f]
    if private:
        await run_checked(ctx, ["chmod", "0640", *private])
    return {"owner": owner}


@action("cleanup-download")
async def cleanup_download(ctx: StepContext) -> None:
    await run_checked(ctx, ["rm", "-rf", "--", staging_dir(ctx)])
