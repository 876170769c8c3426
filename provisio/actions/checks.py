"""Precondition checks. These have no side effects and no compensation."""

from __future__ import annotations

from ..errors import FatalStepError, LedgerConflict
from ..persistence.models import LedgerStatus, ResourceType
from . import action


@action("require-domain")
async def require_domain(ctx):
    """Fail unless the site's domain is an active entry in the ledger."""
    name = ctx.params.get("fqdn") or ctx.params["domain"]
    entry = await ctx.lookup(ResourceType.DOMAIN, name)
    if entry is None or entry.status != LedgerStatus.ACTIVE:
        raise FatalStepError(f"domain '{name}' is not provisioned")
    return {"domain": name}


@action("require-tool")
async def require_tool(ctx):
    tool = ctx.params["tool"]
    result = await ctx.host.run_command(["which", tool], timeout=ctx.timeout)
    if not result.ok:
        raise FatalStepError(f"{tool} is not installed")
    return {"tool": tool}


@action("require-absent")
async def require_absent(ctx):
    """Fail when a live ledger entry already holds the key named by the step."""
    resource_type = ResourceType(ctx.params["resource_type"])
    key = ctx.params[ctx.params["key_param"]]
    entry = await ctx.lookup(resource_type, key)
    if entry is not None and entry.run_id != ctx.run_id:
        raise LedgerConflict(f"{resource_type.value} '{key}' already exists")
    return None


__all__ = ["require_domain", "require_tool", "require_absent"]
