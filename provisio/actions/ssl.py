"""Let's Encrypt certificates through certbot's Apache plugin."""

from __future__ import annotations

from typing import Any, Dict

from ..contracts import StepContext
from . import action
from .common import run_checked

# certbot reports every failure, transient or not, as exit status 1.


@action("request-certificate")
async def request_certificate(ctx: StepContext) -> Dict[str, Any]:
    domain = ctx.params["fqdn"]
    await run_checked(
        ctx,
        [
            "certbot",
            "--apache",
            "-d",
            domain,
            "--email",
            ctx.params["email"],
            "--agree-tos",
            "--non-interactive",
            "--keep-until-expiring",
        ],
    )
    return {"cert_name": domain, "issuer": "letsencrypt"}


@action("delete-certificate")
async def delete_certificate(ctx: StepContext) -> None:
    name = ctx.output.get("cert_name") or ctx.params["fqdn"]
    result = await ctx.host.run_command(
        ["certbot", "certificates", "--cert-name", name], timeout=ctx.timeout
    )
    if name.encode() not in result.stdout:
        return
    await run_checked(ctx, ["certbot", "delete", "--cert-name", name, "--non-interactive"])
