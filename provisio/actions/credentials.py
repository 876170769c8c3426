"""Credential generation.

Generated values go straight into the vault; the step output only carries
``vault:`` references, which later steps resolve through
:meth:`StepContext.secret`.
"""

from __future__ import annotations

import base64
import logging
import secrets

from ..vault import generate_password, generate_salt, handle_of, is_ref
from . import action

logger = logging.getLogger(__name__)


def _names(value):
    return [n.strip() for n in (value or "").split(",") if n.strip()]


@action("generate-credentials")
async def generate_credentials(ctx):
    """Create the passwords, salts and keys listed in the step params.

    A password the caller supplied was already sealed into the vault on
    submission; its reference is passed through unchanged.
    """
    output = {}
    for name in _names(ctx.params.get("secrets")):
        supplied = ctx.params.get(name)
        if is_ref(supplied):
            output[name] = supplied
        else:
            output[name] = await ctx.vault.put(ctx.secret_handle(name), generate_password())
    for name in _names(ctx.params.get("salts")):
        output[name] = await ctx.vault.put(ctx.secret_handle(name), generate_salt())
    for name in _names(ctx.params.get("keys")):
        key = base64.b64encode(secrets.token_bytes(32)).decode("ascii")
        output[name] = await ctx.vault.put(ctx.secret_handle(name), key)
    logger.info(f"Run {ctx.run_id} holds {len(output)} credential(s) in the vault")
    return output


@action("discard-credentials")
async def discard_credentials(ctx):
    prefix = ctx.secret_handle("")
    for ref in ctx.output.values():
        if is_ref(ref) and handle_of(ref).startswith(prefix):
            await ctx.vault.delete(handle_of(ref))
    return None
