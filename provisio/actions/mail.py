"""Mailbox provisioning for Postfix virtual users and Dovecot."""

from __future__ import annotations

import asyncio
from typing import Any, Dict

import bcrypt

from ..contracts import StepContext
from ..errors import FatalStepError
from . import action
from .common import ensure_line, reload_service, remove_line, run_checked

# useradd: 9 means the user name is already taken
USERADD_EXISTS = 9
# userdel: 6 means the user does not exist
USERDEL_MISSING = 6


def _maildir(ctx: StepContext) -> str:
    root = ctx.host_config.mail_root.rstrip("/")
    return f"{root}/{ctx.params['mail_domain']}/{ctx.params['mail_user']}"


def hash_password(password: str) -> str:
    """Hash ``password`` for Dovecot's ``BLF-CRYPT`` scheme."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=10))
    return "{BLF-CRYPT}" + hashed.decode("ascii")


@action("require-free-mail-user")
async def require_free_mail_user(ctx: StepContext) -> None:
    """Refuse to adopt a system account this run did not create."""
    user = ctx.params["mail_user"]
    result = await ctx.host.run_command(["id", "-u", user], timeout=ctx.timeout)
    if result.ok:
        raise FatalStepError(f"system user '{user}' already exists")


@action("create-mail-user")
async def create_mail_user(ctx: StepContext) -> Dict[str, Any]:
    user = ctx.params["mail_user"]
    # The name was free when the run started, so 9 means an earlier attempt created it.
    await run_checked(
        ctx,
        ["useradd", "-m", "-s", "/usr/sbin/nologin", user],
        ok_codes=(0, USERADD_EXISTS),
    )
    return {"system_user": user}


@action("remove-mail-user")
async def remove_mail_user(ctx: StepContext) -> None:
    await run_checked(
        ctx, ["userdel", "-r", ctx.params["mail_user"]], ok_codes=(0, USERDEL_MISSING)
    )


@action("create-maildir")
async def create_maildir(ctx: StepContext) -> Dict[str, Any]:
    path = _maildir(ctx)
    owner = f"{ctx.host_config.mail_user}:{ctx.host_config.mail_group}"
    await run_checked(ctx, ["mkdir", "-p", path])
    await run_checked(ctx, ["chown", "-R", owner, path])
    await run_checked(ctx, ["chmod", "0700", path])
    return {"maildir": path}


@action("remove-maildir")
async def remove_maildir(ctx: StepContext) -> None:
    await run_checked(ctx, ["rm", "-rf", "--", _maildir(ctx)])


@action("add-virtual-mailbox")
async def add_virtual_mailbox(ctx: StepContext) -> Dict[str, Any]:
    path = ctx.host_config.postfix_virtual_users
    email = ctx.params["email"]
    await ensure_line(
        ctx, path, f"{email} {ctx.params['mail_user']}", replace_prefix=f"{email} "
    )
    await run_checked(ctx, ["postmap", path])
    return {"virtual_map": path}


@action("remove-virtual-mailbox")
async def remove_virtual_mailbox(ctx: StepContext) -> None:
    path = ctx.host_config.postfix_virtual_users
    if await remove_line(ctx, path, f"{ctx.params['email']} "):
        await run_checked(ctx, ["postmap", path])


@action("add-dovecot-user")
async def add_dovecot_user(ctx: StepContext) -> Dict[str, Any]:
    email = ctx.params["email"]
    password = await ctx.secret("password")
    hashed = await asyncio.to_thread(hash_password, password)
    quota = ctx.params.get("quota", "1000")
    line = f"{email}:{hashed}::::::userdb_quota_rule=*:storage={quota}M"
    path = ctx.host_config.dovecot_users
    await ensure_line(ctx, path, line, replace_prefix=f"{email}:", mode=0o640)
    return {"dovecot_users": path, "quota_mb": int(quota)}


@action("remove-dovecot-user")
async def remove_dovecot_user(ctx: StepContext) -> None:
    await remove_line(
        ctx, ctx.host_config.dovecot_users, f"{ctx.params['email']}:", mode=0o640
    )


@action("reload-mail-services")
async def reload_mail_services(ctx: StepContext) -> None:
    await reload_service(ctx, "postfix")
    await reload_service(ctx, "dovecot")
