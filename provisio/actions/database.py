"""MySQL database and user provisioning.

Identifiers are validated and backtick-quoted; every value (user names,
passwords) is passed as a bound parameter.
"""

from __future__ import annotations

from typing import Any, Dict

from ..contracts import StepContext
from ..errors import FatalStepError, LedgerConflict
from ..persistence.models import ResourceType
from . import action
from .common import quote_identifier


def _user(ctx: StepContext) -> str:
    return ctx.params["db_user"]


@action("require-free-database")
async def require_free_database(ctx: StepContext) -> None:
    """Refuse a database held by another run or a schema nobody recorded."""
    name = ctx.params["db_name"]
    entry = await ctx.lookup(ResourceType.DATABASE, name)
    if entry is not None and entry.run_id != ctx.run_id:
        raise LedgerConflict(f"database '{name}' already exists")
    existing = await ctx.host.query_database(
        "SELECT SCHEMA_NAME FROM INFORMATION_SCHEMA.SCHEMATA WHERE SCHEMA_NAME = :name",
        {"name": name},
    )
    if existing and entry is None:
        raise FatalStepError(f"database '{name}' already exists")


@action("create-database")
async def create_database(ctx: StepContext) -> Dict[str, Any]:
    name = ctx.params["db_name"]
    await ctx.host.query_database(
        f"CREATE DATABASE IF NOT EXISTS {quote_identifier(name)} "
        "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
    )
    output: Dict[str, Any] = {"database": name}
    if "db_user" in ctx.params:
        output["user"] = _user(ctx)
    password_ref = ctx.find("db_password")
    if password_ref:
        output["password_ref"] = password_ref
    return output


@action("drop-database")
async def drop_database(ctx: StepContext) -> None:
    await ctx.host.query_database(
        f"DROP DATABASE IF EXISTS {quote_identifier(ctx.params['db_name'])}"
    )


@action("create-db-user")
async def create_db_user(ctx: StepContext) -> Dict[str, Any]:
    user = _user(ctx)
    quote_identifier(user)
    password = await ctx.secret("db_password")
    await ctx.host.query_database(
        "CREATE USER IF NOT EXISTS :user@'localhost' IDENTIFIED BY :password",
        {"user": user, "password": password},
    )
    return {"user": user, "host": "localhost"}


@action("drop-db-user")
async def drop_db_user(ctx: StepContext) -> None:
    await ctx.host.query_database(
        "DROP USER IF EXISTS :user@'localhost'", {"user": _user(ctx)}
    )


@action("grant-privileges")
async def grant_privileges(ctx: StepContext) -> Dict[str, Any]:
    quoted = quote_identifier(ctx.params["db_name"])
    await ctx.host.query_database(
        f"GRANT ALL PRIVILEGES ON {quoted}.* TO :user@'localhost'",
        {"user": _user(ctx)},
    )
    return {"granted": "ALL PRIVILEGES"}


@action("revoke-privileges")
async def revoke_privileges(ctx: StepContext) -> None:
    quoted = quote_identifier(ctx.params["db_name"])
    await ctx.host.query_database(
        f"REVOKE IF EXISTS ALL PRIVILEGES ON {quoted}.* "
        "FROM :user@'localhost' IGNORE UNKNOWN USER",
        {"user": _user(ctx)},
    )
