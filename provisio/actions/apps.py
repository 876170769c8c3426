"""Application-specific steps: configuration files, project scaffolding, builds."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Tuple

from ..contracts import StepContext
from ..errors import FatalStepError
from . import action
from .common import docroot, run_checked, staging_dir

logger = logging.getLogger(__name__)

WORDPRESS_SALTS = (
    "auth_key",
    "secure_auth_key",
    "logged_in_key",
    "nonce_key",
    "auth_salt",
    "secure_auth_salt",
    "logged_in_salt",
    "nonce_salt",
)

WP_CONFIG = """<?php
define('DB_NAME', '{db_name}');
define('DB_USER', '{db_user}');
define('DB_PASSWORD', '{db_password}');
define('DB_HOST', 'localhost');
define('DB_CHARSET', 'utf8mb4');
define('DB_COLLATE', '');

{salts}

$table_prefix = 'wp_';
define('WP_DEBUG', false);

if ( !defined('ABSPATH') )
    define('ABSPATH', __DIR__ . '/');

require_once ABSPATH . 'wp-settings.php';
"""

LARAVEL_ENV = """APP_NAME=Laravel
APP_ENV=production
APP_KEY={app_key}
APP_DEBUG=false
APP_URL=http://{fqdn}

LOG_CHANNEL=stack

DB_CONNECTION=mysql
DB_HOST=127.0.0.1
DB_PORT=3306
DB_DATABASE={db_name}
DB_USERNAME={db_user}
DB_PASSWORD={db_password}
"""


def php_quote(value: str) -> str:
    """Escape ``value`` for a single-quoted PHP string."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def dotenv_quote(value: str) -> str:
    if "'" not in value:
        return f"'{value}'"
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$")
    return f'"{escaped}"'


async def _wordpress_config(ctx: StepContext) -> Tuple[str, str]:
    password = await ctx.secret("db_password")
    salts = []
    for name in WORDPRESS_SALTS:
        value = await ctx.secret(name)
        salts.append(f"define('{name.upper()}', '{php_quote(value)}');")
    body = WP_CONFIG.format(
        db_name=ctx.params["db_name"],
        db_user=ctx.params["db_user"],
        db_password=php_quote(password),
        salts="\n".join(salts),
    )
    return "wp-config.php", body


async def _laravel_env(ctx: StepContext) -> Tuple[str, str]:
    body = LARAVEL_ENV.format(
        app_key="base64:" + await ctx.secret("app_key"),
        fqdn=ctx.params["fqdn"],
        db_name=ctx.params["db_name"],
        db_user=ctx.params["db_user"],
        db_password=dotenv_quote(await ctx.secret("db_password")),
    )
    return ".env", body


CONFIG_RENDERERS: Dict[str, Callable[[StepContext], Awaitable[Tuple[str, str]]]] = {
    "wordpress": _wordpress_config,
    "laravel": _laravel_env,
}


@action("write-config-file")
async def write_config_file(ctx: StepContext) -> Dict[str, Any]:
    template = ctx.params["template"]
    try:
        renderer = CONFIG_RENDERERS[template]
    except KeyError:
        raise FatalStepError(f"no configuration template '{template}'") from None
    filename, body = await renderer(ctx)
    path = f"{docroot(ctx)}/{filename}"
    await ctx.host.write_file(path, body.encode("utf-8"), 0o640)
    return {"config_file": path}


@action("remove-config-file")
async def remove_config_file(ctx: StepContext) -> None:
    path = ctx.output.get("config_file")
    if path:
        await run_checked(ctx, ["rm", "-f", "--", path])


@action("create-laravel-project")
async def create_laravel_project(ctx: StepContext) -> Dict[str, Any]:
    target = f"{staging_dir(ctx)}/extract"
    await run_checked(ctx, ["rm", "-rf", "--", target])
    await run_checked(ctx, ["mkdir", "-p", staging_dir(ctx)])
    await run_checked(
        ctx,
        [
            "composer",
            "create-project",
            "laravel/laravel",
            target,
            "--prefer-dist",
            "--no-interaction",
        ],
    )
    return {"source": target}


@action("create-next-app")
async def create_next_app(ctx: StepContext) -> Dict[str, Any]:
    target = f"{staging_dir(ctx)}/extract"
    await run_checked(ctx, ["rm", "-rf", "--", target])
    await run_checked(ctx, ["mkdir", "-p", staging_dir(ctx)])
    await run_checked(
        ctx,
        [
            "npx",
            "--yes",
            "create-next-app@latest",
            target,
            "--typescript",
            "--tailwind",
            "--eslint",
            "--app",
            "--src-dir",
            "--import-alias",
            "@/*",
            "--use-npm",
        ],
    )
    return {"source": target}


@action("remove-staging")
async def remove_staging(ctx: StepContext) -> None:
    await run_checked(ctx, ["rm", "-rf", "--", staging_dir(ctx)])


@action("build-app")
async def build_app(ctx: StepContext) -> Dict[str, Any]:
    source = ctx.find("source")
    if not source:
        raise FatalStepError("no staged project to build")
    await run_checked(ctx, ["npm", "run", "build"], cwd=source)
    return {"built": True}


@action("record-installation")
async def record_installation(ctx: StepContext) -> Dict[str, Any]:
    installed_at = datetime.now(timezone.utc).isoformat()
    logger.info(f"{ctx.params['app']} installed on {ctx.params['fqdn']} by run {ctx.run_id}")
    return {
        "app": ctx.params["app"],
        "document_root": docroot(ctx),
        "installed_at": installed_at,
    }
