"""Document roots and Apache virtual hosts."""

from __future__ import annotations

from typing import Any, Dict

from ..contracts import StepContext
from ..errors import FatalStepError, LedgerConflict
from ..persistence.models import ResourceType
from . import action
from .common import docroot, path_exists, reload_service, run_checked

VHOST_TEMPLATE = """<VirtualHost *:80>
    ServerName {fqdn}
    DocumentRoot {docroot}

    <Directory {docroot}>
        Options -Indexes +FollowSymLinks
        AllowOverride All
        Require all granted
    </Directory>

    ErrorLog ${{APACHE_LOG_DIR}}/{fqdn}-error.log
    CustomLog ${{APACHE_LOG_DIR}}/{fqdn}-access.log combined
</VirtualHost>
"""

WELCOME_PAGE = """<!DOCTYPE html>
<html>
<head><title>Welcome to {fqdn}</title></head>
<body>
<h1>{fqdn}</h1>
<p>This site has been provisioned and is ready for content.</p>
</body>
</html>
"""


def _vhost_path(ctx: StepContext) -> str:
    return f"{ctx.host_config.apache_sites_dir.rstrip('/')}/{ctx.params['fqdn']}.conf"


@action("require-free-document-root")
async def require_free_document_root(ctx: StepContext) -> None:
    """Refuse a domain held by another run or a document root nobody recorded."""
    fqdn = ctx.params["fqdn"]
    entry = await ctx.lookup(ResourceType.DOMAIN, fqdn)
    if entry is not None and entry.run_id != ctx.run_id:
        raise LedgerConflict(f"domain '{fqdn}' already exists")
    if entry is None and await path_exists(ctx, docroot(ctx)):
        raise FatalStepError(f"document root for '{fqdn}' already exists")


@action("create-document-root")
async def create_document_root(ctx: StepContext) -> Dict[str, Any]:
    root = docroot(ctx)
    owner = f"{ctx.host_config.web_user}:{ctx.host_config.web_group}"
    await run_checked(ctx, ["mkdir", "-p", root])
    await run_checked(ctx, ["chown", owner, root])
    await run_checked(ctx, ["chmod", "0755", root])
    return {"document_root": root}


@action("remove-document-root")
async def remove_document_root(ctx: StepContext) -> None:
    await run_checked(ctx, ["rm", "-rf", "--", docroot(ctx)])


@action("write-welcome-page")
async def write_welcome_page(ctx: StepContext) -> Dict[str, Any]:
    path = f"{docroot(ctx)}/index.html"
    await ctx.host.write_file(path, WELCOME_PAGE.format(fqdn=ctx.params["fqdn"]).encode())
    return {"path": path}


@action("write-vhost")
async def write_vhost(ctx: StepContext) -> Dict[str, Any]:
    path = _vhost_path(ctx)
    body = VHOST_TEMPLATE.format(fqdn=ctx.params["fqdn"], docroot=docroot(ctx))
    await ctx.host.write_file(path, body.encode())
    return {"vhost": path}


@action("remove-vhost")
async def remove_vhost(ctx: StepContext) -> None:
    await run_checked(ctx, ["rm", "-f", "--", _vhost_path(ctx)])


@action("enable-site")
async def enable_site(ctx: StepContext) -> Dict[str, Any]:
    site = f"{ctx.params['fqdn']}.conf"
    await run_checked(ctx, ["a2ensite", "-q", site])
    return {"site": site}


@action("disable-site")
async def disable_site(ctx: StepContext) -> None:
    if await ctx.host.read_file(_vhost_path(ctx)) is None:
        return
    await run_checked(ctx, ["a2dissite", "-q", f"{ctx.params['fqdn']}.conf"])
    await reload_service(ctx, ctx.host_config.apache_service)


@action("reload-webserver")
async def reload_webserver(ctx: StepContext) -> None:
    await run_checked(ctx, ["apache2ctl", "configtest"])
    await reload_service(ctx, ctx.host_config.apache_service)
