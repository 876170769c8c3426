"""One-click application installs onto an existing domain."""

from __future__ import annotations

from typing import Dict, List

from ..actions.apps import WORDPRESS_SALTS
from ..persistence.models import ResourceType
from ..registry import (
    ParamSpec,
    ResourceSpec,
    SemanticVersion,
    StepSpec,
    WorkflowDefinition,
    register_workflow,
)
from .database import DATABASE_PARAMS, database_steps

V1 = SemanticVersion(major=1, minor=0, patch=0)
SITE_PARAMS = [ParamSpec(name="domain", validator="domain")]


def _credentials(**extra: str) -> StepSpec:
    return StepSpec(
        name="generate-credentials",
        action="generate-credentials",
        compensation="discard-credentials",
        params={"secrets": "db_password", **extra},
    )


def _download(url: str, archive: str, strip: str = "") -> List[StepSpec]:
    return [
        StepSpec(
            name="download-release",
            action="download-release",
            compensation="remove-download",
            retryable=True,
            timeout_class="download",
            params={"url": url, "archive": archive},
        ),
        StepSpec(
            name="extract-and-place-files",
            action="extract-and-place-files",
            compensation="remove-placed-files",
            timeout_class="download",
            consumes=["download-release", "inspect-document-root"],
            params={"strip": strip} if strip else {},
        ),
    ]


def _finish(app: str, writable: str = "", private: str = "") -> List[StepSpec]:
    return [
        StepSpec(
            name="set-permissions",
            action="set-permissions",
            timeout_class="download",
            params={"writable": writable, "private": private},
        ),
        StepSpec(
            name="record-installation",
            action="record-installation",
            resource=ResourceSpec(resource_type=ResourceType.APP_INSTALL, key_param="fqdn"),
            params={"app": app},
        ),
        StepSpec(name="cleanup-download", action="cleanup-download"),
    ]


def _preflight() -> List[StepSpec]:
    """One application per domain; remember what the document root already holds."""
    return [
        StepSpec(name="require-domain", action="require-domain"),
        StepSpec(
            name="require-no-installation",
            action="require-absent",
            params={"resource_type": ResourceType.APP_INSTALL.value, "key_param": "fqdn"},
        ),
        StepSpec(name="inspect-document-root", action="inspect-document-root"),
    ]


def _install(
    app: str,
    description: str,
    steps: List[StepSpec],
    result: Dict[str, str],
    with_database: bool = True,
) -> WorkflowDefinition:
    params = SITE_PARAMS + (DATABASE_PARAMS if with_database else [])
    return register_workflow(
        WorkflowDefinition(
            name=f"install_{app}",
            version=V1,
            description=description,
            params=params,
            derived=["fqdn"],
            key_template=f"install:{app}:{{fqdn}}",
            slow=True,
            steps=[*_preflight(), *steps],
            result_template=result,
        )
    )


INSTALL_WORDPRESS = _install(
    "wordpress",
    "WordPress with a generated wp-config.php",
    [
        _credentials(salts=",".join(WORDPRESS_SALTS)),
        *database_steps(),
        *_download("https://wordpress.org/latest.tar.gz", "wordpress.tar.gz", "wordpress"),
        StepSpec(
            name="write-config-file",
            action="write-config-file",
            compensation="remove-config-file",
            consumes=["generate-credentials"],
            params={"template": "wordpress"},
        ),
        *_finish("wordpress", private="wp-config.php"),
    ],
    {
        "app": "WordPress",
        "database": "{db_name}",
        "admin_url": "http://{fqdn}/wp-admin/",
        "setup_url": "http://{fqdn}/wp-admin/install.php",
    },
)

INSTALL_JOOMLA = _install(
    "joomla",
    "Joomla release ready for the web installer",
    [
        _credentials(),
        *database_steps(),
        *_download(
            "https://downloads.joomla.org/cms/joomla4/4-4-0/Joomla_4-4-0-Stable-Full_Package.zip",
            "joomla.zip",
        ),
        *_finish("joomla"),
    ],
    {"app": "Joomla", "database": "{db_name}", "setup_url": "http://{fqdn}/installation/"},
)

INSTALL_DRUPAL = _install(
    "drupal",
    "Drupal release ready for the web installer",
    [
        _credentials(),
        *database_steps(),
        *_download(
            "https://ftp.drupal.org/files/projects/drupal-10.1.6.tar.gz",
            "drupal.tar.gz",
            "drupal-10.1.6",
        ),
        *_finish("drupal"),
    ],
    {"app": "Drupal", "database": "{db_name}", "setup_url": "http://{fqdn}/core/install.php"},
)

INSTALL_LARAVEL = _install(
    "laravel",
    "Laravel project created with Composer, configured through .env",
    [
        StepSpec(name="require-composer", action="require-tool", params={"tool": "composer"}),
        _credentials(keys="app_key"),
        *database_steps(),
        StepSpec(
            name="create-project",
            action="create-laravel-project",
            compensation="remove-staging",
            retryable=True,
            timeout_class="build",
        ),
        StepSpec(
            name="place-files",
            action="place-files",
            compensation="remove-placed-files",
            timeout_class="download",
            consumes=["create-project", "inspect-document-root"],
        ),
        StepSpec(
            name="write-config-file",
            action="write-config-file",
            compensation="remove-config-file",
            consumes=["generate-credentials"],
            params={"template": "laravel"},
        ),
        *_finish("laravel", writable="storage,bootstrap/cache", private=".env"),
    ],
    {"app": "Laravel", "database": "{db_name}", "url": "http://{fqdn}/public/"},
)

INSTALL_NEXTJS = _install(
    "nextjs",
    "Next.js application scaffolded and built with npm",
    [
        StepSpec(name="require-npx", action="require-tool", params={"tool": "npx"}),
        StepSpec(
            name="create-app",
            action="create-next-app",
            compensation="remove-staging",
            retryable=True,
            timeout_class="build",
        ),
        StepSpec(
            name="build-app",
            action="build-app",
            timeout_class="build",
            consumes=["create-app"],
        ),
        StepSpec(
            name="place-files",
            action="place-files",
            compensation="remove-placed-files",
            timeout_class="download",
            consumes=["create-app", "inspect-document-root"],
        ),
        *_finish("nextjs"),
    ],
    {"app": "Next.js", "url": "http://{fqdn}:3000/"},
    with_database=False,
)
