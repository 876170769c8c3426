from __future__ import annotations

from ..persistence.models import ResourceType
from ..registry import (
    ParamSpec,
    ResourceSpec,
    SemanticVersion,
    StepSpec,
    WorkflowDefinition,
    register_workflow,
)

CREATE_DOMAIN = register_workflow(
    WorkflowDefinition(
        name="create_domain",
        version=SemanticVersion(major=1, minor=0, patch=0),
        description="Document root, welcome page and Apache virtual host for a domain",
        params=[
            ParamSpec(name="domain", validator="domain"),
            ParamSpec(name="subdomain", validator="subdomain", required=False),
        ],
        derived=["fqdn"],
        key_template="domain:{fqdn}",
        steps=[
            StepSpec(name="require-free-document-root", action="require-free-document-root"),
            StepSpec(
                name="create-document-root",
                action="create-document-root",
                compensation="remove-document-root",
                resource=ResourceSpec(resource_type=ResourceType.DOMAIN, key_param="fqdn"),
            ),
            StepSpec(name="write-welcome-page", action="write-welcome-page", independent=True),
            StepSpec(
                name="write-vhost",
                action="write-vhost",
                compensation="remove-vhost",
                independent=True,
            ),
            StepSpec(name="enable-site", action="enable-site", compensation="disable-site"),
            StepSpec(name="reload-webserver", action="reload-webserver", retryable=True),
        ],
        result_template={"domain": "{fqdn}", "url": "http://{fqdn}/"},
    )
)
