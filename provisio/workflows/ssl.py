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

ISSUE_CERTIFICATE = register_workflow(
    WorkflowDefinition(
        name="issue_certificate",
        version=SemanticVersion(major=1, minor=0, patch=0),
        description="Let's Encrypt certificate for a provisioned domain",
        params=[
            ParamSpec(name="domain", validator="domain"),
            ParamSpec(name="email", validator="email"),
        ],
        derived=["fqdn"],
        key_template="certificate:{fqdn}",
        slow=True,
        steps=[
            StepSpec(name="require-domain", action="require-domain"),
            StepSpec(name="require-certbot", action="require-tool", params={"tool": "certbot"}),
            StepSpec(
                name="request-certificate",
                action="request-certificate",
                compensation="delete-certificate",
                timeout_class="download",
                resource=ResourceSpec(resource_type=ResourceType.CERTIFICATE, key_param="fqdn"),
            ),
        ],
        result_template={"domain": "{fqdn}", "url": "https://{fqdn}/"},
    )
)
