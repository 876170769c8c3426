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

CREATE_EMAIL_ACCOUNT = register_workflow(
    WorkflowDefinition(
        name="create_email_account",
        version=SemanticVersion(major=1, minor=0, patch=0),
        description="Mailbox with Postfix delivery and Dovecot login",
        params=[
            ParamSpec(name="email", validator="email"),
            ParamSpec(name="password", validator="password", required=False, secret=True),
            ParamSpec(name="quota", validator="quota", required=False, default="1000"),
        ],
        derived=["mail_user", "mail_domain"],
        key_template="email:{email}",
        steps=[
            StepSpec(
                name="generate-credentials",
                action="generate-credentials",
                compensation="discard-credentials",
                params={"secrets": "password"},
            ),
            StepSpec(name="require-free-mail-user", action="require-free-mail-user"),
            StepSpec(
                name="create-mail-user",
                action="create-mail-user",
                compensation="remove-mail-user",
                resource=ResourceSpec(
                    resource_type=ResourceType.EMAIL_ACCOUNT, key_param="email"
                ),
            ),
            StepSpec(name="create-maildir", action="create-maildir", compensation="remove-maildir"),
            StepSpec(
                name="add-virtual-mailbox",
                action="add-virtual-mailbox",
                compensation="remove-virtual-mailbox",
            ),
            StepSpec(
                name="add-dovecot-user",
                action="add-dovecot-user",
                compensation="remove-dovecot-user",
                consumes=["generate-credentials"],
            ),
            StepSpec(name="reload-mail-services", action="reload-mail-services", retryable=True),
        ],
        result_template={"email": "{email}", "quota_mb": "{quota}"},
    )
)
