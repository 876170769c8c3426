from __future__ import annotations

from typing import List

from ..persistence.models import ResourceType
from ..registry import (
    ParamSpec,
    ResourceSpec,
    SemanticVersion,
    StepSpec,
    WorkflowDefinition,
    register_workflow,
)

DATABASE_PARAMS = [
    ParamSpec(name="db_name", validator="identifier", aliases=["database"]),
    ParamSpec(name="db_user", validator="identifier", aliases=["username"]),
    ParamSpec(
        name="db_password",
        validator="password",
        required=False,
        secret=True,
        aliases=["password"],
    ),
]


def database_steps() -> List[StepSpec]:
    """Check the name is free, then create the database and a user owning it."""
    return [
        StepSpec(name="require-free-database", action="require-free-database"),
        StepSpec(
            name="create-database",
            action="create-database",
            compensation="drop-database",
            retryable=True,
            consumes=["generate-credentials"],
            resource=ResourceSpec(resource_type=ResourceType.DATABASE, key_param="db_name"),
        ),
        StepSpec(
            name="create-db-user",
            action="create-db-user",
            compensation="drop-db-user",
            retryable=True,
            consumes=["generate-credentials"],
        ),
        StepSpec(
            name="grant-privileges",
            action="grant-privileges",
            compensation="revoke-privileges",
            retryable=True,
        ),
    ]


CREATE_DATABASE = register_workflow(
    WorkflowDefinition(
        name="create_database",
        version=SemanticVersion(major=1, minor=0, patch=0),
        description="MySQL database with a dedicated user",
        params=DATABASE_PARAMS,
        key_template="database:{db_name}",
        steps=[
            StepSpec(
                name="generate-credentials",
                action="generate-credentials",
                compensation="discard-credentials",
                params={"secrets": "db_password"},
            ),
            *database_steps(),
        ],
        result_template={"database": "{db_name}", "username": "{db_user}"},
    )
)
