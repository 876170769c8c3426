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

CREATE_BACKUP = register_workflow(
    WorkflowDefinition(
        name="create_backup",
        version=SemanticVersion(major=1, minor=0, patch=0),
        description="Database dump or website archive in the backup directory",
        params=[
            ParamSpec(name="backup_type", validator="backup_type", aliases=["type"]),
            ParamSpec(name="name", validator="resource_name"),
        ],
        derived=["stamp", "backup_file"],
        key_template="backup:{backup_type}:{name}:{stamp}",
        slow=True,
        steps=[
            StepSpec(name="ensure-backup-dir", action="ensure-backup-dir"),
            StepSpec(
                name="write-backup",
                action="write-backup",
                compensation="remove-backup",
                timeout_class="build",
                resource=ResourceSpec(resource_type=ResourceType.BACKUP, key_param="backup_file"),
            ),
            StepSpec(name="protect-backup", action="protect-backup"),
        ],
        result_template={"backup_file": "{backup_file}", "timestamp": "{stamp}"},
    )
)
