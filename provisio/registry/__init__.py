"""Workflow definition models and the process-wide workflow table."""

from __future__ import annotations

from typing import Optional

from .models import (
    ParamSpec,
    ResourceSpec,
    SemanticVersion,
    StepSpec,
    WorkflowDefinition,
    WorkflowTable,
)

# Built-in workflows register themselves here when ``provisio.workflows`` is
# imported. Tests and embedders may build their own ``WorkflowTable`` and hand
# it to the orchestrator instead.
WORKFLOWS = WorkflowTable()


def register_workflow(definition: WorkflowDefinition) -> WorkflowDefinition:
    """Add ``definition`` to ``WORKFLOWS``."""
    return WORKFLOWS.register(definition)


def get_workflow(name: str, version: Optional[str] = None) -> WorkflowDefinition:
    return WORKFLOWS.get(name, version)


__all__ = [
    "SemanticVersion",
    "ParamSpec",
    "ResourceSpec",
    "StepSpec",
    "WorkflowDefinition",
    "WorkflowTable",
    "WORKFLOWS",
    "register_workflow",
    "get_workflow",
]
