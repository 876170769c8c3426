"""Data models for persisted workflow and ledger state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..errors import ProvisioError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPENSATING = "compensating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ROLLED_BACK}
)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    COMPENSATED = "compensated"


class ResourceType(str, Enum):
    DOMAIN = "domain"
    DATABASE = "database"
    CERTIFICATE = "certificate"
    APP_INSTALL = "app_install"
    EMAIL_ACCOUNT = "email_account"
    BACKUP = "backup"


class LedgerStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class ErrorDetail(BaseModel):
    """Error kind plus a message that is safe to show to callers."""

    kind: str
    message: str

    @classmethod
    def from_exception(cls, exc: ProvisioError) -> "ErrorDetail":
        return cls(kind=exc.kind, message=exc.message)


class StepRecord(BaseModel):
    """Record of an individual step execution."""

    step_name: str
    status: StepStatus = StepStatus.PENDING
    params: dict[str, str] = Field(default_factory=dict)
    output: dict[str, Any] = Field(default_factory=dict)
    error: Optional[ErrorDetail] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class WorkflowRun(BaseModel):
    """Persisted state of one execution of a workflow definition.

    ``params`` never hold secret values: secrets supplied by the caller are
    replaced with vault references before the run is first persisted.
    ``cancel_requested`` is stored apart from the run document so that a
    cancellation is never lost to a concurrent save of the run.
    """

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_name: str
    workflow_version: str
    operation_key: str
    params: dict[str, str] = Field(default_factory=dict)
    steps: list[StepRecord] = Field(default_factory=list)
    status: RunStatus = RunStatus.RUNNING
    cancel_requested: bool = False
    result: Optional[dict[str, Any]] = None
    error: Optional[ErrorDetail] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def step(self, step_name: str) -> StepRecord:
        for record in self.steps:
            if record.step_name == step_name:
                return record
        raise KeyError(step_name)

    def outputs(self) -> dict[str, dict[str, Any]]:
        """Outputs of every step that reached ``done``."""
        return {
            record.step_name: record.output
            for record in self.steps
            if record.status == StepStatus.DONE
        }

    def touch(self) -> None:
        self.updated_at = utcnow()

    def to_json(self) -> str:
        return self.model_dump_json(exclude={"cancel_requested"})

    @classmethod
    def from_json(cls, data: str | bytes) -> "WorkflowRun":
        return cls.model_validate_json(data)


class ResourceLedgerEntry(BaseModel):
    """Durable record of a resource provisioned on the host."""

    resource_type: ResourceType
    natural_key: str
    status: LedgerStatus = LedgerStatus.PENDING
    run_id: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
