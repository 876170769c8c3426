"""Core contracts shared by the orchestrator, executor and work queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field

from .config import HostConfig
from .errors import FatalStepError
from .host import HostCapabilities
from .persistence.models import (
    ErrorDetail,
    ResourceLedgerEntry,
    ResourceType,
    WorkflowRun,
)
from .registry.models import StepSpec
from .vault import SecretNotFound, SecretStore, handle_of, is_ref

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Admission


class AdmittedNew(BaseModel):
    """The operation key was free; a new run owns it."""

    outcome: Literal["admitted"] = "admitted"
    run_id: str


class AlreadyInFlight(BaseModel):
    """Another run for the same key is still executing."""

    outcome: Literal["in_flight"] = "in_flight"
    run_id: str


class AlreadyCompleted(BaseModel):
    """The key was provisioned before; the stored result is returned."""

    outcome: Literal["completed"] = "completed"
    run_id: str
    result: Optional[Dict[str, Any]] = None


class NeedsIntervention(BaseModel):
    """The previous run for the key failed during compensation."""

    outcome: Literal["needs_intervention"] = "needs_intervention"
    run_id: str


Admission = Union[AdmittedNew, AlreadyInFlight, AlreadyCompleted, NeedsIntervention]


class Submission(BaseModel):
    """Result of submitting an operation: admission plus the run it refers to."""

    admission: Admission = Field(discriminator="outcome")
    run: Optional[WorkflowRun] = None

    @property
    def is_new(self) -> bool:
        return isinstance(self.admission, AdmittedNew)

    @property
    def run_id(self) -> str:
        return self.admission.run_id


class RunMessage(BaseModel):
    """Work-queue message asking a worker to execute a run."""

    run_id: str
    operation_key: Optional[str] = None

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "RunMessage":
        return cls.model_validate_json(data)


# ----------------------------------------------------------------------
# Step execution


class StepOutcome(BaseModel):
    """What the executor reports back for one step attempt series."""

    ok: bool
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[ErrorDetail] = None
    attempts: int = 0


LedgerLookup = Callable[[ResourceType, str], Awaitable[Optional[ResourceLedgerEntry]]]


async def _no_ledger(resource_type: ResourceType, natural_key: str) -> None:
    return None


@dataclass(frozen=True)
class StepContext:
    """Read-only view handed to a step action.

    A step sees the run parameters, the outputs of the steps it declared in
    ``consumes`` and, while compensating, its own output. It never sees the
    run record or other steps' state.
    """

    run_id: str
    step: StepSpec
    params: Mapping[str, str]
    host: HostCapabilities
    vault: SecretStore
    host_config: HostConfig = field(default_factory=HostConfig)
    # Effective step timeout; actions use it for each external command.
    timeout: float = 10.0
    consumed: Mapping[str, Mapping[str, Any]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    output: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    ledger_lookup: LedgerLookup = _no_ledger

    @classmethod
    def build(
        cls,
        run_id: str,
        step: StepSpec,
        params: Mapping[str, str],
        outputs: Mapping[str, Mapping[str, Any]],
        **kwargs: Any,
    ) -> "StepContext":
        """Build a context exposing only the outputs ``step`` consumes."""
        consumed = {
            name: MappingProxyType(dict(outputs[name]))
            for name in step.consumes
            if name in outputs
        }
        own = kwargs.pop("output", None) or {}
        return cls(
            run_id=run_id,
            step=step,
            params=MappingProxyType(dict(params)),
            consumed=MappingProxyType(consumed),
            output=MappingProxyType(dict(own)),
            **kwargs,
        )

    def output_of(self, step_name: str) -> Mapping[str, Any]:
        try:
            return self.consumed[step_name]
        except KeyError:
            raise FatalStepError(
                f"step '{self.step.name}' has no output from '{step_name}'"
            ) from None

    def find(self, name: str) -> Any:
        """Look ``name`` up in the step params, then in consumed outputs."""
        if name in self.params:
            return self.params[name]
        for output in self.consumed.values():
            if name in output:
                return output[name]
        return None

    def secret_handle(self, name: str) -> str:
        return f"{self.run_id}/{name}"

    async def secret(self, name: str) -> str:
        """Resolve the vault reference stored under ``name``."""
        ref = self.find(name)
        if not is_ref(ref):
            raise FatalStepError(f"credential '{name}' is not available")
        try:
            return await self.vault.get(handle_of(ref))
        except SecretNotFound:
            raise FatalStepError(f"credential '{name}' is missing from the vault") from None

    async def lookup(
        self, resource_type: ResourceType, natural_key: str
    ) -> Optional[ResourceLedgerEntry]:
        return await self.ledger_lookup(resource_type, natural_key)


__all__ = [
    "Admission",
    "AdmittedNew",
    "AlreadyInFlight",
    "AlreadyCompleted",
    "NeedsIntervention",
    "Submission",
    "RunMessage",
    "StepOutcome",
    "StepContext",
]
