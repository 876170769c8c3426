"""Pydantic models describing workflow definitions.

Definitions are pure data: steps name their actions, parameters name their
validators, and templates are ``str.format`` strings. Nothing here touches
the host, so a definition can be checked in isolation and executed against a
fake step executor.
"""

from __future__ import annotations

from datetime import datetime
from string import Formatter
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field, model_validator

from ..errors import UnknownOperation, ValidationError
from ..persistence.models import ResourceType, utcnow
from ..validation import DERIVATIONS, VALIDATORS, snake_case


class SemanticVersion(BaseModel):
    """Semantic version with ``major.minor.patch`` components."""

    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, value: str) -> "SemanticVersion":
        """Parse a dotted semantic version string."""
        parts = value.split(".")
        if len(parts) != 3:
            raise ValueError("Semantic version must have three components")
        major, minor, patch = (int(p) for p in parts)
        return cls(major=major, minor=minor, patch=patch)

    def as_tuple(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.major}.{self.minor}.{self.patch}"


class ParamSpec(BaseModel):
    """Describes a single input parameter of a workflow."""

    name: str
    validator: Optional[str] = None
    required: bool = True
    default: Optional[str] = None
    secret: bool = False
    aliases: List[str] = Field(default_factory=list)
    description: Optional[str] = None


class ResourceSpec(BaseModel):
    """Ledger entry created when the owning step reaches ``done``."""

    resource_type: ResourceType
    key_param: str


class StepSpec(BaseModel):
    """Defines one step in a workflow."""

    name: str
    action: str
    compensation: Optional[str] = None
    retryable: bool = False
    timeout: Optional[float] = None
    timeout_class: Literal["local", "download", "build"] = "local"
    consumes: List[str] = Field(default_factory=list)
    resource: Optional[ResourceSpec] = None
    independent: bool = False
    params: Dict[str, str] = Field(default_factory=dict)


def _template_fields(template: str) -> set[str]:
    return {field for _, field, _, _ in Formatter().parse(template) if field}


class WorkflowDefinition(BaseModel):
    """Ordered steps, parameters and identity of one provisioning operation."""

    name: str
    version: SemanticVersion
    description: str = ""
    params: List[ParamSpec] = Field(default_factory=list)
    derived: List[str] = Field(default_factory=list)
    key_template: str
    steps: List[StepSpec]
    slow: bool = False
    result_template: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_consistency(self) -> "WorkflowDefinition":
        if not self.steps:
            raise ValueError(f"workflow '{self.name}' has no steps")

        seen: set[str] = set()
        for step in self.steps:
            if step.name in seen:
                raise ValueError(f"duplicate step name '{step.name}'")
            missing = [c for c in step.consumes if c not in seen]
            if missing:
                raise ValueError(
                    f"step '{step.name}' consumes {missing} which do not precede it"
                )
            seen.add(step.name)

        for param in self.params:
            if param.validator and param.validator not in VALIDATORS:
                raise ValueError(f"unknown validator '{param.validator}'")
        for name in self.derived:
            if name not in DERIVATIONS:
                raise ValueError(f"unknown derived parameter '{name}'")

        public = {p.name for p in self.params if not p.secret} | set(self.derived)
        templates = [self.key_template, *self.result_template.values()]
        for template in templates:
            leaked = _template_fields(template) - public
            if leaked:
                raise ValueError(f"template refers to unknown or secret {sorted(leaked)}")
        for step in self.steps:
            if step.resource and step.resource.key_param not in public:
                raise ValueError(
                    f"step '{step.name}' keys its resource on unknown '{step.resource.key_param}'"
                )
        return self

    # ------------------------------------------------------------------
    @property
    def secret_params(self) -> List[str]:
        return [p.name for p in self.params if p.secret]

    def validate_params(self, raw: Mapping[str, Any]) -> Dict[str, str]:
        """Normalize caller input into the run parameters.

        Keys may be given in camelCase. Unknown keys are dropped. Raises
        :class:`~provisio.errors.ValidationError` on missing or bad values.
        """
        supplied = {snake_case(str(k)): v for k, v in (raw or {}).items()}
        clean: Dict[str, str] = {}
        for param in self.params:
            value = None
            for key in (param.name, *param.aliases):
                if supplied.get(key) not in (None, ""):
                    value = supplied[key]
                    break
            if value is None:
                if param.required:
                    raise ValidationError(f"'{param.name}' is required")
                if param.default is None:
                    continue
                value = param.default
            if not isinstance(value, (str, int)) or isinstance(value, bool):
                raise ValidationError(f"'{param.name}' must be a string")
            value = str(value)
            if param.validator:
                value = VALIDATORS[param.validator](param.name, value)
            clean[param.name] = value
        for name in self.derived:
            clean[name] = DERIVATIONS[name](clean)
        return clean

    def operation_key(self, params: Mapping[str, str]) -> str:
        return self.key_template.format(**params)

    def batches(self) -> List[List[StepSpec]]:
        """Group steps into execution batches.

        Consecutive steps marked ``independent`` share a batch and may run
        concurrently; every other step forms a batch of its own.
        """
        batches: List[List[StepSpec]] = []
        for step in self.steps:
            if step.independent and batches and batches[-1][-1].independent:
                batches[-1].append(step)
            else:
                batches.append([step])
        return batches

    def step_params(self, step: StepSpec, run_params: Mapping[str, str]) -> Dict[str, str]:
        return {**run_params, **step.params}

    def render_result(self, params: Mapping[str, str]) -> Dict[str, str]:
        return {key: value.format(**params) for key, value in self.result_template.items()}

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": str(self.version),
            "description": self.description,
            "slow": self.slow,
            "params": [
                {"name": p.name, "required": p.required, "secret": p.secret}
                for p in self.params
            ],
            "steps": [s.name for s in self.steps],
        }


class WorkflowTable(BaseModel):
    """Static, versioned table of workflow definitions keyed by operation name."""

    workflows: Dict[str, List[WorkflowDefinition]] = Field(default_factory=dict)
    generated_at: datetime = Field(default_factory=utcnow)
    schema_version: str = "1"

    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        versions = self.workflows.setdefault(definition.name, [])
        if any(v.version == definition.version for v in versions):
            raise ValueError(
                f"workflow '{definition.name}' version {definition.version} already registered"
            )
        versions.append(definition)
        versions.sort(key=lambda d: d.version.as_tuple())
        return definition

    def get(self, name: str, version: Optional[str] = None) -> WorkflowDefinition:
        """Return the newest definition, or the one pinned by ``version``."""
        versions = self.workflows.get(name)
        if not versions:
            raise UnknownOperation(f"unknown operation '{name}'")
        if version is None:
            return versions[-1]
        for definition in versions:
            if str(definition.version) == version:
                return definition
        raise UnknownOperation(f"operation '{name}' has no version {version}")

    def latest(self) -> List[WorkflowDefinition]:
        return [versions[-1] for _, versions in sorted(self.workflows.items())]
