"""provisio: idempotent, compensating provisioning workflows for a hosting panel."""

__version__ = "0.1.0"

from .contracts import (  # noqa: E402
    AdmittedNew,
    AlreadyCompleted,
    AlreadyInFlight,
    NeedsIntervention,
    StepContext,
    Submission,
)
from .execute import StepExecutor  # noqa: E402
from .orchestrator import Orchestrator  # noqa: E402
from .persistence import get_repository  # noqa: E402
from .registry import WORKFLOWS, get_workflow  # noqa: E402
from .transports import get_transport  # noqa: E402

from . import workflows  # noqa: E402,F401

__all__ = [
    "AdmittedNew",
    "AlreadyCompleted",
    "AlreadyInFlight",
    "NeedsIntervention",
    "Orchestrator",
    "StepContext",
    "StepExecutor",
    "Submission",
    "WORKFLOWS",
    "get_repository",
    "get_transport",
    "get_workflow",
]
