"""Error taxonomy for provisioning workflows.

Every error carries a ``kind`` and a message that is safe to show to an API
caller. Messages are built from names we control (step names, executable
names, exit codes) and never from the output of an external process.
"""

from __future__ import annotations

from typing import Optional


class ProvisioError(Exception):
    """Base class for all provisioning errors."""

    kind = "ProvisioError"
    default_message = "provisioning failed"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ProvisioError):
    """Bad input. Raised before any side effect takes place."""

    kind = "ValidationError"
    default_message = "invalid request"


class UnknownOperation(ValidationError):
    """No workflow is registered under the requested name."""

    kind = "UnknownOperation"
    default_message = "unknown operation"


class TransientInfraError(ProvisioError):
    """Temporary infrastructure failure (timeout, lock contention, network)."""

    kind = "TransientInfraError"
    default_message = "temporary infrastructure failure"


class FatalStepError(ProvisioError):
    """Non-retryable step failure. Triggers compensation."""

    kind = "FatalStepError"
    default_message = "step failed"


class LedgerConflict(FatalStepError):
    """The natural key is already held by another workflow run."""

    kind = "LedgerConflict"
    default_message = "resource already exists"


class CompensationError(ProvisioError):
    """A compensation failed; the run needs operator attention."""

    kind = "CompensationError"
    default_message = "compensation failed; manual intervention required"


class RunCancelled(ProvisioError):
    """An operator asked for the run to stop; completed steps are undone."""

    kind = "RunCancelled"
    default_message = "cancelled by request"


class RunNotFound(ProvisioError):
    kind = "RunNotFound"
    default_message = "workflow run not found"


__all__ = [
    "ProvisioError",
    "ValidationError",
    "UnknownOperation",
    "TransientInfraError",
    "FatalStepError",
    "LedgerConflict",
    "CompensationError",
    "RunCancelled",
    "RunNotFound",
]
