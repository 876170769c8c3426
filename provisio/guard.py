"""Admission control keyed by deterministic operation keys."""

from __future__ import annotations

import logging

from .contracts import (
    Admission,
    AdmittedNew,
    AlreadyCompleted,
    AlreadyInFlight,
    NeedsIntervention,
)
from .persistence import WorkflowRepository, get_repository
from .persistence.models import RunStatus

logger = logging.getLogger(__name__)


class IdempotencyGuard:
    """Guarantees at most one live run per operation key.

    Admission is a single atomic claim on the repository's operation-key
    index, so concurrent submissions of the same key yield exactly one
    :class:`AdmittedNew`.
    """

    def __init__(self, repository: WorkflowRepository | None = None) -> None:
        self._repository = repository or get_repository()

    async def admit(self, operation_key: str, run_id: str) -> Admission:
        replace: str | None = None
        while True:
            bound = await self._repository.claim_operation_key(
                operation_key, run_id, replace_run_id=replace
            )
            if bound == run_id:
                if replace:
                    logger.info(
                        f"Operation {operation_key} re-admitted after rolled back run {replace}"
                    )
                return AdmittedNew(run_id=run_id)

            previous = await self._repository.get_run(bound)
            if previous is None:
                # Claimed, but its run document is not persisted yet.
                return AlreadyInFlight(run_id=bound)
            if previous.status == RunStatus.SUCCEEDED:
                return AlreadyCompleted(run_id=bound, result=previous.result)
            if previous.status == RunStatus.FAILED:
                return NeedsIntervention(run_id=bound)
            if previous.status == RunStatus.ROLLED_BACK:
                # A rolled back run releases its key to the next submission.
                replace = bound
                continue
            return AlreadyInFlight(run_id=bound)
