"""Saga engine: admits, runs, compensates and recovers workflow runs."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

from .contracts import AdmittedNew, Submission
from .errors import (
    CompensationError,
    LedgerConflict,
    RunCancelled,
    RunNotFound,
)
from .execute import StepExecutor
from .guard import IdempotencyGuard
from .ledger import ResourceLedger
from .persistence import WorkflowRepository, get_repository
from .persistence.models import (
    ErrorDetail,
    RunStatus,
    StepRecord,
    StepStatus,
    WorkflowRun,
    utcnow,
)
from .registry import WORKFLOWS, StepSpec, WorkflowDefinition, WorkflowTable

logger = logging.getLogger(__name__)


class Orchestrator:
    """Runs provisioning workflows as sagas.

    Steps execute in declared order (consecutive ``independent`` steps
    concurrently). The run is persisted after every step transition so that
    :meth:`execute` can resume it after a crash: ``done`` steps are skipped and
    a step left ``running`` is executed again. While steps run, the run is
    also saved every ``heartbeat`` seconds so that :meth:`recover` can tell a
    slow step from a dead process. When a step fails, or the run
    is cancelled, the compensations of all ``done`` steps run in strict
    reverse order.
    """

    def __init__(
        self,
        executor: StepExecutor,
        repository: WorkflowRepository | None = None,
        workflows: WorkflowTable | None = None,
        heartbeat: float = 30.0,
    ) -> None:
        self._executor = executor
        self._heartbeat = heartbeat
        self._repository = repository or get_repository()
        self._workflows = workflows if workflows is not None else WORKFLOWS
        self.guard = IdempotencyGuard(self._repository)
        self.ledger = ResourceLedger(self._repository)
        self._active: set[str] = set()
        self._save_locks: Dict[str, asyncio.Lock] = {}

    @property
    def repository(self) -> WorkflowRepository:
        return self._repository

    @property
    def workflows(self) -> WorkflowTable:
        return self._workflows

    # ------------------------------------------------------------------
    # Admission
    async def submit(self, operation: str, params: Mapping[str, Any]) -> Submission:
        """Validate ``params`` and admit a new run unless the key is taken.

        Raises ``UnknownOperation`` or ``ValidationError`` before anything is
        created.
        """
        definition = self._workflows.get(operation)
        clean = definition.validate_params(params)
        run = WorkflowRun(
            workflow_name=definition.name,
            workflow_version=str(definition.version),
            operation_key=definition.operation_key(clean),
            params=clean,
        )
        sealed = await self._seal_secrets(run, definition)
        run.steps = [
            StepRecord(step_name=spec.name, params=definition.step_params(spec, run.params))
            for spec in definition.steps
        ]

        admission = await self.guard.admit(run.operation_key, run.run_id)
        if isinstance(admission, AdmittedNew):
            await self._repository.save_run(run)
            logger.info(
                f"Admitted run {run.run_id} for {run.operation_key} "
                f"({definition.name} v{definition.version})"
            )
            return Submission(admission=admission, run=run)

        for handle in sealed:
            await self._executor.vault.delete(handle)
        logger.info(
            f"Operation {run.operation_key} not admitted: {admission.outcome} "
            f"(run {admission.run_id})"
        )
        existing = await self._repository.get_run(admission.run_id)
        return Submission(admission=admission, run=existing)

    async def _seal_secrets(
        self, run: WorkflowRun, definition: WorkflowDefinition
    ) -> list[str]:
        """Move secret params into the vault, leaving references in the run."""
        handles = []
        for name in definition.secret_params:
            if name not in run.params:
                continue
            handle = f"{run.run_id}/{name}"
            run.params[name] = await self._executor.vault.put(handle, run.params[name])
            handles.append(handle)
        return handles

    # ------------------------------------------------------------------
    # Execution
    async def execute(self, run_id: str) -> WorkflowRun:
        """Run or resume ``run_id`` until it reaches a terminal status."""
        if run_id in self._active:
            logger.info(f"Run {run_id} is already executing in this process")
            return await self.get_run(run_id)
        self._active.add(run_id)
        try:
            run = await self.get_run(run_id)
            if run.is_terminal:
                return run
            definition = self._workflows.get(run.workflow_name, run.workflow_version)
            if run.status == RunStatus.RUNNING:
                failure = await self._run_forward(run, definition)
                if failure is None:
                    return await self._succeed(run, definition)
                run.status = RunStatus.COMPENSATING
                run.error = failure
                await self._save(run)
                logger.info(f"Run {run.run_id} compensating after {failure.kind}")
            return await self._compensate(run, definition)
        finally:
            self._active.discard(run_id)
            self._save_locks.pop(run_id, None)

    async def _run_forward(
        self, run: WorkflowRun, definition: WorkflowDefinition
    ) -> Optional[ErrorDetail]:
        for record in run.steps:
            if record.status == StepStatus.FAILED:
                return record.error

        for batch in definition.batches():
            pending = [s for s in batch if run.step(s.name).status != StepStatus.DONE]
            if not pending:
                continue
            if await self._cancel_requested(run.run_id):
                logger.info(f"Run {run.run_id} cancelled before step {pending[0].name}")
                return ErrorDetail.from_exception(RunCancelled())

            for spec in pending:
                record = run.step(spec.name)
                record.status = StepStatus.RUNNING
                record.started_at = utcnow()
                record.error = None
            await self._save(run)

            heartbeat = asyncio.create_task(self._keep_alive(run))
            try:
                if len(pending) == 1:
                    failures = [await self._run_step(run, pending[0])]
                else:
                    failures = await asyncio.gather(
                        *(self._run_step(run, spec) for spec in pending)
                    )
            finally:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)
            for failure in failures:
                if failure is not None:
                    return failure
        return None

    async def _run_step(self, run: WorkflowRun, spec: StepSpec) -> Optional[ErrorDetail]:
        record = run.step(spec.name)
        logger.info(f"Run {run.run_id}: step {spec.name} started")
        context = self._executor.context_for(
            run.run_id, spec, record.params, run.outputs(), self.ledger.lookup
        )
        outcome = await self._executor.execute(spec, context)
        record.attempts += outcome.attempts

        error = outcome.error
        if outcome.ok and spec.resource is not None:
            try:
                await self.ledger.reserve(
                    spec.resource.resource_type,
                    record.params[spec.resource.key_param],
                    run.run_id,
                    details={"operation": run.workflow_name, **outcome.output},
                )
            except LedgerConflict as exc:
                error = ErrorDetail.from_exception(exc)

        record.completed_at = utcnow()
        if error is None:
            record.status = StepStatus.DONE
            record.output = outcome.output
            logger.info(f"Run {run.run_id}: step {spec.name} done")
        else:
            record.status = StepStatus.FAILED
            record.error = error
            logger.info(f"Run {run.run_id}: step {spec.name} failed ({error.kind})")
        await self._save(run)
        return error

    async def _succeed(self, run: WorkflowRun, definition: WorkflowDefinition) -> WorkflowRun:
        for spec in definition.steps:
            if spec.resource is not None:
                await self.ledger.activate(
                    spec.resource.resource_type,
                    run.step(spec.name).params[spec.resource.key_param],
                    run.run_id,
                )
        run.result = definition.render_result(run.params)
        run.status = RunStatus.SUCCEEDED
        await self._save(run)
        logger.info(f"Run {run.run_id} succeeded")
        return run

    async def _compensate(
        self, run: WorkflowRun, definition: WorkflowDefinition
    ) -> WorkflowRun:
        specs = {spec.name: spec for spec in definition.steps}
        outputs = run.outputs()
        for record in reversed(run.steps):
            if record.status != StepStatus.DONE:
                continue
            spec = specs[record.step_name]
            context = self._executor.context_for(
                run.run_id,
                spec,
                record.params,
                outputs,
                self.ledger.lookup,
                output=record.output,
            )
            outcome = await self._executor.compensate(spec, context)
            if not outcome.ok:
                return await self._compensation_failed(run, specs, record, outcome.error)

            record.status = StepStatus.COMPENSATED
            record.completed_at = utcnow()
            if spec.resource is not None:
                await self.ledger.roll_back(
                    spec.resource.resource_type,
                    record.params[spec.resource.key_param],
                    run.run_id,
                )
            await self._save(run)
            logger.info(f"Run {run.run_id}: step {spec.name} compensated")

        run.status = RunStatus.ROLLED_BACK
        await self._save(run)
        logger.info(f"Run {run.run_id} rolled back")
        return run

    async def _compensation_failed(
        self,
        run: WorkflowRun,
        specs: Dict[str, StepSpec],
        record: StepRecord,
        error: Optional[ErrorDetail],
    ) -> WorkflowRun:
        logger.error(
            f"Run {run.run_id}: compensation of step {record.step_name} failed "
            f"({error.kind if error else 'unknown'}); manual intervention required"
        )
        for remaining in run.steps:
            spec = specs[remaining.step_name]
            if remaining.status == StepStatus.DONE and spec.resource is not None:
                await self.ledger.mark_failed(
                    spec.resource.resource_type,
                    remaining.params[spec.resource.key_param],
                    run.run_id,
                )
        detail = error.message if error else "unknown error"
        run.status = RunStatus.FAILED
        run.error = ErrorDetail.from_exception(
            CompensationError(
                f"compensation of step '{record.step_name}' failed: {detail}; "
                "manual intervention required"
            )
        )
        await self._save(run)
        return run

    # ------------------------------------------------------------------
    # Control
    async def get_run(self, run_id: str) -> WorkflowRun:
        run = await self._repository.get_run(run_id)
        if run is None:
            raise RunNotFound(f"run '{run_id}' not found")
        return run

    async def cancel(self, run_id: str) -> WorkflowRun:
        """Request cancellation; the run compensates at its next step boundary."""
        run = await self.get_run(run_id)
        if run.is_terminal:
            return run
        await self._repository.request_cancel(run_id)
        run.cancel_requested = True
        logger.info(f"Cancellation requested for run {run_id}")
        return run

    async def recover(self, stalled_after: float = 300.0) -> list[WorkflowRun]:
        """Resume runs left ``running`` or ``compensating`` by a dead process."""
        threshold = utcnow() - timedelta(seconds=stalled_after)
        stalled = await self._repository.list_runs(
            [RunStatus.RUNNING, RunStatus.COMPENSATING]
        )
        resumed = []
        for run in stalled:
            if run.run_id in self._active or run.updated_at > threshold:
                continue
            logger.info(f"Recovering run {run.run_id} ({run.status.value})")
            resumed.append(await self.execute(run.run_id))
        return resumed

    async def provision(self, operation: str, params: Mapping[str, Any]) -> Submission:
        """Submit ``operation`` and, when admitted, execute it to completion."""
        submission = await self.submit(operation, params)
        if not submission.is_new:
            return submission
        run = await self.execute(submission.run_id)
        return Submission(admission=submission.admission, run=run)

    # ------------------------------------------------------------------
    async def _cancel_requested(self, run_id: str) -> bool:
        run = await self._repository.get_run(run_id)
        return bool(run and run.cancel_requested)

    async def _save(self, run: WorkflowRun) -> None:
        lock = self._save_locks.setdefault(run.run_id, asyncio.Lock())
        async with lock:
            run.touch()
            await self._repository.save_run(run)

    async def _keep_alive(self, run: WorkflowRun) -> None:
        """Save ``run`` periodically while a long step keeps it busy."""
        while True:
            await asyncio.sleep(self._heartbeat)
            await self._save(run)
            logger.debug(f"Run {run.run_id} heartbeat")
