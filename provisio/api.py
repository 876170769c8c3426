"""HTTP surface: submit operations, inspect and cancel runs, list resources."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import APIRouter, Body, FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .contracts import AlreadyCompleted, NeedsIntervention, Submission
from .dispatch import RunDispatcher
from .errors import ProvisioError, RunNotFound, UnknownOperation, ValidationError
from .orchestrator import Orchestrator
from .persistence.models import ResourceLedgerEntry, ResourceType, WorkflowRun

logger = logging.getLogger(__name__)

STATUS_FOR_ERROR = {
    UnknownOperation: 404,
    RunNotFound: 404,
    ValidationError: 400,
}


def _status_for(exc: ProvisioError) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_FOR_ERROR:
            return STATUS_FOR_ERROR[cls]
    return 500


def run_snapshot(run: WorkflowRun) -> Dict[str, Any]:
    """Caller-facing view of a run. Holds only vault references and safe errors."""
    return {
        "runId": run.run_id,
        "operation": run.workflow_name,
        "version": run.workflow_version,
        "operationKey": run.operation_key,
        "status": run.status.value,
        "cancelRequested": run.cancel_requested,
        "result": run.result,
        "error": run.error.model_dump() if run.error else None,
        "steps": [
            {
                "name": step.step_name,
                "status": step.status.value,
                "attempts": step.attempts,
                "error": step.error.model_dump() if step.error else None,
            }
            for step in run.steps
        ],
        "createdAt": run.created_at.isoformat(),
        "updatedAt": run.updated_at.isoformat(),
    }


def ledger_view(entry: ResourceLedgerEntry) -> Dict[str, Any]:
    return {
        "type": entry.resource_type.value,
        "key": entry.natural_key,
        "status": entry.status.value,
        "runId": entry.run_id,
        "details": entry.details,
        "createdAt": entry.created_at.isoformat(),
        "updatedAt": entry.updated_at.isoformat(),
    }


def create_app(
    orchestrator: Orchestrator, dispatcher: Optional[RunDispatcher] = None
) -> FastAPI:
    """Build the FastAPI application around ``orchestrator``.

    Slow operations are handed to ``dispatcher``; without one they run in a
    background task of this process.
    """
    dispatcher = dispatcher or RunDispatcher(orchestrator)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Provisioning API started")
        yield
        await dispatcher.drain()
        logger.info("Provisioning API stopped")

    app = FastAPI(
        title="provisio",
        description="Idempotent, compensating provisioning workflows for a hosting panel.",
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(ProvisioError)
    async def provisio_error_handler(request: Request, exc: ProvisioError) -> JSONResponse:
        return JSONResponse(
            status_code=_status_for(exc),
            content={"error": {"kind": exc.kind, "message": exc.message}},
        )

    router = APIRouter(prefix="/provision")

    @router.get("/operations")
    async def list_operations() -> Dict[str, Any]:
        return {"operations": [d.describe() for d in orchestrator.workflows.latest()]}

    @router.post("/runs/{run_id}/cancel")
    async def cancel_run(run_id: str) -> Dict[str, Any]:
        return run_snapshot(await orchestrator.cancel(run_id))

    @router.get("/runs/{run_id}")
    async def get_run(run_id: str) -> Dict[str, Any]:
        return run_snapshot(await orchestrator.get_run(run_id))

    @router.get("/resources")
    async def list_resources(type: Optional[ResourceType] = None) -> Dict[str, Any]:
        entries = await orchestrator.ledger.list_entries(type)
        return {"resources": [ledger_view(e) for e in entries]}

    @router.post("/{operation}")
    async def provision(
        operation: str, params: Optional[Dict[str, Any]] = Body(default=None)
    ) -> JSONResponse:
        definition = orchestrator.workflows.get(operation)
        submission = await orchestrator.submit(operation, params or {})
        if submission.is_new:
            if definition.slow:
                await dispatcher.dispatch(submission.run_id, submission.run.operation_key)
                return JSONResponse(
                    status_code=202,
                    content={"runId": submission.run_id, "status": submission.run.status.value},
                )
            run = await orchestrator.execute(submission.run_id)
            return JSONResponse(status_code=200, content=_body(run))
        return _existing(submission)

    app.include_router(router)
    return app


def _body(run: WorkflowRun) -> Dict[str, Any]:
    return {
        "runId": run.run_id,
        "status": run.status.value,
        "result": run.result,
        "error": run.error.model_dump() if run.error else None,
    }


def _existing(submission: Submission) -> JSONResponse:
    admission = submission.admission
    if isinstance(admission, AlreadyCompleted):
        return JSONResponse(
            status_code=200,
            content={"runId": admission.run_id, "status": "succeeded", "result": admission.result},
        )
    if isinstance(admission, NeedsIntervention):
        return JSONResponse(
            status_code=409,
            content={
                "runId": admission.run_id,
                "status": "failed",
                "error": {
                    "kind": "NeedsIntervention",
                    "message": "a previous run for this operation needs manual intervention",
                },
            },
        )
    status = submission.run.status.value if submission.run else "running"
    return JSONResponse(status_code=202, content={"runId": admission.run_id, "status": status})
