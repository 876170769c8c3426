"""Command line interface for operating provisio."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import List, Optional

import typer

from .api import ledger_view, run_snapshot
from .errors import ProvisioError, RunNotFound
from .persistence.models import ResourceType, RunStatus
from .runtime import build_runtime
from .worker import Worker

app = typer.Typer(help="CLI for provisio provisioning workflows")

# Command groups
run_app = typer.Typer(help="Commands for inspecting and controlling runs")
ledger_app = typer.Typer(help="Commands for the resource ledger")

app.add_typer(run_app, name="run")
app.add_typer(ledger_app, name="ledger")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v")) -> None:
    """provisio CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@run_app.command("list")
def run_list(
    status: Optional[RunStatus] = typer.Option(None, help="Only runs in this status"),
) -> None:
    """List persisted runs."""
    runtime = build_runtime(queue=False)
    runs = asyncio.run(
        runtime.repository.list_runs([status] if status is not None else None)
    )
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.run_id}\t{run.status.value}\t{run.operation_key}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """Show a run with the status of each step."""
    runtime = build_runtime(queue=False)
    run = asyncio.run(runtime.repository.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(json.dumps(run_snapshot(run), indent=2))


@run_app.command("cancel")
def run_cancel(run_id: str) -> None:
    """Ask a run to stop and compensate at its next step boundary."""
    runtime = build_runtime(queue=False)
    try:
        run = asyncio.run(runtime.orchestrator.cancel(run_id))
    except RunNotFound:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    if run.is_terminal:
        typer.echo(f"Run {run_id} already finished: {run.status.value}")
    else:
        typer.echo(f"Cancellation requested for run {run_id}")


@ledger_app.command("list")
def ledger_list(
    type: Optional[ResourceType] = typer.Option(None, "--type", help="Resource type"),
) -> None:
    """List resource ledger entries."""
    runtime = build_runtime(queue=False)
    entries = asyncio.run(runtime.orchestrator.ledger.list_entries(type))
    if not entries:
        typer.echo("No resources recorded")
        return
    for entry in entries:
        view = ledger_view(entry)
        typer.echo(f"{view['type']}\t{view['key']}\t{view['status']}\t{view['runId']}")


@app.command("operations")
def operations() -> None:
    """List the operations that can be provisioned."""
    runtime = build_runtime(queue=False)
    for definition in runtime.orchestrator.workflows.latest():
        mode = "async" if definition.slow else "sync"
        typer.echo(f"{definition.name}\tv{definition.version}\t{mode}\t{definition.description}")


@app.command("submit")
def submit(
    operation: str,
    params: List[str] = typer.Argument(None, help="Parameters as key=value"),
) -> None:
    """Submit an operation and execute it in this process."""
    values = {}
    for item in params or []:
        key, sep, value = item.partition("=")
        if not sep:
            typer.secho(f"Expected key=value, got '{item}'", fg=typer.colors.RED)
            raise typer.Exit(code=2)
        values[key] = value

    runtime = build_runtime(queue=False)
    try:
        submission = asyncio.run(runtime.orchestrator.provision(operation, values))
    except ProvisioError as exc:
        typer.secho(f"{exc.kind}: {exc.message}", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    typer.echo(f"Run {submission.run_id}: {submission.admission.outcome}")
    if submission.run is not None:
        typer.echo(json.dumps(run_snapshot(submission.run), indent=2))
        if submission.run.status in (RunStatus.FAILED, RunStatus.ROLLED_BACK):
            raise typer.Exit(code=1)


@app.command("recover")
def recover(
    stalled_after: Optional[float] = typer.Option(
        None, help="Seconds without progress before a run counts as stalled"
    ),
) -> None:
    """Resume runs left running or compensating by a process that died."""
    runtime = build_runtime(queue=False)
    threshold = (
        stalled_after if stalled_after is not None else runtime.config.worker.stalled_after
    )
    resumed = asyncio.run(runtime.orchestrator.recover(threshold))
    if not resumed:
        typer.echo("No stalled runs")
        return
    for run in resumed:
        typer.echo(f"{run.run_id}\t{run.status.value}")


@app.command("worker")
def worker(
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
    concurrency: Optional[int] = typer.Option(None, help="Concurrent runs"),
) -> None:
    """Run a worker that executes queued runs."""
    runtime = build_runtime(queue=True)
    config = runtime.config
    runner = Worker(
        runtime.orchestrator,
        runtime.transport,
        topic=config.transport.topic,
        concurrency=concurrency or config.worker.concurrency,
        stalled_after=config.worker.stalled_after,
    )
    typer.echo(f"Starting worker on {config.transport.topic}")
    asyncio.run(runner.start(lifespan=lifespan))


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Interface to bind"),
    port: int = typer.Option(8000, help="Port to listen on"),
) -> None:
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    from .api import create_app

    runtime = build_runtime()
    uvicorn.run(create_app(runtime.orchestrator, runtime.dispatcher), host=host, port=port)


if __name__ == "__main__":
    app()
