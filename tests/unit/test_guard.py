"""Admission: at most one live run per operation key."""

import asyncio

import pytest

from provisio.contracts import (
    AdmittedNew,
    AlreadyCompleted,
    AlreadyInFlight,
    NeedsIntervention,
)
from provisio.guard import IdempotencyGuard
from provisio.persistence import RunStatus, SQLiteWorkflowRepository, WorkflowRun


async def _stored_run(repo, key, status):
    run = WorkflowRun(
        workflow_name="create_domain",
        workflow_version="1.0.0",
        operation_key=key,
        status=status,
        result={"domain": "example.com"} if status == RunStatus.SUCCEEDED else None,
    )
    await repo.save_run(run)
    await repo.claim_operation_key(key, run.run_id)
    return run


@pytest.mark.asyncio
async def test_concurrent_submissions_admit_exactly_one(orchestrator, repo):
    submissions = await asyncio.gather(
        *(orchestrator.submit("create_domain", {"domain": "example.com"}) for _ in range(20))
    )

    admitted = [s for s in submissions if isinstance(s.admission, AdmittedNew)]
    assert len(admitted) == 1
    winner = admitted[0].run_id
    assert all(s.run_id == winner for s in submissions)
    assert len(await repo.list_runs()) == 1


@pytest.mark.asyncio
async def test_concurrent_admission_on_sqlite(tmp_path):
    repo = SQLiteWorkflowRepository(tmp_path / "runs.db")
    guard = IdempotencyGuard(repo)

    outcomes = await asyncio.gather(
        *(guard.admit("database:shop", f"run-{i}") for i in range(10))
    )

    assert sum(isinstance(o, AdmittedNew) for o in outcomes) == 1


@pytest.mark.asyncio
async def test_claimed_key_without_saved_run_is_in_flight(repo):
    guard = IdempotencyGuard(repo)
    assert isinstance(await guard.admit("k", "run-1"), AdmittedNew)
    outcome = await guard.admit("k", "run-2")
    assert isinstance(outcome, AlreadyInFlight)
    assert outcome.run_id == "run-1"


@pytest.mark.asyncio
async def test_running_run_is_in_flight(repo):
    previous = await _stored_run(repo, "k", RunStatus.COMPENSATING)
    outcome = await IdempotencyGuard(repo).admit("k", "run-2")
    assert outcome == AlreadyInFlight(run_id=previous.run_id)


@pytest.mark.asyncio
async def test_succeeded_run_returns_its_result(repo):
    previous = await _stored_run(repo, "k", RunStatus.SUCCEEDED)
    outcome = await IdempotencyGuard(repo).admit("k", "run-2")
    assert isinstance(outcome, AlreadyCompleted)
    assert outcome.run_id == previous.run_id
    assert outcome.result == {"domain": "example.com"}


@pytest.mark.asyncio
async def test_failed_run_needs_intervention(repo):
    previous = await _stored_run(repo, "k", RunStatus.FAILED)
    outcome = await IdempotencyGuard(repo).admit("k", "run-2")
    assert outcome == NeedsIntervention(run_id=previous.run_id)


@pytest.mark.asyncio
async def test_rolled_back_run_releases_the_key(repo):
    await _stored_run(repo, "k", RunStatus.ROLLED_BACK)
    guard = IdempotencyGuard(repo)

    outcomes = await asyncio.gather(guard.admit("k", "run-a"), guard.admit("k", "run-b"))

    assert sum(isinstance(o, AdmittedNew) for o in outcomes) == 1
