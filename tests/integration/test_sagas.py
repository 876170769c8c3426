"""Saga behaviour with step actions recorded in memory."""

import asyncio

import pytest

from provisio.errors import FatalStepError, TransientInfraError
from provisio.execute import StepExecutor
from provisio.orchestrator import Orchestrator
from provisio.persistence import (
    LedgerStatus,
    ResourceType,
    RunStatus,
    SQLiteWorkflowRepository,
    StepStatus,
)
from provisio.registry.models import (
    ParamSpec,
    ResourceSpec,
    SemanticVersion,
    StepSpec,
    WorkflowDefinition,
    WorkflowTable,
)


class Crash(BaseException):
    """Stands in for the process dying mid-step."""


class Recorder:
    """Action table whose actions log their calls and can be told to fail."""

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.hooks = {}

    def __getitem__(self, name):
        return self.get(name)

    def get(self, name, default=None):
        async def run(ctx):
            self.calls.append(name)
            hook = self.hooks.get(name)
            if hook is not None:
                await hook(ctx)
            failure = self.failures.get(name)
            if failure is not None:
                if isinstance(failure, list):
                    if failure:
                        raise failure.pop(0)
                else:
                    raise failure
            return {"by": name}

        return run

    def count(self, name):
        return self.calls.count(name)


def _table(*steps, resource_step=None):
    specs = []
    for step in steps:
        if isinstance(step, StepSpec):
            specs.append(step)
        else:
            specs.append(StepSpec(name=step, action=step, compensation=f"undo-{step}"))
    if resource_step is not None:
        specs[resource_step] = specs[resource_step].model_copy(
            update={"resource": ResourceSpec(resource_type=ResourceType.DOMAIN, key_param="site")}
        )
    table = WorkflowTable()
    table.register(
        WorkflowDefinition(
            name="demo",
            version=SemanticVersion(major=1, minor=0, patch=0),
            params=[ParamSpec(name="site")],
            key_template="demo:{site}",
            steps=specs,
            result_template={"site": "{site}"},
        )
    )
    return table


def _orchestrator(host, vault, config, repo, table, recorder):
    executor = StepExecutor(host, vault, config, actions=recorder)
    return Orchestrator(executor, repo, workflows=table)


@pytest.mark.asyncio
async def test_steps_run_in_order_and_result_is_rendered(host, vault, config, repo, retry_delays):
    recorder = Recorder()
    orchestrator = _orchestrator(host, vault, config, repo, _table("a", "b", "c"), recorder)

    submission = await orchestrator.provision("demo", {"site": "one"})

    assert submission.run.status == RunStatus.SUCCEEDED
    assert submission.run.result == {"site": "one"}
    assert recorder.calls == ["a", "b", "c"]
    assert all(s.status == StepStatus.DONE for s in submission.run.steps)


@pytest.mark.asyncio
async def test_failure_compensates_done_steps_in_reverse(host, vault, config, repo, retry_delays):
    recorder = Recorder()
    recorder.failures["d"] = FatalStepError("d broke")
    table = _table("a", StepSpec(name="b", action="b"), "c", "d", "e", resource_step=0)
    orchestrator = _orchestrator(host, vault, config, repo, table, recorder)

    submission = await orchestrator.provision("demo", {"site": "one"})
    run = submission.run

    assert run.status == RunStatus.ROLLED_BACK
    assert run.error.kind == "FatalStepError"
    assert run.error.message == "d broke"
    assert recorder.calls == ["a", "b", "c", "d", "undo-c", "undo-a"]
    assert [s.status for s in run.steps] == [
        StepStatus.COMPENSATED,
        StepStatus.COMPENSATED,
        StepStatus.COMPENSATED,
        StepStatus.FAILED,
        StepStatus.PENDING,
    ]
    entries = await orchestrator.ledger.list_entries()
    assert [(e.natural_key, e.status) for e in entries] == [("one", LedgerStatus.ROLLED_BACK)]


@pytest.mark.asyncio
async def test_rolled_back_key_can_be_submitted_again(host, vault, config, repo, retry_delays):
    recorder = Recorder()
    recorder.failures["b"] = [FatalStepError("once")]
    orchestrator = _orchestrator(host, vault, config, repo, _table("a", "b"), recorder)

    first = await orchestrator.provision("demo", {"site": "one"})
    second = await orchestrator.provision("demo", {"site": "one"})

    assert first.run.status == RunStatus.ROLLED_BACK
    assert second.is_new
    assert second.run.status == RunStatus.SUCCEEDED
    assert second.run_id != first.run_id


@pytest.mark.asyncio
async def test_transient_failures_are_retried_with_backoff(host, vault, config, repo, retry_delays):
    recorder = Recorder()
    recorder.failures["fetch"] = [TransientInfraError(), TransientInfraError()]
    table = _table(StepSpec(name="fetch", action="fetch", retryable=True))
    orchestrator = _orchestrator(host, vault, config, repo, table, recorder)

    run = (await orchestrator.provision("demo", {"site": "one"})).run

    assert run.status == RunStatus.SUCCEEDED
    assert run.step("fetch").attempts == 3
    assert len(retry_delays) == 2
    assert 0.5 <= retry_delays[0] < retry_delays[1] <= 1.1


@pytest.mark.asyncio
async def test_compensation_failure_needs_intervention(host, vault, config, repo, retry_delays):
    recorder = Recorder()
    recorder.failures["c"] = FatalStepError()
    recorder.failures["undo-b"] = FatalStepError("cannot undo b")
    table = _table("a", "b", "c", resource_step=0)
    orchestrator = _orchestrator(host, vault, config, repo, table, recorder)

    run = (await orchestrator.provision("demo", {"site": "one"})).run

    assert run.status == RunStatus.FAILED
    assert run.error.kind == "CompensationError"
    assert "cannot undo b" in run.error.message
    assert "undo-a" not in recorder.calls
    assert run.step("a").status == StepStatus.DONE
    entry = await orchestrator.ledger.lookup(ResourceType.DOMAIN, "one")
    assert entry.status == LedgerStatus.FAILED

    again = await orchestrator.submit("demo", {"site": "one"})
    assert again.admission.outcome == "needs_intervention"
    assert again.run_id == run.run_id


@pytest.mark.asyncio
async def test_crashed_run_resumes_without_repeating_done_steps(
    host, vault, config, tmp_path, retry_delays
):
    path = tmp_path / "runs.db"
    recorder = Recorder()
    recorder.failures["s4"] = [Crash()]
    table = _table("s1", "s2", "s3", "s4", "s5", "s6")
    first = _orchestrator(host, vault, config, SQLiteWorkflowRepository(path), table, recorder)

    submission = await first.submit("demo", {"site": "one"})
    with pytest.raises(Crash):
        await first.execute(submission.run_id)

    restarted = _orchestrator(host, vault, config, SQLiteWorkflowRepository(path), table, recorder)
    stalled = await restarted.get_run(submission.run_id)
    assert stalled.status == RunStatus.RUNNING
    assert stalled.step("s4").status == StepStatus.RUNNING

    resumed = await restarted.recover(stalled_after=0)

    assert [r.status for r in resumed] == [RunStatus.SUCCEEDED]
    assert [recorder.count(s) for s in ("s1", "s2", "s3", "s4", "s5", "s6")] == [1, 1, 1, 2, 1, 1]


@pytest.mark.asyncio
async def test_recover_skips_recent_runs(host, vault, config, repo, retry_delays):
    recorder = Recorder()
    orchestrator = _orchestrator(host, vault, config, repo, _table("a"), recorder)
    await orchestrator.submit("demo", {"site": "one"})

    assert await orchestrator.recover(stalled_after=300) == []
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_long_step_keeps_run_out_of_recovery(host, vault, config, repo, retry_delays):
    recorder = Recorder()
    in_build = asyncio.Event()
    release = asyncio.Event()

    async def slow_build(ctx):
        in_build.set()
        await asyncio.wait_for(release.wait(), timeout=5)

    recorder.hooks["build"] = slow_build
    table = _table("fetch", "build")
    executor = StepExecutor(host, vault, config, actions=recorder)
    busy = Orchestrator(executor, repo, workflows=table, heartbeat=0.05)
    other = _orchestrator(host, vault, config, repo, table, recorder)

    submission = await busy.submit("demo", {"site": "one"})
    running = asyncio.create_task(busy.execute(submission.run_id))
    await asyncio.wait_for(in_build.wait(), timeout=5)
    await asyncio.sleep(0.5)

    assert await other.recover(stalled_after=0.3) == []
    release.set()
    run = await running

    assert run.status == RunStatus.SUCCEEDED
    assert recorder.count("build") == 1


@pytest.mark.asyncio
async def test_independent_steps_run_concurrently(host, vault, config, repo, retry_delays):
    recorder = Recorder()
    started = asyncio.Event()

    async def waits_for_sibling(ctx):
        await asyncio.wait_for(started.wait(), timeout=1)

    async def signals(ctx):
        started.set()

    recorder.hooks["left"] = waits_for_sibling
    recorder.hooks["right"] = signals
    table = _table(
        "first",
        StepSpec(name="left", action="left", independent=True),
        StepSpec(name="right", action="right", independent=True),
        "last",
    )
    orchestrator = _orchestrator(host, vault, config, repo, table, recorder)

    run = (await orchestrator.provision("demo", {"site": "one"})).run

    assert run.status == RunStatus.SUCCEEDED
    assert recorder.calls[0] == "first"
    assert recorder.calls[-1] == "last"


@pytest.mark.asyncio
async def test_cancel_before_execution(host, vault, config, repo, retry_delays):
    recorder = Recorder()
    orchestrator = _orchestrator(host, vault, config, repo, _table("a", "b"), recorder)

    submission = await orchestrator.submit("demo", {"site": "one"})
    await orchestrator.cancel(submission.run_id)
    run = await orchestrator.execute(submission.run_id)

    assert run.status == RunStatus.ROLLED_BACK
    assert run.error.kind == "RunCancelled"
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_cancel_between_steps_compensates(host, vault, config, repo, retry_delays):
    recorder = Recorder()
    table = _table("a", "b", "c")
    orchestrator = _orchestrator(host, vault, config, repo, table, recorder)

    async def cancel_run(ctx):
        await orchestrator.cancel(ctx.run_id)

    recorder.hooks["b"] = cancel_run

    run = (await orchestrator.provision("demo", {"site": "one"})).run

    assert run.status == RunStatus.ROLLED_BACK
    assert run.error.kind == "RunCancelled"
    assert recorder.calls == ["a", "b", "undo-b", "undo-a"]


@pytest.mark.asyncio
async def test_cancel_of_finished_run_is_a_no_op(host, vault, config, repo, retry_delays):
    recorder = Recorder()
    orchestrator = _orchestrator(host, vault, config, repo, _table("a"), recorder)
    run = (await orchestrator.provision("demo", {"site": "one"})).run

    cancelled = await orchestrator.cancel(run.run_id)

    assert cancelled.status == RunStatus.SUCCEEDED
    assert cancelled.cancel_requested is False


@pytest.mark.asyncio
async def test_ledger_conflict_fails_the_step(host, vault, config, repo, retry_delays):
    recorder = Recorder()
    table = _table("a", "b", resource_step=1)
    orchestrator = _orchestrator(host, vault, config, repo, table, recorder)
    await orchestrator.ledger.reserve(ResourceType.DOMAIN, "one", "someone-else")

    run = (await orchestrator.provision("demo", {"site": "one"})).run

    assert run.status == RunStatus.ROLLED_BACK
    assert run.error.kind == "LedgerConflict"
    assert run.step("b").status == StepStatus.FAILED
    # The resource belongs to another run, so it is not undone here.
    assert recorder.calls == ["a", "b", "undo-a"]
    entry = await orchestrator.ledger.lookup(ResourceType.DOMAIN, "one")
    assert entry.run_id == "someone-else"
