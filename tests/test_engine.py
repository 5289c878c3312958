import asyncio

import pytest

from flowgrid.config import ApprovalConfig, EngineConfig, FlowgridConfig
from flowgrid.contracts import ApprovalStatus, RunStatus, StepStatus, TaskKind
from flowgrid.exceptions import (
    DefinitionError,
    EngineNotFound,
    InvalidTransition,
    NotPaused,
    WorkerInvocationError,
)
from flowgrid.persistence import FlowRun, InMemoryRunRepository

TENANT = "acme"

LINEAR_REPLIES = {
    '"_currentTask": "Write brief"': 'Brief ready.\n```json\n{"brief": "Spring launch"}\n```',
    "CURRENT TASK: Outline": '```json\n{"outline": "Teaser, then launch"}\n```',
    "CURRENT TASK: Summarize": '```json\n{"summary": "Two-phase launch"}\n```',
}


async def _steps_named(runner, run_id, name):
    detail = await runner.get_run(run_id, TENANT)
    return [s for s in detail.steps if s.name == name]


@pytest.mark.asyncio
async def test_linear_run_completes_with_merged_output(make_runner, scripted):
    reasoner = scripted(LINEAR_REPLIES)
    runner = make_runner(reasoner)

    run = await runner.start(TENANT, "linear", {"request": "Plan the spring launch"})
    assert run.status == RunStatus.RUNNING
    await runner.wait(run.id, timeout=5)

    detail = await runner.get_run(run.id, TENANT)
    assert detail.run.status == RunStatus.COMPLETED
    assert detail.run.completed_at is not None
    assert detail.run.output["brief"] == "Spring launch"
    assert detail.run.output["outline"] == "Teaser, then launch"
    assert detail.run.output["summary"] == "Two-phase launch"

    assert [s.name for s in detail.steps] == [
        "Request received",
        "Write brief",
        "Outline",
        "Summarize",
        "Done",
    ]
    assert all(s.status == StepStatus.COMPLETED for s in detail.steps)
    assert [s.seq for s in detail.steps] == sorted(s.seq for s in detail.steps)
    assert reasoner.routing_calls == []


@pytest.mark.asyncio
async def test_scoped_input_lists_missing_keys(make_runner, scripted):
    reasoner = scripted(LINEAR_REPLIES)
    runner = make_runner(reasoner)

    run = await runner.start(TENANT, "linear", {"request": "Plan the spring launch"})
    await runner.wait(run.id, timeout=5)

    (summary,) = await _steps_named(runner, run.id, "Summarize")
    assert summary.input["outline"] == "Teaser, then launch"
    assert summary.input["_missingInputs"] == ["budget"]
    prompt = next(p for p in reasoner.worker_calls if "CURRENT TASK: Summarize" in p)
    assert "not found in previous outputs: budget" in prompt
    assert "USER REQUEST:\nPlan the spring launch" in prompt


@pytest.mark.asyncio
async def test_unknown_process_is_rejected(make_runner):
    runner = make_runner()
    with pytest.raises(DefinitionError):
        await runner.start(TENANT, "does-not-exist", {})


@pytest.mark.asyncio
async def test_worker_failure_fails_run(make_runner, scripted):
    class FailingReasoner(scripted):
        async def complete(self, system_prompt, user_prompt, model=None):
            raise WorkerInvocationError("model unavailable", transient=False)

    runner = make_runner(FailingReasoner())
    run = await runner.start(TENANT, "linear", {"request": "x"})
    await runner.wait(run.id, timeout=5)

    detail = await runner.get_run(run.id, TENANT)
    assert detail.run.status == RunStatus.FAILED
    assert "model unavailable" in detail.run.error
    failed = [s for s in detail.steps if s.status == StepStatus.FAILED]
    assert [s.name for s in failed] == ["Write brief"]


@pytest.mark.asyncio
async def test_checkpoint_pauses_once_and_resume_completes(make_runner, scripted):
    runner = make_runner(scripted({"Review copy": "Looks on brand."}))
    run = await runner.start(TENANT, "approval", {"request": "Launch copy"})

    paused = await runner.wait_for_status(run.id, [RunStatus.PAUSED], timeout=5)
    assert paused.status == RunStatus.PAUSED

    approvals = await runner.list_approvals(TENANT)
    assert len(approvals) == 1
    approval = approvals[0]
    assert approval.status == ApprovalStatus.PENDING
    assert approval.title == "Review needed: Review copy"
    assert approval.description == "Looks on brand."
    assert approval.context["agentAnalysis"] == "Looks on brand."

    detail = await runner.get_run(run.id, TENANT)
    waiting = [s for s in detail.steps if s.status == StepStatus.WAITING_APPROVAL]
    assert len(waiting) == 1
    assert waiting[0].kind == TaskKind.HUMAN
    assert waiting[0].approval_id == approval.id

    resumed = await runner.resume(run.id, TENANT)
    assert resumed.status == RunStatus.RUNNING
    await runner.wait(run.id, timeout=5)

    detail = await runner.get_run(run.id, TENANT)
    assert detail.run.status == RunStatus.COMPLETED
    names = [s.name for s in detail.steps]
    assert "Publish" in names
    assert names.count("Review copy") == 1
    review = next(s for s in detail.steps if s.name == "Review copy")
    assert review.status == StepStatus.COMPLETED
    assert review.output["decision"] == "approved"
    assert not any(s.status == StepStatus.WAITING_APPROVAL for s in detail.steps)

    stored = await runner.repository.get_approval(approval.id)
    assert stored.status == ApprovalStatus.APPROVED
    assert stored.decision_comment == "Resumed"


@pytest.mark.asyncio
async def test_rejected_approval_routes_on_decision(make_runner):
    runner = make_runner()
    run = await runner.start(TENANT, "approval", {"request": "Launch copy"})
    await runner.wait_for_status(run.id, [RunStatus.PAUSED], timeout=5)
    (approval,) = await runner.list_approvals(TENANT, ApprovalStatus.PENDING)

    decided = await runner.resolve_approval(
        approval.id, TENANT, approved=False, decided_by="dana", comment="Off brand"
    )
    assert decided.status == ApprovalStatus.REJECTED
    await runner.wait(run.id, timeout=5)

    detail = await runner.get_run(run.id, TENANT)
    assert detail.run.status == RunStatus.COMPLETED
    assert "Publish" not in [s.name for s in detail.steps]
    gateway = next(s for s in detail.steps if s.name == "Approved?")
    assert gateway.output["flow"] == "Flow_Rework"

    with pytest.raises(NotPaused):
        await runner.resolve_approval(approval.id, TENANT, approved=True)


@pytest.mark.asyncio
async def test_resume_without_resident_engine(make_runner):
    repository = InMemoryRunRepository()
    runner = make_runner(repository=repository)
    run = FlowRun(tenant_id=TENANT, process_id="approval", status=RunStatus.PAUSED)
    await repository.create_run(run)

    with pytest.raises(EngineNotFound):
        await runner.resume(run.id, TENANT)


@pytest.mark.asyncio
async def test_resume_of_running_run_is_rejected(make_runner, scripted):
    gate = asyncio.Event()

    class GatedReasoner(scripted):
        async def complete(self, system_prompt, user_prompt, model=None):
            self.worker_calls.append(user_prompt)
            await gate.wait()
            return "Done."

    reasoner = GatedReasoner()
    runner = make_runner(reasoner)
    run = await runner.start(TENANT, "linear", {"request": "x"})
    while not reasoner.worker_calls:
        await asyncio.sleep(0.01)

    with pytest.raises(NotPaused):
        await runner.resume(run.id, TENANT)

    gate.set()
    await runner.wait(run.id, timeout=5)


@pytest.mark.asyncio
async def test_cancel_discards_in_flight_work(make_runner, scripted):
    gate = asyncio.Event()

    class GatedReasoner(scripted):
        async def complete(self, system_prompt, user_prompt, model=None):
            self.worker_calls.append(user_prompt)
            await gate.wait()
            return "Done."

    reasoner = GatedReasoner()
    runner = make_runner(reasoner)
    run = await runner.start(TENANT, "linear", {"request": "x"})
    while not reasoner.worker_calls:
        await asyncio.sleep(0.01)

    cancelled = await runner.cancel(run.id, TENANT)
    assert cancelled.status == RunStatus.CANCELLED

    gate.set()
    await runner.wait(run.id, timeout=5)

    detail = await runner.get_run(run.id, TENANT)
    assert detail.run.status == RunStatus.CANCELLED
    assert len(reasoner.worker_calls) == 1
    assert "Outline" not in [s.name for s in detail.steps]
    brief = next(s for s in detail.steps if s.name == "Write brief")
    assert brief.status == StepStatus.SKIPPED

    with pytest.raises(InvalidTransition):
        await runner.cancel(run.id, TENANT)


@pytest.mark.asyncio
async def test_cancel_paused_run_cancels_approval(make_runner):
    runner = make_runner()
    run = await runner.start(TENANT, "approval", {"request": "x"})
    await runner.wait_for_status(run.id, [RunStatus.PAUSED], timeout=5)

    await runner.cancel(run.id, TENANT)
    await runner.wait(run.id, timeout=5)

    detail = await runner.get_run(run.id, TENANT)
    assert detail.run.status == RunStatus.CANCELLED
    review = next(s for s in detail.steps if s.name == "Review copy")
    assert review.status == StepStatus.SKIPPED
    (approval,) = await runner.list_approvals(TENANT)
    assert approval.status == ApprovalStatus.CANCELLED


@pytest.mark.asyncio
async def test_iteration_guard_forces_happy_path(make_runner, scripted):
    reasoner = scripted(default_reply="Needs more work.")
    runner = make_runner(reasoner)

    run = await runner.start(TENANT, "loop", {"request": "Concept"})
    await runner.wait(run.id, timeout=5)

    detail = await runner.get_run(run.id, TENANT)
    assert detail.run.status == RunStatus.COMPLETED

    checks = [s for s in detail.steps if s.name == "Check concept"]
    assert [s.iteration for s in checks] == [1, 2, 3]
    assert checks[-1].output == {"note": "Forced after 3 iterations"}
    # The forced pass neither calls the worker nor asks the router again
    assert len(reasoner.worker_calls) == 2
    assert len(reasoner.routing_calls) == 2

    gateways = [s for s in detail.steps if s.name == "Quality ok?"]
    assert [g.output["flow"] for g in gateways] == ["Flow_Retry", "Flow_Retry", "Flow_Done"]


@pytest.mark.asyncio
async def test_unparseable_routing_answer_takes_last_flow(make_runner, scripted):
    reasoner = scripted(route_answers=["not sure"])
    runner = make_runner(reasoner)

    run = await runner.start(TENANT, "loop", {"request": "Concept"})
    await runner.wait(run.id, timeout=5)

    detail = await runner.get_run(run.id, TENANT)
    assert detail.run.status == RunStatus.COMPLETED
    assert len([s for s in detail.steps if s.name == "Check concept"]) == 1
    gateway = next(s for s in detail.steps if s.name == "Quality ok?")
    assert gateway.output["flow"] == "Flow_Done"


@pytest.mark.asyncio
async def test_parallel_branches_join_before_continuing(make_runner, scripted):
    reasoner = scripted(
        {
            '"_currentTask": "Write copy"': '```json\n{"copy": "Hello spring"}\n```',
            '"_currentTask": "Plan layout"': '```json\n{"layout": "Two columns"}\n```',
        }
    )
    runner = make_runner(reasoner)

    run = await runner.start(TENANT, "parallel", {"request": "Poster"})
    await runner.wait(run.id, timeout=5)

    detail = await runner.get_run(run.id, TENANT)
    assert detail.run.status == RunStatus.COMPLETED
    by_name = {s.name: s for s in detail.steps}
    assemble = by_name["Assemble"]
    assert assemble.seq > by_name["Write copy"].seq
    assert assemble.seq > by_name["Plan layout"].seq
    assert assemble.started_at >= by_name["Write copy"].completed_at
    assert assemble.started_at >= by_name["Plan layout"].completed_at
    assert "Task_Copy" in assemble.input and "Task_Layout" in assemble.input
    assert detail.run.output["copy"] == "Hello spring"
    assert detail.run.output["layout"] == "Two columns"
    assert len([s for s in detail.steps if s.name == "Assemble"]) == 1


@pytest.mark.asyncio
async def test_events_are_published_in_order(make_runner, scripted):
    gate = asyncio.Event()

    class GatedReasoner(scripted):
        async def complete(self, system_prompt, user_prompt, model=None):
            await gate.wait()
            return await super().complete(system_prompt, user_prompt, model)

    runner = make_runner(GatedReasoner(LINEAR_REPLIES))
    run = await runner.start(TENANT, "linear", {"request": "x"})

    events = []

    async def collect():
        async for event in runner.channel.subscribe(run.id, lifespan=5):
            events.append(event)

    collector = asyncio.create_task(collect())
    while runner.channel.subscriber_count(run.id) == 0:
        await asyncio.sleep(0.01)
    gate.set()
    await asyncio.wait_for(collector, 5)

    assert events[-1].type == "run.complete"
    assert events[-1].data["output"]["summary"] == "Two-phase launch"
    assert all(e.type == "step.update" for e in events[:-1])
    statuses = [(e.data["step"]["name"], e.data["step"]["status"]) for e in events[:-1]]
    assert ("Summarize", "completed") in statuses
    assert statuses.index(("Outline", "completed")) < statuses.index(
        ("Summarize", "running")
    )


@pytest.mark.asyncio
async def test_recover_rebuilds_paused_run(make_runner):
    repository = InMemoryRunRepository()
    first = make_runner(repository=repository)
    run = await first.start(TENANT, "approval", {"request": "Launch copy"})
    await first.wait_for_status(run.id, [RunStatus.PAUSED], timeout=5)

    # Simulate losing the process that held the engine
    first._engines[run.id].task.cancel()
    await asyncio.sleep(0)

    second = make_runner(repository=repository)
    with pytest.raises(EngineNotFound):
        await second.resume(run.id, TENANT)

    recovering = make_runner(
        config=FlowgridConfig(engine=EngineConfig(recover_on_resume=True)),
        repository=repository,
    )
    await recovering.resume(run.id, TENANT)
    await recovering.wait(run.id, timeout=5)

    detail = await recovering.get_run(run.id, TENANT)
    assert detail.run.status == RunStatus.COMPLETED
    assert "Publish" in [s.name for s in detail.steps]
    assert [s.name for s in detail.steps].count("Review copy") == 1


@pytest.mark.asyncio
async def test_reconcile_marks_orphaned_runs_failed(make_runner):
    repository = InMemoryRunRepository()
    runner = make_runner(repository=repository)
    orphan = FlowRun(tenant_id=TENANT, process_id="linear")
    paused = FlowRun(tenant_id=TENANT, process_id="approval", status=RunStatus.PAUSED)
    await repository.create_run(orphan)
    await repository.create_run(paused)

    assert await runner.reconcile_orphans() == [orphan.id]

    stored = await repository.get_run(orphan.id)
    assert stored.status == RunStatus.FAILED
    assert stored.error == "engine lost"
    assert (await repository.get_run(paused.id)).status == RunStatus.PAUSED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "on_timeout, expected_status, published",
    [
        ("approve", RunStatus.COMPLETED, True),
        ("reject", RunStatus.COMPLETED, False),
        ("fail", RunStatus.FAILED, False),
    ],
)
async def test_approval_timeout_policy(
    make_runner, on_timeout, expected_status, published
):
    config = FlowgridConfig(
        approval=ApprovalConfig(timeout_seconds=0.05, on_timeout=on_timeout)
    )
    runner = make_runner(config=config)
    run = await runner.start(TENANT, "approval", {"request": "x"})
    await runner.wait(run.id, timeout=5)

    detail = await runner.get_run(run.id, TENANT)
    assert detail.run.status == expected_status
    assert ("Publish" in [s.name for s in detail.steps]) is published
    (approval,) = await runner.list_approvals(TENANT)
    assert approval.status == ApprovalStatus.EXPIRED


@pytest.mark.asyncio
async def test_delete_run_removes_history(make_runner):
    runner = make_runner()
    run = await runner.start(TENANT, "approval", {"request": "x"})
    await runner.wait_for_status(run.id, [RunStatus.PAUSED], timeout=5)

    await runner.delete_run(run.id, TENANT)

    assert await runner.repository.get_run(run.id) is None
    assert await runner.repository.get_steps(run.id) == []
    assert await runner.list_approvals(TENANT) == []


@pytest.mark.asyncio
async def test_failed_branch_closes_sibling_steps(make_runner, scripted):
    layout_started = asyncio.Event()
    never = asyncio.Event()

    class SplitReasoner(scripted):
        async def complete(self, system_prompt, user_prompt, model=None):
            if '"_currentTask": "Plan layout"' in user_prompt:
                layout_started.set()
                await never.wait()
            if '"_currentTask": "Write copy"' in user_prompt:
                await layout_started.wait()
                raise WorkerInvocationError("copy service down", status_code=400)
            return await super().complete(system_prompt, user_prompt, model)

    runner = make_runner(SplitReasoner())
    run = await runner.start(TENANT, "parallel", {"request": "Poster"})
    await runner.wait(run.id, timeout=5)

    detail = await runner.get_run(run.id, TENANT)
    assert detail.run.status == RunStatus.FAILED
    assert "copy service down" in detail.run.error
    by_name = {s.name: s for s in detail.steps}
    assert by_name["Write copy"].status == StepStatus.FAILED
    layout = by_name["Plan layout"]
    assert layout.status == StepStatus.SKIPPED
    assert layout.error == "Parallel branch aborted"
    assert layout.completed_at is not None
    assert "Assemble" not in by_name
    assert not [s for s in detail.steps if not s.status.is_terminal]


async def _next_checkpoint(runner, run_id, seen, attempts=500):
    for _ in range(attempts):
        pending = [
            a
            for a in await runner.list_approvals(TENANT, ApprovalStatus.PENDING)
            if a.run_id == run_id and a.id not in seen
        ]
        detail = await runner.get_run(run_id, TENANT)
        waiting = [s for s in detail.steps if s.status == StepStatus.WAITING_APPROVAL]
        if pending and waiting and waiting[0].approval_id == pending[0].id:
            return detail, pending, waiting
        await asyncio.sleep(0.01)
    raise AssertionError(f"run {run_id} never reached a new checkpoint")


@pytest.mark.asyncio
async def test_parallel_checkpoints_pause_one_at_a_time(make_runner, scripted):
    runner = make_runner(scripted())
    run = await runner.start(TENANT, "parallel_review", {"request": "Launch copy"})
    await runner.wait_for_status(run.id, [RunStatus.PAUSED], timeout=5)

    detail, pending, waiting = await _next_checkpoint(runner, run.id, set())
    assert detail.run.status == RunStatus.PAUSED
    assert len(pending) == 1
    assert len(waiting) == 1
    first = waiting[0].name
    assert first in ("Legal review", "Brand review")

    await runner.resolve_approval(pending[0].id, TENANT, approved=True, decided_by="dana")

    detail, again, waiting = await _next_checkpoint(runner, run.id, {pending[0].id})
    assert detail.run.status == RunStatus.PAUSED
    assert len(again) == 1
    assert len(waiting) == 1
    assert waiting[0].name != first
    assert waiting[0].name in ("Legal review", "Brand review")
    done = next(s for s in detail.steps if s.name == first)
    assert done.status == StepStatus.COMPLETED

    await runner.resolve_approval(again[0].id, TENANT, approved=True, decided_by="dana")
    await runner.wait(run.id, timeout=5)

    detail = await runner.get_run(run.id, TENANT)
    assert detail.run.status == RunStatus.COMPLETED
    by_name = {s.name: s for s in detail.steps}
    assert by_name["Legal review"].status == StepStatus.COMPLETED
    assert by_name["Brand review"].status == StepStatus.COMPLETED
    assert by_name["Publish"].status == StepStatus.COMPLETED
    assert await runner.list_approvals(TENANT, ApprovalStatus.PENDING) == []
