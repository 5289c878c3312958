import asyncio

import pytest
from typer.testing import CliRunner

import flowgrid.cli as cli
from flowgrid.cli import app
from flowgrid.contracts import ApprovalStatus, RunStatus
from flowgrid.persistence import FlowRun, InMemoryRunRepository


@pytest.fixture
def repo(monkeypatch, make_runner, scripted):
    repo = InMemoryRunRepository()
    reasoner = scripted()
    monkeypatch.setattr(
        cli,
        "_build_runner",
        lambda config: make_runner(reasoner, config=config, repository=repo),
    )
    return repo


def _run_id(output: str) -> str:
    line = next(l for l in output.splitlines() if l.startswith("Started run "))
    return line.split()[-1]


def test_run_start_completes_linear_process(repo):
    runner = CliRunner()
    result = runner.invoke(
        app, ["run", "start", "linear", "--input", '{"request": "Spring"}', "-t", "acme"]
    )
    assert result.exit_code == 0, result.output
    run_id = _run_id(result.output)
    assert f"Run {run_id}: completed" in result.output

    stored = asyncio.run(repo.get_run(run_id, "acme"))
    assert stored.status == RunStatus.COMPLETED
    assert stored.input == {"request": "Spring"}


@pytest.mark.parametrize("payload", ["{not json", "[1, 2]"])
def test_run_start_rejects_bad_input(repo, payload):
    result = CliRunner().invoke(app, ["run", "start", "linear", "--input", payload])
    assert result.exit_code == 1
    assert asyncio.run(repo.list_runs()) == []


def test_run_start_unknown_process(repo):
    result = CliRunner().invoke(app, ["run", "start", "ghost"])
    assert result.exit_code == 1
    assert "Error: Unknown process 'ghost'" in result.output


def test_run_list_and_show(repo):
    done = FlowRun(tenant_id="acme", process_id="linear", status=RunStatus.COMPLETED)
    failed = FlowRun(
        tenant_id="acme", process_id="loop", status=RunStatus.FAILED, error="boom"
    )
    asyncio.run(repo.create_run(done))
    asyncio.run(repo.create_run(failed))

    runner = CliRunner()
    result = runner.invoke(app, ["run", "list", "--tenant", "acme"])
    assert result.exit_code == 0
    assert f"{done.id}\tlinear\tcompleted" in result.output
    assert f"{failed.id}\tloop\tfailed" in result.output

    filtered = runner.invoke(app, ["run", "list", "-t", "acme", "--status", "failed"])
    assert done.id not in filtered.output

    empty = runner.invoke(app, ["run", "list", "-t", "globex"])
    assert "No runs found" in empty.output

    shown = runner.invoke(app, ["run", "show", failed.id, "-t", "acme"])
    assert shown.exit_code == 0
    assert f"Run {failed.id}: failed" in shown.output
    assert "Error: boom" in shown.output

    missing = runner.invoke(app, ["run", "show", "missing-id", "-t", "acme"])
    assert missing.exit_code == 1
    assert "Error:" in missing.output


def test_approval_resolve_recovers_paused_run(repo):
    runner = CliRunner()
    started = runner.invoke(app, ["run", "start", "approval", "-t", "acme"])
    assert started.exit_code == 0, started.output
    run_id = _run_id(started.output)
    assert f"Run {run_id}: paused" in started.output
    assert "--recover" in started.output

    listed = runner.invoke(app, ["approval", "list", "-t", "acme"])
    approval_id = listed.output.split("\t")[0]
    assert run_id in listed.output

    lost = runner.invoke(app, ["approval", "resolve", approval_id, "-t", "acme"])
    assert lost.exit_code == 1
    assert "not found" in lost.output

    resolved = runner.invoke(
        app,
        ["approval", "resolve", approval_id, "-t", "acme", "--by", "dana", "--recover"],
    )
    assert resolved.exit_code == 0, resolved.output
    assert f"Approval {approval_id}: approved" in resolved.output
    assert f"Run {run_id}: completed" in resolved.output

    approval = asyncio.run(repo.get_approval(approval_id))
    assert approval.status == ApprovalStatus.APPROVED
    assert approval.decided_by == "dana"
    assert "No approvals found" in runner.invoke(
        app, ["approval", "list", "-t", "acme"]
    ).output


def test_run_cancel_and_delete(repo):
    paused = FlowRun(tenant_id="acme", process_id="approval", status=RunStatus.PAUSED)
    asyncio.run(repo.create_run(paused))

    runner = CliRunner()
    cancelled = runner.invoke(app, ["run", "cancel", paused.id, "-t", "acme"])
    assert cancelled.exit_code == 0
    assert f"Run {paused.id}: cancelled" in cancelled.output

    again = runner.invoke(app, ["run", "cancel", paused.id, "-t", "acme"])
    assert again.exit_code == 1

    deleted = runner.invoke(app, ["run", "delete", paused.id, "-t", "acme"])
    assert deleted.exit_code == 0
    assert f"Deleted run {paused.id}" in deleted.output
    assert asyncio.run(repo.get_run(paused.id)) is None
