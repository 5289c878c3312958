"""Command line interface for flowgrid runs."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Optional

import typer

from .config import FlowgridConfig, load_config
from .contracts import ApprovalStatus, RunStatus
from .engine import FlowRunner
from .exceptions import FlowgridError
from .registry import load_catalog

app = typer.Typer(help="CLI for flowgrid process runs")

# Command groups
run_app = typer.Typer(help="Commands for managing runs")
approval_app = typer.Typer(help="Commands for managing approval requests")

app.add_typer(run_app, name="run")
app.add_typer(approval_app, name="approval")

TenantOption = typer.Option("default", "--tenant", "-t", envvar="FLOWGRID_TENANT")

_SETTLED = {
    RunStatus.PAUSED,
    RunStatus.COMPLETED,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
}


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to a flowgrid YAML config file"
    ),
) -> None:
    """flowgrid CLI entry point."""
    ctx.obj = load_config(str(config) if config else None)


def _config(ctx: typer.Context) -> FlowgridConfig:
    return ctx.obj if isinstance(ctx.obj, FlowgridConfig) else load_config()


def _build_runner(config: FlowgridConfig) -> FlowRunner:
    return FlowRunner.from_config(load_catalog(config.catalog_path), config)


def _call(coro: Awaitable[Any]) -> Any:
    """Run ``coro`` and turn flowgrid errors into a red message and exit code 1."""
    try:
        return asyncio.run(coro)
    except FlowgridError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_settled(run_id: str, status: RunStatus) -> None:
    typer.echo(f"Run {run_id}: {status.value}")
    if status == RunStatus.PAUSED:
        typer.echo(
            f"Waiting for approval. Resolve it with "
            f"'flowgrid approval resolve <id> --recover' or "
            f"'flowgrid run resume {run_id} --recover'"
        )


async def _drive_until_settled(
    runner: FlowRunner, run_id: str, timeout: float
) -> RunStatus:
    run = await runner.wait_for_status(run_id, _SETTLED, timeout=timeout)
    return run.status


@run_app.command("start")
def run_start(
    ctx: typer.Context,
    process_id: str,
    input_json: str = typer.Option("{}", "--input", "-i", help="Run input as JSON"),
    worker: Optional[str] = typer.Option(
        None, "--worker", help="Worker id to use for every task"
    ),
    tenant: str = TenantOption,
    timeout: float = typer.Option(600.0, help="Seconds to wait for the run to settle"),
) -> None:
    """
    Start a run of a process and drive it until it completes or pauses.

    The run executes in this process. When it reaches a human checkpoint the
    command returns with the run paused; resolving the approval later
    recovers the run from the store.

    Example:
        flowgrid run start design-review --input '{"brief": "Spring campaign"}'
    """
    try:
        input_data = json.loads(input_json)
    except json.JSONDecodeError as e:
        typer.secho(f"Invalid --input JSON: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(input_data, dict):
        typer.secho("--input must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    runner = _build_runner(_config(ctx))

    async def _start() -> tuple[str, RunStatus]:
        run = await runner.start(tenant, process_id, input_data, worker_override=worker)
        typer.echo(f"Started run {run.id}")
        return run.id, await _drive_until_settled(runner, run.id, timeout)

    run_id, status = _call(_start())
    _echo_settled(run_id, status)
    if status == RunStatus.FAILED:
        raise typer.Exit(code=1)


@run_app.command("list")
def run_list(
    ctx: typer.Context,
    status: Optional[RunStatus] = typer.Option(None, help="Only runs in this status"),
    tenant: str = TenantOption,
) -> None:
    """List runs with their current status."""
    runner = _build_runner(_config(ctx))
    runs = _call(runner.list_runs(tenant, status))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.process_id}\t{run.status.value}")


@run_app.command("show")
def run_show(ctx: typer.Context, run_id: str, tenant: str = TenantOption) -> None:
    """
    Show a run with its step history.

    Example:
        flowgrid run show 3f1c...
        # Output: Run 3f1c...: completed
        #         - Draft brief [service] completed (worker: writer)
    """
    runner = _build_runner(_config(ctx))
    detail = _call(runner.get_run(run_id, tenant))
    run = detail.run
    typer.echo(f"Run {run.id}: {run.status.value}")
    typer.echo(f"Process: {run.process_id}")
    if run.error:
        typer.echo(f"Error: {run.error}")
    if run.output is not None:
        typer.echo(f"Output: {json.dumps(run.output, default=str)}")
    for step in detail.steps:
        worker = f" (worker: {step.worker_name})" if step.worker_name else ""
        typer.echo(f"- {step.name} [{step.kind.value}] {step.status.value}{worker}")


@run_app.command("resume")
def run_resume(
    ctx: typer.Context,
    run_id: str,
    tenant: str = TenantOption,
    recover: bool = typer.Option(
        False, help="Rebuild the run's engine from the store if it is not resident"
    ),
    timeout: float = typer.Option(600.0, help="Seconds to wait for the run to settle"),
) -> None:
    """Approve the pending checkpoint of a paused run and continue it."""
    config = _config(ctx).model_copy(deep=True)
    config.engine.recover_on_resume = recover
    runner = _build_runner(config)

    async def _resume() -> RunStatus:
        await runner.resume(run_id, tenant)
        return await _drive_until_settled(runner, run_id, timeout)

    status = _call(_resume())
    _echo_settled(run_id, status)


@run_app.command("cancel")
def run_cancel(ctx: typer.Context, run_id: str, tenant: str = TenantOption) -> None:
    """Cancel a run that has not finished yet."""
    runner = _build_runner(_config(ctx))
    run = _call(runner.cancel(run_id, tenant))
    typer.echo(f"Run {run.id}: {run.status.value}")


@run_app.command("delete")
def run_delete(ctx: typer.Context, run_id: str, tenant: str = TenantOption) -> None:
    """Delete a run together with its steps and approvals."""
    runner = _build_runner(_config(ctx))
    _call(runner.delete_run(run_id, tenant))
    typer.echo(f"Deleted run {run_id}")


@approval_app.command("list")
def approval_list(
    ctx: typer.Context,
    status: Optional[ApprovalStatus] = typer.Option(
        ApprovalStatus.PENDING, help="Only approvals in this status"
    ),
    tenant: str = TenantOption,
) -> None:
    """List approval requests."""
    runner = _build_runner(_config(ctx))
    approvals = _call(runner.list_approvals(tenant, status))
    if not approvals:
        typer.echo("No approvals found")
        return
    for approval in approvals:
        typer.echo(
            f"{approval.id}\t{approval.run_id}\t{approval.status.value}\t{approval.title}"
        )


@approval_app.command("resolve")
def approval_resolve(
    ctx: typer.Context,
    approval_id: str,
    approve: bool = typer.Option(True, "--approve/--reject"),
    decided_by: Optional[str] = typer.Option(None, "--by"),
    comment: Optional[str] = typer.Option(None),
    tenant: str = TenantOption,
    recover: bool = typer.Option(
        False, help="Rebuild the run's engine from the store if it is not resident"
    ),
    timeout: float = typer.Option(600.0, help="Seconds to wait for the run to settle"),
) -> None:
    """Approve or reject a pending approval and continue its run."""
    config = _config(ctx).model_copy(deep=True)
    config.engine.recover_on_resume = recover
    runner = _build_runner(config)

    async def _resolve() -> tuple[str, RunStatus]:
        approval = await runner.resolve_approval(
            approval_id, tenant, approve, decided_by=decided_by, comment=comment
        )
        typer.echo(f"Approval {approval.id}: {approval.status.value}")
        return approval.run_id, await _drive_until_settled(
            runner, approval.run_id, timeout
        )

    run_id, status = _call(_resolve())
    _echo_settled(run_id, status)


@app.command("serve")
def serve(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1"),
    port: int = typer.Option(8000),
) -> None:
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    from .api import create_app

    runner = _build_runner(_config(ctx))
    uvicorn.run(create_app(runner), host=host, port=port)


if __name__ == "__main__":
    app()
