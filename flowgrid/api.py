"""HTTP API for starting, inspecting and steering runs.

The ``X-Tenant-ID`` header selects the tenant on every request. Live
progress is served as Server-Sent Events: an ``init`` event with the stored
run first, then every event published for the run until it ends or the
client disconnects.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from . import __version__
from .contracts import ApprovalStatus, RunEvent, RunStatus
from .engine import FlowRunner
from .exceptions import (
    ApprovalNotFound,
    DefinitionError,
    EngineNotFound,
    FlowgridError,
    InvalidTransition,
    NotPaused,
    PersistenceError,
    RunNotFound,
)
from .persistence import RunDetail

logger = logging.getLogger(__name__)

router = APIRouter()


class StartRunRequest(BaseModel):
    """Request body for starting a run."""

    process_id: str
    input: Dict[str, Any] = Field(default_factory=dict)
    worker_override: Optional[str] = None


class ResolveApprovalRequest(BaseModel):
    """Request body for deciding an approval request."""

    approved: bool
    decided_by: Optional[str] = None
    comment: Optional[str] = None


def get_runner(request: Request) -> FlowRunner:
    return request.app.state.runner


def get_tenant(x_tenant_id: Optional[str] = Header(default=None)) -> str:
    if not x_tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")
    return x_tenant_id


def _status_for(exc: FlowgridError) -> int:
    if isinstance(exc, (RunNotFound, ApprovalNotFound)):
        return 404
    if isinstance(exc, (EngineNotFound, NotPaused, InvalidTransition)):
        return 409
    if isinstance(exc, DefinitionError):
        return 400
    if isinstance(exc, PersistenceError):
        return 503
    return 500


def _sse(event: RunEvent) -> str:
    return f"data: {event.to_json()}\n\n"


def _init_event(detail: RunDetail) -> RunEvent:
    return RunEvent(
        type="init",
        run_id=detail.run.id,
        data={
            "run": detail.run.summary(),
            "steps": [step.model_dump(mode="json") for step in detail.steps],
        },
    )


def _final_event(detail: RunDetail) -> RunEvent:
    """The closing event of a run that already ended."""
    run = detail.run
    return RunEvent(
        type="run.complete" if run.status == RunStatus.COMPLETED else "run.error",
        run_id=run.id,
        data={"status": run.status.value, "error": run.error},
    )


@router.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok", "version": __version__}


@router.post("/runs", status_code=201)
async def start_run(
    body: StartRunRequest,
    tenant_id: str = Depends(get_tenant),
    runner: FlowRunner = Depends(get_runner),
) -> Dict[str, Any]:
    run = await runner.start(
        tenant_id, body.process_id, body.input, worker_override=body.worker_override
    )
    return {
        "run_id": run.id,
        "status": run.status.value,
        "started_at": run.started_at.isoformat(),
    }


@router.get("/runs")
async def list_runs(
    status: Optional[RunStatus] = None,
    tenant_id: str = Depends(get_tenant),
    runner: FlowRunner = Depends(get_runner),
) -> Dict[str, Any]:
    runs = await runner.list_runs(tenant_id, status)
    return {"data": [run.summary() for run in runs]}


@router.get("/runs/{run_id}")
async def get_run(
    run_id: str,
    tenant_id: str = Depends(get_tenant),
    runner: FlowRunner = Depends(get_runner),
) -> Dict[str, Any]:
    detail = await runner.get_run(run_id, tenant_id)
    return {
        "run": detail.run.summary(),
        "steps": [step.model_dump(mode="json") for step in detail.steps],
    }


@router.get("/runs/{run_id}/live")
async def live_run(
    run_id: str,
    tenant_id: str = Depends(get_tenant),
    runner: FlowRunner = Depends(get_runner),
) -> StreamingResponse:
    """SSE stream of a run's events, starting with its stored state."""
    # Unknown runs are rejected before the stream starts
    await runner.get_run(run_id, tenant_id)

    async def stream() -> AsyncGenerator[str, None]:
        async with runner.channel.subscription(run_id) as events:
            # Read after subscribing so nothing published in between is lost
            detail = await runner.get_run(run_id, tenant_id)
            yield _sse(_init_event(detail))
            if detail.run.status.is_terminal:
                yield _sse(_final_event(detail))
                return
            async for event in events:
                yield _sse(event)

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/runs/{run_id}/resume")
async def resume_run(
    run_id: str,
    tenant_id: str = Depends(get_tenant),
    runner: FlowRunner = Depends(get_runner),
) -> Dict[str, Any]:
    run = await runner.resume(run_id, tenant_id)
    return {"run_id": run.id, "status": run.status.value}


@router.post("/runs/{run_id}/cancel")
async def cancel_run(
    run_id: str,
    tenant_id: str = Depends(get_tenant),
    runner: FlowRunner = Depends(get_runner),
) -> Dict[str, Any]:
    run = await runner.cancel(run_id, tenant_id)
    return {"run_id": run.id, "status": run.status.value}


@router.delete("/runs/{run_id}")
async def delete_run(
    run_id: str,
    tenant_id: str = Depends(get_tenant),
    runner: FlowRunner = Depends(get_runner),
) -> Dict[str, Any]:
    await runner.delete_run(run_id, tenant_id)
    return {"run_id": run_id, "deleted": True}


@router.get("/approvals")
async def list_approvals(
    status: Optional[ApprovalStatus] = None,
    tenant_id: str = Depends(get_tenant),
    runner: FlowRunner = Depends(get_runner),
) -> Dict[str, Any]:
    approvals = await runner.list_approvals(tenant_id, status)
    return {"data": [a.model_dump(mode="json") for a in approvals]}


@router.post("/approvals/{approval_id}/resolve")
async def resolve_approval(
    approval_id: str,
    body: ResolveApprovalRequest,
    tenant_id: str = Depends(get_tenant),
    runner: FlowRunner = Depends(get_runner),
) -> Dict[str, Any]:
    approval = await runner.resolve_approval(
        approval_id,
        tenant_id,
        approved=body.approved,
        decided_by=body.decided_by,
        comment=body.comment,
    )
    return approval.model_dump(mode="json")


def create_app(runner: FlowRunner) -> FastAPI:
    """Create the FastAPI application serving ``runner``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await runner.reconcile_orphans()
        yield
        await runner.channel.disconnect()

    app = FastAPI(title="flowgrid", version=__version__, lifespan=lifespan)
    app.state.runner = runner
    app.include_router(router)

    @app.exception_handler(FlowgridError)
    async def flowgrid_error_handler(request: Request, exc: FlowgridError) -> JSONResponse:
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            status_code=status_code,
            content={
                "error": {
                    "code": status_code,
                    "message": str(exc),
                    "type": exc.__class__.__name__,
                }
            },
        )

    return app


__all__ = ["create_app", "router"]
