"""Data models for persisted run state."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import ApprovalStatus, RunStatus, StepStatus, TaskKind, utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class FlowRun(BaseModel):
    """One execution of a process definition."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    process_id: str
    status: RunStatus = RunStatus.RUNNING
    input: dict[str, Any] = Field(default_factory=dict)
    output: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    # Snapshot of the engine's flow state, used to rebuild a paused run
    state: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def summary(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"state"})


class FlowStep(BaseModel):
    """Record of a single task execution within a run."""

    id: str = Field(default_factory=new_id)
    run_id: str
    task_id: str
    name: str
    kind: TaskKind
    status: StepStatus = StepStatus.PENDING
    iteration: int = 1
    worker_id: Optional[str] = None
    worker_name: Optional[str] = None
    input: Optional[dict[str, Any]] = None
    output: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    approval_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    seq: Optional[int] = None


class ApprovalRequest(BaseModel):
    """A pending human decision linked to exactly one step."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    run_id: str
    step_id: str
    title: str
    description: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)
    urgency: str = "normal"
    status: ApprovalStatus = ApprovalStatus.PENDING
    decided_by: Optional[str] = None
    decision_comment: Optional[str] = None
    requested_at: datetime = Field(default_factory=utcnow)
    decided_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class RunDetail(BaseModel):
    """A run together with its ordered step history."""

    run: FlowRun
    steps: list[FlowStep] = Field(default_factory=list)
