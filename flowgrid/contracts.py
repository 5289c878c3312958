"""Core contracts shared across the flowgrid runtime."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskKind(str, Enum):
    SERVICE = "service"
    HUMAN = "human"
    GATEWAY = "gateway"
    START = "start"
    END = "end"
    INTERMEDIATE_EVENT = "intermediateEvent"


class RunStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
)

# Legal run status changes. Anything else raises ``InvalidTransition``.
RUN_TRANSITIONS: Dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.RUNNING: frozenset(
        {
            RunStatus.RUNNING,
            RunStatus.PAUSED,
            RunStatus.COMPLETED,
            RunStatus.FAILED,
            RunStatus.CANCELLED,
        }
    ),
    RunStatus.PAUSED: frozenset(
        {RunStatus.RUNNING, RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
    ),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED)


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class WorkerRef(BaseModel):
    """A worker ("agent") able to execute tasks.

    Owned by the worker registry; the runtime only reads it.
    """

    id: str
    name: str
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    purpose: Optional[str] = None
    role: Optional[str] = None

    @property
    def is_orchestrator(self) -> bool:
        return (self.role or "").lower() == "orchestrator"

    def instructions(self) -> str:
        return (
            self.system_prompt
            or self.purpose
            or f"You are {self.name}. Process the input and provide your output."
        )


class TaskDataContract(BaseModel):
    """Declared inputs and outputs of a task, parsed from its documentation."""

    version: int = 1
    input_keys: List[str] = Field(default_factory=list)
    output_keys: List[str] = Field(default_factory=list)
    worker_name: str = ""
    skill_name: str = ""


class ScopedContext(BaseModel):
    """What a worker sees when its task declares a data contract."""

    task_name: str
    skill_name: str = ""
    worker_name: str = ""
    scoped_input: Dict[str, Any] = Field(default_factory=dict)
    flow_summary: str = ""
    original_request: str = ""
    output_keys: List[str] = Field(default_factory=list)


class GeneratedImage(BaseModel):
    url: str
    prompt: str
    theme: str


class ExecutionResult(BaseModel):
    """Outcome of one worker invocation."""

    success: bool
    output: str = ""
    error: Optional[str] = None
    images: List[GeneratedImage] = Field(default_factory=list)


class RunEvent(BaseModel):
    """Event published on the live channel for a run."""

    type: str  # init, step.update, run.complete, run.error
    run_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "RunEvent":
        return cls.model_validate_json(data)

    @property
    def is_final(self) -> bool:
        return self.type in ("run.complete", "run.error")
