"""Repository abstraction for run state persistence."""

from __future__ import annotations

from typing import Optional, Protocol

from .models import ApprovalRequest, FlowRun, FlowStep


class RunRepository(Protocol):
    """Protocol for run state persistence backends.

    Implementations raise ``PersistenceError`` when the backend fails.
    """

    async def create_run(self, run: FlowRun) -> FlowRun:
        """Persist a new run."""

    async def update_run(self, run: FlowRun) -> None:
        """Persist status, output, error, state and completion time of a run."""

    async def get_run(
        self, run_id: str, tenant_id: Optional[str] = None
    ) -> FlowRun | None:
        """Retrieve a run by id, scoped to ``tenant_id`` when given."""

    async def list_runs(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[FlowRun]:
        """Return runs, newest first."""

    async def delete_run(self, run_id: str, tenant_id: str) -> bool:
        """Delete a run with its steps and approvals. Returns ``False`` if absent."""

    async def create_step(self, step: FlowStep) -> FlowStep:
        """Append a step to a run's history; assigns ``seq``."""

    async def update_step(self, step: FlowStep) -> None:
        """Persist the mutable fields of a step."""

    async def get_steps(self, run_id: str) -> list[FlowStep]:
        """Return a run's steps in insertion order."""

    async def create_approval(self, approval: ApprovalRequest) -> ApprovalRequest:
        """Persist a new approval request."""

    async def update_approval(self, approval: ApprovalRequest) -> None:
        """Persist the decision fields of an approval request."""

    async def get_approval(
        self, approval_id: str, tenant_id: Optional[str] = None
    ) -> ApprovalRequest | None:
        """Retrieve an approval request by id."""

    async def list_approvals(
        self, tenant_id: str, status: Optional[str] = None
    ) -> list[ApprovalRequest]:
        """Return approval requests for a tenant, newest first."""
