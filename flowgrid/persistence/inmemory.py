"""In-memory implementation of the run repository."""

from __future__ import annotations

from typing import Dict, List, Optional

from .models import ApprovalRequest, FlowRun, FlowStep
from .repository import RunRepository


class InMemoryRunRepository(RunRepository):
    """Store run state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, FlowRun] = {}
        self._steps: Dict[str, List[FlowStep]] = {}
        self._approvals: Dict[str, ApprovalRequest] = {}
        self._seq = 0

    # ------------------------------------------------------------------
    async def create_run(self, run: FlowRun) -> FlowRun:
        self._runs[run.id] = run.model_copy(deep=True)
        self._steps[run.id] = []
        return run

    async def update_run(self, run: FlowRun) -> None:
        if run.id in self._runs:
            self._runs[run.id] = run.model_copy(deep=True)

    async def get_run(
        self, run_id: str, tenant_id: Optional[str] = None
    ) -> FlowRun | None:
        run = self._runs.get(run_id)
        if run is None or (tenant_id is not None and run.tenant_id != tenant_id):
            return None
        return run.model_copy(deep=True)

    async def list_runs(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[FlowRun]:
        runs = [
            r
            for r in self._runs.values()
            if (tenant_id is None or r.tenant_id == tenant_id)
            and (status is None or r.status == status)
        ]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return [r.model_copy(deep=True) for r in runs[:limit]]

    async def delete_run(self, run_id: str, tenant_id: str) -> bool:
        run = self._runs.get(run_id)
        if run is None or run.tenant_id != tenant_id:
            return False
        del self._runs[run_id]
        self._steps.pop(run_id, None)
        for approval_id in [
            a.id for a in self._approvals.values() if a.run_id == run_id
        ]:
            del self._approvals[approval_id]
        return True

    # ------------------------------------------------------------------
    async def create_step(self, step: FlowStep) -> FlowStep:
        self._seq += 1
        step.seq = self._seq
        self._steps.setdefault(step.run_id, []).append(step.model_copy(deep=True))
        return step

    async def update_step(self, step: FlowStep) -> None:
        steps = self._steps.get(step.run_id, [])
        for index, existing in enumerate(steps):
            if existing.id == step.id:
                steps[index] = step.model_copy(deep=True)
                return

    async def get_steps(self, run_id: str) -> list[FlowStep]:
        return [s.model_copy(deep=True) for s in self._steps.get(run_id, [])]

    # ------------------------------------------------------------------
    async def create_approval(self, approval: ApprovalRequest) -> ApprovalRequest:
        self._approvals[approval.id] = approval.model_copy(deep=True)
        return approval

    async def update_approval(self, approval: ApprovalRequest) -> None:
        if approval.id in self._approvals:
            self._approvals[approval.id] = approval.model_copy(deep=True)

    async def get_approval(
        self, approval_id: str, tenant_id: Optional[str] = None
    ) -> ApprovalRequest | None:
        approval = self._approvals.get(approval_id)
        if approval is None or (
            tenant_id is not None and approval.tenant_id != tenant_id
        ):
            return None
        return approval.model_copy(deep=True)

    async def list_approvals(
        self, tenant_id: str, status: Optional[str] = None
    ) -> list[ApprovalRequest]:
        approvals = [
            a
            for a in self._approvals.values()
            if a.tenant_id == tenant_id and (status is None or a.status == status)
        ]
        approvals.sort(key=lambda a: a.requested_at, reverse=True)
        return [a.model_copy(deep=True) for a in approvals]
