"""PostgreSQL implementation of the run repository."""

from __future__ import annotations

import json
from typing import Any, Optional

import asyncpg

from ..exceptions import PersistenceError
from .models import ApprovalRequest, FlowRun, FlowStep
from .repository import RunRepository

_RUN_COLUMNS = "id, tenant_id, process_id, status, input, output, error, state, started_at, completed_at"
_STEP_COLUMNS = (
    "id, run_id, task_id, name, kind, status, iteration, worker_id, worker_name, "
    "input, output, error, approval_id, started_at, completed_at, seq"
)
_APPROVAL_COLUMNS = (
    "id, tenant_id, run_id, step_id, title, description, context, urgency, status, "
    "decided_by, decision_comment, requested_at, decided_at, expires_at"
)


class PostgresRunRepository(RunRepository):
    """Persist run state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
            await conn.set_type_codec(
                "jsonb",
                encoder=lambda v: json.dumps(v, default=str),
                decoder=json.loads,
                schema="pg_catalog",
            )
            if not self._initialized:
                await self._ensure_schema(conn)
                self._initialized = True
        except (OSError, asyncpg.PostgresError) as e:
            raise PersistenceError(f"PostgreSQL connection failed: {e}") from e
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flow_runs (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                process_id TEXT NOT NULL,
                status TEXT NOT NULL,
                input JSONB,
                output JSONB,
                error TEXT,
                state JSONB,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flow_steps (
                seq SERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                run_id TEXT NOT NULL REFERENCES flow_runs(id) ON DELETE CASCADE,
                task_id TEXT NOT NULL,
                name TEXT NOT NULL,
                kind TEXT NOT NULL,
                status TEXT NOT NULL,
                iteration INTEGER NOT NULL,
                worker_id TEXT,
                worker_name TEXT,
                input JSONB,
                output JSONB,
                error TEXT,
                approval_id TEXT,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS approval_requests (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                run_id TEXT NOT NULL REFERENCES flow_runs(id) ON DELETE CASCADE,
                step_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                context JSONB,
                urgency TEXT NOT NULL,
                status TEXT NOT NULL,
                decided_by TEXT,
                decision_comment TEXT,
                requested_at TIMESTAMPTZ NOT NULL,
                decided_at TIMESTAMPTZ,
                expires_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_flow_runs_tenant ON flow_runs(tenant_id)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_flow_steps_run ON flow_steps(run_id)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_approvals_status ON approval_requests(tenant_id, status)"
        )

    async def _execute(self, query: str, *params: Any) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(query, *params)
        except asyncpg.PostgresError as e:
            raise PersistenceError(f"PostgreSQL write failed: {e}") from e
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        except asyncpg.PostgresError as e:
            raise PersistenceError(f"PostgreSQL read failed: {e}") from e
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        rows = await self._fetch(query, *params)
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    async def create_run(self, run: FlowRun) -> FlowRun:
        await self._execute(
            f"INSERT INTO flow_runs ({_RUN_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)",
            run.id,
            run.tenant_id,
            run.process_id,
            run.status.value,
            run.input,
            run.output,
            run.error,
            run.state,
            run.started_at,
            run.completed_at,
        )
        return run

    async def update_run(self, run: FlowRun) -> None:
        await self._execute(
            """
            UPDATE flow_runs
            SET status = $1, output = $2, error = $3, state = $4, completed_at = $5
            WHERE id = $6
            """,
            run.status.value,
            run.output,
            run.error,
            run.state,
            run.completed_at,
            run.id,
        )

    async def get_run(
        self, run_id: str, tenant_id: Optional[str] = None
    ) -> FlowRun | None:
        if tenant_id is None:
            row = await self._fetchrow(
                f"SELECT {_RUN_COLUMNS} FROM flow_runs WHERE id = $1", run_id
            )
        else:
            row = await self._fetchrow(
                f"SELECT {_RUN_COLUMNS} FROM flow_runs WHERE id = $1 AND tenant_id = $2",
                run_id,
                tenant_id,
            )
        return FlowRun(**dict(row)) if row else None

    async def list_runs(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[FlowRun]:
        clauses: list[str] = []
        params: list[Any] = []
        if tenant_id is not None:
            params.append(tenant_id)
            clauses.append(f"tenant_id = ${len(params)}")
        if status is not None:
            params.append(getattr(status, "value", status))
            clauses.append(f"status = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        rows = await self._fetch(
            f"SELECT {_RUN_COLUMNS} FROM flow_runs {where} "
            f"ORDER BY started_at DESC LIMIT ${len(params)}",
            *params,
        )
        return [FlowRun(**dict(r)) for r in rows]

    async def delete_run(self, run_id: str, tenant_id: str) -> bool:
        result = await self._execute(
            "DELETE FROM flow_runs WHERE id = $1 AND tenant_id = $2", run_id, tenant_id
        )
        # Steps and approvals go with the run through ON DELETE CASCADE
        return result.endswith(" 1")

    # ------------------------------------------------------------------
    async def create_step(self, step: FlowStep) -> FlowStep:
        row = await self._fetchrow(
            """
            INSERT INTO flow_steps (
                id, run_id, task_id, name, kind, status, iteration, worker_id,
                worker_name, input, output, error, approval_id, started_at, completed_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
            RETURNING seq
            """,
            step.id,
            step.run_id,
            step.task_id,
            step.name,
            step.kind.value,
            step.status.value,
            step.iteration,
            step.worker_id,
            step.worker_name,
            step.input,
            step.output,
            step.error,
            step.approval_id,
            step.started_at,
            step.completed_at,
        )
        step.seq = row["seq"] if row else None
        return step

    async def update_step(self, step: FlowStep) -> None:
        await self._execute(
            """
            UPDATE flow_steps
            SET status = $1, input = $2, output = $3, error = $4, approval_id = $5,
                started_at = $6, completed_at = $7
            WHERE id = $8
            """,
            step.status.value,
            step.input,
            step.output,
            step.error,
            step.approval_id,
            step.started_at,
            step.completed_at,
            step.id,
        )

    async def get_steps(self, run_id: str) -> list[FlowStep]:
        rows = await self._fetch(
            f"SELECT {_STEP_COLUMNS} FROM flow_steps WHERE run_id = $1 ORDER BY seq",
            run_id,
        )
        return [FlowStep(**dict(r)) for r in rows]

    # ------------------------------------------------------------------
    async def create_approval(self, approval: ApprovalRequest) -> ApprovalRequest:
        await self._execute(
            f"INSERT INTO approval_requests ({_APPROVAL_COLUMNS}) VALUES "
            "($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)",
            approval.id,
            approval.tenant_id,
            approval.run_id,
            approval.step_id,
            approval.title,
            approval.description,
            approval.context,
            approval.urgency,
            approval.status.value,
            approval.decided_by,
            approval.decision_comment,
            approval.requested_at,
            approval.decided_at,
            approval.expires_at,
        )
        return approval

    async def update_approval(self, approval: ApprovalRequest) -> None:
        await self._execute(
            """
            UPDATE approval_requests
            SET status = $1, decided_by = $2, decision_comment = $3, decided_at = $4
            WHERE id = $5
            """,
            approval.status.value,
            approval.decided_by,
            approval.decision_comment,
            approval.decided_at,
            approval.id,
        )

    async def get_approval(
        self, approval_id: str, tenant_id: Optional[str] = None
    ) -> ApprovalRequest | None:
        if tenant_id is None:
            row = await self._fetchrow(
                f"SELECT {_APPROVAL_COLUMNS} FROM approval_requests WHERE id = $1",
                approval_id,
            )
        else:
            row = await self._fetchrow(
                f"SELECT {_APPROVAL_COLUMNS} FROM approval_requests "
                "WHERE id = $1 AND tenant_id = $2",
                approval_id,
                tenant_id,
            )
        return ApprovalRequest(**dict(row)) if row else None

    async def list_approvals(
        self, tenant_id: str, status: Optional[str] = None
    ) -> list[ApprovalRequest]:
        if status is None:
            rows = await self._fetch(
                f"SELECT {_APPROVAL_COLUMNS} FROM approval_requests "
                "WHERE tenant_id = $1 ORDER BY requested_at DESC",
                tenant_id,
            )
        else:
            rows = await self._fetch(
                f"SELECT {_APPROVAL_COLUMNS} FROM approval_requests "
                "WHERE tenant_id = $1 AND status = $2 ORDER BY requested_at DESC",
                tenant_id,
                getattr(status, "value", status),
            )
        return [ApprovalRequest(**dict(r)) for r in rows]
