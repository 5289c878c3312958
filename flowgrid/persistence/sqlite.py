"""SQLite implementation of the run repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

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


def _dump(value: Any) -> str | None:
    return json.dumps(value, default=str) if value is not None else None


def _load(value: str | None) -> Any:
    return json.loads(value) if value else None


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteRunRepository(RunRepository):
    """Persist run state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS flow_runs (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                process_id TEXT NOT NULL,
                status TEXT NOT NULL,
                input TEXT,
                output TEXT,
                error TEXT,
                state TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS flow_steps (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                run_id TEXT NOT NULL,
                task_id TEXT NOT NULL,
                name TEXT NOT NULL,
                kind TEXT NOT NULL,
                status TEXT NOT NULL,
                iteration INTEGER NOT NULL,
                worker_id TEXT,
                worker_name TEXT,
                input TEXT,
                output TEXT,
                error TEXT,
                approval_id TEXT,
                started_at TEXT,
                completed_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS approval_requests (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                run_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                context TEXT,
                urgency TEXT NOT NULL,
                status TEXT NOT NULL,
                decided_by TEXT,
                decision_comment TEXT,
                requested_at TEXT NOT NULL,
                decided_at TEXT,
                expires_at TEXT
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_flow_runs_tenant ON flow_runs(tenant_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_flow_steps_run ON flow_steps(run_id)")
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_approvals_status ON approval_requests(tenant_id, status)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _run(self, query: str, params: tuple, fetch: Optional[str] = None) -> Any:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                if fetch == "one":
                    return cur.fetchone()
                if fetch == "all":
                    return cur.fetchall()
                self._conn.commit()
                return cur
            except sqlite3.Error as e:
                raise PersistenceError(f"SQLite query failed: {e}") from e

    def _execute(self, query: str, *params: Any) -> int:
        return self._run(query, params).lastrowid

    def _execute_rowcount(self, query: str, *params: Any) -> int:
        return self._run(query, params).rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        return self._run(query, params, fetch="one")

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        return self._run(query, params, fetch="all")

    @staticmethod
    def _run_from_row(r: sqlite3.Row) -> FlowRun:
        return FlowRun(
            id=r["id"],
            tenant_id=r["tenant_id"],
            process_id=r["process_id"],
            status=r["status"],
            input=_load(r["input"]) or {},
            output=_load(r["output"]),
            error=r["error"],
            state=_load(r["state"]) or {},
            started_at=_parse_ts(r["started_at"]),
            completed_at=_parse_ts(r["completed_at"]),
        )

    @staticmethod
    def _step_from_row(r: sqlite3.Row) -> FlowStep:
        return FlowStep(
            id=r["id"],
            run_id=r["run_id"],
            task_id=r["task_id"],
            name=r["name"],
            kind=r["kind"],
            status=r["status"],
            iteration=r["iteration"],
            worker_id=r["worker_id"],
            worker_name=r["worker_name"],
            input=_load(r["input"]),
            output=_load(r["output"]),
            error=r["error"],
            approval_id=r["approval_id"],
            started_at=_parse_ts(r["started_at"]),
            completed_at=_parse_ts(r["completed_at"]),
            seq=r["seq"],
        )

    @staticmethod
    def _approval_from_row(r: sqlite3.Row) -> ApprovalRequest:
        return ApprovalRequest(
            id=r["id"],
            tenant_id=r["tenant_id"],
            run_id=r["run_id"],
            step_id=r["step_id"],
            title=r["title"],
            description=r["description"],
            context=_load(r["context"]) or {},
            urgency=r["urgency"],
            status=r["status"],
            decided_by=r["decided_by"],
            decision_comment=r["decision_comment"],
            requested_at=_parse_ts(r["requested_at"]),
            decided_at=_parse_ts(r["decided_at"]),
            expires_at=_parse_ts(r["expires_at"]),
        )

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: FlowRun) -> FlowRun:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO flow_runs ({_RUN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            run.id,
            run.tenant_id,
            run.process_id,
            run.status.value,
            _dump(run.input),
            _dump(run.output),
            run.error,
            _dump(run.state),
            _ts(run.started_at),
            _ts(run.completed_at),
        )
        return run

    async def update_run(self, run: FlowRun) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE flow_runs
            SET status = ?, output = ?, error = ?, state = ?, completed_at = ?
            WHERE id = ?
            """,
            run.status.value,
            _dump(run.output),
            run.error,
            _dump(run.state),
            _ts(run.completed_at),
            run.id,
        )

    async def get_run(
        self, run_id: str, tenant_id: Optional[str] = None
    ) -> FlowRun | None:
        query = f"SELECT {_RUN_COLUMNS} FROM flow_runs WHERE id = ?"
        params: list[Any] = [run_id]
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        row = await asyncio.to_thread(self._fetchone, query, *params)
        return self._run_from_row(row) if row else None

    async def list_runs(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[FlowRun]:
        query = f"SELECT {_RUN_COLUMNS} FROM flow_runs WHERE 1 = 1"
        params: list[Any] = []
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        if status is not None:
            query += " AND status = ?"
            params.append(getattr(status, "value", status))
        query += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._run_from_row(r) for r in rows]

    async def delete_run(self, run_id: str, tenant_id: str) -> bool:
        if await self.get_run(run_id, tenant_id) is None:
            return False
        await asyncio.to_thread(
            self._execute, "DELETE FROM approval_requests WHERE run_id = ?", run_id
        )
        await asyncio.to_thread(
            self._execute, "DELETE FROM flow_steps WHERE run_id = ?", run_id
        )
        deleted = await asyncio.to_thread(
            self._execute_rowcount,
            "DELETE FROM flow_runs WHERE id = ? AND tenant_id = ?",
            run_id,
            tenant_id,
        )
        return deleted > 0

    # ------------------------------------------------------------------
    # Steps
    async def create_step(self, step: FlowStep) -> FlowStep:
        step.seq = await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO flow_steps (
                id, run_id, task_id, name, kind, status, iteration, worker_id,
                worker_name, input, output, error, approval_id, started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
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
            _dump(step.input),
            _dump(step.output),
            step.error,
            step.approval_id,
            _ts(step.started_at),
            _ts(step.completed_at),
        )
        return step

    async def update_step(self, step: FlowStep) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE flow_steps
            SET status = ?, input = ?, output = ?, error = ?, approval_id = ?,
                started_at = ?, completed_at = ?
            WHERE id = ?
            """,
            step.status.value,
            _dump(step.input),
            _dump(step.output),
            step.error,
            step.approval_id,
            _ts(step.started_at),
            _ts(step.completed_at),
            step.id,
        )

    async def get_steps(self, run_id: str) -> list[FlowStep]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_STEP_COLUMNS} FROM flow_steps WHERE run_id = ? ORDER BY seq",
            run_id,
        )
        return [self._step_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Approvals
    async def create_approval(self, approval: ApprovalRequest) -> ApprovalRequest:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO approval_requests ({_APPROVAL_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            approval.id,
            approval.tenant_id,
            approval.run_id,
            approval.step_id,
            approval.title,
            approval.description,
            _dump(approval.context),
            approval.urgency,
            approval.status.value,
            approval.decided_by,
            approval.decision_comment,
            _ts(approval.requested_at),
            _ts(approval.decided_at),
            _ts(approval.expires_at),
        )
        return approval

    async def update_approval(self, approval: ApprovalRequest) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE approval_requests
            SET status = ?, decided_by = ?, decision_comment = ?, decided_at = ?
            WHERE id = ?
            """,
            approval.status.value,
            approval.decided_by,
            approval.decision_comment,
            _ts(approval.decided_at),
            approval.id,
        )

    async def get_approval(
        self, approval_id: str, tenant_id: Optional[str] = None
    ) -> ApprovalRequest | None:
        query = f"SELECT {_APPROVAL_COLUMNS} FROM approval_requests WHERE id = ?"
        params: list[Any] = [approval_id]
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        row = await asyncio.to_thread(self._fetchone, query, *params)
        return self._approval_from_row(row) if row else None

    async def list_approvals(
        self, tenant_id: str, status: Optional[str] = None
    ) -> list[ApprovalRequest]:
        query = f"SELECT {_APPROVAL_COLUMNS} FROM approval_requests WHERE tenant_id = ?"
        params: list[Any] = [tenant_id]
        if status is not None:
            query += " AND status = ?"
            params.append(getattr(status, "value", status))
        query += " ORDER BY requested_at DESC"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._approval_from_row(r) for r in rows]
