"""PostgreSQL implementation of the execution repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Collection, Optional

import asyncpg

from .models import (
    TERMINAL_STATUSES,
    ApprovalRequest,
    Execution,
    ExecutionError,
    StepError,
    StepResult,
    utcnow,
)
from .repository import ExecutionRepository

_EXECUTION_COLUMNS = (
    "id, workflow_id, trigger_type, trigger_payload, status, started_at, "
    "completed_at, context, waiting_step_id, output, error"
)
_APPROVAL_COLUMNS = (
    "id, execution_id, workflow_id, step_id, requested_at, deadline, status, "
    "title, instructions, approvers, responder_id, notes, responded_at"
)


def _dump(value: Any) -> str | None:
    return None if value is None else json.dumps(value, default=str)


def _load(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    return json.loads(value) if isinstance(value, str) else value


def _updated(status: str) -> bool:
    return status.split()[-1] != "0"


class PostgresExecutionRepository(ExecutionRepository):
    """Persist executions and approvals using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                trigger_payload JSONB,
                status TEXT NOT NULL,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                context JSONB,
                waiting_step_id TEXT,
                output JSONB,
                error JSONB
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_results (
                id SERIAL PRIMARY KEY,
                execution_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                step_type TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                output JSONB,
                error JSONB,
                branch TEXT
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS approval_requests (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                workflow_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                requested_at TIMESTAMPTZ NOT NULL,
                deadline TIMESTAMPTZ NOT NULL,
                status TEXT NOT NULL,
                title TEXT,
                instructions TEXT,
                approvers JSONB,
                responder_id TEXT,
                notes TEXT,
                responded_at TIMESTAMPTZ
            )
            """
        )

    @staticmethod
    def _to_execution(row: asyncpg.Record, results: list[StepResult]) -> Execution:
        error = _load(row["error"])
        return Execution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            trigger_type=row["trigger_type"],
            trigger_payload=_load(row["trigger_payload"]),
            status=row["status"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            step_results=results,
            context=_load(row["context"]) or {},
            waiting_step_id=row["waiting_step_id"],
            output=_load(row["output"]),
            error=ExecutionError(**error) if error else None,
        )

    @staticmethod
    def _to_approval(row: asyncpg.Record) -> ApprovalRequest:
        return ApprovalRequest(
            id=row["id"],
            execution_id=row["execution_id"],
            workflow_id=row["workflow_id"],
            step_id=row["step_id"],
            requested_at=row["requested_at"],
            deadline=row["deadline"],
            status=row["status"],
            title=row["title"] or "",
            instructions=row["instructions"],
            approvers=_load(row["approvers"]) or [],
            responder_id=row["responder_id"],
            notes=row["notes"],
            responded_at=row["responded_at"],
        )

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: Execution) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO executions ({_EXECUTION_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)",
                execution.id,
                execution.workflow_id,
                execution.trigger_type,
                _dump(execution.trigger_payload),
                execution.status,
                execution.started_at,
                execution.completed_at,
                _dump(execution.context),
                execution.waiting_step_id,
                _dump(execution.output),
                _dump(execution.error.model_dump()) if execution.error else None,
            )
        finally:
            await conn.close()
        for result in execution.step_results:
            await self.append_step_result(execution.id, result)

    async def append_step_result(self, execution_id: str, result: StepResult) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO step_results
                    (execution_id, step_id, step_type, status, started_at, completed_at, output, error, branch)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                execution_id,
                result.step_id,
                result.step_type,
                result.status,
                result.started_at,
                result.completed_at,
                _dump(result.output),
                _dump(result.error.model_dump()) if result.error else None,
                result.branch,
            )
        finally:
            await conn.close()

    async def update_execution_status(
        self,
        execution_id: str,
        status: str,
        *,
        expected: Optional[Collection[str]] = None,
        output: Any = None,
        error: Optional[ExecutionError] = None,
        waiting_step_id: Optional[str] = None,
    ) -> bool:
        completed_at = utcnow() if status in TERMINAL_STATUSES else None
        query = (
            "UPDATE executions SET status = $1, output = $2, error = $3, waiting_step_id = $4, "
            "completed_at = COALESCE($5, completed_at) WHERE id = $6"
        )
        params: list[Any] = [
            status,
            _dump(output),
            _dump(error.model_dump()) if error else None,
            waiting_step_id,
            completed_at,
            execution_id,
        ]
        if expected is not None:
            query += " AND status = ANY($7::text[])"
            params.append(list(expected))
        conn = await self._connect()
        try:
            result = await conn.execute(query, *params)
        finally:
            await conn.close()
        return _updated(result)

    async def save_context(self, execution_id: str, context: dict[str, Any]) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE executions SET context = $1 WHERE id = $2",
                _dump(context),
                execution_id,
            )
        finally:
            await conn.close()

    async def get_execution(self, execution_id: str) -> Execution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE id = $1",
                execution_id,
            )
            if not row:
                return None
            result_rows = await conn.fetch(
                "SELECT step_id, step_type, status, started_at, completed_at, output, error, branch "
                "FROM step_results WHERE execution_id = $1 ORDER BY id",
                execution_id,
            )
        finally:
            await conn.close()
        results = []
        for r in result_rows:
            error = _load(r["error"])
            results.append(
                StepResult(
                    step_id=r["step_id"],
                    step_type=r["step_type"],
                    status=r["status"],
                    started_at=r["started_at"],
                    completed_at=r["completed_at"],
                    output=_load(r["output"]),
                    error=StepError(**error) if error else None,
                    branch=r["branch"],
                )
            )
        return self._to_execution(row, results)

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Execution]:
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            params.append(workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        if status is not None:
            params.append(status)
            clauses.append(f"status = ${len(params)}")
        query = f"SELECT {_EXECUTION_COLUMNS} FROM executions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY started_at DESC"
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [self._to_execution(r, []) for r in rows]

    async def get_last_completed_execution(self, workflow_id: str) -> Execution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_EXECUTION_COLUMNS} FROM executions "
                "WHERE workflow_id = $1 AND status = 'completed' "
                "ORDER BY completed_at DESC LIMIT 1",
                workflow_id,
            )
        finally:
            await conn.close()
        return self._to_execution(row, []) if row else None

    async def get_last_execution(
        self, workflow_id: str, trigger_type: Optional[str] = None
    ) -> Execution | None:
        query = f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE workflow_id = $1"
        params: list[Any] = [workflow_id]
        if trigger_type is not None:
            query += " AND trigger_type = $2"
            params.append(trigger_type)
        conn = await self._connect()
        try:
            row = await conn.fetchrow(query + " ORDER BY started_at DESC LIMIT 1", *params)
        finally:
            await conn.close()
        return self._to_execution(row, []) if row else None

    # ------------------------------------------------------------------
    # Approvals
    async def create_approval_request(self, request: ApprovalRequest) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO approval_requests ({_APPROVAL_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)",
                request.id,
                request.execution_id,
                request.workflow_id,
                request.step_id,
                request.requested_at,
                request.deadline,
                request.status,
                request.title,
                request.instructions,
                _dump(request.approvers),
                request.responder_id,
                request.notes,
                request.responded_at,
            )
        finally:
            await conn.close()

    async def resolve_approval_request(
        self,
        request_id: str,
        status: str,
        *,
        responder_id: Optional[str] = None,
        notes: Optional[str] = None,
        responded_at: Optional[datetime] = None,
    ) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE approval_requests
                SET status = $1, responder_id = $2, notes = $3, responded_at = $4
                WHERE id = $5 AND status = 'pending'
                """,
                status,
                responder_id,
                notes,
                responded_at or utcnow(),
                request_id,
            )
        finally:
            await conn.close()
        return _updated(result)

    async def get_approval_request(self, request_id: str) -> ApprovalRequest | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_APPROVAL_COLUMNS} FROM approval_requests WHERE id = $1",
                request_id,
            )
        finally:
            await conn.close()
        return self._to_approval(row) if row else None

    async def list_expired_pending(self, now: datetime) -> list[ApprovalRequest]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_APPROVAL_COLUMNS} FROM approval_requests "
                "WHERE status = 'pending' AND deadline <= $1",
                now,
            )
        finally:
            await conn.close()
        return [self._to_approval(r) for r in rows]

    async def list_pending_approvals(
        self, execution_id: Optional[str] = None, responder_id: Optional[str] = None
    ) -> list[ApprovalRequest]:
        query = f"SELECT {_APPROVAL_COLUMNS} FROM approval_requests WHERE status = 'pending'"
        params: list[Any] = []
        if execution_id is not None:
            query += " AND execution_id = $1"
            params.append(execution_id)
        if responder_id is not None:
            params.append(responder_id)
            query += (
                " AND (approvers IS NULL OR approvers = '[]'::jsonb"
                f" OR approvers ? ${len(params)})"
            )
        conn = await self._connect()
        try:
            rows = await conn.fetch(query + " ORDER BY requested_at", *params)
        finally:
            await conn.close()
        return [self._to_approval(r) for r in rows]
