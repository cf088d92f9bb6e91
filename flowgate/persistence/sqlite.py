"""SQLite implementation of the execution repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Collection, Optional

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


def _load(value: str | None) -> Any:
    return None if value is None else json.loads(value)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteExecutionRepository(ExecutionRepository):
    """Persist executions and approvals using SQLite."""

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
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                trigger_payload TEXT,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                context TEXT,
                waiting_step_id TEXT,
                output TEXT,
                error TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_results (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                step_type TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                output TEXT,
                error TEXT,
                branch TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS approval_requests (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                workflow_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                requested_at TEXT NOT NULL,
                deadline TEXT NOT NULL,
                status TEXT NOT NULL,
                title TEXT,
                instructions TEXT,
                approvers TEXT,
                responder_id TEXT,
                notes TEXT,
                responded_at TEXT
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _row_to_execution(row: sqlite3.Row, results: list[StepResult]) -> Execution:
        error = _load(row["error"])
        return Execution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            trigger_type=row["trigger_type"],
            trigger_payload=_load(row["trigger_payload"]),
            status=row["status"],
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            step_results=results,
            context=_load(row["context"]) or {},
            waiting_step_id=row["waiting_step_id"],
            output=_load(row["output"]),
            error=ExecutionError(**error) if error else None,
        )

    @staticmethod
    def _row_to_approval(row: sqlite3.Row) -> ApprovalRequest:
        return ApprovalRequest(
            id=row["id"],
            execution_id=row["execution_id"],
            workflow_id=row["workflow_id"],
            step_id=row["step_id"],
            requested_at=_parse_ts(row["requested_at"]),
            deadline=_parse_ts(row["deadline"]),
            status=row["status"],
            title=row["title"] or "",
            instructions=row["instructions"],
            approvers=_load(row["approvers"]) or [],
            responder_id=row["responder_id"],
            notes=row["notes"],
            responded_at=_parse_ts(row["responded_at"]),
        )

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: Execution) -> None:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO executions ({_EXECUTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            execution.id,
            execution.workflow_id,
            execution.trigger_type,
            _dump(execution.trigger_payload),
            execution.status,
            _ts(execution.started_at),
            _ts(execution.completed_at),
            _dump(execution.context),
            execution.waiting_step_id,
            _dump(execution.output),
            _dump(execution.error.model_dump()) if execution.error else None,
        )
        for result in execution.step_results:
            await self.append_step_result(execution.id, result)

    async def append_step_result(self, execution_id: str, result: StepResult) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO step_results
                (execution_id, step_id, step_type, status, started_at, completed_at, output, error, branch)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            execution_id,
            result.step_id,
            result.step_type,
            result.status,
            _ts(result.started_at),
            _ts(result.completed_at),
            _dump(result.output),
            _dump(result.error.model_dump()) if result.error else None,
            result.branch,
        )

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
        completed_at = _ts(utcnow()) if status in TERMINAL_STATUSES else None
        query = (
            "UPDATE executions SET status = ?, output = ?, error = ?, waiting_step_id = ?, "
            "completed_at = COALESCE(?, completed_at) WHERE id = ?"
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
            expected = list(expected)
            if not expected:
                return False
            query += f" AND status IN ({', '.join('?' for _ in expected)})"
            params.extend(expected)
        updated = await asyncio.to_thread(self._execute, query, *params)
        return updated > 0

    async def save_context(self, execution_id: str, context: dict[str, Any]) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE executions SET context = ? WHERE id = ?",
            _dump(context),
            execution_id,
        )

    async def _step_results(self, execution_id: str) -> list[StepResult]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT step_id, step_type, status, started_at, completed_at, output, error, branch "
            "FROM step_results WHERE execution_id = ? ORDER BY id",
            execution_id,
        )
        results = []
        for r in rows:
            error = _load(r["error"])
            results.append(
                StepResult(
                    step_id=r["step_id"],
                    step_type=r["step_type"],
                    status=r["status"],
                    started_at=_parse_ts(r["started_at"]),
                    completed_at=_parse_ts(r["completed_at"]),
                    output=_load(r["output"]),
                    error=StepError(**error) if error else None,
                    branch=r["branch"],
                )
            )
        return results

    async def get_execution(self, execution_id: str) -> Execution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE id = ?",
            execution_id,
        )
        if not row:
            return None
        return self._row_to_execution(row, await self._step_results(execution_id))

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Execution]:
        query = f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE 1 = 1"
        params: list[Any] = []
        if workflow_id is not None:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY started_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._row_to_execution(row, []) for row in rows]

    async def get_last_completed_execution(self, workflow_id: str) -> Execution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM executions "
            "WHERE workflow_id = ? AND status = 'completed' ORDER BY completed_at DESC LIMIT 1",
            workflow_id,
        )
        return self._row_to_execution(row, []) if row else None

    async def get_last_execution(
        self, workflow_id: str, trigger_type: Optional[str] = None
    ) -> Execution | None:
        query = f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE workflow_id = ?"
        params: list[Any] = [workflow_id]
        if trigger_type is not None:
            query += " AND trigger_type = ?"
            params.append(trigger_type)
        row = await asyncio.to_thread(
            self._fetchone, query + " ORDER BY started_at DESC LIMIT 1", *params
        )
        return self._row_to_execution(row, []) if row else None

    # ------------------------------------------------------------------
    # Approvals
    async def create_approval_request(self, request: ApprovalRequest) -> None:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO approval_requests ({_APPROVAL_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            request.id,
            request.execution_id,
            request.workflow_id,
            request.step_id,
            _ts(request.requested_at),
            _ts(request.deadline),
            request.status,
            request.title,
            request.instructions,
            _dump(request.approvers),
            request.responder_id,
            request.notes,
            _ts(request.responded_at),
        )

    async def resolve_approval_request(
        self,
        request_id: str,
        status: str,
        *,
        responder_id: Optional[str] = None,
        notes: Optional[str] = None,
        responded_at: Optional[datetime] = None,
    ) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE approval_requests
            SET status = ?, responder_id = ?, notes = ?, responded_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            status,
            responder_id,
            notes,
            _ts(responded_at or utcnow()),
            request_id,
        )
        return updated > 0

    async def get_approval_request(self, request_id: str) -> ApprovalRequest | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_APPROVAL_COLUMNS} FROM approval_requests WHERE id = ?",
            request_id,
        )
        return self._row_to_approval(row) if row else None

    async def list_expired_pending(self, now: datetime) -> list[ApprovalRequest]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_APPROVAL_COLUMNS} FROM approval_requests WHERE status = 'pending'",
        )
        # deadlines may carry different offsets, compare as datetimes
        return [
            request
            for request in (self._row_to_approval(row) for row in rows)
            if request.deadline <= now
        ]

    async def list_pending_approvals(
        self, execution_id: Optional[str] = None, responder_id: Optional[str] = None
    ) -> list[ApprovalRequest]:
        query = f"SELECT {_APPROVAL_COLUMNS} FROM approval_requests WHERE status = 'pending'"
        params: list[Any] = []
        if execution_id is not None:
            query += " AND execution_id = ?"
            params.append(execution_id)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY requested_at", *params)
        requests = [self._row_to_approval(row) for row in rows]
        if responder_id is not None:
            # approvers is a JSON column; filter after decoding
            requests = [r for r in requests if r.allows(responder_id)]
        return requests
