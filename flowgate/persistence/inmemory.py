"""In-memory implementation of the execution repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Collection, Dict, Optional

from .models import (
    TERMINAL_STATUSES,
    ApprovalRequest,
    Execution,
    ExecutionError,
    StepResult,
    utcnow,
)
from .repository import ExecutionRepository


class InMemoryExecutionRepository(ExecutionRepository):
    """Store executions and approvals in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Returned models are copies.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, Execution] = {}
        self._approvals: Dict[str, ApprovalRequest] = {}

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: Execution) -> None:
        if execution.id in self._executions:
            raise ValueError(f"Execution {execution.id} already exists")
        self._executions[execution.id] = execution.model_copy(deep=True)

    async def append_step_result(self, execution_id: str, result: StepResult) -> None:
        execution = self._executions.get(execution_id)
        if execution:
            execution.step_results.append(result.model_copy(deep=True))

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
        execution = self._executions.get(execution_id)
        if not execution:
            return False
        if expected is not None and execution.status not in expected:
            return False
        execution.status = status  # type: ignore[assignment]
        execution.output = output
        execution.error = error
        execution.waiting_step_id = waiting_step_id
        if status in TERMINAL_STATUSES:
            execution.completed_at = utcnow()
        return True

    async def save_context(self, execution_id: str, context: dict[str, Any]) -> None:
        execution = self._executions.get(execution_id)
        if execution:
            execution.context = dict(context)

    async def get_execution(self, execution_id: str) -> Execution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Execution]:
        matches = [
            e.model_copy(update={"step_results": []}, deep=True)
            for e in self._executions.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (status is None or e.status == status)
        ]
        matches.sort(key=lambda e: e.started_at, reverse=True)
        return matches[:limit] if limit is not None else matches

    async def get_last_completed_execution(self, workflow_id: str) -> Execution | None:
        completed = [
            e
            for e in self._executions.values()
            if e.workflow_id == workflow_id and e.status == "completed"
        ]
        if not completed:
            return None
        latest = max(completed, key=lambda e: e.completed_at or e.started_at)
        return latest.model_copy(deep=True)

    async def get_last_execution(
        self, workflow_id: str, trigger_type: Optional[str] = None
    ) -> Execution | None:
        runs = [
            e
            for e in self._executions.values()
            if e.workflow_id == workflow_id
            and (trigger_type is None or e.trigger_type == trigger_type)
        ]
        if not runs:
            return None
        return max(runs, key=lambda e: e.started_at).model_copy(deep=True)

    # ------------------------------------------------------------------
    # Approvals
    async def create_approval_request(self, request: ApprovalRequest) -> None:
        self._approvals[request.id] = request.model_copy(deep=True)

    async def resolve_approval_request(
        self,
        request_id: str,
        status: str,
        *,
        responder_id: Optional[str] = None,
        notes: Optional[str] = None,
        responded_at: Optional[datetime] = None,
    ) -> bool:
        request = self._approvals.get(request_id)
        if not request or request.status != "pending":
            return False
        request.status = status  # type: ignore[assignment]
        request.responder_id = responder_id
        request.notes = notes
        request.responded_at = responded_at or utcnow()
        return True

    async def get_approval_request(self, request_id: str) -> ApprovalRequest | None:
        request = self._approvals.get(request_id)
        return request.model_copy(deep=True) if request else None

    async def list_expired_pending(self, now: datetime) -> list[ApprovalRequest]:
        return [
            r.model_copy(deep=True)
            for r in self._approvals.values()
            if r.status == "pending" and r.deadline <= now
        ]

    async def list_pending_approvals(
        self, execution_id: Optional[str] = None, responder_id: Optional[str] = None
    ) -> list[ApprovalRequest]:
        return [
            r.model_copy(deep=True)
            for r in self._approvals.values()
            if r.status == "pending"
            and (execution_id is None or r.execution_id == execution_id)
            and (responder_id is None or r.allows(responder_id))
        ]
