"""Repository abstraction for execution and approval persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Collection, Optional, Protocol

from .models import ApprovalRequest, Execution, ExecutionError, StepResult


class ExecutionRepository(Protocol):
    """Protocol for execution log and approval store backends."""

    async def create_execution(self, execution: Execution) -> None:
        """Persist a new execution."""

    async def append_step_result(self, execution_id: str, result: StepResult) -> None:
        """Append one step result; results keep insertion order."""

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
        """Set the execution status.

        When ``expected`` is given the update only applies if the current
        status is one of them. Returns whether the row was updated.
        ``completed_at`` is stamped when moving to a terminal status.
        """

    async def save_context(self, execution_id: str, context: dict[str, Any]) -> None:
        """Persist the step output map of an execution."""

    async def get_execution(self, execution_id: str) -> Execution | None:
        """Retrieve an execution with its step results."""

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Execution]:
        """Return executions, newest first, without step results."""

    async def get_last_completed_execution(self, workflow_id: str) -> Execution | None:
        """Most recently completed execution of a workflow."""

    async def get_last_execution(
        self, workflow_id: str, trigger_type: Optional[str] = None
    ) -> Execution | None:
        """Most recently started execution of a workflow, any status.

        ``trigger_type`` restricts the lookup to executions started that way.
        """

    async def create_approval_request(self, request: ApprovalRequest) -> None:
        """Persist a new pending approval request."""

    async def resolve_approval_request(
        self,
        request_id: str,
        status: str,
        *,
        responder_id: Optional[str] = None,
        notes: Optional[str] = None,
        responded_at: Optional[datetime] = None,
    ) -> bool:
        """Move a request out of ``pending``; ``False`` if it was not pending."""

    async def get_approval_request(self, request_id: str) -> ApprovalRequest | None:
        """Retrieve an approval request by id."""

    async def list_expired_pending(self, now: datetime) -> list[ApprovalRequest]:
        """Pending requests whose deadline is at or before ``now``."""

    async def list_pending_approvals(
        self, execution_id: Optional[str] = None, responder_id: Optional[str] = None
    ) -> list[ApprovalRequest]:
        """Pending requests, optionally for a single execution.

        With ``responder_id`` only requests that user may answer are returned:
        those naming them as an approver and those open to anyone.
        """
