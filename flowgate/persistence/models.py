"""Data models for persisted execution state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

ExecutionStatus = Literal[
    "pending", "running", "waiting_approval", "completed", "failed", "cancelled"
]
StepStatus = Literal["success", "error", "skipped", "waiting_approval"]
ApprovalStatus = Literal["pending", "approved", "rejected", "expired"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})
ACTIVE_STATUSES: frozenset[str] = frozenset({"pending", "running", "waiting_approval"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepError(BaseModel):
    """Why a step failed."""

    kind: str
    message: str
    cause: Optional[str] = None


class StepResult(BaseModel):
    """Record of an individual step execution."""

    step_id: str
    step_type: str
    status: StepStatus
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    output: Any = None
    error: Optional[StepError] = None
    branch: Optional[str] = None


class ExecutionError(BaseModel):
    kind: str
    message: str
    step_id: Optional[str] = None


class Execution(BaseModel):
    """One run of a workflow definition against a trigger payload."""

    id: str
    workflow_id: str
    trigger_type: str = "manual"
    trigger_payload: Any = None
    status: ExecutionStatus = "pending"
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    step_results: list[StepResult] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    waiting_step_id: Optional[str] = None
    output: Any = None
    error: Optional[ExecutionError] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ApprovalRequest(BaseModel):
    """A pending or resolved human approval for one approval step."""

    id: str
    execution_id: str
    workflow_id: str
    step_id: str
    requested_at: datetime = Field(default_factory=utcnow)
    deadline: datetime
    status: ApprovalStatus = "pending"
    title: str = ""
    instructions: Optional[str] = None
    approvers: list[str] = Field(default_factory=list)
    responder_id: Optional[str] = None
    notes: Optional[str] = None
    responded_at: Optional[datetime] = None

    def allows(self, responder_id: Optional[str]) -> bool:
        """Whether ``responder_id`` may answer; an empty approver list is open."""
        return not self.approvers or responder_id in self.approvers
