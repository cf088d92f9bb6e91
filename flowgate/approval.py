"""Human approval gate.

An approval request moves ``pending -> approved | rejected | expired`` exactly
once. Every transition is a compare-and-swap on the stored status, so
concurrent responders and repeated timeout sweeps cannot resolve a request
twice.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Literal, Optional

from .constants import DEFAULT_APPROVAL_TIMEOUT_HOURS
from .errors import (
    ApprovalAlreadyResolvedError,
    ApprovalNotFoundError,
    ApproverNotAllowedError,
    ValidationError,
)
from .models import ApprovalConfig, Step
from .persistence.models import ApprovalRequest, Execution, utcnow
from .persistence.repository import ExecutionRepository

logger = logging.getLogger(__name__)

Decision = Literal["approved", "rejected"]

_DECISIONS = {
    "approve": "approved",
    "approved": "approved",
    "reject": "rejected",
    "rejected": "rejected",
}

SYSTEM_RESPONDER = "system"


def normalize_decision(decision: str) -> Decision:
    try:
        return _DECISIONS[decision.strip().lower()]  # type: ignore[return-value]
    except KeyError:
        raise ValidationError(
            f"Unknown approval decision '{decision}', expected 'approve' or 'reject'"
        ) from None


class ApprovalGate:
    def __init__(
        self,
        repository: ExecutionRepository,
        default_timeout_hours: float = DEFAULT_APPROVAL_TIMEOUT_HOURS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.default_timeout_hours = default_timeout_hours
        self.clock = clock

    async def open(self, execution: Execution, step: Step) -> ApprovalRequest:
        """Create the pending request for the first visit of an approval step."""
        config: ApprovalConfig = step.config  # type: ignore[assignment]
        now = self.clock()
        hours = config.timeout_hours or self.default_timeout_hours
        request = ApprovalRequest(
            id=str(uuid.uuid4()),
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            step_id=step.id,
            requested_at=now,
            deadline=now + timedelta(hours=hours),
            title=config.title,
            instructions=config.instructions or config.description,
            approvers=list(config.approvers),
        )
        await self.repository.create_approval_request(request)
        logger.info(
            f"Approval {request.id} requested for execution {execution.id} step {step.id} "
            f"(deadline {request.deadline.isoformat()})"
        )
        return request

    async def get(self, request_id: str) -> ApprovalRequest:
        request = await self.repository.get_approval_request(request_id)
        if request is None:
            raise ApprovalNotFoundError(f"Approval request {request_id} not found")
        return request

    async def _transition(
        self,
        request_id: str,
        status: str,
        responder_id: Optional[str],
        notes: Optional[str],
    ) -> ApprovalRequest:
        request = await self.get(request_id)
        if request.status != "pending":
            raise ApprovalAlreadyResolvedError(request_id, request.status)
        won = await self.repository.resolve_approval_request(
            request_id,
            status,
            responder_id=responder_id,
            notes=notes,
            responded_at=self.clock(),
        )
        if not won:
            current = await self.get(request_id)
            logger.info(
                f"Approval {request_id} already resolved as {current.status}, ignoring {status}"
            )
            raise ApprovalAlreadyResolvedError(request_id, current.status)
        return await self.get(request_id)

    async def respond(
        self,
        request_id: str,
        decision: str,
        responder_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ApprovalRequest:
        """Approve or reject a pending request.

        Raises if it is no longer pending or if it names approvers and
        ``responder_id`` is not one of them.
        """
        status = normalize_decision(decision)
        pending = await self.get(request_id)
        if not pending.allows(responder_id):
            logger.warning(f"Approval {request_id}: {responder_id} is not an approver")
            raise ApproverNotAllowedError(request_id, responder_id)
        request = await self._transition(request_id, status, responder_id, notes)
        logger.info(f"Approval {request_id} {status} by {responder_id or 'unknown'}")
        return request

    async def expire_due(self, now: Optional[datetime] = None) -> list[ApprovalRequest]:
        """Expire every pending request past its deadline.

        Returns only the requests this call expired; requests resolved
        concurrently are skipped, so repeated sweeps are harmless.
        """
        now = now or self.clock()
        expired: list[ApprovalRequest] = []
        for request in await self.repository.list_expired_pending(now):
            won = await self.repository.resolve_approval_request(
                request.id,
                "expired",
                responder_id=SYSTEM_RESPONDER,
                notes="Approval timed out",
                responded_at=now,
            )
            if not won:
                logger.info(f"Approval {request.id} resolved before it could expire")
                continue
            logger.info(f"Approval {request.id} expired (deadline {request.deadline.isoformat()})")
            expired.append(await self.get(request.id))
        return expired

    async def cancel(self, request_id: str, reason: str) -> bool:
        """Reject a pending request on behalf of the system."""
        won = await self.repository.resolve_approval_request(
            request_id,
            "rejected",
            responder_id=SYSTEM_RESPONDER,
            notes=f"Cancelled: {reason}",
            responded_at=self.clock(),
        )
        if won:
            logger.info(f"Approval {request_id} cancelled: {reason}")
        else:
            logger.info(f"Approval {request_id} was not pending, nothing to cancel")
        return won

    async def cancel_for_execution(self, execution_id: str, reason: str) -> list[str]:
        cancelled = []
        for request in await self.repository.list_pending_approvals(execution_id):
            if await self.cancel(request.id, reason):
                cancelled.append(request.id)
        return cancelled
