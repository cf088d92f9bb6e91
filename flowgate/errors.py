"""Exception hierarchy for flowgate."""

from __future__ import annotations

from typing import Any, Optional


class FlowgateError(Exception):
    """Base class for all flowgate errors."""

    kind = "FlowgateError"


class ValidationError(FlowgateError):
    """Bad graph or step configuration, caught before execution."""

    kind = "ValidationError"

    def __init__(self, message: str, errors: Optional[list[Any]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(message)


class SerializationError(ValidationError):
    """A persisted step or edge record could not be decoded."""

    kind = "SerializationError"

    def __init__(self, record_id: str, message: str):
        self.record_id = record_id
        super().__init__(message)


class CronParseError(ValidationError):
    """Malformed cron expression."""

    kind = "CronParseError"


class StepExecutionError(FlowgateError):
    """A step executor failed."""

    kind = "StepExecutionError"

    def __init__(
        self,
        step_id: str,
        message: str,
        cause: Optional[BaseException] = None,
    ):
        self.step_id = step_id
        self.cause = cause
        super().__init__(f"Step '{step_id}' failed: {message}")


class TransportError(FlowgateError):
    """A network action or text generation call failed in transit."""

    kind = "TransportError"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ApprovalRejectedError(FlowgateError):
    """An approval step was rejected and no rejection branch exists."""

    kind = "ApprovalRejectedError"


class ApprovalExpiredError(FlowgateError):
    """An approval step timed out and no timeout branch exists."""

    kind = "ApprovalExpiredError"


class ApproverNotAllowedError(FlowgateError):
    """The responder is not one of the approvers named on the request."""

    kind = "ApproverNotAllowedError"

    def __init__(self, request_id: str, responder_id: Optional[str]):
        self.request_id = request_id
        self.responder_id = responder_id
        super().__init__(
            f"{responder_id or 'Anonymous responder'} is not an authorized approver "
            f"for approval request {request_id}"
        )


class ConcurrencyConflictError(FlowgateError):
    """Lost a compare-and-swap; the caller should treat it as handled."""

    kind = "ConcurrencyConflictError"


class ApprovalAlreadyResolvedError(ConcurrencyConflictError):
    """The approval request is no longer pending."""

    kind = "ApprovalAlreadyResolvedError"

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(f"Approval request {request_id} already resolved ({status})")


class WorkflowNotFoundError(FlowgateError):
    kind = "WorkflowNotFoundError"


class WorkflowInactiveError(FlowgateError):
    kind = "WorkflowInactiveError"


class ExecutionNotFoundError(FlowgateError):
    kind = "ExecutionNotFoundError"


class ApprovalNotFoundError(FlowgateError):
    kind = "ApprovalNotFoundError"


class WebhookAuthError(FlowgateError):
    """Webhook secret missing or wrong."""

    kind = "WebhookAuthError"


class ExpressionError(FlowgateError):
    """A condition or filter expression could not be parsed or evaluated."""

    kind = "ExpressionError"
