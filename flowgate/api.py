"""HTTP surface: webhook triggers, the scheduled sweep, approvals and executions."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import Body, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .engine import WorkflowEngine, build_engine
from .errors import (
    ApprovalNotFoundError,
    ApproverNotAllowedError,
    ConcurrencyConflictError,
    ExecutionNotFoundError,
    FlowgateError,
    ValidationError,
    WebhookAuthError,
    WorkflowInactiveError,
    WorkflowNotFoundError,
)
from .models import WorkflowDefinition
from .persistence.models import Execution
from .triggers import TriggerDispatcher
from .validation import validate_workflow

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[FlowgateError], int]] = [
    (WorkflowNotFoundError, status.HTTP_404_NOT_FOUND),
    (ExecutionNotFoundError, status.HTTP_404_NOT_FOUND),
    (ApprovalNotFoundError, status.HTTP_404_NOT_FOUND),
    (WorkflowInactiveError, status.HTTP_409_CONFLICT),
    (ConcurrencyConflictError, status.HTTP_409_CONFLICT),
    (WebhookAuthError, status.HTTP_401_UNAUTHORIZED),
    (ApproverNotAllowedError, status.HTTP_403_FORBIDDEN),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
]


class ApprovalResponseBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    decision: str
    responder_id: Optional[str] = Field(default=None, alias="responderId")
    notes: Optional[str] = None


class CancelBody(BaseModel):
    reason: str = "cancelled by user"


def http_status_for(error: FlowgateError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def flowgate_error_handler(request: Request, exc: FlowgateError) -> JSONResponse:
    code = http_status_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {code}: {exc}")
    content: dict[str, Any] = {"error": str(exc), "kind": exc.kind}
    details = getattr(exc, "errors", None)
    if details:
        content["details"] = [d.model_dump() if isinstance(d, BaseModel) else d for d in details]
    return JSONResponse(status_code=code, content=content)


def execution_summary(execution: Execution) -> dict[str, Any]:
    summary: dict[str, Any] = {"executionId": execution.id, "status": execution.status}
    if execution.output is not None:
        summary["output"] = execution.output
    if execution.error is not None:
        summary["error"] = execution.error.model_dump()
    return summary


def create_app(
    engine: Optional[WorkflowEngine] = None,
    dispatcher: Optional[TriggerDispatcher] = None,
) -> FastAPI:
    """Build the FastAPI application around an engine and trigger dispatcher."""
    engine = engine or build_engine()
    dispatcher = dispatcher or TriggerDispatcher(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await engine.definitions.init_db()
        yield

    app = FastAPI(title="flowgate", lifespan=lifespan)
    app.state.engine = engine
    app.state.dispatcher = dispatcher
    app.add_exception_handler(FlowgateError, flowgate_error_handler)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    # Workflows -----------------------------------------------------------
    @app.post("/workflows/validate")
    async def validate(definition: WorkflowDefinition) -> dict[str, Any]:
        result = validate_workflow(definition)
        return result.model_dump()

    @app.post("/workflows/scheduled/run")
    async def run_scheduled() -> dict[str, Any]:
        results = await dispatcher.run_scheduled()
        return {
            "totalWorkflows": len(results),
            "executedCount": sum(1 for r in results if r.executed),
            "results": [
                {
                    "workflowId": r.workflow_id,
                    "workflowName": r.workflow_name,
                    "executed": r.executed,
                    **({"executionId": r.execution_id} if r.execution_id else {}),
                    **({"status": r.status} if r.status else {}),
                    **({"error": r.error} if r.error else {}),
                }
                for r in results
            ],
        }

    @app.post("/workflows/{workflow_id}/trigger")
    async def trigger(
        workflow_id: str, request: Request, payload: Any = Body(default=None)
    ) -> dict[str, Any]:
        execution = await dispatcher.trigger_webhook(
            workflow_id, payload, dict(request.headers)
        )
        return execution_summary(execution)

    @app.get("/workflows/{workflow_id}/trigger")
    async def trigger_info(workflow_id: str) -> dict[str, Any]:
        return await dispatcher.webhook_info(workflow_id)

    @app.get("/workflows/{workflow_id}/executions")
    async def list_executions(
        workflow_id: str,
        status_filter: Optional[str] = Query(default=None, alias="status"),
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        executions = await engine.repository.list_executions(
            workflow_id=workflow_id, status=status_filter, limit=limit
        )
        return [e.model_dump(mode="json") for e in executions]

    @app.post("/workflows/{workflow_id}/deactivate")
    async def deactivate(workflow_id: str) -> dict[str, Any]:
        cancelled = await engine.deactivate_workflow(workflow_id)
        return {"workflowId": workflow_id, "cancelledExecutions": cancelled}

    # Approvals -----------------------------------------------------------
    @app.get("/approvals")
    async def pending_approvals(
        execution_id: Optional[str] = Query(default=None, alias="executionId"),
        responder_id: Optional[str] = Query(default=None, alias="responderId"),
    ) -> list[dict[str, Any]]:
        requests = await engine.repository.list_pending_approvals(
            execution_id, responder_id=responder_id
        )
        return [r.model_dump(mode="json") for r in requests]

    @app.post("/approvals/timeouts/run")
    async def run_timeouts() -> dict[str, Any]:
        expired = await engine.process_approval_timeouts()
        return {"expired": [r.id for r in expired]}

    @app.get("/approvals/{request_id}")
    async def get_approval(request_id: str) -> dict[str, Any]:
        request = await engine.gate.get(request_id)
        return request.model_dump(mode="json")

    @app.post("/approvals/{request_id}/respond")
    async def respond(request_id: str, body: ApprovalResponseBody) -> dict[str, Any]:
        execution = await engine.submit_approval_response(
            request_id, body.decision, body.responder_id, body.notes
        )
        return execution_summary(execution)

    # Executions ----------------------------------------------------------
    @app.get("/executions/{execution_id}")
    async def get_execution(execution_id: str) -> dict[str, Any]:
        execution = await engine.get_execution(execution_id)
        return execution.model_dump(mode="json")

    @app.post("/executions/{execution_id}/cancel")
    async def cancel(execution_id: str, body: Optional[CancelBody] = None) -> dict[str, Any]:
        reason = body.reason if body else CancelBody().reason
        execution = await engine.cancel_execution(execution_id, reason)
        return execution_summary(execution)

    return app

