"""Execution engine: walks a workflow graph from its trigger step.

Traversal within one execution is sequential. Approval steps suspend the
execution without holding a task; the waiting step id and the context
snapshot are persisted and the walk resumes from storage when the request is
answered or expires.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from .approval import ApprovalGate
from .config import EngineConfig, FlowgateConfig, load_config
from .constants import (
    HANDLE_APPROVED,
    HANDLE_EXPIRED,
    HANDLE_OUTPUT,
    HANDLE_REJECTED,
)
from .context import ExecutionContext
from .db import DefinitionStore, get_definition_store
from .errors import (
    ApprovalExpiredError,
    ApprovalRejectedError,
    ExecutionNotFoundError,
    FlowgateError,
    StepExecutionError,
    ValidationError,
    WorkflowNotFoundError,
)
from .executors import ExecutorServices, get_executor
from .models import (
    ActionConfig,
    Edge,
    ExecutionGraph,
    Step,
    StepType,
    TriggerType,
    WorkflowDefinition,
)
from .persistence import get_repository
from .persistence.models import (
    ACTIVE_STATUSES,
    ApprovalRequest,
    Execution,
    ExecutionError,
    StepError,
    StepResult,
    utcnow,
)
from .persistence.repository import ExecutionRepository

logger = logging.getLogger(__name__)


def _step_error(error: FlowgateError) -> StepError:
    cause = getattr(error, "cause", None)
    return StepError(
        kind=error.kind,
        message=str(error),
        cause=f"{type(cause).__name__}: {cause}" if cause is not None else None,
    )


def _continues_on_error(step: Step) -> bool:
    return isinstance(step.config, ActionConfig) and step.config.continue_on_error


class WorkflowEngine:
    """Runs executions against definitions loaded from a :class:`DefinitionStore`."""

    def __init__(
        self,
        repository: ExecutionRepository,
        definitions: DefinitionStore,
        services: Optional[ExecutorServices] = None,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.definitions = definitions
        self.services = services or ExecutorServices.default()
        self.config = config or EngineConfig()
        self.clock = clock
        self.gate = ApprovalGate(repository, self.config.approval_timeout_hours, clock)

    # ------------------------------------------------------------------
    # Lookups
    async def load_definition(self, workflow_id: str) -> WorkflowDefinition:
        definition = await self.definitions.get_workflow(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        return definition

    async def get_execution(self, execution_id: str) -> Execution:
        execution = await self.repository.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution {execution_id} not found")
        return execution

    # ------------------------------------------------------------------
    # Starting executions
    async def create_execution(
        self,
        definition: WorkflowDefinition,
        payload: Any = None,
        trigger_type: Optional[TriggerType] = None,
    ) -> Execution:
        """Persist a new ``pending`` execution without running it."""
        execution = Execution(
            id=str(uuid.uuid4()),
            workflow_id=definition.id,
            trigger_type=(trigger_type or definition.trigger_type).value,
            trigger_payload=payload,
            status="pending",
            started_at=self.clock(),
        )
        await self.repository.create_execution(execution)
        return execution

    async def start_execution(
        self,
        definition: WorkflowDefinition,
        payload: Any = None,
        trigger_type: Optional[TriggerType] = None,
    ) -> Execution:
        execution = await self.create_execution(definition, payload, trigger_type)
        return await self.run_execution(execution.id, definition)

    async def run_execution(
        self, execution_id: str, definition: Optional[WorkflowDefinition] = None
    ) -> Execution:
        """Run a pending execution until it finishes or suspends."""
        claimed = await self.repository.update_execution_status(
            execution_id, "running", expected={"pending"}
        )
        if not claimed:
            execution = await self.get_execution(execution_id)
            logger.info(
                f"Execution {execution_id} is {execution.status}, not pending; skipping run"
            )
            return execution

        execution = await self.get_execution(execution_id)
        logger.info(f"Execution {execution_id} started for workflow {execution.workflow_id}")
        try:
            definition = definition or await self.load_definition(execution.workflow_id)
            graph = ExecutionGraph.from_definition(definition)
            triggers = graph.trigger_steps()
            if len(triggers) != 1:
                raise ValidationError(
                    f"Workflow {definition.id} must have exactly one trigger step"
                )
        except FlowgateError as exc:
            return await self._fail(execution_id, exc, None)

        context = ExecutionContext(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            trigger_payload=execution.trigger_payload,
        )
        return await self._walk(execution_id, graph, context, [triggers[0].id], executed=0)

    # ------------------------------------------------------------------
    # Traversal
    async def _walk(
        self,
        execution_id: str,
        graph: ExecutionGraph,
        context: ExecutionContext,
        frontier: Iterable[str],
        executed: int,
    ) -> Execution:
        queue = deque(frontier)
        while queue:
            step = graph.step(queue.popleft())
            if executed >= self.config.max_steps:
                return await self._fail(
                    execution_id,
                    StepExecutionError(
                        step.id, f"execution exceeded the limit of {self.config.max_steps} steps"
                    ),
                    step.id,
                )
            executed += 1

            if step.type is StepType.APPROVAL:
                return await self._suspend(execution_id, step, context)

            started_at = self.clock()
            error: Optional[StepExecutionError] = None
            outcome = None
            try:
                outcome = await asyncio.wait_for(
                    get_executor(step.type)(step, context.view(), self.services),
                    timeout=self.config.step_timeout_seconds,
                )
            except asyncio.TimeoutError:
                error = StepExecutionError(
                    step.id, f"timed out after {self.config.step_timeout_seconds:g}s"
                )
            except StepExecutionError as exc:
                error = exc
            except Exception as exc:
                error = StepExecutionError(step.id, str(exc) or type(exc).__name__, cause=exc)

            if await self._is_cancelled(execution_id):
                logger.info(
                    f"Execution {execution_id} was cancelled; discarding result of step {step.id}"
                )
                return await self.get_execution(execution_id)

            if error is not None:
                logger.warning(f"Execution {execution_id}: {error}")
                await self.repository.append_step_result(
                    execution_id,
                    StepResult(
                        step_id=step.id,
                        step_type=step.type.value,
                        status="error",
                        started_at=started_at,
                        completed_at=self.clock(),
                        error=_step_error(error),
                    ),
                )
                if not _continues_on_error(step):
                    return await self._fail(execution_id, error, step.id)
                context.record(step.id, {"error": str(error)})
                await self.repository.save_context(execution_id, context.snapshot())
                queue.extend(edge.target for edge in graph.outgoing.get(step.id, []))
                continue

            context.record(step.id, outcome.output)
            await self.repository.append_step_result(
                execution_id,
                StepResult(
                    step_id=step.id,
                    step_type=step.type.value,
                    status="success",
                    started_at=started_at,
                    completed_at=self.clock(),
                    output=outcome.output,
                    branch=outcome.branch,
                ),
            )
            await self.repository.save_context(execution_id, context.snapshot())

            if step.type is StepType.OUTPUT:
                return await self._complete(execution_id, outcome.output)

            if step.type is StepType.CONDITION:
                taken = graph.edge_for(step.id, outcome.branch or "")
                await self._skip_untaken(execution_id, graph, step.id, taken)
                if taken is not None:
                    queue.append(taken.target)
            else:
                queue.extend(edge.target for edge in graph.outgoing.get(step.id, []))

        return await self._complete(execution_id, context.previous_output)

    async def _skip_untaken(
        self,
        execution_id: str,
        graph: ExecutionGraph,
        step_id: str,
        taken: Optional[Edge],
    ) -> None:
        for edge in graph.outgoing.get(step_id, []):
            if edge is taken or (taken is not None and edge.target == taken.target):
                continue
            target = graph.step(edge.target)
            now = self.clock()
            await self.repository.append_step_result(
                execution_id,
                StepResult(
                    step_id=target.id,
                    step_type=target.type.value,
                    status="skipped",
                    started_at=now,
                    completed_at=now,
                ),
            )

    async def _is_cancelled(self, execution_id: str) -> bool:
        execution = await self.repository.get_execution(execution_id)
        return execution is not None and execution.status == "cancelled"

    # ------------------------------------------------------------------
    # Terminal transitions
    async def _complete(self, execution_id: str, output: Any) -> Execution:
        won = await self.repository.update_execution_status(
            execution_id, "completed", expected={"running"}, output=output
        )
        if won:
            logger.info(f"Execution {execution_id} completed")
        else:
            logger.info(f"Execution {execution_id} no longer running; completion discarded")
        return await self.get_execution(execution_id)

    async def _fail(
        self, execution_id: str, error: FlowgateError, step_id: Optional[str]
    ) -> Execution:
        won = await self.repository.update_execution_status(
            execution_id,
            "failed",
            expected={"running"},
            error=ExecutionError(kind=error.kind, message=str(error), step_id=step_id),
        )
        if won:
            logger.error(f"Execution {execution_id} failed: {error}")
        else:
            logger.info(f"Execution {execution_id} no longer running; failure discarded")
        return await self.get_execution(execution_id)

    # ------------------------------------------------------------------
    # Approvals
    async def _suspend(
        self, execution_id: str, step: Step, context: ExecutionContext
    ) -> Execution:
        execution = await self.get_execution(execution_id)
        request = await self.gate.open(execution, step)
        await self.repository.append_step_result(
            execution_id,
            StepResult(
                step_id=step.id,
                step_type=step.type.value,
                status="waiting_approval",
                started_at=request.requested_at,
                output={
                    "approval_request_id": request.id,
                    "deadline": request.deadline.isoformat(),
                },
            ),
        )
        await self.repository.save_context(execution_id, context.snapshot())
        suspended = await self.repository.update_execution_status(
            execution_id, "waiting_approval", expected={"running"}, waiting_step_id=step.id
        )
        if not suspended:
            await self.gate.cancel(request.id, "execution is no longer running")
        else:
            logger.info(f"Execution {execution_id} waiting for approval at step {step.id}")
        return await self.get_execution(execution_id)

    @staticmethod
    def _approval_edge(graph: ExecutionGraph, step_id: str, status: str) -> Optional[Edge]:
        if status == "approved":
            return graph.edge_for(step_id, HANDLE_APPROVED) or graph.edge_for(
                step_id, HANDLE_OUTPUT
            )
        handle = HANDLE_REJECTED if status == "rejected" else HANDLE_EXPIRED
        return graph.edge_for(step_id, handle)

    async def _resume(self, request: ApprovalRequest) -> Execution:
        execution = await self.get_execution(request.execution_id)
        if execution.status != "waiting_approval" or execution.waiting_step_id != request.step_id:
            logger.info(
                f"Execution {execution.id} is {execution.status}; "
                f"approval {request.id} does not resume it"
            )
            return execution

        resumed = await self.repository.update_execution_status(
            execution.id, "running", expected={"waiting_approval"}
        )
        if not resumed:
            logger.info(f"Execution {execution.id} was resumed or cancelled concurrently")
            return await self.get_execution(execution.id)

        try:
            graph = ExecutionGraph.from_definition(
                await self.load_definition(execution.workflow_id)
            )
            if request.step_id not in graph.steps:
                raise ValidationError(
                    f"Approval step {request.step_id} no longer exists in workflow "
                    f"{execution.workflow_id}"
                )
        except FlowgateError as exc:
            return await self._fail(execution.id, exc, request.step_id)

        step = graph.step(request.step_id)
        context = ExecutionContext.restore(
            execution.id, execution.workflow_id, execution.trigger_payload, execution.context
        )
        output = {
            "decision": request.status,
            "notes": request.notes,
            "responder_id": request.responder_id,
        }
        edge = self._approval_edge(graph, step.id, request.status)
        now = self.clock()

        if edge is None and request.status != "approved":
            error: FlowgateError
            if request.status == "rejected":
                error = ApprovalRejectedError(
                    f"Approval for step '{step.id}' was rejected"
                    + (f" by {request.responder_id}" if request.responder_id else "")
                )
            else:
                error = ApprovalExpiredError(
                    f"Approval for step '{step.id}' expired at {request.deadline.isoformat()}"
                )
            await self.repository.append_step_result(
                execution.id,
                StepResult(
                    step_id=step.id,
                    step_type=step.type.value,
                    status="error",
                    started_at=request.requested_at,
                    completed_at=now,
                    output=output,
                    error=_step_error(error),
                ),
            )
            return await self._fail(execution.id, error, step.id)

        context.record(step.id, output)
        await self.repository.append_step_result(
            execution.id,
            StepResult(
                step_id=step.id,
                step_type=step.type.value,
                status="success",
                started_at=request.requested_at,
                completed_at=now,
                output=output,
                branch=edge.source_handle if edge else HANDLE_APPROVED,
            ),
        )
        await self.repository.save_context(execution.id, context.snapshot())
        await self._skip_untaken(execution.id, graph, step.id, edge)

        if edge is None:
            return await self._complete(execution.id, output)
        executed = len({r.step_id for r in execution.step_results if r.status != "skipped"})
        return await self._walk(execution.id, graph, context, [edge.target], executed)

    async def submit_approval_response(
        self,
        request_id: str,
        decision: str,
        responder_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Execution:
        """Record a human decision and continue the owning execution."""
        request = await self.gate.respond(request_id, decision, responder_id, notes)
        return await self._resume(request)

    async def process_approval_timeouts(
        self, now: Optional[datetime] = None
    ) -> list[ApprovalRequest]:
        """Expire overdue approvals and resume their executions. Idempotent."""
        expired = await self.gate.expire_due(now)
        for request in expired:
            await self._resume(request)
        return expired

    async def cancel_approval(self, request_id: str, reason: str) -> Execution | None:
        """Reject a pending approval on behalf of the system and cancel its execution."""
        request = await self.gate.get(request_id)
        if not await self.gate.cancel(request_id, reason):
            return None
        return await self.cancel_execution(request.execution_id, reason)

    # ------------------------------------------------------------------
    # Cancellation
    async def cancel_execution(
        self, execution_id: str, reason: str = "cancelled by user"
    ) -> Execution:
        """Move a non-terminal execution to ``cancelled``; terminal ones are returned as-is."""
        execution = await self.get_execution(execution_id)
        if execution.is_terminal:
            logger.info(f"Execution {execution_id} already {execution.status}; nothing to cancel")
            return execution
        won = await self.repository.update_execution_status(
            execution_id,
            "cancelled",
            expected=ACTIVE_STATUSES,
            output=execution.output,
        )
        if won:
            logger.info(f"Execution {execution_id} cancelled: {reason}")
            await self.gate.cancel_for_execution(execution_id, reason)
        return await self.get_execution(execution_id)

    async def deactivate_workflow(
        self, workflow_id: str, reason: str = "workflow deactivated"
    ) -> list[str]:
        """Deactivate a workflow and cancel its executions waiting for approval."""
        if not await self.definitions.set_active(workflow_id, False):
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        cancelled = []
        for execution in await self.repository.list_executions(
            workflow_id=workflow_id, status="waiting_approval"
        ):
            await self.cancel_execution(execution.id, reason)
            cancelled.append(execution.id)
        return cancelled


def build_engine(config: Optional[FlowgateConfig] = None) -> WorkflowEngine:
    """Wire an engine from configuration: stores, adapters and limits."""
    config = config or load_config()
    return WorkflowEngine(
        repository=get_repository(config=config),
        definitions=get_definition_store(config=config),
        services=ExecutorServices.from_config(config),
        config=config.engine,
    )
