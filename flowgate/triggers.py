"""Map inbound webhook calls, manual runs and scheduled ticks to executions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .constants import DEFAULT_TOPIC
from .cron import CronExpression
from .engine import WorkflowEngine
from .errors import CronParseError, FlowgateError, WebhookAuthError, WorkflowInactiveError
from .models import ScheduleSettings, TriggerType, WorkflowDefinition
from .persistence.models import Execution
from .transports import BaseTransport

logger = logging.getLogger(__name__)

WEBHOOK_SECRET_HEADER = "x-webhook-secret"
SCHEDULED_TIME_KEY = "scheduled_time"


@dataclass
class ScheduleRunResult:
    """Outcome of one workflow in a scheduled sweep."""

    workflow_id: str
    workflow_name: str
    executed: bool
    execution_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _minute(moment: datetime) -> datetime:
    return _as_utc(moment).replace(second=0, microsecond=0)


def _scheduled_time(execution: Execution) -> datetime:
    payload = execution.trigger_payload
    if isinstance(payload, dict) and isinstance(payload.get(SCHEDULED_TIME_KEY), str):
        try:
            return datetime.fromisoformat(payload[SCHEDULED_TIME_KEY])
        except ValueError:
            pass
    return execution.started_at


class TriggerDispatcher:
    """Starts executions for the three trigger kinds."""

    def __init__(
        self,
        engine: WorkflowEngine,
        transport: Optional[BaseTransport] = None,
        topic: str = DEFAULT_TOPIC,
    ) -> None:
        self.engine = engine
        self.transport = transport
        self.topic = topic

    async def _load_active(self, workflow_id: str) -> WorkflowDefinition:
        definition = await self.engine.load_definition(workflow_id)
        if not definition.is_active:
            raise WorkflowInactiveError(f"Workflow {workflow_id} is not active")
        return definition

    async def trigger_manual(self, workflow_id: str, payload: Any = None) -> Execution:
        """Start an execution immediately and run it to completion or suspension."""
        definition = await self._load_active(workflow_id)
        logger.info(f"Manual trigger for workflow {workflow_id}")
        return await self.engine.start_execution(definition, payload, TriggerType.MANUAL)

    async def trigger_webhook(
        self,
        workflow_id: str,
        payload: Any = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Execution:
        """Start an execution from an inbound webhook call.

        When the workflow's webhook settings ask for asynchronous execution
        and a transport is configured, the pending execution is published for
        a worker and returned without running.
        """
        definition = await self._load_active(workflow_id)
        webhook = definition.trigger_settings().webhook

        if webhook is not None and webhook.secret:
            provided = {k.lower(): v for k, v in (headers or {}).items()}.get(
                WEBHOOK_SECRET_HEADER
            )
            if provided != webhook.secret:
                raise WebhookAuthError(f"Invalid webhook secret for workflow {workflow_id}")

        if webhook is not None and webhook.async_execution and self.transport is not None:
            execution = await self.engine.create_execution(
                definition, payload, TriggerType.WEBHOOK
            )
            await self.transport.enqueue(self.topic, execution)
            logger.info(f"Queued execution {execution.id} for workflow {workflow_id}")
            return execution

        logger.info(f"Webhook trigger for workflow {workflow_id}")
        return await self.engine.start_execution(definition, payload, TriggerType.WEBHOOK)

    async def webhook_info(self, workflow_id: str) -> dict[str, Any]:
        definition = await self.engine.load_definition(workflow_id)
        return {
            "workflowId": definition.id,
            "workflowName": definition.name,
            "triggerType": definition.trigger_type.value,
            "isActive": definition.is_active,
            "webhookEnabled": definition.trigger_type is TriggerType.WEBHOOK,
        }

    # ------------------------------------------------------------------
    # Scheduled sweep
    async def is_due(
        self, definition: WorkflowDefinition, schedule: ScheduleSettings, now: datetime
    ) -> bool:
        """Whether ``definition`` should start at ``now``.

        Raises :class:`CronParseError` for malformed expressions or unknown
        timezones.
        """
        if schedule.cron:
            expression = CronExpression.parse(schedule.cron)
            try:
                zone = ZoneInfo(schedule.timezone) if schedule.timezone else timezone.utc
            except (ZoneInfoNotFoundError, ValueError) as e:
                raise CronParseError(f"Unknown timezone '{schedule.timezone}'") from e
            if not expression.matches(_as_utc(now).astimezone(zone)):
                return False
            last = await self.engine.repository.get_last_execution(
                definition.id, trigger_type=TriggerType.SCHEDULED.value
            )
            if last is not None and _minute(_scheduled_time(last)) == _minute(now):
                logger.info(
                    f"Workflow {definition.id} already started in this minute; skipping"
                )
                return False
            return True

        if schedule.interval:
            last = await self.engine.repository.get_last_completed_execution(definition.id)
            if last is None or last.completed_at is None:
                return True
            elapsed = _as_utc(now) - _as_utc(last.completed_at)
            return elapsed >= timedelta(seconds=schedule.interval)

        return False

    async def run_scheduled(self, now: Optional[datetime] = None) -> list[ScheduleRunResult]:
        """Evaluate every active scheduled workflow once and start the due ones.

        Each workflow is isolated: a malformed schedule or a failing run is
        reported on its own entry and never aborts the sweep.
        """
        now = now or self.engine.clock()
        results: list[ScheduleRunResult] = []

        for definition in await self.engine.definitions.list_active_scheduled_workflows():
            entry = ScheduleRunResult(
                workflow_id=definition.id, workflow_name=definition.name, executed=False
            )
            results.append(entry)

            schedule = definition.trigger_settings().schedule
            if schedule is None:
                entry.error = "Workflow has no schedule configured"
                logger.error(f"Scheduled workflow {definition.id} has no schedule; skipping")
                continue

            try:
                due = await self.is_due(definition, schedule, now)
            except CronParseError as e:
                entry.error = str(e)
                logger.error(f"Skipping scheduled workflow {definition.id}: {e}")
                continue

            if not due:
                continue

            entry.executed = True
            try:
                execution = await self.engine.start_execution(
                    definition,
                    {SCHEDULED_TIME_KEY: _as_utc(now).isoformat()},
                    TriggerType.SCHEDULED,
                )
            except FlowgateError as e:
                entry.error = str(e)
                logger.error(f"Scheduled run of workflow {definition.id} failed: {e}")
                continue
            except Exception as e:
                entry.error = str(e) or type(e).__name__
                logger.exception(f"Scheduled run of workflow {definition.id} crashed")
                continue

            entry.execution_id = execution.id
            entry.status = execution.status

        executed = sum(1 for r in results if r.executed)
        logger.info(f"Scheduled sweep at {now.isoformat()}: {executed}/{len(results)} started")
        return results
