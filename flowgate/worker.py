"""Worker that runs executions published on the transport."""

from __future__ import annotations

import logging
from typing import Optional

from .constants import DEFAULT_TOPIC
from .contracts import TriggerMessage
from .engine import WorkflowEngine
from .errors import FlowgateError
from .persistence.models import Execution
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class ExecutionWorker:
    """Consumes :class:`TriggerMessage` items and runs the pending executions."""

    def __init__(
        self,
        transport: BaseTransport,
        engine: WorkflowEngine,
        topic: str = DEFAULT_TOPIC,
    ) -> None:
        self._transport = transport
        self._engine = engine
        self._topic = topic
        self.processed: list[str] = []

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Listen on the topic until ``lifespan`` seconds pass (forever when None)."""
        logger.info(f"Worker listening on {self._topic}")
        async for raw_message, message in self._transport.subscribe(
            self._topic, lifespan=lifespan
        ):
            try:
                await self.handle(message)
            except Exception:
                logger.exception(
                    f"Unexpected error running execution {message.execution_id}"
                )
                await self._transport.nack(raw_message, requeue=False)
                continue
            await self._transport.ack(raw_message)

    async def handle(self, message: TriggerMessage) -> Optional[Execution]:
        """Run the execution named by ``message``.

        Missing executions are logged and dropped; the engine's own status
        check makes redelivered messages harmless.
        """
        try:
            execution = await self._engine.run_execution(message.execution_id)
        except FlowgateError as e:
            logger.error(f"Dropping message {message.message_id}: {e}")
            return None
        self.processed.append(execution.id)
        logger.info(
            f"Execution {execution.id} for workflow {message.workflow_id} is {execution.status}"
        )
        return execution
