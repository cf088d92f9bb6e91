"""Message contracts for asynchronous execution dispatch."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from .persistence.models import Execution


class TriggerMessage(BaseModel):
    """Asks a worker to run one pending execution."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    execution_id: str
    workflow_id: str
    trigger_type: str = "webhook"
    published_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def for_execution(cls, execution: Execution) -> "TriggerMessage":
        return cls(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            trigger_type=execution.trigger_type,
        )

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "TriggerMessage":
        return cls.model_validate_json(data)
