"""In-memory workflow definition store."""

from __future__ import annotations

from typing import Dict, Iterable

from ..models import TriggerType, WorkflowDefinition
from ..records import WorkflowRecord
from ..serialization import definition_from_record, definition_to_record


class InMemoryDefinitionStore:
    """Keeps serialized workflow records in a dict.

    Definitions go through the same record round trip as the SQL store, so
    anything that loads here would load from the database too.
    """

    def __init__(self, definitions: Iterable[WorkflowDefinition] = ()) -> None:
        self._records: Dict[str, WorkflowRecord] = {}
        for definition in definitions:
            self._records[definition.id] = definition_to_record(definition)

    async def init_db(self) -> None:
        return None

    async def get_record(self, workflow_id: str) -> WorkflowRecord | None:
        record = self._records.get(workflow_id)
        return record.model_copy(deep=True) if record else None

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        record = self._records.get(workflow_id)
        return definition_from_record(record) if record else None

    async def list_workflows(self) -> list[WorkflowDefinition]:
        return [definition_from_record(r) for _, r in sorted(self._records.items())]

    async def list_active_scheduled_workflows(self) -> list[WorkflowDefinition]:
        return [
            definition_from_record(r)
            for _, r in sorted(self._records.items())
            if r.is_active and r.trigger_type == TriggerType.SCHEDULED.value
        ]

    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        self._records[definition.id] = definition_to_record(definition)

    async def set_active(self, workflow_id: str, active: bool) -> bool:
        record = self._records.get(workflow_id)
        if record is None:
            return False
        record.is_active = active
        return True

    async def delete_workflow(self, workflow_id: str) -> bool:
        return self._records.pop(workflow_id, None) is not None

    async def close(self) -> None:
        return None
