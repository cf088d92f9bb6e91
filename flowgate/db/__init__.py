"""Workflow definition storage."""

from __future__ import annotations

import os
from typing import Optional, Protocol

from ..config import FlowgateConfig, load_config
from ..models import WorkflowDefinition
from .definition_db import SQLDefinitionStore
from .inmemory import InMemoryDefinitionStore
from .models import EdgeRow, StepRow, WorkflowRow


class DefinitionStore(Protocol):
    """Read access used by the engine plus the writes used by tooling."""

    async def init_db(self) -> None:
        """Create tables if needed."""

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        """Load and decode one definition."""

    async def list_active_scheduled_workflows(self) -> list[WorkflowDefinition]:
        """Active definitions with a scheduled trigger."""

    async def list_workflows(self) -> list[WorkflowDefinition]:
        """All definitions."""

    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        """Insert or replace a definition."""

    async def set_active(self, workflow_id: str, active: bool) -> bool:
        """Toggle ``is_active``; ``False`` when the workflow is unknown."""

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Remove a definition; ``False`` when the workflow is unknown."""


_store_instance: DefinitionStore | None = None


def get_definition_store(
    definitions_url: Optional[str] = None, config: Optional[FlowgateConfig] = None
) -> DefinitionStore:
    """Return the configured definition store.

    ``definitions_url`` is any async SQLAlchemy URL (for example
    ``sqlite+aiosqlite:///flowgate.db``); falls back to
    ``FLOWGATE_DEFINITIONS_URL`` and then configuration. Without one an
    in-memory store is used.
    """

    global _store_instance
    if _store_instance is not None and definitions_url is None and config is None:
        return _store_instance

    config = config or load_config()
    definitions_url = (
        definitions_url
        or os.getenv("FLOWGATE_DEFINITIONS_URL")
        or getattr(config, "definitions_url", None)
    )
    if definitions_url:
        _store_instance = SQLDefinitionStore(definitions_url)
    else:
        _store_instance = InMemoryDefinitionStore()
    return _store_instance


__all__ = [
    "DefinitionStore",
    "EdgeRow",
    "InMemoryDefinitionStore",
    "SQLDefinitionStore",
    "StepRow",
    "WorkflowRow",
    "get_definition_store",
]
