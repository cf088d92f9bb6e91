"""Shared fixtures: graph builders, fake collaborators and a wired engine."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from flowgate.config import EngineConfig
from flowgate.db import InMemoryDefinitionStore
from flowgate.engine import WorkflowEngine
from flowgate.executors import ExecutorServices
from flowgate.models import Edge, Step, StepType, TriggerType, WorkflowDefinition
from flowgate.network import ActionResponse
from flowgate.persistence import InMemoryExecutionRepository
from flowgate.search import InMemorySearchService


class WorkflowBuilder:
    """Small fluent helper for assembling definitions in tests."""

    def __init__(
        self,
        workflow_id: str = "wf-1",
        name: str = "Test workflow",
        trigger_type: TriggerType = TriggerType.MANUAL,
        **kwargs: Any,
    ) -> None:
        self.workflow_id = workflow_id
        self.name = name
        self.trigger_type = trigger_type
        self.kwargs = kwargs
        self.steps: list[Step] = []
        self.edges: list[Edge] = []

    def step(self, step_id: str, step_type: StepType | str, **config: Any) -> "WorkflowBuilder":
        self.steps.append(
            Step(id=step_id, type=StepType(step_type), label=step_id, config=config)
        )
        return self

    def edge(self, source: str, target: str, handle: str = "output") -> "WorkflowBuilder":
        self.edges.append(
            Edge(
                id=f"{source}-{handle}-{target}",
                source=source,
                target=target,
                source_handle=handle,
            )
        )
        return self

    def build(self) -> WorkflowDefinition:
        return WorkflowDefinition(
            id=self.workflow_id,
            name=self.name,
            trigger_type=self.trigger_type,
            steps=list(self.steps),
            edges=list(self.edges),
            **self.kwargs,
        )


class FakeClock:
    """Manually advanced clock returning aware UTC datetimes."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNetwork:
    """Network executor double that records calls and replays canned responses."""

    def __init__(self, responses: Optional[dict[str, ActionResponse]] = None) -> None:
        self.responses = responses or {}
        self.calls: list[dict[str, Any]] = []

    async def invoke(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
    ) -> ActionResponse:
        self.calls.append({"method": method, "url": url, "headers": headers, "body": body})
        for prefix, response in self.responses.items():
            if url.startswith(prefix):
                return response
        return ActionResponse(status_code=200, body={"ok": True})


class StaticTextGenerator:
    """Text generation double returning a fixed reply and recording prompts."""

    def __init__(self, reply: str = "generated") -> None:
        self.reply = reply
        self.prompts: list[str] = []
        self.max_tokens: list[Optional[int]] = []

    async def generate(
        self, prompt: str, max_tokens: Optional[int] = None, model: Optional[str] = None
    ) -> str:
        self.prompts.append(prompt)
        self.max_tokens.append(max_tokens)
        return self.reply


@pytest.fixture
def builder():
    return WorkflowBuilder


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def network():
    return RecordingNetwork()


@pytest.fixture
def text_generator():
    return StaticTextGenerator()


@pytest.fixture
def services(network, text_generator):
    return ExecutorServices(
        network=network,
        text_generator=text_generator,
        search=InMemorySearchService(),
    )


@pytest.fixture
def repository():
    return InMemoryExecutionRepository()


@pytest.fixture
def definitions():
    return InMemoryDefinitionStore()


@pytest.fixture
def engine(repository, definitions, services, clock):
    return WorkflowEngine(
        repository=repository,
        definitions=definitions,
        services=services,
        config=EngineConfig(approval_timeout_hours=1),
        clock=clock,
    )
