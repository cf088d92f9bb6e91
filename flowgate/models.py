"""Graph model: typed steps, edges and workflow definitions."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .constants import (
    DEFAULT_SEARCH_MAX_RESULTS,
    HANDLE_INPUT,
    HANDLE_OUTPUT,
)


class StepType(str, Enum):
    TRIGGER = "trigger"
    SEARCH = "search"
    ACTION = "action"
    CONDITION = "condition"
    TRANSFORM = "transform"
    OUTPUT = "output"
    APPROVAL = "approval"


class TriggerType(str, Enum):
    MANUAL = "manual"
    WEBHOOK = "webhook"
    SCHEDULED = "scheduled"


# ---------------------------------------------------------------------------
# Workflow-level trigger settings


class ScheduleSettings(BaseModel):
    """Cron expression or fixed interval (seconds) for scheduled workflows."""

    cron: Optional[str] = None
    interval: Optional[int] = None
    timezone: Optional[str] = None


class WebhookSettings(BaseModel):
    path: Optional[str] = None
    secret: Optional[str] = None
    async_execution: bool = False


class TriggerSettings(BaseModel):
    schedule: Optional[ScheduleSettings] = None
    webhook: Optional[WebhookSettings] = None


# ---------------------------------------------------------------------------
# Step configs, one per step type


class _StepConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


class TriggerConfig(_StepConfig):
    type: Literal["trigger"] = "trigger"
    trigger_type: Optional[TriggerType] = None
    schedule: Optional[ScheduleSettings] = None
    webhook: Optional[WebhookSettings] = None


class SearchConfig(_StepConfig):
    type: Literal["search"] = "search"
    search_type: Literal["knowledge_base", "external"] = "knowledge_base"
    query: str = ""
    max_results: int = Field(default=DEFAULT_SEARCH_MAX_RESULTS, ge=1)
    filters: Dict[str, Any] = Field(default_factory=dict)
    url: Optional[str] = None
    summarize_prompt: Optional[str] = None
    summary_max_tokens: int = 256

    @model_validator(mode="after")
    def _check_source(self) -> "SearchConfig":
        if self.search_type == "external" and not self.url:
            raise ValueError("external search requires 'url'")
        return self


class ApiCallSettings(_StepConfig):
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None


class LLMCallSettings(_StepConfig):
    prompt: str
    model: Optional[str] = None
    max_tokens: Optional[int] = Field(default=None, ge=1)


class NotificationSettings(_StepConfig):
    channel: Literal["webhook", "slack", "teams"] = "webhook"
    url: str
    recipients: List[str] = Field(default_factory=list)
    subject: str = ""
    template: str = ""


class ActionConfig(_StepConfig):
    type: Literal["action"] = "action"
    action_type: Literal["api_call", "llm_call", "notification"]
    api: Optional[ApiCallSettings] = None
    llm: Optional[LLMCallSettings] = None
    notification: Optional[NotificationSettings] = None
    continue_on_error: bool = False

    @model_validator(mode="after")
    def _check_settings(self) -> "ActionConfig":
        required = {
            "api_call": ("api", self.api),
            "llm_call": ("llm", self.llm),
            "notification": ("notification", self.notification),
        }
        field, value = required[self.action_type]
        if value is None:
            raise ValueError(f"{self.action_type} action requires '{field}' settings")
        return self


class SimpleCondition(_StepConfig):
    field: str
    operator: Literal[
        "equals",
        "not_equals",
        "contains",
        "greater_than",
        "less_than",
        "is_empty",
        "is_not_empty",
    ] = "equals"
    value: Any = None


class LLMDecision(_StepConfig):
    prompt: str = ""
    criteria: List[str] = Field(default_factory=list)


class ConditionConfig(_StepConfig):
    type: Literal["condition"] = "condition"
    condition_type: Literal["expression", "simple", "llm_decision"] = "expression"
    expression: Optional[str] = None
    simple: Optional[SimpleCondition] = None
    llm_decision: Optional[LLMDecision] = None

    @model_validator(mode="after")
    def _check_settings(self) -> "ConditionConfig":
        if self.condition_type == "expression" and not self.expression:
            raise ValueError("expression condition requires 'expression'")
        if self.condition_type == "simple" and self.simple is None:
            raise ValueError("simple condition requires 'simple' settings")
        if self.condition_type == "llm_decision" and self.llm_decision is None:
            raise ValueError("llm_decision condition requires 'llm_decision' settings")
        return self


class FieldMapping(_StepConfig):
    from_: str = Field(alias="from")
    to: str


class TransformConfig(_StepConfig):
    type: Literal["transform"] = "transform"
    transform_type: Literal["map", "pick", "filter", "aggregate", "merge", "template"]
    source: Optional[str] = None
    mappings: List[FieldMapping] = Field(default_factory=list)
    fields: List[str] = Field(default_factory=list)
    condition: Optional[str] = None
    operation: Literal["count", "sum", "average", "min", "max"] = "count"
    field: Optional[str] = None
    sources: List[str] = Field(default_factory=list)
    strategy: Literal["concat", "merge", "zip"] = "merge"
    template: Optional[str] = None

    @model_validator(mode="after")
    def _check_settings(self) -> "TransformConfig":
        needs = {
            "map": ("mappings", self.mappings),
            "pick": ("fields", self.fields),
            "filter": ("condition", self.condition),
            "merge": ("sources", self.sources),
            "template": ("template", self.template),
        }
        if self.transform_type in needs:
            field, value = needs[self.transform_type]
            if not value:
                raise ValueError(f"{self.transform_type} transform requires '{field}'")
        return self


class OutputConfig(_StepConfig):
    type: Literal["output"] = "output"
    output_type: Literal["return", "log", "webhook"] = "return"
    format: Literal["json", "text"] = "json"
    template: Optional[str] = None
    webhook_url: Optional[str] = None

    @model_validator(mode="after")
    def _check_settings(self) -> "OutputConfig":
        if self.output_type == "webhook" and not self.webhook_url:
            raise ValueError("webhook output requires 'webhook_url'")
        return self


class ApprovalConfig(_StepConfig):
    type: Literal["approval"] = "approval"
    title: str = "Workflow Approval Required"
    description: Optional[str] = None
    instructions: Optional[str] = None
    approvers: List[str] = Field(default_factory=list)
    timeout_hours: Optional[float] = Field(default=None, gt=0)


StepConfig = Annotated[
    Union[
        TriggerConfig,
        SearchConfig,
        ActionConfig,
        ConditionConfig,
        TransformConfig,
        OutputConfig,
        ApprovalConfig,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Graph


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0


class Step(BaseModel):
    """A typed node in the workflow graph."""

    id: str
    workflow_id: Optional[str] = None
    type: StepType
    label: str = ""
    config: StepConfig
    position: Position = Field(default_factory=Position)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _tag_config(cls, data: Any) -> Any:
        if isinstance(data, dict):
            config = data.get("config")
            step_type = data.get("type")
            if isinstance(step_type, StepType):
                step_type = step_type.value
            if config is None:
                data = {**data, "config": {"type": step_type}}
            elif isinstance(config, dict) and "type" not in config:
                data = {**data, "config": {**config, "type": step_type}}
        return data

    @model_validator(mode="after")
    def _check_config_type(self) -> "Step":
        if self.config.type != self.type.value:
            raise ValueError(
                f"config of type '{self.config.type}' does not match step type '{self.type.value}'"
            )
        return self


class Edge(BaseModel):
    """A directed connection between two steps."""

    id: str
    workflow_id: Optional[str] = None
    source: str
    target: str
    source_handle: str = HANDLE_OUTPUT
    target_handle: str = HANDLE_INPUT
    label: Optional[str] = None
    animated: bool = False

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.source, self.target, self.source_handle, self.target_handle)


class WorkflowDefinition(BaseModel):
    """Persisted graph of steps and edges describing an automation."""

    id: str
    name: str
    description: Optional[str] = None
    is_active: bool = True
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_config: TriggerSettings = Field(default_factory=TriggerSettings)
    steps: List[Step] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    def trigger_settings(self) -> TriggerSettings:
        """Workflow trigger settings, falling back to those on the trigger step."""
        schedule = self.trigger_config.schedule
        webhook = self.trigger_config.webhook
        for step in self.steps:
            if step.type is StepType.TRIGGER:
                schedule = schedule or step.config.schedule
                webhook = webhook or step.config.webhook
        return TriggerSettings(schedule=schedule, webhook=webhook)


class ExecutionGraph:
    """Adjacency view of a workflow used during traversal."""

    def __init__(self, steps: Iterable[Step], edges: Iterable[Edge]) -> None:
        self.steps: Dict[str, Step] = {step.id: step for step in steps}
        self.edges: List[Edge] = list(edges)
        self.outgoing: Dict[str, List[Edge]] = {step_id: [] for step_id in self.steps}
        self.incoming: Dict[str, List[Edge]] = {step_id: [] for step_id in self.steps}
        for edge in self.edges:
            self.outgoing.setdefault(edge.source, []).append(edge)
            self.incoming.setdefault(edge.target, []).append(edge)

    @classmethod
    def from_definition(cls, definition: WorkflowDefinition) -> "ExecutionGraph":
        return cls(definition.steps, definition.edges)

    def step(self, step_id: str) -> Step:
        return self.steps[step_id]

    def trigger_steps(self) -> List[Step]:
        return [s for s in self.steps.values() if s.type is StepType.TRIGGER]

    def edge_for(self, step_id: str, handle: str) -> Optional[Edge]:
        """Return the outgoing edge of ``step_id`` leaving through ``handle``."""
        for edge in self.outgoing.get(step_id, []):
            if edge.source_handle == handle:
                return edge
        return None

    def successors(self, step_id: str) -> List[str]:
        return [edge.target for edge in self.outgoing.get(step_id, [])]
