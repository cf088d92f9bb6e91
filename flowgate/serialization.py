"""Conversion between persisted records and the execution graph."""

from __future__ import annotations

from typing import List, Sequence, Tuple

from pydantic import ValidationError as PydanticValidationError

from .constants import HANDLE_INPUT, HANDLE_OUTPUT
from .errors import SerializationError
from .models import (
    Edge,
    ExecutionGraph,
    Position,
    Step,
    StepType,
    TriggerSettings,
    TriggerType,
    WorkflowDefinition,
)
from .records import EdgeRecord, StepRecord, WorkflowRecord

# Keys accepted at the top level of a legacy trigger_config.
_LEGACY_SCHEDULE_KEYS = ("cron", "interval", "timezone")


def _describe(exc: PydanticValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "type")
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


def step_from_record(record: StepRecord) -> Step:
    """Decode one persisted step, failing closed on malformed config."""
    try:
        step_type = StepType(record.step_type)
    except ValueError:
        raise SerializationError(
            record.id, f"Step '{record.id}' has unknown type '{record.step_type}'"
        ) from None

    config = {k: v for k, v in record.config.items() if k != "type"}
    config["type"] = step_type.value
    try:
        return Step(
            id=record.id,
            workflow_id=record.workflow_id,
            type=step_type,
            label=record.step_name,
            config=config,
            position=Position(x=record.position_x, y=record.position_y),
            metadata=dict(record.ui_config),
        )
    except PydanticValidationError as exc:
        raise SerializationError(
            record.id,
            f"Step '{record.id}' ({step_type.value}) has invalid config: {_describe(exc)}",
        ) from exc


def step_to_record(step: Step, step_number: int) -> StepRecord:
    config = step.config.model_dump(
        mode="json", by_alias=True, exclude_unset=True, exclude={"type"}
    )
    return StepRecord(
        id=step.id,
        workflow_id=step.workflow_id,
        step_number=step_number,
        step_name=step.label,
        step_type=step.type.value,
        config=config,
        position_x=step.position.x,
        position_y=step.position.y,
        ui_config=dict(step.metadata),
    )


def edge_from_record(record: EdgeRecord, steps: dict[str, Step]) -> Edge:
    for ref in (record.source_step_id, record.target_step_id):
        if ref not in steps:
            raise SerializationError(
                record.id, f"Edge '{record.id}' references unknown step '{ref}'"
            )

    source_handle = record.source_handle
    if not source_handle:
        if steps[record.source_step_id].type is StepType.CONDITION:
            raise SerializationError(
                record.id,
                f"Edge '{record.id}' leaves condition step '{record.source_step_id}' "
                "without a 'true' or 'false' handle",
            )
        source_handle = HANDLE_OUTPUT

    return Edge(
        id=record.id,
        workflow_id=record.workflow_id,
        source=record.source_step_id,
        target=record.target_step_id,
        source_handle=source_handle,
        target_handle=record.target_handle or HANDLE_INPUT,
        label=record.label,
        animated=record.animated,
    )


def edge_to_record(edge: Edge) -> EdgeRecord:
    return EdgeRecord(
        id=edge.id,
        workflow_id=edge.workflow_id,
        source_step_id=edge.source,
        target_step_id=edge.target,
        source_handle=edge.source_handle,
        target_handle=edge.target_handle,
        label=edge.label,
        animated=edge.animated,
    )


def steps_to_graph(
    steps: Sequence[StepRecord], edges: Sequence[EdgeRecord]
) -> ExecutionGraph:
    """Build the execution graph from persisted step and edge records."""
    ordered = sorted(enumerate(steps), key=lambda item: (item[1].step_number, item[0]))
    decoded: dict[str, Step] = {}
    for _, record in ordered:
        if record.id in decoded:
            raise SerializationError(record.id, f"Duplicate step id '{record.id}'")
        decoded[record.id] = step_from_record(record)
    graph_edges = [edge_from_record(record, decoded) for record in edges]
    return ExecutionGraph(decoded.values(), graph_edges)


def graph_to_steps(graph: ExecutionGraph) -> Tuple[List[StepRecord], List[EdgeRecord]]:
    """Flatten an execution graph back to persistable records."""
    step_records = [
        step_to_record(step, index + 1) for index, step in enumerate(graph.steps.values())
    ]
    edge_records = [edge_to_record(edge) for edge in graph.edges]
    return step_records, edge_records


def _trigger_settings(record: WorkflowRecord) -> TriggerSettings:
    raw = dict(record.trigger_config)
    if any(key in raw for key in _LEGACY_SCHEDULE_KEYS) and "schedule" not in raw:
        raw["schedule"] = {key: raw.pop(key) for key in _LEGACY_SCHEDULE_KEYS if key in raw}
    try:
        return TriggerSettings.model_validate(raw)
    except PydanticValidationError as exc:
        raise SerializationError(
            record.id, f"Workflow '{record.id}' has invalid trigger_config: {_describe(exc)}"
        ) from exc


def definition_from_record(record: WorkflowRecord) -> WorkflowDefinition:
    try:
        trigger_type = TriggerType(record.trigger_type)
    except ValueError:
        raise SerializationError(
            record.id,
            f"Workflow '{record.id}' has unknown trigger type '{record.trigger_type}'",
        ) from None

    graph = steps_to_graph(record.steps, record.edges)
    return WorkflowDefinition(
        id=record.id,
        name=record.name,
        description=record.description,
        is_active=record.is_active,
        trigger_type=trigger_type,
        trigger_config=_trigger_settings(record),
        steps=list(graph.steps.values()),
        edges=graph.edges,
    )


def definition_to_record(definition: WorkflowDefinition) -> WorkflowRecord:
    steps, edges = graph_to_steps(ExecutionGraph.from_definition(definition))
    return WorkflowRecord(
        id=definition.id,
        name=definition.name,
        description=definition.description,
        is_active=definition.is_active,
        trigger_type=definition.trigger_type.value,
        trigger_config=definition.trigger_config.model_dump(mode="json", exclude_none=True),
        steps=steps,
        edges=edges,
    )
