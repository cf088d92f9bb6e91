"""Workflow graph validation.

``validate_workflow`` checks a complete definition before it is saved or run;
``validate_connection`` is used while a graph is being edited and rejects a
single proposed edge that would break the same rules.
"""

from __future__ import annotations

from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field

from .constants import APPROVAL_HANDLES, CONDITION_HANDLES, HANDLE_APPROVED, HANDLE_OUTPUT
from .cron import CronExpression
from .errors import CronParseError
from .models import Edge, Step, StepType, TriggerType, WorkflowDefinition

CONNECTION_RULES: Dict[StepType, frozenset[StepType]] = {
    StepType.TRIGGER: frozenset(
        {
            StepType.SEARCH,
            StepType.ACTION,
            StepType.CONDITION,
            StepType.TRANSFORM,
            StepType.OUTPUT,
            StepType.APPROVAL,
        }
    ),
    StepType.SEARCH: frozenset(
        {StepType.ACTION, StepType.CONDITION, StepType.TRANSFORM, StepType.OUTPUT, StepType.APPROVAL}
    ),
    StepType.ACTION: frozenset(
        {
            StepType.SEARCH,
            StepType.ACTION,
            StepType.CONDITION,
            StepType.TRANSFORM,
            StepType.OUTPUT,
            StepType.APPROVAL,
        }
    ),
    StepType.CONDITION: frozenset(
        {
            StepType.SEARCH,
            StepType.ACTION,
            StepType.CONDITION,
            StepType.TRANSFORM,
            StepType.OUTPUT,
            StepType.APPROVAL,
        }
    ),
    StepType.TRANSFORM: frozenset(
        {
            StepType.SEARCH,
            StepType.ACTION,
            StepType.CONDITION,
            StepType.TRANSFORM,
            StepType.OUTPUT,
            StepType.APPROVAL,
        }
    ),
    StepType.OUTPUT: frozenset(),
    StepType.APPROVAL: frozenset(
        {StepType.SEARCH, StepType.ACTION, StepType.CONDITION, StepType.TRANSFORM, StepType.OUTPUT}
    ),
}


class ValidationIssue(BaseModel):
    """A single validation finding."""

    code: str
    message: str
    step_ids: List[str] = Field(default_factory=list)


class ValidationResult(BaseModel):
    valid: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)

    def messages(self) -> List[str]:
        return [issue.message for issue in self.errors]


def allowed_handles(step_type: StepType) -> tuple[str, ...]:
    """Source handles a step of ``step_type`` may leave through."""
    if step_type is StepType.CONDITION:
        return CONDITION_HANDLES
    if step_type is StepType.APPROVAL:
        return (HANDLE_OUTPUT,) + APPROVAL_HANDLES
    if step_type is StepType.OUTPUT:
        return ()
    return (HANDLE_OUTPUT,)


def _canonical_handle(step_type: StepType, handle: str) -> str:
    # An approval's plain output edge is its approved branch.
    if step_type is StepType.APPROVAL and handle == HANDLE_OUTPUT:
        return HANDLE_APPROVED
    return handle


def find_cycle(step_ids: Iterable[str], edges: Iterable[Edge]) -> Optional[List[str]]:
    """Return the step ids of one cycle, or ``None`` if the graph is acyclic.

    Iterative DFS with an explicit recursion stack; a back edge onto a step
    that is still on the stack closes a cycle.
    """
    adjacency: Dict[str, List[str]] = {}
    for step_id in step_ids:
        adjacency.setdefault(step_id, [])
    for edge in edges:
        adjacency.setdefault(edge.source, []).append(edge.target)
        adjacency.setdefault(edge.target, [])

    visited: set[str] = set()
    for root in adjacency:
        if root in visited:
            continue
        path: List[str] = [root]
        on_path = {root}
        iterators = [iter(adjacency[root])]
        visited.add(root)
        while iterators:
            child = next(iterators[-1], None)
            if child is None:
                iterators.pop()
                on_path.discard(path.pop())
                continue
            if child in on_path:
                return path[path.index(child):]
            if child not in visited:
                visited.add(child)
                path.append(child)
                on_path.add(child)
                iterators.append(iter(adjacency[child]))
    return None


def _reachable(start: str, edges: Sequence[Edge]) -> set[str]:
    seen: set[str] = set()
    stack = [start]
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        stack.extend(e.target for e in edges if e.source == current and e.target not in seen)
    return seen


def _check_trigger_settings(definition: WorkflowDefinition) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    if definition.trigger_type is not TriggerType.SCHEDULED:
        return issues

    schedule = definition.trigger_settings().schedule
    if schedule is None or (not schedule.cron and schedule.interval is None):
        issues.append(
            ValidationIssue(
                code="schedule_missing",
                message="Scheduled workflows need a cron expression or an interval",
            )
        )
        return issues
    if schedule.cron:
        try:
            CronExpression.parse(schedule.cron)
        except CronParseError as exc:
            issues.append(ValidationIssue(code="invalid_cron", message=str(exc)))
    elif schedule.interval is not None and schedule.interval <= 0:
        issues.append(
            ValidationIssue(code="invalid_interval", message="Schedule interval must be positive")
        )
    if schedule.timezone:
        try:
            ZoneInfo(schedule.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            issues.append(
                ValidationIssue(
                    code="invalid_timezone",
                    message=f"Unknown timezone '{schedule.timezone}'",
                )
            )
    return issues


def validate_workflow(definition: WorkflowDefinition) -> ValidationResult:
    """Validate the whole workflow graph."""
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []
    steps = definition.steps
    edges = definition.edges

    if not steps:
        errors.append(ValidationIssue(code="empty", message="Workflow must have at least one step"))
        return ValidationResult(valid=False, errors=errors)

    id_counts = Counter(step.id for step in steps)
    duplicates = sorted(step_id for step_id, count in id_counts.items() if count > 1)
    if duplicates:
        errors.append(
            ValidationIssue(
                code="duplicate_step",
                message=f"Duplicate step ids: {', '.join(duplicates)}",
                step_ids=duplicates,
            )
        )
    by_id = {step.id: step for step in steps}

    # (a) exactly one trigger
    triggers = [step for step in steps if step.type is StepType.TRIGGER]
    if len(triggers) != 1:
        errors.append(
            ValidationIssue(
                code="trigger_count",
                message=f"Workflow must have exactly one trigger step, found {len(triggers)}",
                step_ids=[t.id for t in triggers],
            )
        )
    for trigger in triggers:
        declared = trigger.config.trigger_type
        if declared is not None and declared != definition.trigger_type:
            errors.append(
                ValidationIssue(
                    code="trigger_type_mismatch",
                    message=(
                        f"Trigger step '{trigger.id}' is '{declared.value}' but the "
                        f"workflow trigger is '{definition.trigger_type.value}'"
                    ),
                    step_ids=[trigger.id],
                )
            )

    # Edge references, self loops and duplicates
    known_edges: List[Edge] = []
    seen_keys: set[tuple[str, str, str, str]] = set()
    for edge in edges:
        missing = [ref for ref in (edge.source, edge.target) if ref not in by_id]
        if missing:
            errors.append(
                ValidationIssue(
                    code="unknown_step",
                    message=f"Edge '{edge.id}' references unknown step(s): {', '.join(missing)}",
                    step_ids=missing,
                )
            )
            continue
        if edge.source == edge.target:
            errors.append(
                ValidationIssue(
                    code="self_loop",
                    message=f"Step '{edge.source}' cannot connect to itself",
                    step_ids=[edge.source],
                )
            )
        if edge.key in seen_keys:
            errors.append(
                ValidationIssue(
                    code="duplicate_edge",
                    message=f"Duplicate edge {edge.source} -> {edge.target} ({edge.source_handle})",
                    step_ids=[edge.source, edge.target],
                )
            )
            continue
        seen_keys.add(edge.key)
        known_edges.append(edge)

    incoming: Dict[str, List[Edge]] = {step_id: [] for step_id in by_id}
    outgoing: Dict[str, List[Edge]] = {step_id: [] for step_id in by_id}
    for edge in known_edges:
        outgoing[edge.source].append(edge)
        incoming[edge.target].append(edge)

    for step in by_id.values():
        out = outgoing[step.id]
        handles = [_canonical_handle(step.type, e.source_handle) for e in out]

        # (b) every non-trigger step is reachable through an incoming edge
        if step.type is StepType.TRIGGER:
            if incoming[step.id]:
                errors.append(
                    ValidationIssue(
                        code="trigger_incoming",
                        message=f"Trigger step '{step.id}' cannot have incoming edges",
                        step_ids=[step.id],
                    )
                )
        elif not incoming[step.id]:
            errors.append(
                ValidationIssue(
                    code="no_incoming",
                    message=f"Step '{step.id}' has no incoming edge",
                    step_ids=[step.id],
                )
            )

        bad_handles = sorted({h for h in handles if h not in allowed_handles(step.type)})

        # (c) condition: exactly one true and one false edge
        if step.type is StepType.CONDITION:
            if sorted(handles) != sorted(CONDITION_HANDLES):
                errors.append(
                    ValidationIssue(
                        code="condition_branches",
                        message=(
                            f"Condition step '{step.id}' needs exactly one 'true' and one "
                            f"'false' edge, found {len(out)} edge(s) {sorted(handles)}"
                        ),
                        step_ids=[step.id],
                    )
                )
        # (f) output steps are terminal
        elif step.type is StepType.OUTPUT:
            if out:
                errors.append(
                    ValidationIssue(
                        code="output_outgoing",
                        message=f"Output step '{step.id}' cannot have outgoing edges",
                        step_ids=[step.id],
                    )
                )
        # (d) single successor, approvals one per outcome
        else:
            if bad_handles:
                errors.append(
                    ValidationIssue(
                        code="invalid_handle",
                        message=(
                            f"Step '{step.id}' ({step.type.value}) cannot use handle(s) "
                            f"{', '.join(bad_handles)}"
                        ),
                        step_ids=[step.id],
                    )
                )
            repeated = sorted(h for h, count in Counter(handles).items() if count > 1)
            if repeated:
                errors.append(
                    ValidationIssue(
                        code="fan_out",
                        message=(
                            f"Step '{step.id}' ({step.type.value}) has more than one "
                            f"outgoing edge on {', '.join(repeated)}"
                        ),
                        step_ids=[step.id],
                    )
                )

        for edge in out:
            target = by_id[edge.target]
            if target.type not in CONNECTION_RULES[step.type] and step.type is not StepType.OUTPUT:
                errors.append(
                    ValidationIssue(
                        code="connection_rule",
                        message=(
                            f"Cannot connect {step.type.value} step '{step.id}' to "
                            f"{target.type.value} step '{target.id}'"
                        ),
                        step_ids=[step.id, target.id],
                    )
                )

    # (e) acyclic
    cycle = find_cycle(by_id, known_edges)
    if cycle:
        errors.append(
            ValidationIssue(
                code="cycle",
                message=f"Cycle detected: {' -> '.join(cycle + [cycle[0]])}",
                step_ids=cycle,
            )
        )

    errors.extend(_check_trigger_settings(definition))

    if not any(step.type is StepType.OUTPUT for step in steps):
        warnings.append(ValidationIssue(code="no_output", message="Workflow has no output step"))
    if len(triggers) == 1:
        reachable = _reachable(triggers[0].id, known_edges)
        unreachable = [s for s in by_id if s not in reachable]
        if unreachable:
            warnings.append(
                ValidationIssue(
                    code="unreachable",
                    message=f"{len(unreachable)} step(s) are not reachable from the trigger",
                    step_ids=unreachable,
                )
            )

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def connection_errors(
    candidate: Edge, existing_edges: Sequence[Edge], steps: Sequence[Step]
) -> List[str]:
    """Reasons why ``candidate`` cannot be added to the graph (empty when allowed)."""
    by_id = {step.id: step for step in steps}
    source = by_id.get(candidate.source)
    target = by_id.get(candidate.target)
    if source is None or target is None:
        return ["Source or target step not found"]
    if source.id == target.id:
        return ["Cannot connect a step to itself"]
    if any(edge.key == candidate.key for edge in existing_edges):
        return ["This connection already exists"]
    if source.type is StepType.OUTPUT:
        return ["Output steps cannot have outgoing connections"]
    if target.type is StepType.TRIGGER:
        return ["Trigger steps cannot have incoming connections"]
    if target.type not in CONNECTION_RULES[source.type]:
        return [f"Cannot connect {source.type.value} to {target.type.value}"]

    handle = _canonical_handle(source.type, candidate.source_handle)
    if handle not in allowed_handles(source.type):
        return [
            f"{source.type.value.capitalize()} steps must connect through "
            f"{', '.join(allowed_handles(source.type))}"
        ]
    used = [
        _canonical_handle(source.type, edge.source_handle)
        for edge in existing_edges
        if edge.source == source.id
    ]
    if handle in used:
        if source.type in (StepType.CONDITION, StepType.APPROVAL):
            return [f"Step '{source.id}' already has a '{handle}' branch"]
        return [f"Step '{source.id}' already has an outgoing connection"]

    if find_cycle(by_id, list(existing_edges) + [candidate]):
        return ["This connection would create a cycle"]
    return []


def validate_connection(
    candidate: Edge, existing_edges: Sequence[Edge], steps: Sequence[Step]
) -> bool:
    """Return ``True`` when ``candidate`` keeps the graph valid."""
    return not connection_errors(candidate, existing_edges, steps)
