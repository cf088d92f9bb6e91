"""Undo/redo history for editing a workflow graph.

Edits are commands over immutable :class:`Step` and :class:`Edge` values.
Each command knows how to apply and revert itself, so the history stores
commands instead of whole-graph snapshots.
"""

from __future__ import annotations

import abc
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from .constants import EDITOR_HISTORY_LIMIT
from .errors import ValidationError
from .models import Edge, Position, Step, WorkflowDefinition
from .validation import connection_errors

logger = logging.getLogger(__name__)


@dataclass
class EditorState:
    """The graph being edited, keyed by id in insertion order."""

    steps: Dict[str, Step] = field(default_factory=dict)
    edges: Dict[str, Edge] = field(default_factory=dict)

    @classmethod
    def from_definition(cls, definition: WorkflowDefinition) -> "EditorState":
        return cls(
            steps={s.id: s for s in definition.steps},
            edges={e.id: e for e in definition.edges},
        )

    def apply_to(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Return a copy of ``definition`` carrying this state's steps and edges."""
        return definition.model_copy(
            update={"steps": list(self.steps.values()), "edges": list(self.edges.values())}
        )

    def edges_of(self, step_id: str) -> List[Edge]:
        return [e for e in self.edges.values() if step_id in (e.source, e.target)]


class Command(abc.ABC):
    """A reversible edit."""

    label = "edit"

    @abc.abstractmethod
    def apply(self, state: EditorState) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def revert(self, state: EditorState) -> None:
        raise NotImplementedError


class AddStep(Command):
    label = "add step"

    def __init__(self, step: Step) -> None:
        self.step = step

    def apply(self, state: EditorState) -> None:
        if self.step.id in state.steps:
            raise ValidationError(f"Step {self.step.id} already exists")
        state.steps[self.step.id] = self.step

    def revert(self, state: EditorState) -> None:
        state.steps.pop(self.step.id, None)


class RemoveStep(Command):
    """Remove a step together with every edge touching it."""

    label = "remove step"

    def __init__(self, step_id: str) -> None:
        self.step_id = step_id
        self._step: Optional[Step] = None
        self._edges: List[Edge] = []

    def apply(self, state: EditorState) -> None:
        if self.step_id not in state.steps:
            raise ValidationError(f"Unknown step {self.step_id}")
        self._edges = state.edges_of(self.step_id)
        for edge in self._edges:
            del state.edges[edge.id]
        self._step = state.steps.pop(self.step_id)

    def revert(self, state: EditorState) -> None:
        if self._step is not None:
            state.steps[self._step.id] = self._step
        for edge in self._edges:
            state.edges[edge.id] = edge


class MoveStep(Command):
    label = "move step"

    def __init__(self, step_id: str, x: float, y: float) -> None:
        self.step_id = step_id
        self.position = Position(x=x, y=y)
        self._previous: Optional[Position] = None

    def apply(self, state: EditorState) -> None:
        step = state.steps.get(self.step_id)
        if step is None:
            raise ValidationError(f"Unknown step {self.step_id}")
        self._previous = step.position
        state.steps[self.step_id] = step.model_copy(update={"position": self.position})

    def revert(self, state: EditorState) -> None:
        step = state.steps[self.step_id]
        state.steps[self.step_id] = step.model_copy(update={"position": self._previous})


class UpdateStepConfig(Command):
    """Replace fields of a step's config; the result is re-validated."""

    label = "update step"

    def __init__(
        self, step_id: str, changes: Dict[str, Any], label: Optional[str] = None
    ) -> None:
        self.step_id = step_id
        self.changes = changes
        self.new_label = label
        self._previous: Optional[Step] = None

    def apply(self, state: EditorState) -> None:
        step = state.steps.get(self.step_id)
        if step is None:
            raise ValidationError(f"Unknown step {self.step_id}")
        data = step.model_dump(by_alias=True)
        data["config"] = {**data["config"], **self.changes}
        if self.new_label is not None:
            data["label"] = self.new_label
        try:
            updated = Step.model_validate(data)
        except ValueError as e:
            raise ValidationError(f"Invalid config for step {self.step_id}: {e}") from e
        self._previous = step
        state.steps[self.step_id] = updated

    def revert(self, state: EditorState) -> None:
        if self._previous is not None:
            state.steps[self.step_id] = self._previous


class AddEdge(Command):
    """Connect two steps; rejected when the connection would break the graph."""

    label = "add edge"

    def __init__(self, edge: Edge) -> None:
        self.edge = edge

    def apply(self, state: EditorState) -> None:
        if self.edge.id in state.edges:
            raise ValidationError(f"Edge {self.edge.id} already exists")
        problems = connection_errors(
            self.edge, list(state.edges.values()), list(state.steps.values())
        )
        if problems:
            raise ValidationError(
                f"Cannot connect {self.edge.source} to {self.edge.target}: "
                + "; ".join(problems),
                problems,
            )
        state.edges[self.edge.id] = self.edge

    def revert(self, state: EditorState) -> None:
        state.edges.pop(self.edge.id, None)


class RemoveEdge(Command):
    label = "remove edge"

    def __init__(self, edge_id: str) -> None:
        self.edge_id = edge_id
        self._edge: Optional[Edge] = None

    def apply(self, state: EditorState) -> None:
        if self.edge_id not in state.edges:
            raise ValidationError(f"Unknown edge {self.edge_id}")
        self._edge = state.edges.pop(self.edge_id)

    def revert(self, state: EditorState) -> None:
        if self._edge is not None:
            state.edges[self._edge.id] = self._edge


class History:
    """Bounded undo/redo stack of applied commands.

    Executing a new command clears the redo stack; once ``limit`` commands
    are held the oldest is dropped.
    """

    def __init__(self, state: Optional[EditorState] = None, limit: int = EDITOR_HISTORY_LIMIT):
        self.state = state or EditorState()
        self.limit = limit
        self._undo: Deque[Command] = deque(maxlen=limit)
        self._redo: List[Command] = []

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def __len__(self) -> int:
        return len(self._undo)

    def execute(self, command: Command) -> None:
        """Apply ``command``; on error the state is left unchanged."""
        command.apply(self.state)
        self._undo.append(command)
        self._redo.clear()

    def undo(self) -> bool:
        if not self._undo:
            return False
        command = self._undo.pop()
        command.revert(self.state)
        self._redo.append(command)
        logger.debug(f"Undid {command.label}")
        return True

    def redo(self) -> bool:
        if not self._redo:
            return False
        command = self._redo.pop()
        command.apply(self.state)
        self._undo.append(command)
        logger.debug(f"Redid {command.label}")
        return True

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()

    # Convenience wrappers
    def add_step(self, step: Step) -> Step:
        self.execute(AddStep(step))
        return step

    def remove_step(self, step_id: str) -> None:
        self.execute(RemoveStep(step_id))

    def move_step(self, step_id: str, x: float, y: float) -> None:
        self.execute(MoveStep(step_id, x, y))

    def update_step(
        self, step_id: str, changes: Dict[str, Any], label: Optional[str] = None
    ) -> Step:
        self.execute(UpdateStepConfig(step_id, changes, label))
        return self.state.steps[step_id]

    def connect(
        self,
        source: str,
        target: str,
        source_handle: Optional[str] = None,
        edge_id: Optional[str] = None,
    ) -> Edge:
        data: Dict[str, Any] = {"id": edge_id or str(uuid.uuid4()), "source": source, "target": target}
        if source_handle is not None:
            data["source_handle"] = source_handle
        edge = Edge(**data)
        self.execute(AddEdge(edge))
        return edge

    def disconnect(self, edge_id: str) -> None:
        self.execute(RemoveEdge(edge_id))
