"""Execution context owned by the engine and the read-only view handed to executors."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class ContextView:
    """Read-only snapshot of the context at the moment a step runs."""

    execution_id: str
    workflow_id: str
    trigger_payload: Any
    outputs: Mapping[str, Any]
    previous_output: Any = None

    def output_of(self, step_id: str, default: Any = None) -> Any:
        return self.outputs.get(step_id, default)

    def scope(self) -> Dict[str, Any]:
        """Names available to templates and expressions.

        Step outputs are addressable by step id; ``input`` and ``result`` are
        the previous step's output and ``trigger`` is the trigger payload.
        """
        names: Dict[str, Any] = dict(self.outputs)
        names.update(
            {
                "input": self.previous_output,
                "result": self.previous_output,
                "trigger": self.trigger_payload,
                "execution_id": self.execution_id,
                "workflow_id": self.workflow_id,
            }
        )
        return names


@dataclass
class ExecutionContext:
    """Mutable step output map; only the engine writes to it."""

    execution_id: str
    workflow_id: str
    trigger_payload: Any = None
    outputs: Dict[str, Any] = field(default_factory=dict)
    last_step_id: Optional[str] = None

    @classmethod
    def restore(
        cls,
        execution_id: str,
        workflow_id: str,
        trigger_payload: Any,
        outputs: Mapping[str, Any],
    ) -> "ExecutionContext":
        return cls(
            execution_id=execution_id,
            workflow_id=workflow_id,
            trigger_payload=trigger_payload,
            outputs=dict(outputs),
        )

    def record(self, step_id: str, output: Any) -> None:
        self.outputs[step_id] = output
        self.last_step_id = step_id

    @property
    def previous_output(self) -> Any:
        if self.last_step_id is None:
            return self.trigger_payload
        return self.outputs.get(self.last_step_id)

    def view(self) -> ContextView:
        outputs = copy.deepcopy(self.outputs)
        return ContextView(
            execution_id=self.execution_id,
            workflow_id=self.workflow_id,
            trigger_payload=copy.deepcopy(self.trigger_payload),
            outputs=MappingProxyType(outputs),
            previous_output=copy.deepcopy(self.previous_output),
        )

    def snapshot(self) -> Dict[str, Any]:
        """Step id to output map stored on the execution row."""
        return copy.deepcopy(self.outputs)
