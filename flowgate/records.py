"""Row-shaped records for persisted workflow definitions."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class StepRecord(BaseModel):
    """A step as stored by the definition store."""

    id: str
    workflow_id: Optional[str] = None
    step_number: int = 0
    step_name: str = ""
    step_type: str
    config: Dict[str, Any] = Field(default_factory=dict)
    position_x: float = 0.0
    position_y: float = 0.0
    ui_config: Dict[str, Any] = Field(default_factory=dict)


class EdgeRecord(BaseModel):
    """An edge as stored by the definition store."""

    id: str
    workflow_id: Optional[str] = None
    source_step_id: str
    target_step_id: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    label: Optional[str] = None
    animated: bool = False


class WorkflowRecord(BaseModel):
    """A workflow with its steps and edges as stored by the definition store."""

    id: str
    name: str
    description: Optional[str] = None
    is_active: bool = True
    trigger_type: str = "manual"
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    steps: List[StepRecord] = Field(default_factory=list)
    edges: List[EdgeRecord] = Field(default_factory=list)
