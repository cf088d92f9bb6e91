from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowRow(SQLModel, table=True):
    """A persisted workflow definition."""

    __tablename__ = "workflows"

    id: str = Field(primary_key=True)
    name: str
    description: Optional[str] = None
    is_active: bool = Field(default=True, index=True)
    trigger_type: str = Field(default="manual", index=True)
    trigger_config: dict = Field(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=utcnow)


class StepRow(SQLModel, table=True):
    """One step of a workflow definition."""

    __tablename__ = "workflow_steps"

    id: str = Field(primary_key=True)
    workflow_id: str = Field(foreign_key="workflows.id", primary_key=True)
    step_number: int = 0
    step_name: str = ""
    step_type: str
    config: dict = Field(default_factory=dict, sa_column=Column(JSON))
    position_x: float = 0.0
    position_y: float = 0.0
    ui_config: dict = Field(default_factory=dict, sa_column=Column(JSON))


class EdgeRow(SQLModel, table=True):
    """A connection between two steps of a workflow definition."""

    __tablename__ = "workflow_edges"

    id: str = Field(primary_key=True)
    workflow_id: str = Field(foreign_key="workflows.id", primary_key=True)
    source_step_id: str
    target_step_id: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    label: Optional[str] = None
    animated: bool = False
