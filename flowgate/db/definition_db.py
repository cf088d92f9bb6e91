from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, select

from ..errors import SerializationError
from ..models import TriggerType, WorkflowDefinition
from ..records import EdgeRecord, StepRecord, WorkflowRecord
from ..serialization import definition_from_record, definition_to_record
from .models import EdgeRow, StepRow, WorkflowRow, utcnow

logger = logging.getLogger(__name__)


class SQLDefinitionStore:
    """Async SQL store for workflow definitions (SQLModel tables)."""

    def __init__(self, database_url: str) -> None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    async def _load_record(self, session: AsyncSession, row: WorkflowRow) -> WorkflowRecord:
        steps = (
            await session.execute(
                select(StepRow)
                .where(StepRow.workflow_id == row.id)
                .order_by(StepRow.step_number)
            )
        ).scalars().all()
        edges = (
            await session.execute(select(EdgeRow).where(EdgeRow.workflow_id == row.id))
        ).scalars().all()
        return WorkflowRecord(
            id=row.id,
            name=row.name,
            description=row.description,
            is_active=row.is_active,
            trigger_type=row.trigger_type,
            trigger_config=row.trigger_config or {},
            steps=[StepRecord.model_validate(s.model_dump()) for s in steps],
            edges=[EdgeRecord.model_validate(e.model_dump()) for e in edges],
        )

    async def get_record(self, workflow_id: str) -> WorkflowRecord | None:
        async with self.session() as session:
            row = await session.get(WorkflowRow, workflow_id)
            if row is None:
                return None
            return await self._load_record(session, row)

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        record = await self.get_record(workflow_id)
        return definition_from_record(record) if record else None

    async def _decode_rows(self, rows: list[WorkflowRow]) -> list[WorkflowDefinition]:
        definitions = []
        async with self.session() as session:
            for row in rows:
                record = await self._load_record(session, row)
                try:
                    definitions.append(definition_from_record(record))
                except SerializationError as exc:
                    logger.error(f"Skipping workflow {row.id}: {exc}")
        return definitions

    async def list_workflows(self) -> list[WorkflowDefinition]:
        async with self.session() as session:
            result = await session.execute(select(WorkflowRow).order_by(WorkflowRow.id))
            rows = result.scalars().all()
        return await self._decode_rows(list(rows))

    async def list_active_scheduled_workflows(self) -> list[WorkflowDefinition]:
        async with self.session() as session:
            rows = (
                await session.execute(
                    select(WorkflowRow)
                    .where(WorkflowRow.is_active == True)  # noqa: E712
                    .where(WorkflowRow.trigger_type == TriggerType.SCHEDULED.value)
                    .order_by(WorkflowRow.id)
                )
            ).scalars().all()
        return await self._decode_rows(list(rows))

    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        """Insert or replace a definition together with its steps and edges."""
        record = definition_to_record(definition)
        async with self.session() as session:
            await session.execute(delete(EdgeRow).where(EdgeRow.workflow_id == record.id))
            await session.execute(delete(StepRow).where(StepRow.workflow_id == record.id))
            await session.merge(
                WorkflowRow(
                    id=record.id,
                    name=record.name,
                    description=record.description,
                    is_active=record.is_active,
                    trigger_type=record.trigger_type,
                    trigger_config=record.trigger_config,
                    updated_at=utcnow(),
                )
            )
            await session.flush()
            for step in record.steps:
                session.add(
                    StepRow(**step.model_dump(exclude={"workflow_id"}), workflow_id=record.id)
                )
            for edge in record.edges:
                session.add(
                    EdgeRow(**edge.model_dump(exclude={"workflow_id"}), workflow_id=record.id)
                )
            await session.commit()

    async def set_active(self, workflow_id: str, active: bool) -> bool:
        async with self.session() as session:
            row = await session.get(WorkflowRow, workflow_id)
            if row is None:
                return False
            row.is_active = active
            row.updated_at = utcnow()
            await session.commit()
            return True

    async def delete_workflow(self, workflow_id: str) -> bool:
        async with self.session() as session:
            row = await session.get(WorkflowRow, workflow_id)
            if row is None:
                return False
            await session.execute(delete(EdgeRow).where(EdgeRow.workflow_id == workflow_id))
            await session.execute(delete(StepRow).where(StepRow.workflow_id == workflow_id))
            await session.delete(row)
            await session.commit()
            return True

    async def close(self) -> None:
        await self.engine.dispose()
