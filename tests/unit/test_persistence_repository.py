import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from flowgate.persistence import (
    ApprovalRequest,
    Execution,
    ExecutionError,
    InMemoryExecutionRepository,
    SQLiteExecutionRepository,
    StepResult,
    get_repository,
)

T0 = datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteExecutionRepository(tmp_path / "executions.db")
    return InMemoryExecutionRepository()


def _execution(workflow_id="wf-1", started_at=T0, **kwargs):
    return Execution(
        id=str(uuid.uuid4()),
        workflow_id=workflow_id,
        trigger_payload={"q": "vpn"},
        started_at=started_at,
        **kwargs,
    )


def _approval(execution, deadline, **kwargs):
    return ApprovalRequest(
        id=str(uuid.uuid4()),
        execution_id=execution.id,
        workflow_id=execution.workflow_id,
        step_id="approve",
        requested_at=T0,
        deadline=deadline,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_execution_lifecycle(repo):
    execution = _execution()
    await repo.create_execution(execution)
    assert await repo.update_execution_status(execution.id, "running", expected={"pending"})

    await repo.append_step_result(
        execution.id,
        StepResult(step_id="trigger", step_type="trigger", status="success", output={"q": "vpn"}),
    )
    await repo.append_step_result(
        execution.id,
        StepResult(step_id="check", step_type="condition", status="success", branch="false"),
    )
    await repo.save_context(execution.id, {"trigger": {"q": "vpn"}})
    assert await repo.update_execution_status(
        execution.id, "completed", expected={"running"}, output="not found"
    )

    stored = await repo.get_execution(execution.id)
    assert stored.status == "completed"
    assert stored.output == "not found"
    assert stored.completed_at is not None
    assert stored.context == {"trigger": {"q": "vpn"}}
    assert [r.step_id for r in stored.step_results] == ["trigger", "check"]
    assert stored.step_results[1].branch == "false"


@pytest.mark.asyncio
async def test_status_compare_and_swap(repo):
    execution = _execution()
    await repo.create_execution(execution)
    assert await repo.update_execution_status(execution.id, "running", expected={"pending"})
    assert not await repo.update_execution_status(execution.id, "running", expected={"pending"})
    assert await repo.update_execution_status(
        execution.id,
        "failed",
        error=ExecutionError(kind="StepExecutionError", message="boom", step_id="s1"),
    )
    stored = await repo.get_execution(execution.id)
    assert stored.status == "failed"
    assert stored.error.step_id == "s1"
    assert not await repo.update_execution_status("missing", "running")


@pytest.mark.asyncio
async def test_listing_and_last_execution(repo):
    older = _execution(started_at=T0)
    newer = _execution(started_at=T0 + timedelta(minutes=5))
    other = _execution(workflow_id="wf-2")
    for execution in (older, newer, other):
        await repo.create_execution(execution)
    await repo.update_execution_status(older.id, "completed")

    listed = await repo.list_executions(workflow_id="wf-1")
    assert [e.id for e in listed] == [newer.id, older.id]
    assert (await repo.list_executions(status="completed"))[0].id == older.id
    assert len(await repo.list_executions(limit=1)) == 1

    assert (await repo.get_last_execution("wf-1")).id == newer.id
    assert (await repo.get_last_completed_execution("wf-1")).id == older.id
    assert await repo.get_last_completed_execution("wf-2") is None


@pytest.mark.asyncio
async def test_last_execution_by_trigger_type(repo):
    scheduled = _execution(trigger_type="scheduled", started_at=T0)
    manual = _execution(trigger_type="manual", started_at=T0 + timedelta(seconds=30))
    await repo.create_execution(scheduled)
    await repo.create_execution(manual)

    assert (await repo.get_last_execution("wf-1")).id == manual.id
    assert (await repo.get_last_execution("wf-1", trigger_type="scheduled")).id == scheduled.id
    assert await repo.get_last_execution("wf-1", trigger_type="webhook") is None


@pytest.mark.asyncio
async def test_approval_resolution_is_compare_and_swap(repo):
    execution = _execution()
    await repo.create_execution(execution)
    request = _approval(execution, T0 + timedelta(hours=1), approvers=["ops"])
    await repo.create_approval_request(request)

    assert [r.id for r in await repo.list_pending_approvals(execution.id)] == [request.id]
    assert await repo.resolve_approval_request(
        request.id, "approved", responder_id="ada", notes="ok", responded_at=T0
    )
    assert not await repo.resolve_approval_request(
        request.id, "rejected", responder_id="bob", notes=None, responded_at=T0
    )
    stored = await repo.get_approval_request(request.id)
    assert stored.status == "approved"
    assert stored.responder_id == "ada"
    assert stored.approvers == ["ops"]
    assert await repo.list_pending_approvals(execution.id) == []


@pytest.mark.asyncio
async def test_concurrent_resolution_has_one_winner(repo):
    execution = _execution()
    await repo.create_execution(execution)
    request = _approval(execution, T0 + timedelta(hours=1))
    await repo.create_approval_request(request)

    outcomes = await asyncio.gather(
        *[
            repo.resolve_approval_request(
                request.id, status, responder_id=str(i), notes=None, responded_at=T0
            )
            for i, status in enumerate(["approved", "rejected", "expired", "approved"])
        ]
    )
    assert outcomes.count(True) == 1


@pytest.mark.asyncio
async def test_pending_approvals_for_responder(repo):
    execution = _execution()
    await repo.create_execution(execution)
    ops_only = _approval(execution, T0 + timedelta(hours=1), approvers=["ops", "ada"])
    anyone = _approval(execution, T0 + timedelta(hours=2))
    await repo.create_approval_request(ops_only)
    await repo.create_approval_request(anyone)

    for_ada = await repo.list_pending_approvals(responder_id="ada")
    assert sorted(r.id for r in for_ada) == sorted([ops_only.id, anyone.id])
    for_bob = await repo.list_pending_approvals(execution.id, responder_id="bob")
    assert [r.id for r in for_bob] == [anyone.id]


@pytest.mark.asyncio
async def test_list_expired_pending(repo):
    execution = _execution()
    await repo.create_execution(execution)
    due = _approval(execution, T0 + timedelta(minutes=30))
    later = _approval(execution, T0 + timedelta(hours=3))
    await repo.create_approval_request(due)
    await repo.create_approval_request(later)

    expired = await repo.list_expired_pending(T0 + timedelta(hours=1))
    assert [r.id for r in expired] == [due.id]


def test_get_repository_backends(tmp_path):
    assert isinstance(get_repository("sqlite://" + str(tmp_path / "x.db")), SQLiteExecutionRepository)
    with pytest.raises(ValueError):
        get_repository("mysql://nope")
