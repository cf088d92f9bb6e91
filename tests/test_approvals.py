"""Approval gate suspension, resumption and expiry."""

import asyncio

import pytest

from flowgate.errors import (
    ApprovalAlreadyResolvedError,
    ApprovalNotFoundError,
    ApproverNotAllowedError,
    ValidationError,
)


def _approval_workflow(builder, rejected_branch=False, expired_branch=False):
    wf = (
        builder()
        .step("trigger", "trigger")
        .step("approve", "approval", title="Ship it?", approvers=["ada", "bob"])
        .step("done", "output")
        .edge("trigger", "approve")
        .edge("approve", "done", "approved")
    )
    if rejected_branch:
        wf.step("declined", "output", template="declined")
        wf.edge("approve", "declined", "rejected")
    if expired_branch:
        wf.step("late", "output", template="late")
        wf.edge("approve", "late", "expired")
    return wf.build()


async def _pending_request(engine, execution):
    requests = await engine.repository.list_pending_approvals(execution.id)
    assert len(requests) == 1
    return requests[0]


@pytest.mark.asyncio
async def test_execution_suspends_at_approval(engine, builder, clock):
    execution = await engine.start_execution(_approval_workflow(builder), {"n": 1})

    assert execution.status == "waiting_approval"
    assert execution.waiting_step_id == "approve"
    request = await _pending_request(engine, execution)
    assert request.title == "Ship it?"
    assert request.approvers == ["ada", "bob"]
    assert request.deadline == clock.now.replace(hour=11)
    assert execution.step_results[-1].output["approval_request_id"] == request.id


@pytest.mark.asyncio
async def test_expired_approval_fails_execution(engine, builder, clock, definitions):
    definition = _approval_workflow(builder)
    await definitions.save_workflow(definition)
    execution = await engine.start_execution(definition)

    assert await engine.process_approval_timeouts() == []
    clock.advance(hours=1, minutes=1)
    expired = await engine.process_approval_timeouts()

    assert [r.execution_id for r in expired] == [execution.id]
    assert expired[0].status == "expired"
    execution = await engine.get_execution(execution.id)
    assert execution.status == "failed"
    assert execution.error.kind == "ApprovalExpiredError"
    assert execution.error.step_id == "approve"

    assert await engine.process_approval_timeouts() == []


@pytest.mark.asyncio
async def test_expiry_follows_expired_edge(engine, builder, clock, definitions):
    definition = _approval_workflow(builder, expired_branch=True)
    await definitions.save_workflow(definition)
    execution = await engine.start_execution(definition)

    clock.advance(hours=1, minutes=1)
    expired = await engine.process_approval_timeouts()

    assert [r.execution_id for r in expired] == [execution.id]
    execution = await engine.get_execution(execution.id)
    assert execution.status == "completed"
    assert execution.output == "late"
    assert [(r.step_id, r.status) for r in execution.step_results] == [
        ("trigger", "success"),
        ("approve", "waiting_approval"),
        ("approve", "success"),
        ("done", "skipped"),
        ("late", "success"),
    ]
    assert execution.step_results[2].branch == "expired"


@pytest.mark.asyncio
async def test_approval_resumes_walk(engine, builder, definitions):
    definition = _approval_workflow(builder)
    await definitions.save_workflow(definition)
    execution = await engine.start_execution(definition, {"n": 1})
    request = await _pending_request(engine, execution)

    execution = await engine.submit_approval_response(request.id, "approve", "ada", "looks good")

    assert execution.status == "completed"
    assert execution.output == {"decision": "approved", "notes": "looks good", "responder_id": "ada"}
    approve = [r for r in execution.step_results if r.step_id == "approve"]
    assert [r.status for r in approve] == ["waiting_approval", "success"]
    assert approve[-1].branch == "approved"


@pytest.mark.asyncio
async def test_rejection_follows_rejected_edge(engine, builder, definitions):
    definition = _approval_workflow(builder, rejected_branch=True)
    await definitions.save_workflow(definition)
    execution = await engine.start_execution(definition)
    request = await _pending_request(engine, execution)

    execution = await engine.submit_approval_response(request.id, "reject", "bob")

    assert execution.status == "completed"
    assert execution.output == "declined"
    statuses = {r.step_id: r.status for r in execution.step_results}
    assert statuses["done"] == "skipped"


@pytest.mark.asyncio
async def test_rejection_without_edge_fails(engine, builder, definitions):
    definition = _approval_workflow(builder)
    await definitions.save_workflow(definition)
    execution = await engine.start_execution(definition)
    request = await _pending_request(engine, execution)

    execution = await engine.submit_approval_response(request.id, "rejected", "bob")

    assert execution.status == "failed"
    assert execution.error.kind == "ApprovalRejectedError"


@pytest.mark.asyncio
async def test_non_approver_cannot_respond(engine, builder, definitions):
    definition = _approval_workflow(builder)
    await definitions.save_workflow(definition)
    execution = await engine.start_execution(definition)
    request = await _pending_request(engine, execution)

    with pytest.raises(ApproverNotAllowedError):
        await engine.submit_approval_response(request.id, "approve", "mallory")
    with pytest.raises(ApproverNotAllowedError):
        await engine.submit_approval_response(request.id, "approve")

    assert (await engine.gate.get(request.id)).status == "pending"
    assert (await engine.get_execution(execution.id)).status == "waiting_approval"
    assert await engine.repository.list_pending_approvals(responder_id="mallory") == []
    assert await engine.repository.list_pending_approvals(responder_id="bob") != []

    execution = await engine.submit_approval_response(request.id, "approve", "bob")
    assert execution.status == "completed"


@pytest.mark.asyncio
async def test_second_response_is_rejected(engine, builder, definitions):
    definition = _approval_workflow(builder)
    await definitions.save_workflow(definition)
    execution = await engine.start_execution(definition)
    request = await _pending_request(engine, execution)

    await engine.submit_approval_response(request.id, "approve", "ada")
    with pytest.raises(ApprovalAlreadyResolvedError):
        await engine.submit_approval_response(request.id, "reject", "bob")

    execution = await engine.get_execution(execution.id)
    assert execution.status == "completed"


@pytest.mark.asyncio
async def test_concurrent_responses_have_one_winner(engine, builder, definitions):
    definition = _approval_workflow(builder)
    await definitions.save_workflow(definition)
    execution = await engine.start_execution(definition)
    request = await _pending_request(engine, execution)

    outcomes = await asyncio.gather(
        engine.submit_approval_response(request.id, "approve", "ada"),
        engine.submit_approval_response(request.id, "reject", "bob"),
        return_exceptions=True,
    )
    errors = [o for o in outcomes if isinstance(o, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], ApprovalAlreadyResolvedError)


@pytest.mark.asyncio
async def test_response_after_expiry_is_rejected(engine, builder, clock, definitions):
    definition = _approval_workflow(builder)
    await definitions.save_workflow(definition)
    execution = await engine.start_execution(definition)
    request = await _pending_request(engine, execution)
    clock.advance(hours=2)
    await engine.process_approval_timeouts()

    with pytest.raises(ApprovalAlreadyResolvedError):
        await engine.submit_approval_response(request.id, "approve", "ada")


@pytest.mark.asyncio
async def test_unknown_request_and_decision(engine, builder):
    with pytest.raises(ApprovalNotFoundError):
        await engine.submit_approval_response("nope", "approve")

    execution = await engine.start_execution(_approval_workflow(builder))
    request = await _pending_request(engine, execution)
    with pytest.raises(ValidationError):
        await engine.submit_approval_response(request.id, "maybe")


@pytest.mark.asyncio
async def test_cancel_waiting_execution_cancels_request(engine, builder):
    execution = await engine.start_execution(_approval_workflow(builder))
    request = await _pending_request(engine, execution)

    execution = await engine.cancel_execution(execution.id, "no longer needed")

    assert execution.status == "cancelled"
    stored = await engine.gate.get(request.id)
    assert stored.status == "rejected"
    assert stored.responder_id == "system"
    with pytest.raises(ApprovalAlreadyResolvedError):
        await engine.submit_approval_response(request.id, "approve", "ada")


@pytest.mark.asyncio
async def test_deactivating_workflow_cancels_waiting_executions(engine, builder, definitions):
    definition = _approval_workflow(builder)
    await definitions.save_workflow(definition)
    execution = await engine.start_execution(definition)

    assert await engine.deactivate_workflow(definition.id) == [execution.id]
    assert (await engine.get_execution(execution.id)).status == "cancelled"
    assert (await definitions.get_workflow(definition.id)).is_active is False
