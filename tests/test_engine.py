"""End to end traversal through the execution engine."""

import asyncio

import pytest

from flowgate.network import ActionResponse
from flowgate.search import InMemorySearchService


def _search_workflow(builder):
    return (
        builder()
        .step("trigger", "trigger")
        .step("search", "search", query="{{trigger.q}}")
        .step("check", "condition", expression="result.count > 0")
        .step("found", "output", template="found")
        .step("missing", "output", template="not found")
        .edge("trigger", "search")
        .edge("search", "check")
        .edge("check", "found", "true")
        .edge("check", "missing", "false")
        .build()
    )


def _statuses(execution):
    return {r.step_id: r.status for r in execution.step_results}


@pytest.mark.asyncio
async def test_false_branch_when_search_finds_nothing(engine, builder):
    execution = await engine.start_execution(_search_workflow(builder), {"q": "vpn"})

    assert execution.status == "completed"
    assert execution.output == "not found"
    assert _statuses(execution) == {
        "trigger": "success",
        "search": "success",
        "check": "success",
        "found": "skipped",
        "missing": "success",
    }
    check = next(r for r in execution.step_results if r.step_id == "check")
    assert check.branch == "false"
    assert execution.completed_at is not None


@pytest.mark.asyncio
async def test_true_branch_when_search_has_results(engine, builder, services):
    services.search = InMemorySearchService([{"title": "VPN setup"}])
    execution = await engine.start_execution(_search_workflow(builder), {"q": "vpn"})

    assert execution.output == "found"
    assert _statuses(execution)["missing"] == "skipped"
    assert execution.context["search"]["count"] == 1


@pytest.mark.asyncio
async def test_step_failure_fails_execution(engine, builder, network):
    network.responses["https://api.example"] = ActionResponse(status_code=500)
    definition = (
        builder()
        .step("trigger", "trigger")
        .step("call", "action", action_type="api_call", api={"url": "https://api.example/x"})
        .step("done", "output")
        .edge("trigger", "call")
        .edge("call", "done")
        .build()
    )
    execution = await engine.start_execution(definition)

    assert execution.status == "failed"
    assert execution.error.kind == "StepExecutionError"
    assert execution.error.step_id == "call"
    assert "returned 500" in execution.error.message
    assert _statuses(execution) == {"trigger": "success", "call": "error"}


@pytest.mark.asyncio
async def test_continue_on_error_keeps_walking(engine, builder, network):
    network.responses["https://api.example"] = ActionResponse(status_code=502)
    definition = (
        builder()
        .step("trigger", "trigger")
        .step(
            "call",
            "action",
            action_type="api_call",
            api={"url": "https://api.example/x"},
            continue_on_error=True,
        )
        .step("done", "output")
        .edge("trigger", "call")
        .edge("call", "done")
        .build()
    )
    execution = await engine.start_execution(definition)

    assert execution.status == "completed"
    assert "returned 502" in execution.output["error"]
    assert _statuses(execution)["call"] == "error"


@pytest.mark.asyncio
async def test_max_steps_limit(engine, builder):
    engine.config.max_steps = 2
    definition = (
        builder()
        .step("trigger", "trigger")
        .step("a", "transform", transform_type="template", template="a")
        .step("b", "transform", transform_type="template", template="b")
        .step("done", "output")
        .edge("trigger", "a")
        .edge("a", "b")
        .edge("b", "done")
        .build()
    )
    execution = await engine.start_execution(definition)

    assert execution.status == "failed"
    assert execution.error.step_id == "b"
    assert "limit of 2 steps" in execution.error.message


@pytest.mark.asyncio
async def test_step_timeout(engine, builder, services):
    class SlowNetwork:
        async def invoke(self, method, url, headers=None, body=None):
            await asyncio.sleep(5)

    services.network = SlowNetwork()
    engine.config.step_timeout_seconds = 0.05
    definition = (
        builder()
        .step("trigger", "trigger")
        .step("call", "action", action_type="api_call", api={"url": "https://slow.example"})
        .edge("trigger", "call")
        .build()
    )
    execution = await engine.start_execution(definition)

    assert execution.status == "failed"
    assert "timed out" in execution.error.message


@pytest.mark.asyncio
async def test_missing_trigger_fails_execution(engine, builder):
    definition = builder().step("done", "output").build()
    execution = await engine.start_execution(definition)
    assert execution.status == "failed"
    assert execution.error.kind == "ValidationError"


@pytest.mark.asyncio
async def test_cancel_during_step_discards_result(engine, builder, services, repository):
    class CancellingNetwork:
        async def invoke(self, method, url, headers=None, body=None):
            for execution in await repository.list_executions():
                await engine.cancel_execution(execution.id, "operator stop")
            return ActionResponse(status_code=200, body={"ok": True})

    services.network = CancellingNetwork()
    definition = (
        builder()
        .step("trigger", "trigger")
        .step("call", "action", action_type="api_call", api={"url": "https://api.example"})
        .step("done", "output")
        .edge("trigger", "call")
        .edge("call", "done")
        .build()
    )
    execution = await engine.start_execution(definition)

    assert execution.status == "cancelled"
    assert _statuses(execution) == {"trigger": "success"}


@pytest.mark.asyncio
async def test_cancel_terminal_execution_is_a_noop(engine, builder):
    execution = await engine.start_execution(_search_workflow(builder), {"q": "x"})
    again = await engine.cancel_execution(execution.id)
    assert again.status == "completed"
    assert again.output == "not found"


@pytest.mark.asyncio
async def test_run_execution_only_claims_pending(engine, builder):
    definition = _search_workflow(builder)
    execution = await engine.start_execution(definition, {"q": "x"})
    rerun = await engine.run_execution(execution.id, definition)
    assert rerun.status == "completed"
    assert len(rerun.step_results) == len(execution.step_results)


@pytest.mark.asyncio
async def test_workflow_loaded_from_store(engine, builder, definitions):
    definition = _search_workflow(builder)
    await definitions.save_workflow(definition)
    pending = await engine.create_execution(definition, {"q": "x"})
    execution = await engine.run_execution(pending.id)
    assert execution.status == "completed"
    assert execution.trigger_type == "manual"
