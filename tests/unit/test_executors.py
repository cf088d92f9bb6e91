"""Per step type executor tests."""

import pytest

from flowgate.context import ExecutionContext
from flowgate.errors import StepExecutionError, TransportError
from flowgate.executors import EXECUTORS, ExecutorServices, get_executor
from flowgate.models import Step, StepType
from flowgate.network import ActionResponse
from flowgate.search import InMemorySearchService


def _step(step_type, **config):
    return Step(id=f"{step_type}-1", type=StepType(step_type), config=config)


def _view(trigger=None, **outputs):
    context = ExecutionContext(execution_id="ex-1", workflow_id="wf-1", trigger_payload=trigger)
    for step_id, output in outputs.items():
        context.record(step_id, output)
    return context.view()


async def _run(step, view, services):
    return await get_executor(step.type)(step, view, services)


def test_every_step_type_has_an_executor():
    assert set(EXECUTORS) == set(StepType)


@pytest.mark.asyncio
async def test_trigger_passes_payload_through(services):
    outcome = await _run(_step("trigger"), _view({"q": "vpn"}), services)
    assert outcome.output == {"q": "vpn"}


@pytest.mark.asyncio
async def test_knowledge_base_search(services):
    services.search = InMemorySearchService(
        [{"title": "VPN setup", "team": "it"}, {"title": "Payroll", "team": "hr"}]
    )
    step = _step("search", query="{{trigger.q}}", filters={"team": "it"})
    outcome = await _run(step, _view({"q": "vpn"}), services)
    assert outcome.output["count"] == 1
    assert outcome.output["query"] == "vpn"
    assert outcome.output["results"][0]["title"] == "VPN setup"


@pytest.mark.asyncio
async def test_external_search_summarised(services, network, text_generator):
    network.responses["https://search.example"] = ActionResponse(
        status_code=200, body={"results": [{"t": 1}, {"t": 2}, {"t": 3}]}
    )
    step = _step(
        "search",
        search_type="external",
        url="https://search.example/api",
        query="{{trigger.q}}",
        max_results=2,
        summarize_prompt="Summarise {{query}}",
    )
    outcome = await _run(step, _view({"q": "laptops"}), services)
    assert network.calls[0]["url"] == "https://search.example/api?q=laptops&limit=2"
    assert outcome.output["count"] == 2
    assert outcome.output["summary"] == "generated"
    assert text_generator.prompts == ["Summarise laptops"]


@pytest.mark.asyncio
async def test_api_call_renders_request(services, network):
    step = _step(
        "action",
        action_type="api_call",
        api={
            "method": "POST",
            "url": "https://api.example/tickets/{{trigger.id}}",
            "headers": {"X-User": "{{trigger.user}}"},
            "body": {"items": "{{lookup.items}}"},
        },
    )
    outcome = await _run(step, _view({"id": 7, "user": "ada"}, lookup={"items": [1, 2]}), services)
    call = network.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "https://api.example/tickets/7"
    assert call["headers"] == {"X-User": "ada"}
    assert call["body"] == {"items": [1, 2]}
    assert outcome.output == {"status": 200, "data": {"ok": True}}


@pytest.mark.asyncio
async def test_transport_error_becomes_step_error(services):
    class FailingNetwork:
        async def invoke(self, method, url, headers=None, body=None):
            raise TransportError("connection refused")

    services.network = FailingNetwork()
    step = _step("action", action_type="api_call", api={"url": "https://down.example"})
    with pytest.raises(StepExecutionError) as exc_info:
        await _run(step, _view(), services)
    assert isinstance(exc_info.value.cause, TransportError)
    assert exc_info.value.step_id == step.id


@pytest.mark.asyncio
async def test_llm_call(services, text_generator):
    step = _step("action", action_type="llm_call", llm={"prompt": "Hi {{trigger.name}}"})
    outcome = await _run(step, _view({"name": "Ada"}), services)
    assert outcome.output == {"response": "generated", "model": None}
    assert text_generator.prompts == ["Hi Ada"]

    step = _step("action", action_type="llm_call", llm={"prompt": "Hi", "max_tokens": 64})
    await _run(step, _view(), services)
    assert text_generator.max_tokens == [None, 64]


@pytest.mark.asyncio
async def test_llm_call_without_generator_fails():
    services = ExecutorServices(network=None)
    step = _step("action", action_type="llm_call", llm={"prompt": "Hi"})
    with pytest.raises(StepExecutionError):
        await _run(step, _view(), services)


@pytest.mark.asyncio
async def test_slack_notification(services, network):
    step = _step(
        "action",
        action_type="notification",
        notification={
            "channel": "slack",
            "url": "https://hooks.slack.example/T1",
            "subject": "Alert",
            "template": "{{trigger.msg}}",
            "recipients": ["#ops"],
        },
    )
    outcome = await _run(step, _view({"msg": "disk full"}), services)
    assert network.calls[0]["body"] == {"text": "*Alert*\ndisk full"}
    assert outcome.output == {"channel": "slack", "recipients": 1, "sent": True}


@pytest.mark.asyncio
async def test_expression_condition_branches(services):
    step = _step("condition", expression="result.count > 0")
    outcome = await _run(step, _view(None, search={"count": 0}), services)
    assert outcome.branch == "false"
    assert outcome.output == {"count": 0}

    outcome = await _run(step, _view(None, search={"count": 4}), services)
    assert outcome.branch == "true"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "operator, value, data, expected",
    [
        ("equals", "open", {"status": "open"}, "true"),
        ("not_equals", "open", {"status": "open"}, "false"),
        ("contains", "urgent", {"status": "very urgent"}, "true"),
        ("greater_than", "10", {"status": 12}, "true"),
        ("less_than", 10, {"status": "12"}, "false"),
        ("is_empty", None, {"status": ""}, "true"),
        ("is_not_empty", None, {}, "false"),
    ],
)
async def test_simple_condition(services, operator, value, data, expected):
    step = _step(
        "condition",
        condition_type="simple",
        simple={"field": "status", "operator": operator, "value": value},
    )
    outcome = await _run(step, _view(data), services)
    assert outcome.branch == expected


@pytest.mark.asyncio
async def test_llm_decision_condition(services, text_generator):
    text_generator.reply = "Yes."
    step = _step(
        "condition",
        condition_type="llm_decision",
        llm_decision={"criteria": ["mentions a refund"]},
    )
    outcome = await _run(step, _view({"text": "I want a refund"}), services)
    assert outcome.branch == "true"
    assert "mentions a refund" in text_generator.prompts[0]


@pytest.mark.asyncio
async def test_bad_expression_is_a_step_error(services):
    step = _step("condition", expression="result.count >")
    with pytest.raises(StepExecutionError):
        await _run(step, _view({"count": 1}), services)


@pytest.mark.asyncio
async def test_transform_map_and_pick(services):
    rows = [{"user": {"name": "Ada", "id": 1}}, {"user": {"name": "Bob", "id": 2}}]
    mapped = await _run(
        _step("transform", transform_type="map", mappings=[{"from": "user.name", "to": "name"}]),
        _view(rows),
        services,
    )
    assert mapped.output == [{"name": "Ada"}, {"name": "Bob"}]

    picked = await _run(
        _step("transform", transform_type="pick", fields=["user"], source="trigger.0"),
        _view(rows),
        services,
    )
    assert picked.output == {"user": {"name": "Ada", "id": 1}}


@pytest.mark.asyncio
async def test_transform_filter_and_aggregate(services):
    items = [{"n": 1}, {"n": 5}, {"n": 9}]
    filtered = await _run(
        _step("transform", transform_type="filter", condition="item.n > 2"),
        _view(items),
        services,
    )
    assert filtered.output == [{"n": 5}, {"n": 9}]

    average = await _run(
        _step("transform", transform_type="aggregate", operation="average", field="n"),
        _view(items),
        services,
    )
    assert average.output == 5


@pytest.mark.asyncio
async def test_transform_merge_strategies(services):
    view = _view(None, a={"x": 1}, b={"y": 2}, la=[1, 2], lb=[3])
    merged = await _run(
        _step("transform", transform_type="merge", sources=["a", "b"]), view, services
    )
    assert merged.output == {"x": 1, "y": 2}
    concat = await _run(
        _step("transform", transform_type="merge", sources=["la", "lb"], strategy="concat"),
        view,
        services,
    )
    assert concat.output == [1, 2, 3]
    zipped = await _run(
        _step("transform", transform_type="merge", sources=["la", "lb"], strategy="zip"),
        view,
        services,
    )
    assert zipped.output == [[1, 3], [2, None]]


@pytest.mark.asyncio
async def test_transform_template(services):
    step = _step("transform", transform_type="template", template="Hello {{data.name}}")
    outcome = await _run(step, _view({"name": "Ada"}), services)
    assert outcome.output == "Hello Ada"


@pytest.mark.asyncio
async def test_output_template_and_text_format(services, network):
    step = _step("output", template="{{trigger.answer}}")
    outcome = await _run(step, _view({"answer": {"a": 1}}), services)
    assert outcome.output == {"a": 1}

    step = _step("output", format="text")
    outcome = await _run(step, _view({"a": 1}), services)
    assert outcome.output == '{"a": 1}'

    step = _step("output", output_type="webhook", webhook_url="https://out.example")
    await _run(step, _view({"a": 1}), services)
    assert network.calls[-1]["url"] == "https://out.example"


@pytest.mark.asyncio
async def test_approval_is_not_executed_directly(services):
    with pytest.raises(StepExecutionError):
        await _run(_step("approval"), _view(), services)
