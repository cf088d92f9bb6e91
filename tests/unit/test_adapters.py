"""HTTP, search and text generation adapters."""

import json

import httpx
import pytest
from pydantic_ai.models.test import TestModel

from flowgate.config import FlowgateConfig, HttpConfig, LLMConfig
from flowgate.errors import TransportError
from flowgate.executors import ExecutorServices
from flowgate.llm import PydanticAITextGenerator
from flowgate.network import ActionResponse, HttpxActionExecutor
from flowgate.search import HttpSearchService, InMemorySearchService


def _executor(handler):
    return HttpxActionExecutor(timeout=5, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_httpx_executor_sends_json_and_decodes_response():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["body"] = json.loads(request.content)
        seen["header"] = request.headers["x-user"]
        return httpx.Response(201, json={"id": 7})

    response = await _executor(handler).invoke(
        "post", "https://api.example/tickets", headers={"X-User": "ada"}, body={"title": "VPN"}
    )
    assert seen == {"method": "POST", "body": {"title": "VPN"}, "header": "ada"}
    assert response.status_code == 201
    assert response.ok
    assert response.body == {"id": 7}


@pytest.mark.asyncio
async def test_httpx_executor_returns_text_and_error_statuses():
    response = await _executor(lambda request: httpx.Response(503, text="busy")).invoke(
        "GET", "https://api.example/health"
    )
    assert response.status_code == 503
    assert not response.ok
    assert response.body == "busy"


@pytest.mark.asyncio
async def test_connection_failure_is_transport_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransportError):
        await _executor(handler).invoke("GET", "https://down.example")


@pytest.mark.asyncio
async def test_http_search_service_posts_query():
    class Network:
        def __init__(self):
            self.calls = []

        async def invoke(self, method, url, headers=None, body=None):
            self.calls.append(body)
            return ActionResponse(status_code=200, body={"results": [1, 2, 3]})

    network = Network()
    service = HttpSearchService("https://search.example", network=network)
    assert await service.search("vpn", max_results=2, filters={"team": "it"}) == [1, 2]
    assert network.calls == [{"query": "vpn", "filters": {"team": "it"}, "limit": 2}]


@pytest.mark.asyncio
async def test_http_search_service_rejects_error_status():
    class Network:
        async def invoke(self, method, url, headers=None, body=None):
            return ActionResponse(status_code=500, body=None)

    with pytest.raises(TransportError) as exc_info:
        await HttpSearchService("https://search.example", network=Network()).search("vpn")
    assert exc_info.value.status_code == 500


@pytest.mark.asyncio
async def test_in_memory_search_is_case_insensitive():
    service = InMemorySearchService([{"title": "VPN Setup"}, {"title": "Payroll"}])
    assert await service.search("vpn") == [{"title": "VPN Setup"}]
    assert await service.search("nothing") == []


@pytest.mark.asyncio
async def test_pydantic_ai_text_generator():
    generator = PydanticAITextGenerator(TestModel(custom_output_text="Yes"))
    assert await generator.generate("Is this a refund request?", max_tokens=16) == "Yes"
    assert await generator.generate("Is this a refund request?") == "Yes"


def test_services_from_config_carry_llm_settings():
    config = FlowgateConfig(
        llm=LLMConfig(model="test", max_tokens=512),
        http=HttpConfig(search_url="https://search.example/api"),
    )
    services = ExecutorServices.from_config(config)
    assert services.text_generator.model == "test"
    assert services.text_generator.max_tokens == 512
    assert isinstance(services.search, HttpSearchService)
