"""
Tests for the tool registry and the tool invoker.
"""

import json

import httpx
import pytest

from chatrelay.errors import ChatError, ErrorKind
from chatrelay.storage.models import Function
from chatrelay.tools import ToolInvoker, ToolRegistry, build_tool_specs
from chatrelay.tools.invoker import parse_arguments

WEATHER = Function(
    id=1,
    name="get_weather",
    label="Weather",
    description="Current weather for a city",
    parameters=json.dumps({"type": "object", "properties": {"city": {"type": "string"}}}),
    action="https://tools.example/weather",
    token="tool-secret",
)


def test_specs_default_required():
    specs = build_tool_specs([WEATHER])
    assert specs == [{
        "type": "function",
        "function": {
            "name": "get_weather",
            "description": "Current weather for a city",
            "parameters": {
                "type": "object",
                "properties": {"city": {"type": "string"}},
                "required": [],
            },
        },
    }]


def test_specs_skip_bad_schema():
    broken = Function(name="broken", parameters="{not json")
    assert [s["function"]["name"] for s in build_tool_specs([broken, WEATHER])] == ["get_weather"]


def test_registry_keeps_enabled_only():
    off = Function(name="off", enabled=False)
    registry = ToolRegistry([WEATHER, off])
    assert registry.list_tools() == ["get_weather"]
    assert registry.get("off") is None
    assert len(registry) == 1


def test_registry_load_from_store(store):
    saved = store.add_function(Function(name="get_weather", parameters="{}"))
    store.add_function(Function(name="other"))
    registry = ToolRegistry.load(store, [saved.id])
    assert registry.list_tools() == ["get_weather"]
    assert len(ToolRegistry.load(store, [])) == 0


def test_parse_arguments():
    assert parse_arguments(['{"city":', ' "Paris"}']) == {"city": "Paris"}
    assert parse_arguments([]) == {}
    assert parse_arguments(["{broken"]) == {}
    assert parse_arguments(["[1, 2]"]) == {}


@pytest.mark.asyncio
async def test_invoke_posts_arguments_with_user_id():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"code": 0, "message": "ok", "data": "Sunny, 22C"})

    invoker = ToolInvoker(transport=httpx.MockTransport(handler))
    result = await invoker.invoke(WEATHER, ['{"city": "Paris"}'], user_id=42)

    assert result == "Sunny, 22C"
    assert seen["url"] == "https://tools.example/weather"
    assert seen["auth"] == "tool-secret"
    assert seen["body"] == {"city": "Paris", "user_id": 42}


@pytest.mark.asyncio
async def test_invoke_structured_data_as_json():
    def handler(request):
        return httpx.Response(200, json={"code": 0, "data": {"temp": 22}})

    invoker = ToolInvoker(transport=httpx.MockTransport(handler))
    assert await invoker.invoke(WEATHER, [], user_id=1) == '{"temp": 22}'


@pytest.mark.asyncio
async def test_invoke_error_code_raises():
    def handler(request):
        return httpx.Response(200, json={"code": 1, "message": "city not found"})

    invoker = ToolInvoker(transport=httpx.MockTransport(handler))
    with pytest.raises(ChatError) as exc:
        await invoker.invoke(WEATHER, [], user_id=1)
    assert exc.value.kind is ErrorKind.TOOL_INVOCATION_ERROR
    assert exc.value.message == "city not found"


@pytest.mark.asyncio
async def test_invoke_non_json_raises():
    def handler(request):
        return httpx.Response(502, text="bad gateway")

    invoker = ToolInvoker(transport=httpx.MockTransport(handler))
    with pytest.raises(ChatError) as exc:
        await invoker.invoke(WEATHER, [], user_id=1)
    assert exc.value.kind is ErrorKind.TOOL_INVOCATION_ERROR


@pytest.mark.asyncio
async def test_invoke_transport_error_raises():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    invoker = ToolInvoker(transport=httpx.MockTransport(handler))
    with pytest.raises(ChatError) as exc:
        await invoker.invoke(WEATHER, [], user_id=1)
    assert exc.value.kind is ErrorKind.TOOL_INVOCATION_ERROR
