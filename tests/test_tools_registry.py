"""Tests for the in-process tool registry, built-in tools and the HTTP backend."""

import json

import httpx
import pytest

from conftest import email_tool
from orchestrator.tools import MCPTool, ToolDefinition, ToolErrorCode, ToolOutcome, ToolRegistry, validate_arguments
from orchestrator.tools.builtin import evaluate, register_builtin_tools
from orchestrator.tools.http_backend import HttpToolBackend, error_code_for_status


def test_validate_arguments_reports_missing_fields():
    schema = email_tool().definition.parameters
    problems = validate_arguments(schema, {"body": "hello"})
    assert problems == ["missing required field: recipient", "missing required field: subject"]


def test_validate_arguments_reports_wrong_types():
    schema = email_tool().definition.parameters
    problems = validate_arguments(schema, {"recipient": "a@b.co", "subject": 42})
    assert len(problems) == 1
    assert problems[0].startswith("subject:")


def test_duplicate_registration_is_rejected():
    registry = ToolRegistry()
    registry.register(email_tool())
    with pytest.raises(ValueError):
        registry.register(email_tool())


@pytest.mark.asyncio
async def test_list_tools_respects_agent_scope_and_enabled_flag():
    registry = ToolRegistry()
    registry.register(email_tool())
    registry.register(MCPTool(
        definition=ToolDefinition(name="crm_lookup", description="Look up a contact"),
        execute=email_tool().execute,
        agents=frozenset({"sales-agent"}),
    ))

    assert [t.name for t in await registry.list_tools("agent-1")] == ["email_send"]
    assert [t.name for t in await registry.list_tools("sales-agent")] == ["email_send", "crm_lookup"]

    registry.set_enabled("email_send", False)
    assert await registry.list_tools("agent-1") == []


@pytest.mark.asyncio
async def test_dispatch_error_codes():
    registry = ToolRegistry()
    registry.register(email_tool())
    registry.register(MCPTool(
        definition=ToolDefinition(name="crm_lookup", description="Look up a contact"),
        execute=email_tool().execute,
        agents=frozenset({"sales-agent"}),
    ))

    unknown = await registry.dispatch("nope", {})
    forbidden = await registry.dispatch("crm_lookup", {}, {"agent_id": "agent-1"})
    invalid = await registry.dispatch("email_send", {"subject": "Hi"}, {"agent_id": "agent-1"})
    registry.set_enabled("email_send", False)
    disabled = await registry.dispatch("email_send", {"recipient": "a@b.co", "subject": "Hi"})

    assert unknown.error_code == ToolErrorCode.UNKNOWN_TOOL
    assert forbidden.error_code == ToolErrorCode.PERMISSION_DENIED
    assert invalid.error_code == ToolErrorCode.INVALID_ARGUMENTS
    assert invalid.error == "missing required field: recipient"
    assert disabled.error_code == ToolErrorCode.TOOL_DISABLED


@pytest.mark.asyncio
async def test_handler_exception_becomes_upstream_error():
    async def explode(params, auth):
        raise RuntimeError("SMTP relay refused")

    registry = ToolRegistry()
    registry.register(email_tool(explode))

    outcome = await registry.dispatch("email_send", {"recipient": "a@b.co", "subject": "Hi"})

    assert outcome.success is False
    assert outcome.error_code == ToolErrorCode.UPSTREAM_ERROR
    assert "SMTP relay refused" in outcome.error


# ==============================================================================
# Built-in tools
# ==============================================================================

def test_evaluate_arithmetic():
    assert evaluate("(12.5 * 4) / 2") == 25.0
    assert evaluate("-3 + 2 ** 3") == 5


@pytest.mark.parametrize("expression", ["__import__('os')", "a + 1", "2 ** 1000", "1 +"])
def test_evaluate_rejects_anything_else(expression):
    with pytest.raises(ValueError):
        evaluate(expression)


@pytest.mark.asyncio
async def test_builtin_tools_dispatch():
    registry = register_builtin_tools(ToolRegistry())

    calc = await registry.dispatch("utility_calculate", {"expression": "2+2"})
    zero = await registry.dispatch("utility_calculate", {"expression": "1/0"})
    now = await registry.dispatch("utility_current_time", {"timezone": "UTC"})
    bad_zone = await registry.dispatch("utility_current_time", {"timezone": "Mars/Olympus"})

    assert calc.payload["result"] == 4
    assert zero.error_code == ToolErrorCode.INVALID_ARGUMENTS
    assert now.success and now.payload["timezone"] == "UTC"
    assert bad_zone.error_code == ToolErrorCode.INVALID_ARGUMENTS


def test_builtin_registration_does_not_share_state():
    first = register_builtin_tools(ToolRegistry())
    second = register_builtin_tools(ToolRegistry())

    first.set_enabled("utility_calculate", False)

    assert second.get("utility_calculate").enabled is True


# ==============================================================================
# HTTP backend
# ==============================================================================

def _backend(handler) -> HttpToolBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpToolBackend("https://tools.test", api_key="secret", client=client)


@pytest.mark.asyncio
async def test_http_backend_lists_tools():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/agents/agent-1/tools"
        assert request.url.params["user_id"] == "user-1"
        assert request.headers["Authorization"] == "Bearer secret"
        return httpx.Response(200, json={"tools": [
            {"name": "gmail_send_email", "description": "Send mail", "parameters": {"type": "object", "properties": {}}},
        ]})

    backend = _backend(handler)
    tools = await backend.list_tools("agent-1", "user-1")
    await backend.aclose()

    assert [t.name for t in tools] == ["gmail_send_email"]


@pytest.mark.asyncio
async def test_http_backend_dispatch_success_and_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if request.url.path == "/tools/ok_tool/dispatch":
            return httpx.Response(200, json={"success": True, "payload": body["arguments"]})
        if request.url.path == "/tools/denied_tool/dispatch":
            return httpx.Response(403, json={"error": "scope missing"})
        return httpx.Response(502, text="bad gateway")

    backend = _backend(handler)
    ok = await backend.dispatch("ok_tool", {"q": "x"}, {"agent_id": "agent-1"})
    denied = await backend.dispatch("denied_tool", {})
    broken = await backend.dispatch("broken_tool", {})
    await backend.aclose()

    assert ok == ToolOutcome(success=True, payload={"q": "x"})
    assert denied.error_code == ToolErrorCode.PERMISSION_DENIED
    assert denied.error == "scope missing"
    assert broken.error_code == ToolErrorCode.UPSTREAM_ERROR
    assert broken.error.startswith("HTTP 502")


@pytest.mark.asyncio
async def test_http_backend_maps_timeouts():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    backend = _backend(handler)
    outcome = await backend.dispatch("slow_tool", {})
    await backend.aclose()

    assert outcome.error_code == ToolErrorCode.TIMEOUT


def test_status_code_mapping():
    assert error_code_for_status(401) == ToolErrorCode.AUTHENTICATION
    assert error_code_for_status(429) == ToolErrorCode.RATE_LIMITED
    assert error_code_for_status(503) == ToolErrorCode.UPSTREAM_ERROR
