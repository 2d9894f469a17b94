"""Tests for provider adapters: parameter building, Anthropic conversion and error mapping."""

import json

import httpx
import pytest

from orchestrator.errors import ConfigurationError, ContextOverflowError, ProviderError
from orchestrator.llm.providers import (
    AnthropicAdapter,
    ProviderName,
    build_anthropic_body,
    build_openai_params,
    parse_anthropic_response,
    parse_provider,
    to_anthropic_messages,
    uses_temperature,
)
from orchestrator.utils.config import ProviderSettings


def test_temperature_support_by_model_family():
    assert uses_temperature("gpt-4o-mini") is True
    assert uses_temperature("o3-mini") is False
    assert uses_temperature("openai/o1-preview") is False
    assert uses_temperature("claude-3-5-sonnet") is True


def test_openai_params_for_reasoning_models():
    params = build_openai_params(
        [{"role": "user", "content": "hi"}],
        model="o3-mini",
        tools=None,
        temperature=0.3,
        max_tokens=100,
        tool_choice="auto",
    )

    assert "temperature" not in params
    assert "max_tokens" not in params
    assert params["max_completion_tokens"] == 100
    assert "tool_choice" not in params


def test_openai_params_with_tools():
    tools = [{"type": "function", "function": {"name": "email_send", "parameters": {}}}]
    params = build_openai_params(
        [{"role": "user", "content": "hi"}],
        model="gpt-4o",
        tools=tools,
        temperature=0.2,
        max_tokens=None,
        tool_choice="none",
        extra={"seed": 7},
    )

    assert params["tools"] == tools
    assert params["tool_choice"] == "none"
    assert params["temperature"] == 0.2
    assert params["seed"] == 7


def test_parse_provider():
    assert parse_provider("Anthropic") == ProviderName.ANTHROPIC
    with pytest.raises(ConfigurationError):
        parse_provider("cohere")


# ==============================================================================
# Anthropic conversion
# ==============================================================================

def test_anthropic_message_conversion():
    system, messages = to_anthropic_messages([
        {"role": "system", "content": "Be brief."},
        {"role": "system", "content": "## Context\nnone"},
        {"role": "user", "content": "Email bob"},
        {"role": "assistant", "content": None, "tool_calls": [
            {"id": "t1", "type": "function", "function": {"name": "email_send", "arguments": '{"to": "bob"}'}},
            {"id": "t2", "type": "function", "function": {"name": "crm_lookup", "arguments": "{bad"}},
        ]},
        {"role": "tool", "tool_call_id": "t1", "content": '{"ok": true}'},
        {"role": "tool", "tool_call_id": "t2", "content": "Error: not found"},
    ])

    assert system == "Be brief.\n\n## Context\nnone"
    assert [m["role"] for m in messages] == ["user", "assistant", "user"]
    assert messages[1]["content"][0] == {"type": "tool_use", "id": "t1", "name": "email_send", "input": {"to": "bob"}}
    assert messages[1]["content"][1]["input"] == {}
    assert [b["tool_use_id"] for b in messages[2]["content"]] == ["t1", "t2"]


def test_anthropic_body():
    body = build_anthropic_body(
        [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}],
        model="claude-3-5-haiku",
        tools=[{"type": "function", "function": {"name": "calc", "description": "math", "parameters": None}}],
        temperature=0.5,
        max_tokens=None,
        tool_choice="required",
    )

    assert body["system"] == "sys"
    assert body["max_tokens"] == 1024
    assert body["tools"] == [{"name": "calc", "description": "math", "input_schema": {"type": "object", "properties": {}}}]
    assert body["tool_choice"] == {"type": "any"}
    assert body["temperature"] == 0.5


def test_parse_anthropic_response():
    response = parse_anthropic_response({
        "id": "msg_1",
        "model": "claude-3-5-haiku",
        "stop_reason": "tool_use",
        "content": [
            {"type": "text", "text": "Sending now."},
            {"type": "tool_use", "id": "tu_1", "name": "email_send", "input": {"recipient": "a@b.co"}},
        ],
        "usage": {"input_tokens": 30, "output_tokens": 12},
    })

    assert response.text == "Sending now."
    assert response.tool_calls[0].name == "email_send"
    assert json.loads(response.tool_calls[0].arguments) == {"recipient": "a@b.co"}
    assert response.usage.total == 42
    assert response.finish_reason == "tool_use"


# ==============================================================================
# Anthropic adapter over HTTP
# ==============================================================================

def _adapter(handler) -> AnthropicAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AnthropicAdapter("ak-test", ProviderSettings(anthropic_base_url="https://anthropic.test/"), client=client)


@pytest.mark.asyncio
async def test_anthropic_chat_round_trip():
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == "https://anthropic.test/v1/messages"
        assert request.headers["x-api-key"] == "ak-test"
        body = json.loads(request.content)
        assert body["messages"] == [{"role": "user", "content": [{"type": "text", "text": "hi"}]}]
        return httpx.Response(200, json={
            "id": "msg_1",
            "model": "claude-3-5-haiku",
            "stop_reason": "end_turn",
            "content": [{"type": "text", "text": "Hello!"}],
            "usage": {"input_tokens": 5, "output_tokens": 2},
        })

    adapter = _adapter(handler)
    response = await adapter.chat([{"role": "user", "content": "hi"}], model="claude-3-5-haiku")
    await adapter.aclose()

    assert response.text == "Hello!"
    assert response.usage.prompt == 5


@pytest.mark.asyncio
@pytest.mark.parametrize("status, text, expected, retryable", [
    (400, '{"error": {"message": "prompt is too long: 210000 tokens"}}', ContextOverflowError, None),
    (400, '{"error": {"message": "invalid model"}}', ProviderError, False),
    (429, "rate limited", ProviderError, True),
    (529, "overloaded", ProviderError, True),
    (401, "bad key", ProviderError, False),
])
async def test_anthropic_error_mapping(status, text, expected, retryable):
    adapter = _adapter(lambda request: httpx.Response(status, text=text))

    with pytest.raises(expected) as exc_info:
        await adapter.chat([{"role": "user", "content": "hi"}], model="claude-3-5-haiku")
    await adapter.aclose()

    if retryable is not None:
        assert exc_info.value.retryable is retryable
        assert exc_info.value.status_code == status


@pytest.mark.asyncio
async def test_anthropic_transport_errors_are_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    adapter = _adapter(handler)
    with pytest.raises(ProviderError) as exc_info:
        await adapter.chat([{"role": "user", "content": "hi"}], model="claude-3-5-haiku")
    await adapter.aclose()

    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_anthropic_stream():
    events = [
        {"type": "message_start", "message": {"id": "msg_9", "model": "claude-3-5-haiku", "usage": {"input_tokens": 11}}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hel"}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "lo"}},
        {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "id": "tu_1", "name": "calc"}},
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"expression": '}},
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '"1+1"}'}},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 7}},
    ]
    payload = "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events)

    adapter = _adapter(lambda request: httpx.Response(200, text=payload))
    chunks = [c async for c in adapter.stream_chat([{"role": "user", "content": "hi"}], model="claude-3-5-haiku")]
    await adapter.aclose()

    assert [c.delta for c in chunks if not c.done] == ["Hel", "lo"]
    final = chunks[-1]
    assert final.done is True
    assert final.response_id == "msg_9"
    assert final.usage.total == 18
    assert final.tool_calls[0].name == "calc"
    assert json.loads(final.tool_calls[0].arguments) == {"expression": "1+1"}
    assert final.finish_reason == "tool_use"
