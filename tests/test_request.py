"""Tests for request normalization and validation."""

import pytest

from orchestrator.agent.request import normalize_request, validate_request
from orchestrator.errors import ValidationError
from orchestrator.utils.config import ContextSettings


def _envelope(**overrides) -> dict:
    payload = {
        "message": {"role": "user", "content": {"type": "text", "text": "Hello"}},
        "context": {"agent_id": "agent-1", "conversation_id": "conv-1", "user_id": "user-1"},
    }
    payload.update(overrides)
    return payload


def test_current_envelope_is_kept():
    canonical = normalize_request(_envelope(request_id="req-1"))

    assert canonical["request_id"] == "req-1"
    assert canonical["message"]["content"] == {"type": "text", "text": "Hello"}
    assert canonical["context"] == {"agent_id": "agent-1", "conversation_id": "conv-1", "user_id": "user-1"}


def test_legacy_flat_shape_is_normalized():
    canonical = normalize_request({"message": "Hi there", "agent_id": "agent-1", "session_id": "s-1"})

    assert canonical["message"] == {"role": "user", "content": {"type": "text", "text": "Hi there"}}
    assert canonical["context"] == {"agent_id": "agent-1", "session_id": "s-1"}
    assert canonical["request_id"]


def test_legacy_messages_shape_uses_last_user_message():
    canonical = normalize_request({
        "messages": [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "reply"},
            {"role": "user", "content": "second"},
        ],
        "agent_id": "agent-1",
    })

    assert canonical["message"]["content"]["text"] == "second"


def test_identifier_precedence():
    canonical = normalize_request({
        "message": {
            "role": "user",
            "content": "hi",
            "context": {"agent_id": "from-message", "conversation_id": "conv-m"},
        },
        "context": {"agent_id": "from-context"},
        "agent_id": "from-top",
        "user_id": "user-top",
    })

    assert canonical["context"]["agent_id"] == "from-context"
    assert canonical["context"]["conversation_id"] == "conv-m"
    assert canonical["context"]["user_id"] == "user-top"
    assert "context" not in canonical["message"]


def test_missing_message_is_rejected():
    with pytest.raises(ValidationError) as exc_info:
        normalize_request({"agent_id": "agent-1"})
    assert exc_info.value.errors[0]["path"] == ["message"]


def test_defaults_are_applied():
    request = validate_request(normalize_request(_envelope()), ContextSettings(token_budget=3000, max_messages=12))

    assert request.text == "Hello"
    assert request.options.memory.enabled is True
    assert request.options.memory.types == ("episodic", "semantic")
    assert request.options.memory.max_results == 5
    assert request.options.context.token_budget == 3000
    assert request.options.context.max_messages == 12
    assert request.options.response.stream is False


def test_options_are_read():
    request = validate_request(normalize_request(_envelope(options={
        "response": {"stream": True, "include_metrics": False},
        "memory": {"enabled": False, "types": ["semantic"], "max_results": 3},
        "context": {"max_messages": 4, "token_budget": 1000},
    })))

    assert request.options.response.stream is True
    assert request.options.response.include_metrics is False
    assert request.options.memory.types == ("semantic",)
    assert request.options.context.token_budget == 1000


def test_all_problems_are_collected():
    payload = _envelope(options={"memory": {"max_results": 0}, "context": {"token_budget": -5}})
    payload["message"] = {"role": "assistant", "content": {"type": "text", "text": "   "}}
    payload["context"] = {}

    with pytest.raises(ValidationError) as exc_info:
        validate_request(normalize_request(payload))

    paths = [tuple(e["path"]) for e in exc_info.value.errors]
    assert ("context", "agent_id") in paths
    assert ("message", "role") in paths
    assert ("message", "content", "text") in paths
    assert ("options", "memory", "max_results") in paths
    assert ("options", "context", "token_budget") in paths
    assert exc_info.value.kind == "validation_error"


def test_structured_content_is_accepted():
    payload = _envelope()
    payload["message"] = {"role": "user", "content": {"type": "structured", "data": {"order_id": 7}}}

    request = validate_request(normalize_request(payload))

    assert request.content.type == "structured"
    assert request.text == '{"order_id": 7}'
