"""
Request parsing and validation.

Parsing turns any accepted request shape into one canonical dict:

    current envelope    {"message": {"role", "content": {"type", "text"}},
                         "context": {...ids}, "options": {...}}
    legacy flat         {"message": "text", "agent_id": ..., "conversation_id": ...}
    legacy messages     {"messages": [{"role": "user", "content": "..."}, ...], ...}

Identifiers are taken from `context`, then `message.context`, then the top
level (first non-empty value wins).

Validation checks the canonical dict against a JSON Schema (Draft 7),
collects every problem, and builds the immutable ChatTurnRequest with
defaults applied.
"""

import uuid
from typing import Any

from jsonschema import Draft7Validator

from orchestrator.agent.models import (
    ChatTurnRequest,
    ContextOptions,
    MemoryOptions,
    MessageContent,
    RequestOptions,
    ResponseOptions,
)
from orchestrator.errors import ValidationError
from orchestrator.utils.config import ContextSettings

IDENTIFIERS = ("agent_id", "user_id", "conversation_id", "session_id", "workspace_id")
MEMORY_TYPES = ["episodic", "semantic", "procedural", "working"]

REQUEST_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["message", "context"],
    "properties": {
        "request_id": {"type": "string", "minLength": 1},
        "message": {
            "type": "object",
            "required": ["role", "content"],
            "properties": {
                "role": {"const": "user"},
                "content": {
                    "type": "object",
                    "required": ["type"],
                    "properties": {
                        "type": {"enum": ["text", "structured"]},
                        "text": {"type": "string"},
                    },
                    "if": {"properties": {"type": {"const": "text"}}},
                    "then": {
                        "required": ["text"],
                        "properties": {"text": {"type": "string", "pattern": r"\S"}},
                    },
                    "else": {"anyOf": [{"required": ["data"]}, {"required": ["text"]}]},
                },
            },
        },
        "context": {
            "type": "object",
            "required": ["agent_id"],
            "properties": {
                "agent_id": {"type": "string", "minLength": 1},
                "user_id": {"type": ["string", "null"]},
                "conversation_id": {"type": ["string", "null"]},
                "session_id": {"type": ["string", "null"]},
                "workspace_id": {"type": ["string", "null"]},
            },
        },
        "options": {
            "type": "object",
            "properties": {
                "response": {
                    "type": "object",
                    "properties": {
                        "stream": {"type": "boolean"},
                        "include_metadata": {"type": "boolean"},
                        "include_metrics": {"type": "boolean"},
                    },
                },
                "memory": {
                    "type": "object",
                    "properties": {
                        "enabled": {"type": "boolean"},
                        "types": {"type": "array", "items": {"enum": MEMORY_TYPES}},
                        "max_results": {"type": "integer", "minimum": 1, "maximum": 50},
                    },
                },
                "context": {
                    "type": "object",
                    "properties": {
                        "max_messages": {"type": "integer", "minimum": 0, "maximum": 100},
                        "token_budget": {"type": "integer", "minimum": 1, "maximum": 200000},
                    },
                },
            },
        },
    },
}

_validator = Draft7Validator(REQUEST_SCHEMA)


def _first(*values: Any) -> Any:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _normalize_content(content: Any) -> Any:
    if isinstance(content, str):
        return {"type": "text", "text": content}
    return content


def normalize_request(payload: Any) -> dict[str, Any]:
    """
    Normalize a raw request of any accepted shape into the canonical dict.

    Raises:
        ValidationError: If the payload is not an object or has no message
    """
    if not isinstance(payload, dict):
        raise ValidationError([{"path": [], "message": "request must be a JSON object"}])

    message = payload.get("message")

    if message is None and isinstance(payload.get("messages"), list):
        user_messages = [m for m in payload["messages"] if isinstance(m, dict) and m.get("role") == "user"]
        if user_messages:
            message = user_messages[-1]

    if message is None:
        raise ValidationError([{"path": ["message"], "message": "message is required"}])

    if isinstance(message, str):
        message = {"role": "user", "content": {"type": "text", "text": message}}
    elif isinstance(message, dict):
        message = {**message, "content": _normalize_content(message.get("content"))}

    context = payload.get("context") if isinstance(payload.get("context"), dict) else {}
    message_context = message.get("context") if isinstance(message, dict) and isinstance(message.get("context"), dict) else {}

    canonical_context = {}
    for key in IDENTIFIERS:
        value = _first(context.get(key), message_context.get(key), payload.get(key))
        if value is not None:
            canonical_context[key] = value

    if isinstance(message, dict):
        message = {k: v for k, v in message.items() if k != "context"}

    return {
        "request_id": _first(payload.get("request_id"), payload.get("id")) or str(uuid.uuid4()),
        "message": message,
        "context": canonical_context,
        "options": payload.get("options") if isinstance(payload.get("options"), dict) else {},
    }


def _error_path(error) -> list[Any]:
    path = list(error.absolute_path)
    if error.validator == "required" and isinstance(error.instance, dict):
        missing = [name for name in error.validator_value if name not in error.instance]
        if missing:
            path.append(missing[0])
    return path


def validate_request(canonical: dict[str, Any], defaults: ContextSettings | None = None) -> ChatTurnRequest:
    """
    Validate a canonical request and build the ChatTurnRequest.

    Raises:
        ValidationError: With every schema problem found
    """
    errors = sorted(_validator.iter_errors(canonical), key=lambda e: [str(p) for p in e.absolute_path])
    if errors:
        raise ValidationError([{"path": _error_path(e), "message": e.message} for e in errors])

    defaults = defaults or ContextSettings()
    message = canonical["message"]
    content = message["content"]
    ids = canonical["context"]
    options = canonical.get("options") or {}
    response = options.get("response") or {}
    memory = options.get("memory") or {}
    context = options.get("context") or {}

    return ChatTurnRequest(
        request_id=canonical["request_id"],
        role=message["role"],
        content=MessageContent(
            type=content["type"],
            text=content.get("text", ""),
            data=content.get("data"),
        ),
        agent_id=ids["agent_id"],
        user_id=ids.get("user_id"),
        conversation_id=ids.get("conversation_id"),
        session_id=ids.get("session_id"),
        workspace_id=ids.get("workspace_id"),
        options=RequestOptions(
            response=ResponseOptions(
                stream=response.get("stream", False),
                include_metadata=response.get("include_metadata", True),
                include_metrics=response.get("include_metrics", True),
            ),
            memory=MemoryOptions(
                enabled=memory.get("enabled", True),
                types=tuple(memory.get("types") or ("episodic", "semantic")),
                max_results=memory.get("max_results", 5),
            ),
            context=ContextOptions(
                max_messages=context.get("max_messages", defaults.max_messages),
                token_budget=context.get("token_budget", defaults.token_budget),
            ),
        ),
    )
