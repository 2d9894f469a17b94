"""
Pipeline data model.

ChatTurnRequest is the immutable, canonical form of one inbound turn.
ProcessingContext is the mutable bag the stages pass along; it belongs to
exactly one pipeline run and is never shared between concurrent requests.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any

from orchestrator.llm.providers import TokenUsage


@dataclass(frozen=True)
class MessageContent:
    """Message content: `text`, or `structured` (arbitrary JSON data)."""
    type: str
    text: str = ""
    data: Any = None

    def as_text(self) -> str:
        if self.type == "text":
            return self.text
        if self.text:
            return self.text
        return json.dumps(self.data, default=str)


@dataclass(frozen=True)
class MemoryOptions:
    enabled: bool = True
    types: tuple[str, ...] = ("episodic", "semantic")
    max_results: int = 5


@dataclass(frozen=True)
class ContextOptions:
    max_messages: int = 20
    token_budget: int = 4000


@dataclass(frozen=True)
class ResponseOptions:
    stream: bool = False
    include_metadata: bool = True
    include_metrics: bool = True


@dataclass(frozen=True)
class RequestOptions:
    response: ResponseOptions = field(default_factory=ResponseOptions)
    memory: MemoryOptions = field(default_factory=MemoryOptions)
    context: ContextOptions = field(default_factory=ContextOptions)


@dataclass(frozen=True)
class ChatTurnRequest:
    """One inbound unit of work (immutable once constructed)."""
    request_id: str
    role: str
    content: MessageContent
    agent_id: str
    user_id: str | None = None
    conversation_id: str | None = None
    session_id: str | None = None
    workspace_id: str | None = None
    options: RequestOptions = field(default_factory=RequestOptions)

    @property
    def text(self) -> str:
        return self.content.as_text()


@dataclass
class ToolDetail:
    """One entry of the per-turn tool log."""
    tool_call_id: str
    name: str
    arguments: dict[str, Any]
    status: str
    result: Any = None
    error: str | None = None
    latency_ms: float = 0.0
    attempt: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "arguments": self.arguments,
            "status": self.status,
            "result": self.result,
            "error": self.error,
            "latency_ms": round(self.latency_ms, 2),
            "attempt": self.attempt,
        }


@dataclass
class StreamEvent:
    """A named streaming event: delta, tool_call, tool_result, complete, error."""
    event: str
    data: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.event, "data": self.data}


@dataclass
class ProcessingContext:
    """
    State threaded through the stages of one run.

    Message assembly order (see `build_messages`):
        system prompt, context block, memory block, reasoning notes,
        history window, user message, this turn's tool round-trips
    """
    raw: dict[str, Any]
    started_at: float = field(default_factory=time.monotonic)
    canonical: dict[str, Any] | None = None
    request: ChatTurnRequest | None = None

    # Prompt parts
    system_prompt: str = ""
    context_block: str = ""
    memory_block: str = ""
    reasoning_notes: str = ""
    history: list[dict[str, Any]] = field(default_factory=list)
    history_limit: int | None = None          # reduced on context overflow
    turn_messages: list[dict[str, Any]] = field(default_factory=list)

    # Accounting
    tokens_used: TokenUsage = field(default_factory=TokenUsage)
    llm_calls: int = 0
    overflow_retries: int = 0
    tool_details: list[ToolDetail] = field(default_factory=list)
    stage_timings: dict[str, float] = field(default_factory=dict)
    current_stage: str | None = None

    # Per-run caches (never shared across runs)
    resolved_agents: dict[str, Any] = field(default_factory=dict)

    # Enrichment / classification results
    context_tokens: int = 0
    context_summary: dict[str, Any] = field(default_factory=dict)
    memories: list[Any] = field(default_factory=list)
    intent: Any = None
    reasoning: dict[str, Any] = field(default_factory=lambda: {"score": 0.0, "enabled": False, "style": None})
    tools: list[Any] = field(default_factory=list)

    # Output
    response_text: str = ""
    response_id: str = ""
    model: str = ""
    finish_reason: str | None = None
    partial: bool = False
    message_id: str = ""
    output: dict[str, Any] | None = None

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000

    def history_window(self) -> list[dict[str, Any]]:
        if self.history_limit is None:
            return list(self.history)
        if self.history_limit <= 0:
            return []
        return self.history[-self.history_limit:]

    def build_messages(self) -> list[dict[str, Any]]:
        """Assemble the message list for the next model call."""
        messages: list[dict[str, Any]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        for block in (self.context_block, self.memory_block, self.reasoning_notes):
            if block:
                messages.append({"role": "system", "content": block})
        messages.extend(self.history_window())
        if self.request is not None:
            messages.append({"role": "user", "content": self.request.text})
        messages.extend(self.turn_messages)
        return messages

    @property
    def messages(self) -> list[dict[str, Any]]:
        return self.build_messages()
