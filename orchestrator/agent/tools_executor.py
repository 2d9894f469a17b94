"""
Tool Executor
=============

Discovers the tools available to an agent, executes the tool calls the
model requests, and decides whether a failure should be handed back to the
model with guidance.

Tool Execution Loop (driven by MainProcessingStage):
    1. Model responds with tool calls
    2. Executor back-fills inferable missing arguments from the user's text
    3. All calls of the batch run concurrently, each with its own timeout
    4. Every call yields exactly one ToolResult and one `tool` message
    5. Retryable failures add a guidance message and request another model
       call; terminal failures are only reported

Failure classification:
    retryable   invalid_arguments, upstream_error, timeout, or an uncoded
                error that reads like a parameter/transient problem
    terminal    permission_denied, tool_disabled, unknown_tool,
                rate_limited, authentication, or anything unrecognised

Discovery cache:
    Tool lists are cached per (agent_id, conversation_id) until either the
    TTL passes or the conversation has grown by `max_messages` messages.
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from orchestrator.agent.models import ProcessingContext, ToolDetail
from orchestrator.errors import OrchestratorError, ToolExecutionError
from orchestrator.llm.providers import LLMToolCall
from orchestrator.tools import ToolBackend, ToolDefinition, ToolErrorCode, ToolOutcome
from orchestrator.utils.cache import TTLCache
from orchestrator.utils.config import CacheSettings, PipelineSettings, get_config
from orchestrator.utils.logger import Logger
from orchestrator.utils.tokens import estimate_message_tokens

logger = Logger("ToolExecutor")

RETRYABLE_CODES = frozenset({
    ToolErrorCode.INVALID_ARGUMENTS,
    ToolErrorCode.UPSTREAM_ERROR,
    ToolErrorCode.TIMEOUT,
})

TERMINAL_CODES = frozenset({
    ToolErrorCode.PERMISSION_DENIED,
    ToolErrorCode.TOOL_DISABLED,
    ToolErrorCode.UNKNOWN_TOOL,
    ToolErrorCode.RATE_LIMITED,
    ToolErrorCode.AUTHENTICATION,
})

_TERMINAL_PATTERNS = (
    "unauthorized", "forbidden", "authentication", "permission", "not permitted", "access denied",
    "disabled", "unknown tool", "tool not found", "rate limit", "quota",
)

_RETRYABLE_PATTERNS = (
    "missing", "required", "invalid", "parameter", "undefined", "please provide", "-32602",
    "correct parameters", "timeout", "timed out", "network", "connection", "non-2xx",
    "temporarily", "unavailable", "try again",
)

_EMAIL = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")
_PHONE = re.compile(r"\+?\d[\d\s().-]{6,}\d")
_URL = re.compile(r"https?://[^\s<>\"']+|www\.[^\s<>\"']+")

_EMAIL_FIELDS = {"email", "email_address", "recipient", "recipient_email", "to_email", "to_address", "address"}
_PHONE_FIELDS = {"phone", "phone_number", "to_number", "mobile", "number", "recipient_phone"}
_URL_FIELDS = {"url", "link", "website", "page_url", "target_url"}
_TEXT_FIELDS = {"query", "search", "search_query", "text", "message", "body", "content", "prompt", "question", "instructions"}


class ToolCallStatus(str, Enum):
    SUCCESS = "success"
    RETRYABLE_ERROR = "retryable_error"
    TERMINAL_ERROR = "terminal_error"


@dataclass
class ToolCall:
    """
    A parsed tool call from the model.

    Attributes:
        tool_call_id: The provider's id (matches the result)
        name: The tool name
        arguments: Parsed arguments dict
        parse_error: Set when the argument JSON could not be parsed
        raw_arguments: The unparsed argument string, kept with parse_error
    """
    tool_call_id: str
    name: str
    arguments: dict[str, Any]
    parse_error: str | None = None
    raw_arguments: str | None = None


@dataclass
class ToolResult:
    """
    Outcome of one tool call.

    Attributes:
        tool_call_id: The original tool call id
        name: The tool name
        status: success, retryable_error or terminal_error
        result: Tool payload on success
        error: Error message on failure
        latency_ms: Wall time of the dispatch
        arguments: Arguments actually sent (after back-fill)
        error_code: Backend error code, if any
        raw_arguments: Unparsed argument string when parsing failed
    """
    tool_call_id: str
    name: str
    status: ToolCallStatus
    result: Any = None
    error: str | None = None
    latency_ms: float = 0.0
    arguments: dict[str, Any] = field(default_factory=dict)
    error_code: str | None = None
    raw_arguments: str | None = None

    @property
    def success(self) -> bool:
        return self.status == ToolCallStatus.SUCCESS

    def to_openai_message(self) -> dict:
        """
        Format as a tool result message for the next model call.

        Returns:
            Message dict in OpenAI's expected format
        """
        if self.success:
            content = json.dumps(self.result, default=str)
        else:
            content = f"Error: {self.error}"
        return {"role": "tool", "tool_call_id": self.tool_call_id, "content": content}


@dataclass
class ExecutionOutcome:
    """Everything a tool batch produced."""
    results: list[ToolResult]
    updated_messages: list[dict[str, Any]]
    tokens_used: int
    requires_llm_retry: bool


class ToolDiscoveryCache:
    """
    Tool lists per (agent_id, conversation_id), expiring by TTL or after the
    conversation grows by `max_messages`.
    """

    def __init__(self, ttl_seconds: float, max_messages: int, max_entries: int = 1000):
        self.max_messages = max_messages
        self._cache: TTLCache[tuple[list[ToolDefinition], int]] = TTLCache(ttl_seconds, max_entries)

    def get(self, agent_id: str, conversation_id: str | None, message_count: int) -> list[ToolDefinition] | None:
        key = (agent_id, conversation_id)
        entry = self._cache.get(key)
        if entry is None:
            return None
        tools, stored_count = entry
        if message_count - stored_count >= self.max_messages or message_count < stored_count:
            self._cache.invalidate(key)
            return None
        return tools

    def set(self, agent_id: str, conversation_id: str | None, message_count: int, tools: list[ToolDefinition]) -> None:
        self._cache.set((agent_id, conversation_id), (list(tools), message_count))

    def invalidate(self, agent_id: str, conversation_id: str | None) -> None:
        self._cache.invalidate((agent_id, conversation_id))


def _is_phone_field(name: str, schema: dict) -> bool:
    if name in _PHONE_FIELDS:
        return True
    description = str(schema.get("description", "")).lower()
    return name == "to" and ("phone" in description or "number" in description)


class ToolExecutor:
    """
    Executes tools called by the model.

    Example:
        executor = ToolExecutor(backend)
        tools = await executor.discover_tools("agent-1", "user-9", "conv-3", message_count=4)

        calls = executor.parse_tool_calls(response.tool_calls)
        outcome = await executor.execute_tool_calls(calls, ctx, assistant_message)
        ctx.turn_messages.extend(outcome.updated_messages)
    """

    def __init__(
        self,
        backend: ToolBackend,
        cache: ToolDiscoveryCache | None = None,
        settings: PipelineSettings | None = None,
        cache_settings: CacheSettings | None = None
    ):
        """
        Args:
            backend: Tool discovery and dispatch collaborator
            cache: Shared discovery cache (a fresh one if None)
            settings: Pipeline settings for the per-call timeout
            cache_settings: Bounds for the discovery cache
        """
        config = get_config()
        self.backend = backend
        self.settings = settings or config.pipeline
        cache_settings = cache_settings or config.cache
        self.cache = cache or ToolDiscoveryCache(
            ttl_seconds=cache_settings.tool_cache_ttl_seconds,
            max_messages=cache_settings.tool_cache_max_messages,
            max_entries=cache_settings.max_entries,
        )

    # ==========================================================================
    # Discovery
    # ==========================================================================

    async def discover_tools(
        self,
        agent_id: str,
        user_id: str | None = None,
        conversation_id: str | None = None,
        message_count: int = 0
    ) -> list[ToolDefinition]:
        """Get the agent's tools, from cache when still fresh."""
        cached = self.cache.get(agent_id, conversation_id, message_count)
        if cached is not None:
            logger.debug(f"Tool discovery cache hit ({len(cached)} tools)", {"agent_id": agent_id})
            return cached

        try:
            tools = await self.backend.list_tools(agent_id, user_id)
        except OrchestratorError:
            raise
        except Exception as e:
            raise ToolExecutionError(f"Tool discovery failed: {e}", retryable=True) from e

        self.cache.set(agent_id, conversation_id, message_count, tools)
        logger.debug(f"Discovered {len(tools)} tools", {"agent_id": agent_id})
        return tools

    # ==========================================================================
    # Parsing and back-fill
    # ==========================================================================

    def parse_tool_calls(self, tool_calls: list[LLMToolCall]) -> list[ToolCall]:
        """Parse the model's tool calls; bad JSON is kept with parse_error set."""
        parsed = []
        for tc in tool_calls:
            try:
                arguments = json.loads(tc.arguments or "{}")
                if not isinstance(arguments, dict):
                    raise ValueError("arguments must be a JSON object")
                parsed.append(ToolCall(tool_call_id=tc.id, name=tc.name, arguments=arguments))
            except ValueError as e:
                logger.warning(f"Failed to parse arguments for {tc.name}: {e}")
                parsed.append(ToolCall(
                    tool_call_id=tc.id,
                    name=tc.name,
                    arguments={},
                    parse_error=f"arguments were not a valid JSON object ({e})",
                    raw_arguments=tc.arguments,
                ))
        return parsed

    def backfill_arguments(self, call: ToolCall, definition: ToolDefinition, user_text: str) -> dict[str, Any]:
        """
        Fill missing required arguments that can be read off the user's text.

        Recognised by field name: e-mail, phone and URL fields take the
        first matching value in the text; free-text fields take the whole
        message. Fields already present are never overwritten.
        """
        arguments = dict(call.arguments)
        properties = definition.parameters.get("properties", {})

        for name in definition.required:
            if arguments.get(name) not in (None, ""):
                continue
            schema = properties.get(name, {})
            if schema.get("type", "string") != "string":
                continue

            key = name.lower()
            value = None
            if _is_phone_field(key, schema):
                match = _PHONE.search(user_text)
                value = match.group(0).strip() if match else None
            elif key in _EMAIL_FIELDS or key == "to" or "email" in key:
                match = _EMAIL.search(user_text)
                value = match.group(0).rstrip(".") if match else None
            elif key in _URL_FIELDS or key.endswith("_url"):
                match = _URL.search(user_text)
                value = match.group(0).rstrip(".,)") if match else None
            elif key in _TEXT_FIELDS:
                value = user_text.strip() or None

            if value:
                arguments[name] = value
                logger.debug(f"Back-filled '{name}' for {call.name}")

        return arguments

    # ==========================================================================
    # Classification and guidance
    # ==========================================================================

    def classify_failure(self, outcome: ToolOutcome) -> ToolCallStatus:
        """Decide whether a failed outcome is worth a model retry."""
        if outcome.error_code in RETRYABLE_CODES:
            return ToolCallStatus.RETRYABLE_ERROR
        if outcome.error_code in TERMINAL_CODES:
            return ToolCallStatus.TERMINAL_ERROR

        message = (outcome.error or "").lower()
        if any(p in message for p in _TERMINAL_PATTERNS):
            return ToolCallStatus.TERMINAL_ERROR
        if any(p in message for p in _RETRYABLE_PATTERNS):
            return ToolCallStatus.RETRYABLE_ERROR
        return ToolCallStatus.TERMINAL_ERROR

    def build_guidance(self, result: ToolResult, definition: ToolDefinition | None) -> dict[str, Any]:
        """Synthesize the system message that steers the model's retry."""
        lines = [f"The tool '{result.name}' failed because: {result.error}."]
        if result.raw_arguments is not None:
            lines.append(f"Arguments sent (not valid JSON): {result.raw_arguments}.")
        else:
            lines.append(f"Arguments sent: {json.dumps(result.arguments, default=str)}.")
        if definition is not None:
            if definition.required:
                lines.append(f"Required parameters: {', '.join(definition.required)}.")
            missing = re.findall(r"missing required field: (\w+)", result.error or "")
            for name in missing:
                description = definition.parameters.get("properties", {}).get(name, {}).get("description")
                hint = f" ({description})" if description else ""
                lines.append(f"Provide a value for '{name}'{hint}; ask the user if it cannot be inferred.")
        lines.append("Retry the tool call with corrected arguments.")
        return {"role": "system", "content": " ".join(lines)}

    # ==========================================================================
    # Execution
    # ==========================================================================

    async def execute_one(
        self,
        call: ToolCall,
        definition: ToolDefinition | None,
        user_text: str,
        auth_context: dict[str, Any]
    ) -> ToolResult:
        """Execute a single tool call; never raises for tool failures."""
        if definition is None:
            return ToolResult(
                tool_call_id=call.tool_call_id,
                name=call.name,
                status=ToolCallStatus.TERMINAL_ERROR,
                error=f"Tool '{call.name}' is not available to this agent",
                arguments=call.arguments,
                error_code=ToolErrorCode.UNKNOWN_TOOL,
            )

        if call.parse_error:
            return ToolResult(
                tool_call_id=call.tool_call_id,
                name=call.name,
                status=ToolCallStatus.RETRYABLE_ERROR,
                error=call.parse_error,
                error_code=ToolErrorCode.INVALID_ARGUMENTS,
                raw_arguments=call.raw_arguments,
            )

        arguments = self.backfill_arguments(call, definition, user_text)
        timeout = self.settings.effective_tool_timeout
        started = time.monotonic()

        logger.info(f"Executing tool: {call.name}")
        try:
            outcome = await asyncio.wait_for(
                self.backend.dispatch(call.name, arguments, auth_context),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            outcome = ToolOutcome(
                success=False,
                error=f"Tool '{call.name}' timed out after {timeout:.1f}s",
                error_code=ToolErrorCode.TIMEOUT,
            )
        except Exception as e:
            logger.error(f"Tool dispatch raised: {call.name}", e)
            outcome = ToolOutcome(success=False, error=str(e), error_code=ToolErrorCode.UPSTREAM_ERROR)

        latency_ms = (time.monotonic() - started) * 1000

        if outcome.success:
            logger.debug(f"Tool {call.name} succeeded", {"latency_ms": round(latency_ms, 1)})
            return ToolResult(
                tool_call_id=call.tool_call_id,
                name=call.name,
                status=ToolCallStatus.SUCCESS,
                result=outcome.payload,
                latency_ms=latency_ms,
                arguments=arguments,
            )

        status = self.classify_failure(outcome)
        logger.warning(f"Tool {call.name} failed ({status.value}): {outcome.error}")
        return ToolResult(
            tool_call_id=call.tool_call_id,
            name=call.name,
            status=status,
            error=outcome.error or "unknown error",
            latency_ms=latency_ms,
            arguments=arguments,
            error_code=outcome.error_code,
        )

    async def execute_tool_calls(
        self,
        tool_calls: list[ToolCall],
        context: ProcessingContext,
        assistant_message: dict[str, Any] | None = None
    ) -> ExecutionOutcome:
        """
        Execute one batch of tool calls concurrently.

        Each call is logged on `context.tool_details` as soon as it finishes,
        so calls that completed survive a cancelled batch.

        Args:
            tool_calls: Parsed calls from one model response
            context: The run's processing context (tools, request, tool log)
            assistant_message: The assistant message that requested the calls;
                it leads `updated_messages` so tool results follow it

        Returns:
            ExecutionOutcome; results are in call order
        """
        request = context.request
        definitions = {t.name: t for t in context.tools}
        auth_context = {
            "agent_id": request.agent_id,
            "user_id": request.user_id,
            "conversation_id": request.conversation_id,
            "workspace_id": request.workspace_id,
        }
        batch_start = len(context.tool_details)

        results = list(await asyncio.gather(*(
            self._execute_and_record(call, definitions.get(call.name), request.text, auth_context, context, attempt)
            for call, attempt in zip(tool_calls, self._attempt_numbers(tool_calls, context))
        )))

        # Details were appended as calls finished; keep the batch in call order
        order = {r.tool_call_id: i for i, r in enumerate(results)}
        batch = context.tool_details[batch_start:]
        context.tool_details[batch_start:] = sorted(batch, key=lambda d: order.get(d.tool_call_id, len(order)))

        messages: list[dict[str, Any]] = []
        if assistant_message is not None:
            messages.append(assistant_message)
        messages.extend(r.to_openai_message() for r in results)

        requires_retry = False
        for result in results:
            if result.status == ToolCallStatus.RETRYABLE_ERROR:
                messages.append(self.build_guidance(result, definitions.get(result.name)))
                requires_retry = True

        return ExecutionOutcome(
            results=results,
            updated_messages=messages,
            tokens_used=estimate_message_tokens(messages),
            requires_llm_retry=requires_retry,
        )

    def _attempt_numbers(self, tool_calls: list[ToolCall], context: ProcessingContext) -> list[int]:
        """Per-call attempt number: 1 + earlier calls of the same tool this turn."""
        seen: dict[str, int] = {}
        for detail in context.tool_details:
            seen[detail.name] = seen.get(detail.name, 0) + 1
        attempts = []
        for call in tool_calls:
            seen[call.name] = seen.get(call.name, 0) + 1
            attempts.append(seen[call.name])
        return attempts

    async def _execute_and_record(
        self,
        call: ToolCall,
        definition: ToolDefinition | None,
        user_text: str,
        auth_context: dict[str, Any],
        context: ProcessingContext,
        attempt: int
    ) -> ToolResult:
        """Execute one call and log it on the context as soon as it finishes."""
        result = await self.execute_one(call, definition, user_text, auth_context)
        context.tool_details.append(ToolDetail(
            tool_call_id=result.tool_call_id,
            name=result.name,
            arguments=result.arguments,
            status=result.status.value,
            result=result.result,
            error=result.error,
            latency_ms=result.latency_ms,
            attempt=attempt,
        ))
        return result
