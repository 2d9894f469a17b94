"""
Provider Adapters
=================

One uniform chat/embedding interface over each supported model vendor.

The set of vendors is closed: every supported provider has exactly one
adapter class here, and `create_adapter` maps the provider name to it. The
router resolves the adapter once per turn and caches it on the processing
context, so there is no registry lookup on the hot path.

Messages are always exchanged in OpenAI chat format:
    {"role": "system" | "user" | "assistant" | "tool", "content": "...",
     "tool_calls": [...], "tool_call_id": "..."}

Adapters for vendors with a different wire format (Anthropic) convert at
the boundary. Vendor exceptions never leave this module: they are mapped to
ProviderError (with a retryable flag) or ContextOverflowError.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator

import httpx
import openai
from openai import AsyncOpenAI

from orchestrator.errors import ConfigurationError, ContextOverflowError, ProviderError
from orchestrator.utils.config import ProviderSettings
from orchestrator.utils.logger import Logger

logger = Logger("Provider")


class ProviderName(str, Enum):
    """Supported model vendors."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


# Model families that reject a temperature parameter
_NO_TEMPERATURE_PREFIXES = ("o1", "o3", "o4", "gpt-5")

# Phrases vendors use when the prompt is larger than the context window
_OVERFLOW_MARKERS = (
    "context_length_exceeded",
    "maximum context length",
    "prompt is too long",
    "too many tokens",
    "context window",
)


# ==============================================================================
# Normalized results
# ==============================================================================

@dataclass
class TokenUsage:
    """
    Token counters for one call or one whole turn.

    `total` is derived, so prompt + completion == total holds at every
    observation point.
    """
    prompt: int = 0
    completion: int = 0

    @property
    def total(self) -> int:
        return self.prompt + self.completion

    def add(self, other: "TokenUsage | None") -> None:
        """Accumulate another usage record (monotonically increasing)."""
        if other is None:
            return
        self.prompt += max(other.prompt, 0)
        self.completion += max(other.completion, 0)

    def to_dict(self) -> dict[str, int]:
        return {"prompt": self.prompt, "completion": self.completion, "total": self.total}


@dataclass
class LLMToolCall:
    """
    A tool call requested by the model.

    Attributes:
        id: The provider's tool call id (used to match the result)
        name: Tool name
        arguments: Raw JSON argument string as produced by the model
    """
    id: str
    name: str
    arguments: str = "{}"

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class ChatResponse:
    """Normalized result of a chat call."""
    text: str
    tool_calls: list[LLMToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    response_id: str = ""
    model: str = ""
    finish_reason: str | None = None


@dataclass
class StreamChunk:
    """
    One increment of a streamed chat call.

    Text arrives as deltas. Tool calls and usage are only complete at the
    end, so they are carried on the final chunk (done=True).
    """
    delta: str = ""
    done: bool = False
    tool_calls: list[LLMToolCall] = field(default_factory=list)
    usage: TokenUsage | None = None
    response_id: str = ""
    model: str = ""
    finish_reason: str | None = None


def uses_temperature(model: str) -> bool:
    """Check whether a model family accepts a temperature parameter."""
    name = model.lower().split("/")[-1]
    return not name.startswith(_NO_TEMPERATURE_PREFIXES)


def _is_overflow_message(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _OVERFLOW_MARKERS)


# ==============================================================================
# Adapter interface
# ==============================================================================

class ProviderAdapter:
    """
    Uniform interface over one model vendor.

    Subclasses implement `chat` and, where the vendor has them, `embed` and a
    native `stream_chat`.
    """

    name: ProviderName
    supports_embeddings = False

    async def chat(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        tool_choice: str = "auto",
        extra: dict[str, Any] | None = None
    ) -> ChatResponse:  # pragma: no cover - interface only
        raise NotImplementedError

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        tool_choice: str = "auto",
        extra: dict[str, Any] | None = None
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream a chat call.

        The default implementation performs a normal call and emits the whole
        text as a single delta followed by the final chunk.
        """
        response = await self.chat(
            messages,
            model=model,
            tools=tools,
            temperature=temperature,
            max_tokens=max_tokens,
            tool_choice=tool_choice,
            extra=extra,
        )
        if response.text:
            yield StreamChunk(delta=response.text)
        yield StreamChunk(
            done=True,
            tool_calls=response.tool_calls,
            usage=response.usage,
            response_id=response.response_id,
            model=response.model,
            finish_reason=response.finish_reason,
        )

    async def embed(self, inputs: list[str], *, model: str) -> list[list[float]]:
        raise ConfigurationError(f"Provider '{self.name.value}' does not provide embeddings")

    async def aclose(self) -> None:
        """Release network resources."""
        return None


# ==============================================================================
# OpenAI
# ==============================================================================

def build_openai_params(
    messages: list[dict[str, Any]],
    *,
    model: str,
    tools: list[dict[str, Any]] | None,
    temperature: float | None,
    max_tokens: int | None,
    tool_choice: str,
    extra: dict[str, Any] | None = None
) -> dict[str, Any]:
    """
    Build keyword arguments for `chat.completions.create`.

    Reasoning model families get no temperature and use
    `max_completion_tokens` instead of `max_tokens`.
    """
    params: dict[str, Any] = {"model": model, "messages": messages}

    if tools:
        params["tools"] = tools
        params["tool_choice"] = tool_choice

    if uses_temperature(model):
        if temperature is not None:
            params["temperature"] = temperature
        if max_tokens is not None:
            params["max_tokens"] = max_tokens
    elif max_tokens is not None:
        params["max_completion_tokens"] = max_tokens

    if extra:
        params.update(extra)
    return params


class OpenAIAdapter(ProviderAdapter):
    """
    Adapter for the OpenAI chat completions and embeddings APIs.

    Also serves any OpenAI-compatible endpoint through `base_url`.
    """

    name = ProviderName.OPENAI
    supports_embeddings = True

    def __init__(self, api_key: str, settings: ProviderSettings, client: AsyncOpenAI | None = None):
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=settings.openai_base_url,
            timeout=settings.timeout_seconds,
            max_retries=0,  # the router owns retries
        )

    def _translate(self, error: Exception) -> Exception:
        """Map an OpenAI SDK exception to the pipeline taxonomy."""
        message = str(error)

        if isinstance(error, openai.BadRequestError):
            code = getattr(error, "code", None)
            if code == "context_length_exceeded" or _is_overflow_message(message):
                return ContextOverflowError(message, details={"provider": self.name.value})
            return ProviderError(message, provider=self.name.value, status_code=400)

        if isinstance(error, (openai.RateLimitError, openai.APITimeoutError,
                              openai.APIConnectionError, openai.InternalServerError)):
            status = getattr(error, "status_code", None)
            return ProviderError(message, provider=self.name.value, status_code=status, retryable=True)

        if isinstance(error, openai.AuthenticationError):
            return ProviderError(message, provider=self.name.value, status_code=401)

        if isinstance(error, openai.APIStatusError):
            return ProviderError(
                message,
                provider=self.name.value,
                status_code=error.status_code,
                retryable=error.status_code >= 500,
            )

        return ProviderError(message, provider=self.name.value)

    async def chat(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        tool_choice: str = "auto",
        extra: dict[str, Any] | None = None
    ) -> ChatResponse:
        params = build_openai_params(
            messages,
            model=model,
            tools=tools,
            temperature=temperature,
            max_tokens=max_tokens,
            tool_choice=tool_choice,
            extra=extra,
        )

        try:
            response = await self.client.chat.completions.create(**params)
        except openai.OpenAIError as e:
            raise self._translate(e) from e

        choice = response.choices[0]
        tool_calls = [
            LLMToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments or "{}")
            for tc in (choice.message.tool_calls or [])
        ]
        usage = TokenUsage(
            prompt=response.usage.prompt_tokens if response.usage else 0,
            completion=response.usage.completion_tokens if response.usage else 0,
        )
        return ChatResponse(
            text=choice.message.content or "",
            tool_calls=tool_calls,
            usage=usage,
            response_id=response.id,
            model=response.model,
            finish_reason=choice.finish_reason,
        )

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        tool_choice: str = "auto",
        extra: dict[str, Any] | None = None
    ) -> AsyncIterator[StreamChunk]:
        params = build_openai_params(
            messages,
            model=model,
            tools=tools,
            temperature=temperature,
            max_tokens=max_tokens,
            tool_choice=tool_choice,
            extra=extra,
        )
        params["stream"] = True
        params["stream_options"] = {"include_usage": True}

        try:
            stream = await self.client.chat.completions.create(**params)
        except openai.OpenAIError as e:
            raise self._translate(e) from e

        # Tool call fragments arrive keyed by index
        pending: dict[int, dict[str, str]] = {}
        usage: TokenUsage | None = None
        response_id = ""
        response_model = model
        finish_reason = None

        try:
            async for chunk in stream:
                response_id = chunk.id or response_id
                response_model = chunk.model or response_model
                if chunk.usage:
                    usage = TokenUsage(
                        prompt=chunk.usage.prompt_tokens,
                        completion=chunk.usage.completion_tokens,
                    )
                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                finish_reason = choice.finish_reason or finish_reason
                delta = choice.delta

                for tc in delta.tool_calls or []:
                    entry = pending.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        entry["id"] = tc.id
                    if tc.function and tc.function.name:
                        entry["name"] += tc.function.name
                    if tc.function and tc.function.arguments:
                        entry["arguments"] += tc.function.arguments

                if delta.content:
                    yield StreamChunk(delta=delta.content)
        except openai.OpenAIError as e:
            raise self._translate(e) from e
        finally:
            await stream.close()

        yield StreamChunk(
            done=True,
            tool_calls=[
                LLMToolCall(id=p["id"], name=p["name"], arguments=p["arguments"] or "{}")
                for _, p in sorted(pending.items())
            ],
            usage=usage or TokenUsage(),
            response_id=response_id,
            model=response_model,
            finish_reason=finish_reason,
        )

    async def embed(self, inputs: list[str], *, model: str) -> list[list[float]]:
        if not inputs:
            return []
        try:
            response = await self.client.embeddings.create(model=model, input=inputs)
        except openai.OpenAIError as e:
            raise self._translate(e) from e

        # The API returns items with an index; keep input order
        ordered = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in ordered]

    async def aclose(self) -> None:
        await self.client.close()


# ==============================================================================
# Anthropic
# ==============================================================================

ANTHROPIC_DEFAULT_MAX_TOKENS = 1024


def to_anthropic_messages(
    messages: list[dict[str, Any]]
) -> tuple[str, list[dict[str, Any]]]:
    """
    Convert OpenAI-format messages into Anthropic's (system, messages) pair.

    - system messages are joined into the top-level system prompt
    - assistant tool_calls become `tool_use` blocks
    - tool results become `tool_result` blocks inside a user message
    - consecutive messages with the same role are merged (the API requires
      strictly alternating roles)
    """
    system_parts: list[str] = []
    converted: list[dict[str, Any]] = []

    def append(role: str, blocks: list[dict[str, Any]]) -> None:
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"].extend(blocks)
        else:
            converted.append({"role": role, "content": list(blocks)})

    for message in messages:
        role = message.get("role")
        content = message.get("content")

        if role == "system":
            if content:
                system_parts.append(str(content))
            continue

        if role == "tool":
            append("user", [{
                "type": "tool_result",
                "tool_use_id": message.get("tool_call_id", ""),
                "content": content if isinstance(content, str) else json.dumps(content, default=str),
            }])
            continue

        blocks: list[dict[str, Any]] = []
        if content:
            blocks.append({"type": "text", "text": content if isinstance(content, str) else json.dumps(content)})

        if role == "assistant":
            for tc in message.get("tool_calls") or []:
                raw_args = tc.get("function", {}).get("arguments") or "{}"
                try:
                    parsed_args = json.loads(raw_args)
                except json.JSONDecodeError:
                    parsed_args = {}
                blocks.append({
                    "type": "tool_use",
                    "id": tc.get("id", ""),
                    "name": tc.get("function", {}).get("name", ""),
                    "input": parsed_args,
                })
            if blocks:
                append("assistant", blocks)
            continue

        if blocks:
            append("user", blocks)

    return "\n\n".join(system_parts), converted


def to_anthropic_tools(tools: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    """Convert OpenAI function definitions to Anthropic tool definitions."""
    result = []
    for tool in tools or []:
        function = tool.get("function", tool)
        result.append({
            "name": function["name"],
            "description": function.get("description", ""),
            "input_schema": function.get("parameters") or {"type": "object", "properties": {}},
        })
    return result


def _anthropic_tool_choice(tool_choice: str) -> dict[str, str]:
    return {"auto": {"type": "auto"}, "required": {"type": "any"}, "none": {"type": "none"}}.get(
        tool_choice, {"type": "auto"}
    )


def build_anthropic_body(
    messages: list[dict[str, Any]],
    *,
    model: str,
    tools: list[dict[str, Any]] | None,
    temperature: float | None,
    max_tokens: int | None,
    tool_choice: str,
    extra: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Build the JSON body for POST /v1/messages."""
    system, converted = to_anthropic_messages(messages)
    body: dict[str, Any] = {
        "model": model,
        "messages": converted,
        "max_tokens": max_tokens or ANTHROPIC_DEFAULT_MAX_TOKENS,
    }
    if system:
        body["system"] = system
    if temperature is not None and uses_temperature(model):
        body["temperature"] = temperature
    if tools:
        body["tools"] = to_anthropic_tools(tools)
        body["tool_choice"] = _anthropic_tool_choice(tool_choice)
    if extra:
        body.update(extra)
    return body


def parse_anthropic_response(data: dict[str, Any]) -> ChatResponse:
    """Normalize a /v1/messages response body."""
    text_parts: list[str] = []
    tool_calls: list[LLMToolCall] = []

    for block in data.get("content", []):
        if block.get("type") == "text":
            text_parts.append(block.get("text", ""))
        elif block.get("type") == "tool_use":
            tool_calls.append(LLMToolCall(
                id=block.get("id", ""),
                name=block.get("name", ""),
                arguments=json.dumps(block.get("input") or {}),
            ))

    usage = data.get("usage") or {}
    return ChatResponse(
        text="".join(text_parts),
        tool_calls=tool_calls,
        usage=TokenUsage(prompt=usage.get("input_tokens", 0), completion=usage.get("output_tokens", 0)),
        response_id=data.get("id", ""),
        model=data.get("model", ""),
        finish_reason=data.get("stop_reason"),
    )


class AnthropicAdapter(ProviderAdapter):
    """
    Adapter for the Anthropic Messages API over plain HTTP (httpx).

    Anthropic has no embeddings endpoint; the router sends embedding calls for
    Anthropic agents to an OpenAI adapter instead.
    """

    name = ProviderName.ANTHROPIC

    def __init__(self, api_key: str, settings: ProviderSettings, client: httpx.AsyncClient | None = None):
        self.base_url = settings.anthropic_base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=settings.timeout_seconds)
        self.headers = {
            "x-api-key": api_key,
            "anthropic-version": settings.anthropic_version,
            "content-type": "application/json",
        }

    def _error_for_status(self, status_code: int, text: str) -> Exception:
        if status_code in (400, 413) and _is_overflow_message(text):
            return ContextOverflowError(text, details={"provider": self.name.value})
        retryable = status_code in (408, 409, 429, 529) or status_code >= 500
        return ProviderError(
            f"Anthropic API error {status_code}: {text[:500]}",
            provider=self.name.value,
            status_code=status_code,
            retryable=retryable,
        )

    async def chat(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        tool_choice: str = "auto",
        extra: dict[str, Any] | None = None
    ) -> ChatResponse:
        body = build_anthropic_body(
            messages,
            model=model,
            tools=tools,
            temperature=temperature,
            max_tokens=max_tokens,
            tool_choice=tool_choice,
            extra=extra,
        )

        try:
            response = await self.client.post(f"{self.base_url}/v1/messages", headers=self.headers, json=body)
        except httpx.TimeoutException as e:
            raise ProviderError(str(e) or "Anthropic request timed out", provider=self.name.value, retryable=True) from e
        except httpx.HTTPError as e:
            raise ProviderError(str(e), provider=self.name.value, retryable=True) from e

        if response.status_code >= 400:
            raise self._error_for_status(response.status_code, response.text)

        return parse_anthropic_response(response.json())

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        tool_choice: str = "auto",
        extra: dict[str, Any] | None = None
    ) -> AsyncIterator[StreamChunk]:
        body = build_anthropic_body(
            messages,
            model=model,
            tools=tools,
            temperature=temperature,
            max_tokens=max_tokens,
            tool_choice=tool_choice,
            extra=extra,
        )
        body["stream"] = True

        usage = TokenUsage()
        blocks: dict[int, dict[str, str]] = {}
        response_id = ""
        response_model = model
        stop_reason = None

        try:
            async with self.client.stream(
                "POST", f"{self.base_url}/v1/messages", headers=self.headers, json=body
            ) as response:
                if response.status_code >= 400:
                    text = (await response.aread()).decode("utf-8", errors="replace")
                    raise self._error_for_status(response.status_code, text)

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    try:
                        event = json.loads(line[5:].strip())
                    except json.JSONDecodeError:
                        continue

                    event_type = event.get("type")
                    if event_type == "message_start":
                        message = event.get("message", {})
                        response_id = message.get("id", "")
                        response_model = message.get("model", model)
                        usage.prompt = message.get("usage", {}).get("input_tokens", 0)
                    elif event_type == "content_block_start":
                        block = event.get("content_block", {})
                        if block.get("type") == "tool_use":
                            blocks[event["index"]] = {"id": block.get("id", ""), "name": block.get("name", ""), "json": ""}
                    elif event_type == "content_block_delta":
                        delta = event.get("delta", {})
                        if delta.get("type") == "text_delta" and delta.get("text"):
                            yield StreamChunk(delta=delta["text"])
                        elif delta.get("type") == "input_json_delta":
                            blocks.setdefault(event["index"], {"id": "", "name": "", "json": ""})
                            blocks[event["index"]]["json"] += delta.get("partial_json", "")
                    elif event_type == "message_delta":
                        stop_reason = event.get("delta", {}).get("stop_reason") or stop_reason
                        usage.completion = event.get("usage", {}).get("output_tokens", usage.completion)
                    elif event_type == "error":
                        error = event.get("error", {})
                        raise ProviderError(
                            error.get("message", "stream error"),
                            provider=self.name.value,
                            retryable=error.get("type") == "overloaded_error",
                        )
        except httpx.TimeoutException as e:
            raise ProviderError(str(e) or "Anthropic stream timed out", provider=self.name.value, retryable=True) from e
        except httpx.HTTPError as e:
            raise ProviderError(str(e), provider=self.name.value, retryable=True) from e

        yield StreamChunk(
            done=True,
            tool_calls=[
                LLMToolCall(id=b["id"], name=b["name"], arguments=b["json"] or "{}")
                for _, b in sorted(blocks.items())
            ],
            usage=usage,
            response_id=response_id,
            model=response_model,
            finish_reason=stop_reason,
        )

    async def aclose(self) -> None:
        await self.client.aclose()


# ==============================================================================
# Factory
# ==============================================================================

_ADAPTERS: dict[ProviderName, type[ProviderAdapter]] = {
    ProviderName.OPENAI: OpenAIAdapter,
    ProviderName.ANTHROPIC: AnthropicAdapter,
}


def parse_provider(name: str) -> ProviderName:
    """Parse a provider name, raising ConfigurationError for unknown vendors."""
    try:
        return ProviderName(name.lower())
    except ValueError:
        raise ConfigurationError(
            f"Unsupported provider '{name}'",
            details={"supported": [p.value for p in ProviderName]},
        ) from None


def create_adapter(provider: ProviderName, api_key: str, settings: ProviderSettings) -> ProviderAdapter:
    """Instantiate the adapter for `provider`."""
    adapter = _ADAPTERS[provider](api_key, settings)
    logger.debug(f"Created {provider.value} adapter")
    return adapter
