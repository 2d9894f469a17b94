"""
LLM Router
==========

Resolves which provider adapter and model parameters apply to an agent, and
exposes one `chat` / `stream_chat` / `embed` surface to the rest of the
pipeline. Nothing outside orchestrator.llm knows which vendor is in use.

Resolution:
    1. Look up the agent's AgentLLMPreference (shared TTL cache in front of
       the PreferenceStore)
    2. Reject disabled agents and disabled providers (ConfigurationError)
    3. Fetch the API key from the CredentialStore and build the adapter

Steps 3 happens at most once per agent per pipeline run: the ResolvedAgent is
stored on the caller's processing context (`resolved_agents`) and never
shared between runs. Only the preference record is shared across runs.
The processor calls `release(ctx)` when the run ends to close the adapters;
calls made without a processing context build and close their own.

Retries:
    Retryable ProviderErrors (rate limit, timeout, 5xx) are retried with
    exponential backoff. ContextOverflowError is not retried here; the
    message processor handles it by trimming history.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from orchestrator.errors import ConfigurationError, ProviderError
from orchestrator.llm.credentials import CredentialStore
from orchestrator.llm.providers import (
    ChatResponse,
    ProviderAdapter,
    ProviderName,
    StreamChunk,
    create_adapter,
    parse_provider,
)
from orchestrator.utils.cache import TTLCache
from orchestrator.utils.config import ProviderSettings, get_config
from orchestrator.utils.logger import Logger

logger = Logger("LLMRouter")

T = TypeVar("T")

# Preference params the router maps to explicit adapter arguments
_EXPLICIT_PARAMS = ("temperature", "max_tokens")


class _CallScope:
    """Resolution scope for a single call made outside a pipeline run."""

    def __init__(self):
        self.resolved_agents: dict[str, Any] = {}


def _scope(context: Any) -> tuple[Any, bool]:
    """The caller's resolution scope, or a fresh one the call owns and must release."""
    if getattr(context, "resolved_agents", None) is not None:
        return context, False
    return _CallScope(), True


@dataclass(frozen=True)
class AgentLLMPreference:
    """
    Per-agent model configuration.

    Attributes:
        agent_id: The agent this preference belongs to
        provider: Vendor name ("openai" or "anthropic")
        model: Chat model name
        params: Free-form model parameters (temperature, max_tokens, top_p, ...)
        embedding_model: Embedding model (provider default if None)
        enabled: Disabled agents cannot be resolved
        settings: Agent behaviour settings (system_prompt, reasoning_enabled,
            reasoning_threshold); never sent to the provider
    """
    agent_id: str
    provider: str
    model: str
    params: dict[str, Any] = field(default_factory=dict)
    embedding_model: str | None = None
    enabled: bool = True
    settings: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentLLMPreference":
        return cls(
            agent_id=data["agent_id"],
            provider=data.get("provider", "openai"),
            model=data["model"],
            params=dict(data.get("params") or {}),
            embedding_model=data.get("embedding_model"),
            enabled=data.get("enabled", True),
            settings=dict(data.get("settings") or {}),
        )


class PreferenceStore:
    """Source of agent preferences (agent configuration management)."""

    async def get_preference(self, agent_id: str) -> AgentLLMPreference | None:  # pragma: no cover
        raise NotImplementedError


class InMemoryPreferenceStore(PreferenceStore):
    """
    Preferences held in a dict.

    Args:
        preferences: Known agent preferences
        default: Used for agents without a record (None means unknown agents
            fail with ConfigurationError)
    """

    def __init__(
        self,
        preferences: list[AgentLLMPreference] | None = None,
        default: AgentLLMPreference | None = None
    ):
        self._preferences = {p.agent_id: p for p in preferences or []}
        self.default = default

    def put(self, preference: AgentLLMPreference) -> None:
        self._preferences = {**self._preferences, preference.agent_id: preference}

    async def get_preference(self, agent_id: str) -> AgentLLMPreference | None:
        preference = self._preferences.get(agent_id)
        if preference is None and self.default is not None:
            return AgentLLMPreference(
                agent_id=agent_id,
                provider=self.default.provider,
                model=self.default.model,
                params=dict(self.default.params),
                embedding_model=self.default.embedding_model,
                enabled=self.default.enabled,
                settings=dict(self.default.settings),
            )
        return preference


@dataclass
class ChatOptions:
    """Per-call options; None falls back to the agent's params."""
    tools: list[dict[str, Any]] | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    tool_choice: str = "auto"


@dataclass
class ResolvedAgent:
    """An adapter ready to call, plus the preference that produced it."""
    adapter: ProviderAdapter
    preference: AgentLLMPreference
    provider: ProviderName


AdapterFactory = Callable[[ProviderName, str, ProviderSettings], ProviderAdapter]


class LLMRouter:
    """
    One call surface over every provider.

    Example:
        router = LLMRouter(preferences, EnvCredentialStore())
        response = await router.chat("agent-1", messages, ChatOptions(tools=tools), context=ctx)
        vectors = await router.embed("agent-1", ["some text"], context=ctx)
    """

    def __init__(
        self,
        preferences: PreferenceStore,
        credentials: CredentialStore,
        cache: TTLCache[AgentLLMPreference] | None = None,
        settings: ProviderSettings | None = None,
        adapter_factory: AdapterFactory = create_adapter,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        """
        Args:
            preferences: Agent preference store
            credentials: API key lookup
            cache: Shared resolved-preference cache (a fresh one if None)
            settings: Provider settings (from config if None)
            adapter_factory: Builds adapters; tests inject fakes here
            sleep: Backoff sleep, injectable for tests
        """
        config = get_config()
        self.preferences = preferences
        self.credentials = credentials
        self.settings = settings or config.providers
        self.cache = cache or TTLCache(
            ttl_seconds=config.cache.provider_cache_ttl_seconds,
            max_entries=config.cache.max_entries,
        )
        self.adapter_factory = adapter_factory
        self._sleep = sleep

    # ==========================================================================
    # Resolution
    # ==========================================================================

    async def get_preference(self, agent_id: str) -> AgentLLMPreference:
        """Get the agent's preference, failing with ConfigurationError if unusable."""
        preference = self.cache.get(agent_id)
        if preference is None:
            preference = await self.preferences.get_preference(agent_id)
            if preference is None:
                raise ConfigurationError(
                    f"No LLM preference configured for agent '{agent_id}'",
                    details={"agent_id": agent_id},
                )
            self.cache.set(agent_id, preference)

        if not preference.enabled:
            raise ConfigurationError(f"Agent '{agent_id}' is disabled", details={"agent_id": agent_id})

        provider = parse_provider(preference.provider)
        if provider.value in self.settings.disabled_providers:
            raise ConfigurationError(
                f"Provider '{provider.value}' is disabled",
                details={"agent_id": agent_id, "provider": provider.value},
            )
        return preference

    async def _build(self, provider: ProviderName, preference: AgentLLMPreference) -> ResolvedAgent:
        api_key = await self.credentials.get_api_key(provider)
        adapter = self.adapter_factory(provider, api_key, self.settings)
        return ResolvedAgent(adapter=adapter, preference=preference, provider=provider)

    async def resolve_agent(self, agent_id: str, context: Any = None) -> ResolvedAgent:
        """
        Resolve the adapter and preference for an agent.

        Args:
            agent_id: The agent to resolve
            context: Object with a `resolved_agents` dict (the processing
                context); the result is cached there for the rest of the run

        Returns:
            ResolvedAgent

        Raises:
            ConfigurationError: Unknown agent, disabled agent or provider,
                or missing credentials
        """
        scope = getattr(context, "resolved_agents", None)
        if scope is not None and agent_id in scope:
            return scope[agent_id]

        preference = await self.get_preference(agent_id)
        resolved = await self._build(parse_provider(preference.provider), preference)

        if scope is not None:
            scope[agent_id] = resolved

        logger.debug(
            f"Resolved agent {agent_id}",
            {"provider": resolved.provider.value, "model": preference.model}
        )
        return resolved

    async def _resolve_embedder(self, agent_id: str, context: Any) -> ResolvedAgent:
        """Resolve an adapter able to embed (OpenAI when the agent's vendor cannot)."""
        resolved = await self.resolve_agent(agent_id, context)
        if resolved.adapter.supports_embeddings:
            return resolved

        key = f"{agent_id}#embeddings"
        scope = getattr(context, "resolved_agents", None)
        if scope is not None and key in scope:
            return scope[key]

        if ProviderName.OPENAI.value in self.settings.disabled_providers:
            raise ConfigurationError(
                f"Agent '{agent_id}' has no provider available for embeddings",
                details={"agent_id": agent_id},
            )
        embedder = await self._build(ProviderName.OPENAI, resolved.preference)
        if scope is not None:
            scope[key] = embedder
        return embedder

    async def release(self, context: Any) -> None:
        """
        Close every adapter resolved for a run and forget them.

        Called by the message processor when a run ends, however it ends.
        """
        scope = getattr(context, "resolved_agents", None)
        if not scope:
            return
        adapters = {id(r.adapter): r.adapter for r in scope.values()}
        scope.clear()
        for adapter in adapters.values():
            try:
                await adapter.aclose()
            except Exception as e:
                logger.warning(f"Failed to close {adapter.name} adapter: {e}")

    # ==========================================================================
    # Calls
    # ==========================================================================

    def _call_kwargs(self, preference: AgentLLMPreference, options: ChatOptions) -> dict[str, Any]:
        params = preference.params
        temperature = options.temperature if options.temperature is not None else params.get("temperature")
        max_tokens = options.max_tokens if options.max_tokens is not None else params.get("max_tokens")
        extra = {k: v for k, v in params.items() if k not in _EXPLICIT_PARAMS}
        return {
            "model": preference.model,
            "tools": options.tools,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "tool_choice": options.tool_choice,
            "extra": extra or None,
        }

    async def _with_retry(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        attempt = 0
        while True:
            try:
                return await operation()
            except ProviderError as e:
                if not e.retryable or attempt >= self.settings.max_retries:
                    raise
                delay = self.settings.retry_backoff_seconds * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"{label} failed, retrying in {delay:.2f}s",
                    {"attempt": attempt, "error": e.message, "status_code": e.status_code}
                )
                await self._sleep(delay)

    async def chat(
        self,
        agent_id: str,
        messages: list[dict[str, Any]],
        options: ChatOptions | None = None,
        context: Any = None
    ) -> ChatResponse:
        """
        Run one chat completion for an agent.

        Returns:
            ChatResponse with text, tool calls, usage and response id
        """
        options = options or ChatOptions()
        context, owned = _scope(context)
        try:
            resolved = await self.resolve_agent(agent_id, context)
            kwargs = self._call_kwargs(resolved.preference, options)
            return await self._with_retry(
                lambda: resolved.adapter.chat(messages, **kwargs),
                f"chat[{resolved.provider.value}:{resolved.preference.model}]",
            )
        finally:
            if owned:
                await self.release(context)

    async def stream_chat(
        self,
        agent_id: str,
        messages: list[dict[str, Any]],
        options: ChatOptions | None = None,
        context: Any = None
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream one chat completion for an agent.

        Retryable failures are retried only until the first chunk has been
        yielded; after that the error propagates.
        """
        options = options or ChatOptions()
        context, owned = _scope(context)
        try:
            resolved = await self.resolve_agent(agent_id, context)
            kwargs = self._call_kwargs(resolved.preference, options)
            chunks = self._stream_with_retry(resolved, messages, kwargs)
            try:
                async for chunk in chunks:
                    yield chunk
            finally:
                await chunks.aclose()
        finally:
            if owned:
                await self.release(context)

    async def _stream_with_retry(
        self,
        resolved: ResolvedAgent,
        messages: list[dict[str, Any]],
        kwargs: dict[str, Any]
    ) -> AsyncIterator[StreamChunk]:
        attempt = 0
        while True:
            stream = resolved.adapter.stream_chat(messages, **kwargs)
            started = False
            try:
                async for chunk in stream:
                    started = True
                    yield chunk
                return
            except ProviderError as e:
                if started or not e.retryable or attempt >= self.settings.max_retries:
                    raise
                delay = self.settings.retry_backoff_seconds * (2 ** attempt)
                attempt += 1
                logger.warning(f"stream failed before first chunk, retrying in {delay:.2f}s", {"attempt": attempt})
                await self._sleep(delay)
            finally:
                await stream.aclose()

    async def embed(
        self,
        agent_id: str,
        inputs: list[str],
        model_hint: str | None = None,
        context: Any = None
    ) -> list[list[float]]:
        """
        Embed a batch of texts; one vector per input, order preserved.

        Args:
            agent_id: The agent whose embedding model applies
            inputs: Texts to embed
            model_hint: Overrides the agent's embedding model
            context: Processing context for per-run resolution caching
        """
        if not inputs:
            return []

        context, owned = _scope(context)
        try:
            resolved = await self._resolve_embedder(agent_id, context)
            model = model_hint or resolved.preference.embedding_model or self.settings.default_embedding_model
            vectors = await self._with_retry(
                lambda: resolved.adapter.embed(list(inputs), model=model),
                f"embed[{resolved.provider.value}:{model}]",
            )
        finally:
            if owned:
                await self.release(context)

        if len(vectors) != len(inputs):
            raise ProviderError(
                f"Embedding count mismatch: sent {len(inputs)}, received {len(vectors)}",
                provider=resolved.provider.value,
            )
        return vectors
