"""
Configuration Management
========================

Centralized configuration for the orchestration pipeline. All environment
variables are read and typed here.

Nothing is strictly required at startup: provider API keys are looked up
lazily by the credential store (see orchestrator.llm.credentials), so a
pipeline can be built and tested without any environment at all.

Usage:
    from orchestrator.utils.config import get_config

    config = get_config()
    print(config.pipeline.max_llm_calls)
    print(config.context.token_budget)
"""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from orchestrator.utils.logger import Logger

logger = Logger("Config")


def _optional(name: str, default: str) -> str:
    """
    Get an optional environment variable with a default.

    Args:
        name: The environment variable name
        default: Default value if not set

    Returns:
        The value or the default
    """
    return os.getenv(name, default)


def _optional_int(name: str, default: int) -> int:
    """
    Get an optional integer environment variable.

    Args:
        name: The environment variable name
        default: Default value if not set or invalid

    Returns:
        The integer value or the default
    """
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"{name} is not a valid integer, using default: {default}")
        return default


def _optional_float(name: str, default: float) -> float:
    """Get an optional float environment variable."""
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"{name} is not a valid number, using default: {default}")
        return default


def _optional_bool(name: str, default: bool) -> bool:
    """
    Get an optional boolean environment variable.

    Returns:
        True if value is 'true' (case-insensitive), False otherwise
    """
    value = os.getenv(name)
    if not value:
        return default
    return value.lower() == "true"


def _optional_list(name: str) -> tuple[str, ...]:
    """Get a comma separated environment variable as a tuple of lowercase names."""
    value = os.getenv(name, "")
    return tuple(item.strip().lower() for item in value.split(",") if item.strip())


DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant. Use the provided context and memories when "
    "they are relevant, call tools when the user asks you to act on external "
    "systems, and answer concisely."
)


# ==============================================================================
# Configuration Dataclasses
# ==============================================================================

@dataclass(frozen=True)
class ProviderSettings:
    """Model vendor settings shared by all agents."""
    openai_base_url: str | None = None
    anthropic_base_url: str = "https://api.anthropic.com"
    anthropic_version: str = "2023-06-01"
    default_provider: str = "openai"
    default_model: str = "gpt-4o-mini"
    default_embedding_model: str = "text-embedding-3-small"
    disabled_providers: tuple[str, ...] = ()
    timeout_seconds: float = 60.0
    max_retries: int = 2                # retries after the first attempt
    retry_backoff_seconds: float = 0.5  # doubled on each retry


@dataclass(frozen=True)
class PipelineSettings:
    """Per-turn limits for the message processor."""
    deadline_seconds: float = 90.0
    tool_timeout_seconds: float = 20.0
    max_llm_calls: int = 3
    max_overflow_retries: int = 3
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    tool_service_url: str | None = None       # remote tool service; in-process tools if None
    tool_service_api_key: str | None = None

    @property
    def effective_tool_timeout(self) -> float:
        """Per-tool timeout, always shorter than the whole-turn deadline."""
        return min(self.tool_timeout_seconds, self.deadline_seconds * 0.5)


@dataclass(frozen=True)
class ContextSettings:
    """Context engine defaults (overridable per request)."""
    token_budget: int = 4000
    max_messages: int = 20
    optimization_goal: str = "balance_all"
    source_timeout_seconds: float = 10.0
    knowledge_store_path: str | None = None   # persisted knowledge index; memory only if None


@dataclass(frozen=True)
class MemorySettings:
    """Memory manager defaults."""
    default_importance: float = 0.5
    importance_floor: float = 0.1
    consolidation_threshold: float = 0.92
    max_results: int = 5
    min_similarity: float = 0.2
    store_turns: bool = True


@dataclass(frozen=True)
class CacheSettings:
    """Bounds for the shared read-mostly caches."""
    tool_cache_ttl_seconds: float = 300.0
    tool_cache_max_messages: int = 10
    provider_cache_ttl_seconds: float = 600.0
    max_entries: int = 1000


@dataclass(frozen=True)
class ReasoningSettings:
    """Deliberation pass settings."""
    threshold: float = 0.3
    max_tokens: int = 400


@dataclass(frozen=True)
class Config:
    """
    Root configuration object.

    Access via:
        config = get_config()
        config.providers.default_model
        config.pipeline.deadline_seconds
    """
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    context: ContextSettings = field(default_factory=ContextSettings)
    memory: MemorySettings = field(default_factory=MemorySettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    reasoning: ReasoningSettings = field(default_factory=ReasoningSettings)
    log_level: str = "info"


def load_config() -> Config:
    """
    Load all configuration from the environment (and .env, if present).

    Returns:
        Config: The typed configuration
    """
    load_dotenv()

    return Config(
        providers=ProviderSettings(
            openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
            anthropic_base_url=_optional("ANTHROPIC_BASE_URL", "https://api.anthropic.com"),
            anthropic_version=_optional("ANTHROPIC_VERSION", "2023-06-01"),
            default_provider=_optional("DEFAULT_PROVIDER", "openai").lower(),
            default_model=_optional("DEFAULT_MODEL", "gpt-4o-mini"),
            default_embedding_model=_optional("DEFAULT_EMBEDDING_MODEL", "text-embedding-3-small"),
            disabled_providers=_optional_list("DISABLED_PROVIDERS"),
            timeout_seconds=_optional_float("PROVIDER_TIMEOUT_SECONDS", 60.0),
            max_retries=_optional_int("PROVIDER_MAX_RETRIES", 2),
            retry_backoff_seconds=_optional_float("PROVIDER_RETRY_BACKOFF_SECONDS", 0.5),
        ),
        pipeline=PipelineSettings(
            deadline_seconds=_optional_float("PIPELINE_DEADLINE_SECONDS", 90.0),
            tool_timeout_seconds=_optional_float("TOOL_TIMEOUT_SECONDS", 20.0),
            max_llm_calls=_optional_int("MAX_LLM_CALLS", 3),
            max_overflow_retries=_optional_int("MAX_OVERFLOW_RETRIES", 3),
            system_prompt=_optional("DEFAULT_SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
            tool_service_url=os.getenv("TOOL_SERVICE_URL") or None,
            tool_service_api_key=os.getenv("TOOL_SERVICE_API_KEY") or None,
        ),
        context=ContextSettings(
            token_budget=_optional_int("CONTEXT_TOKEN_BUDGET", 4000),
            max_messages=_optional_int("CONTEXT_MAX_MESSAGES", 20),
            optimization_goal=_optional("CONTEXT_OPTIMIZATION_GOAL", "balance_all"),
            source_timeout_seconds=_optional_float("CONTEXT_SOURCE_TIMEOUT_SECONDS", 10.0),
            knowledge_store_path=os.getenv("KNOWLEDGE_STORE_PATH") or None,
        ),
        memory=MemorySettings(
            default_importance=_optional_float("MEMORY_DEFAULT_IMPORTANCE", 0.5),
            importance_floor=_optional_float("MEMORY_IMPORTANCE_FLOOR", 0.1),
            consolidation_threshold=_optional_float("MEMORY_CONSOLIDATION_THRESHOLD", 0.92),
            max_results=_optional_int("MEMORY_MAX_RESULTS", 5),
            min_similarity=_optional_float("MEMORY_MIN_SIMILARITY", 0.2),
            store_turns=_optional_bool("MEMORY_STORE_TURNS", True),
        ),
        cache=CacheSettings(
            tool_cache_ttl_seconds=_optional_float("TOOL_CACHE_TTL_SECONDS", 300.0),
            tool_cache_max_messages=_optional_int("TOOL_CACHE_MAX_MESSAGES", 10),
            provider_cache_ttl_seconds=_optional_float("PROVIDER_CACHE_TTL_SECONDS", 600.0),
            max_entries=_optional_int("CACHE_MAX_ENTRIES", 1000),
        ),
        reasoning=ReasoningSettings(
            threshold=_optional_float("REASONING_THRESHOLD", 0.3),
            max_tokens=_optional_int("REASONING_MAX_TOKENS", 400),
        ),
        log_level=_optional("LOG_LEVEL", "info"),
    )


# ==============================================================================
# Singleton
# ==============================================================================

_config_instance: Config | None = None


def get_config() -> Config:
    """
    Get the singleton configuration instance.

    The configuration is loaded on first access and cached for subsequent calls.

    Returns:
        Config: The application configuration
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = load_config()
    return _config_instance
