"""Model routing: provider adapters, credentials and the LLM router."""

from orchestrator.llm.credentials import CredentialStore, EnvCredentialStore, StaticCredentialStore
from orchestrator.llm.providers import (
    AnthropicAdapter,
    ChatResponse,
    LLMToolCall,
    OpenAIAdapter,
    ProviderAdapter,
    ProviderName,
    StreamChunk,
    TokenUsage,
    create_adapter,
)
from orchestrator.llm.router import (
    AgentLLMPreference,
    ChatOptions,
    InMemoryPreferenceStore,
    LLMRouter,
    PreferenceStore,
    ResolvedAgent,
)

__all__ = [
    "AgentLLMPreference",
    "AnthropicAdapter",
    "ChatOptions",
    "ChatResponse",
    "CredentialStore",
    "EnvCredentialStore",
    "InMemoryPreferenceStore",
    "LLMRouter",
    "LLMToolCall",
    "OpenAIAdapter",
    "PreferenceStore",
    "ProviderAdapter",
    "ProviderName",
    "ResolvedAgent",
    "StaticCredentialStore",
    "StreamChunk",
    "TokenUsage",
    "create_adapter",
]
