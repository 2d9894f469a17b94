"""Shared fixtures: a scripted provider adapter, deterministic embeddings, wired pipelines."""

import hashlib
import json
import re
from typing import Any

import pytest

from orchestrator.agent.core import MessageProcessor
from orchestrator.agent.tools_executor import ToolExecutor
from orchestrator.context import ChatHistorySource, ContextEngine, ToolCatalogSource, VectorSearchSource
from orchestrator.llm import (
    AgentLLMPreference,
    ChatResponse,
    InMemoryPreferenceStore,
    LLMRouter,
    LLMToolCall,
    ProviderAdapter,
    ProviderName,
    StaticCredentialStore,
    TokenUsage,
)
from orchestrator.memory import ConversationStore, MemoryManager
from orchestrator.rag import EmbeddingGenerator, VectorStore
from orchestrator.tools import MCPTool, ToolDefinition, ToolOutcome, ToolRegistry
from orchestrator.utils.config import (
    CacheSettings,
    Config,
    ContextSettings,
    MemorySettings,
    PipelineSettings,
    ProviderSettings,
)

EMBEDDING_DIM = 64


def hashed_embedding(text: str, dim: int = EMBEDDING_DIM) -> list[float]:
    """Bag-of-words vector: each word bumps one md5-chosen slot."""
    vector = [0.0] * dim
    for word in re.findall(r"[a-z0-9]+", text.lower()):
        slot = int(hashlib.md5(word.encode()).hexdigest(), 16) % dim
        vector[slot] += 1.0
    return vector


def text_response(text: str, prompt: int = 10, completion: int = 5, response_id: str = "resp-1") -> ChatResponse:
    return ChatResponse(
        text=text,
        usage=TokenUsage(prompt=prompt, completion=completion),
        response_id=response_id,
        model="gpt-4o-mini",
        finish_reason="stop",
    )


def tool_response(*calls: tuple[str, dict], prompt: int = 20, completion: int = 8) -> ChatResponse:
    return ChatResponse(
        text="",
        tool_calls=[
            LLMToolCall(id=f"call_{i}", name=name, arguments=json.dumps(args))
            for i, (name, args) in enumerate(calls)
        ],
        usage=TokenUsage(prompt=prompt, completion=completion),
        response_id="resp-tools",
        model="gpt-4o-mini",
        finish_reason="tool_calls",
    )


class FakeAdapter(ProviderAdapter):
    """
    Scripted adapter. Each chat call consumes the next scripted item: a
    ChatResponse is returned, an exception is raised. When the script runs
    out a plain "ok" answer is returned.
    """

    name = ProviderName.OPENAI
    supports_embeddings = True

    def __init__(self, script: list[Any] | None = None):
        self.script = list(script or [])
        self.calls: list[dict[str, Any]] = []
        self.embed_calls: list[list[str]] = []
        self.closed = False

    async def chat(self, messages, *, model, tools=None, temperature=None, max_tokens=None, tool_choice="auto", extra=None):
        self.calls.append({
            "messages": [dict(m) for m in messages],
            "model": model,
            "tools": tools,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "tool_choice": tool_choice,
            "extra": extra,
        })
        if not self.script:
            return text_response("ok")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def embed(self, inputs, *, model):
        self.embed_calls.append(list(inputs))
        return [hashed_embedding(text) for text in inputs]

    async def aclose(self):
        self.closed = True


async def no_sleep(_delay: float) -> None:
    return None


def make_router(adapter: ProviderAdapter, config: Config, preferences: list[AgentLLMPreference] | None = None) -> LLMRouter:
    store = InMemoryPreferenceStore(preferences or [AgentLLMPreference(agent_id="agent-1", provider="openai", model="gpt-4o-mini")])
    return LLMRouter(
        store,
        StaticCredentialStore({"openai": "sk-test", "anthropic": "ak-test"}),
        settings=config.providers,
        adapter_factory=lambda provider, api_key, settings: adapter,
        sleep=no_sleep,
    )


def email_tool(handler=None) -> MCPTool:
    async def send(params: dict, auth: dict) -> ToolOutcome:
        return ToolOutcome(success=True, payload={"sent_to": params["recipient"], "message_id": "m-1"})

    return MCPTool(
        definition=ToolDefinition(
            name="email_send",
            description="Send an email to a recipient",
            parameters={
                "type": "object",
                "properties": {
                    "recipient": {"type": "string", "description": "Recipient email address"},
                    "subject": {"type": "string"},
                    "body": {"type": "string"},
                },
                "required": ["recipient", "subject"],
            },
        ),
        execute=handler or send,
    )


def make_request(text: str, agent_id: str = "agent-1", conversation_id: str = "conv-1", **options) -> dict:
    return {
        "message": {"role": "user", "content": {"type": "text", "text": text}},
        "context": {"agent_id": agent_id, "conversation_id": conversation_id, "user_id": "user-1"},
        "options": options,
    }


@pytest.fixture
def config() -> Config:
    return Config(
        providers=ProviderSettings(max_retries=2, retry_backoff_seconds=0.0),
        pipeline=PipelineSettings(deadline_seconds=5.0, tool_timeout_seconds=1.0),
        context=ContextSettings(source_timeout_seconds=1.0),
        memory=MemorySettings(min_similarity=0.1),
        cache=CacheSettings(),
    )


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def router(adapter, config) -> LLMRouter:
    return make_router(adapter, config)


@pytest.fixture
def registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(email_tool())
    return registry


class Harness:
    """A processor wired around a fake adapter, with its collaborators exposed."""

    def __init__(self, adapter: FakeAdapter, config: Config, tools=None, preferences=None):
        self.adapter = adapter
        self.config = config
        self.router = make_router(adapter, config, preferences)
        self.embeddings = EmbeddingGenerator(self.router)
        self.vectorstore = VectorStore()
        self.conversations = ConversationStore()
        self.tools = tools if tools is not None else ToolRegistry()
        self.memory = MemoryManager(self.embeddings, settings=config.memory)
        self.executor = ToolExecutor(self.tools, settings=config.pipeline, cache_settings=config.cache)
        self.engine = ContextEngine(
            [
                ChatHistorySource(self.conversations),
                VectorSearchSource(self.embeddings, self.vectorstore),
                ToolCatalogSource(self.tools),
            ],
            settings=config.context,
        )
        self.processor = MessageProcessor(
            router=self.router,
            context_engine=self.engine,
            memory=self.memory,
            tool_executor=self.executor,
            conversations=self.conversations,
            config=config,
        )


@pytest.fixture
def make_harness(config):
    def factory(script=None, tools=None, preferences=None, config_override=None) -> Harness:
        return Harness(FakeAdapter(script), config_override or config, tools, preferences)
    return factory
