"""
Message Processor
=================

The top-level orchestrator. One call turns one inbound turn into either a
response or a well-typed error; nothing is silently dropped.

Pipeline:
    raw request
         │
         ▼
    Parsing ──► Validation ──► Enrichment ──► [Reasoning] ──► MainProcessing ──► Response
                                (context ∥ memory)             (intent → tools → LLM ⟲)

Every run carries one deadline (PIPELINE_DEADLINE_SECONDS). When it passes
the in-flight provider and tool calls are cancelled and the turn ends with a
`timeout` error that still reports the tokens used and the tool calls that
completed.

Two entry points:
    process(payload)         -> response dict
    process_stream(payload)  -> async iterator of event dicts
                                (delta, tool_call, tool_result, complete | error)
"""

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator

from orchestrator.agent.intent import IntentClassifier
from orchestrator.agent.models import ProcessingContext, StreamEvent
from orchestrator.agent.stages import (
    EnrichmentStage,
    MainProcessingStage,
    ParsingStage,
    ReasoningStage,
    ResponseStage,
    Stage,
    ValidationStage,
)
from orchestrator.agent.tools_executor import ToolExecutor
from orchestrator.context import ChatHistorySource, ContextEngine, ToolCatalogSource, VectorSearchSource
from orchestrator.errors import OrchestratorError, PipelineTimeoutError
from orchestrator.llm import (
    AgentLLMPreference,
    CredentialStore,
    EnvCredentialStore,
    InMemoryPreferenceStore,
    LLMRouter,
    PreferenceStore,
)
from orchestrator.memory import ConversationStore, MemoryManager
from orchestrator.rag import EmbeddingGenerator, VectorStore
from orchestrator.tools import ToolBackend, ToolRegistry
from orchestrator.tools.builtin import register_builtin_tools
from orchestrator.tools.http_backend import HttpToolBackend
from orchestrator.utils.config import Config, get_config
from orchestrator.utils.logger import Logger

logger = Logger("MessageProcessor")


class MessageProcessor:
    """
    Runs the stage pipeline for each turn.

    Runs are independent: each gets its own ProcessingContext, and the only
    state shared between concurrent runs is the injected caches.

    Example:
        processor = build_pipeline().processor

        response = await processor.process({
            "message": {"role": "user", "content": {"type": "text", "text": "What's 2+2?"}},
            "context": {"agent_id": "agent-1", "conversation_id": "conv-1"},
        })
        print(response["data"]["message"]["content"]["text"])

        async for event in processor.process_stream(request):
            print(event["event"], event["data"])
    """

    def __init__(
        self,
        router: LLMRouter,
        context_engine: ContextEngine,
        memory: MemoryManager,
        tool_executor: ToolExecutor,
        conversations: ConversationStore,
        classifier: IntentClassifier | None = None,
        config: Config | None = None
    ):
        """
        Args:
            router: LLM router (provider resolution and calls)
            context_engine: Context retrieval and budgeting
            memory: Memory manager (recall and episodic storage)
            tool_executor: Tool discovery and execution
            conversations: History and finished-turn persistence
            classifier: Intent classifier (default heuristics if None)
            config: Configuration (from environment if None)
        """
        config = config or get_config()
        self.config = config
        self.settings = config.pipeline
        self.router = router

        self.main_stage = MainProcessingStage(
            router,
            tool_executor,
            classifier or IntentClassifier(),
            config.pipeline,
        )
        self.stages: list[Stage] = [
            ParsingStage(),
            ValidationStage(config.context),
            EnrichmentStage(router, context_engine, memory, conversations, config.pipeline, config.context),
            ReasoningStage(router, config.reasoning),
            self.main_stage,
            ResponseStage(conversations, memory),
        ]

    # ==========================================================================
    # Stage execution
    # ==========================================================================

    def _run_logger(self, ctx: ProcessingContext) -> Logger:
        """Logger tagged with the run's request id (once parsing has produced one)."""
        if ctx.request is not None:
            return logger.child(ctx.request.request_id)
        if ctx.canonical is not None:
            return logger.child(ctx.canonical["request_id"])
        return logger

    async def _run_stage(self, stage: Stage, ctx: ProcessingContext) -> None:
        ctx.current_stage = stage.name
        started = time.monotonic()
        self._run_logger(ctx).debug(f"Stage {stage.name} started")
        try:
            await stage.run(ctx)
        except OrchestratorError as e:
            e.stage = e.stage or stage.name
            raise
        except Exception as e:
            raise OrchestratorError(f"Unexpected error: {e}", stage=stage.name) from e
        finally:
            ctx.stage_timings[stage.name] = (time.monotonic() - started) * 1000
            self._run_logger(ctx).debug(f"Stage {stage.name} finished in {ctx.stage_timings[stage.name]:.1f}ms")

    async def _run(self, ctx: ProcessingContext) -> None:
        for stage in self.stages:
            await self._run_stage(stage, ctx)

    def _timeout_error(self, ctx: ProcessingContext) -> PipelineTimeoutError:
        return PipelineTimeoutError(
            f"Turn exceeded its {self.settings.deadline_seconds:.0f}s deadline",
            stage=ctx.current_stage,
        )

    def _as_error(self, error: BaseException, ctx: ProcessingContext) -> OrchestratorError:
        if isinstance(error, OrchestratorError):
            if error.stage is None:
                error.stage = ctx.current_stage
            return error
        if isinstance(error, asyncio.TimeoutError):
            return self._timeout_error(ctx)
        return OrchestratorError(f"Unexpected error: {error}", stage=ctx.current_stage)

    def error_envelope(self, ctx: ProcessingContext, error: OrchestratorError) -> dict[str, Any]:
        """
        The error response for a failed run.

        Always carries metrics.tokens with whatever was consumed, plus the
        partial text and tool calls completed before the failure.
        """
        envelope: dict[str, Any] = {
            "status": "error",
            "error": error.to_dict(),
            "metrics": {
                "tokens": ctx.tokens_used.to_dict(),
                "model": ctx.model or None,
                "processing_time_ms": round(ctx.elapsed_ms, 2),
                "llm_calls": ctx.llm_calls,
            },
        }
        if ctx.request is not None:
            envelope["request_id"] = ctx.request.request_id
        if ctx.tool_details or ctx.response_text:
            envelope["partial"] = {
                "text": ctx.response_text,
                "tool_calls": [d.to_dict() for d in ctx.tool_details],
            }
        return envelope

    def _log_failure(self, ctx: ProcessingContext, error: OrchestratorError) -> None:
        data = {"kind": error.kind, "stage": error.stage, "tokens": ctx.tokens_used.total}
        run_logger = self._run_logger(ctx)
        if error.kind in ("validation_error", "configuration_error"):
            run_logger.warning(f"Turn rejected: {error.message}", data)
        else:
            run_logger.error(f"Turn failed in {error.stage}", error)

    # ==========================================================================
    # Entry points
    # ==========================================================================

    async def process(self, payload: Any) -> dict[str, Any]:
        """
        Process one turn (non-streaming).

        Args:
            payload: Request in any accepted shape

        Returns:
            Success envelope, or error envelope with kind and stage
        """
        ctx = ProcessingContext(raw=payload)
        try:
            await asyncio.wait_for(self._run(ctx), timeout=self.settings.deadline_seconds)
        except Exception as e:
            error = self._as_error(e, ctx)
            self._log_failure(ctx, error)
            return self.error_envelope(ctx, error)
        finally:
            await self.router.release(ctx)

        self._run_logger(ctx).info(
            f"Turn complete in {ctx.elapsed_ms:.0f}ms",
            {
                "request_id": ctx.request.request_id,
                "llm_calls": ctx.llm_calls,
                "tool_calls": len(ctx.tool_details),
                "tokens": ctx.tokens_used.total,
            }
        )
        return ctx.output

    async def process_stream(self, payload: Any) -> AsyncIterator[dict[str, Any]]:
        """
        Process one turn, yielding events as they happen.

        The sequence is finite and single-pass. Closing it early stops the
        provider stream; tool calls already started finish but their
        results are discarded.

        Yields:
            {"event": name, "data": {...}} dicts; the last one is either
            `complete` (with the full response) or `error`
        """
        ctx = ProcessingContext(raw=payload)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.deadline_seconds

        def remaining() -> float:
            left = deadline - loop.time()
            if left <= 0:
                raise self._timeout_error(ctx)
            return left

        try:
            try:
                for stage in self.stages:
                    if stage is not self.main_stage:
                        await asyncio.wait_for(self._run_stage(stage, ctx), timeout=remaining())
                        continue

                    ctx.current_stage = stage.name
                    started = time.monotonic()
                    events = self.main_stage.events(ctx, stream=True)
                    try:
                        while True:
                            try:
                                event = await asyncio.wait_for(events.__anext__(), timeout=remaining())
                            except StopAsyncIteration:
                                break
                            yield event.to_dict()
                    except OrchestratorError as e:
                        e.stage = e.stage or stage.name
                        raise
                    finally:
                        await events.aclose()
                        ctx.stage_timings[stage.name] = (time.monotonic() - started) * 1000
            except Exception as e:
                error = self._as_error(e, ctx)
                self._log_failure(ctx, error)
                yield StreamEvent("error", self.error_envelope(ctx, error)).to_dict()
                return

            yield StreamEvent("complete", ctx.output).to_dict()
        finally:
            await self.router.release(ctx)


# ==============================================================================
# Wiring
# ==============================================================================

@dataclass
class Pipeline:
    """A wired processor plus the collaborators callers may want to reach."""
    processor: MessageProcessor
    router: LLMRouter
    embeddings: EmbeddingGenerator
    vectorstore: VectorStore
    tools: ToolBackend
    conversations: ConversationStore
    memory: MemoryManager

    async def aclose(self) -> None:
        """Release collaborators that hold network resources."""
        close = getattr(self.tools, "aclose", None)
        if close is not None:
            await close()


def build_pipeline(
    config: Config | None = None,
    preferences: PreferenceStore | None = None,
    credentials: CredentialStore | None = None,
    tools: ToolBackend | None = None
) -> Pipeline:
    """
    Wire the default pipeline from configuration.

    Args:
        config: Configuration (from environment if None)
        preferences: Agent preferences (every agent gets the configured
            default provider and model if None)
        credentials: API key lookup (environment variables if None)
        tools: Tool backend (the configured remote tool service, or an
            in-process registry with the built-in utility tools, if None)
    """
    config = config or get_config()

    if preferences is None:
        preferences = InMemoryPreferenceStore(default=AgentLLMPreference(
            agent_id="*",
            provider=config.providers.default_provider,
            model=config.providers.default_model,
            embedding_model=config.providers.default_embedding_model,
        ))

    if tools is None and config.pipeline.tool_service_url:
        tools = HttpToolBackend(
            config.pipeline.tool_service_url,
            api_key=config.pipeline.tool_service_api_key,
            timeout_seconds=config.pipeline.tool_timeout_seconds,
        )
    elif tools is None:
        tools = ToolRegistry()
        register_builtin_tools(tools)

    router = LLMRouter(preferences, credentials or EnvCredentialStore(), settings=config.providers)
    embeddings = EmbeddingGenerator(router)
    knowledge_path = config.context.knowledge_store_path
    vectorstore = VectorStore(storage_path=Path(knowledge_path) if knowledge_path else None)
    conversations = ConversationStore()
    memory = MemoryManager(embeddings, settings=config.memory)

    context_engine = ContextEngine(
        [
            ChatHistorySource(conversations),
            VectorSearchSource(embeddings, vectorstore),
            ToolCatalogSource(tools),
        ],
        settings=config.context,
    )
    executor = ToolExecutor(tools, settings=config.pipeline, cache_settings=config.cache)

    processor = MessageProcessor(
        router=router,
        context_engine=context_engine,
        memory=memory,
        tool_executor=executor,
        conversations=conversations,
        config=config,
    )
    logger.info(
        "Pipeline ready",
        {
            "provider": config.providers.default_provider,
            "model": config.providers.default_model,
            "tools": type(tools).__name__,
            "knowledge_documents": len(vectorstore),
        }
    )
    return Pipeline(
        processor=processor,
        router=router,
        embeddings=embeddings,
        vectorstore=vectorstore,
        tools=tools,
        conversations=conversations,
        memory=memory,
    )
