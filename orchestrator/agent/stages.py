"""
Pipeline Stages
===============

The stages a turn passes through, strictly in this order:

    Parsing -> Validation -> Enrichment -> Reasoning -> MainProcessing -> Response

Each stage reads and writes the run's ProcessingContext. A stage signals a
fatal problem by raising an OrchestratorError; the message processor turns
it into an error response carrying the stage name.

MainProcessing loop:

    classify intent ──no tools──┐
         │                      │
    discover tools              │
         │                      ▼
         └────────────► model call ◄──────────────┐
                              │                   │
                     tool calls? ── no ──► done   │
                              │                   │
                     cap reached? ── yes ► partial│
                              │                   │
                       execute batch ─────────────┘

At most `max_llm_calls` model calls are made; the last permitted one is
made with tool_choice="none". A context overflow halves the history
window and repeats the same call (separate counter, `max_overflow_retries`).
"""

import asyncio
import uuid
from typing import Any, AsyncIterator

from orchestrator.agent.intent import IntentClassifier
from orchestrator.agent.models import ProcessingContext, StreamEvent
from orchestrator.agent.reasoning import (
    format_notes,
    parse_notes,
    reasoning_messages,
    score_complexity,
    select_style,
)
from orchestrator.agent.request import normalize_request, validate_request
from orchestrator.agent.tools_executor import ToolExecutor
from orchestrator.context import ContextEngine, ContextRequest, OptimizationGoal
from orchestrator.errors import ContextOverflowError, OrchestratorError, ToolExecutionError
from orchestrator.llm import ChatOptions, ChatResponse, LLMRouter, TokenUsage
from orchestrator.memory import ConversationStore, MemoryManager
from orchestrator.utils.config import ContextSettings, PipelineSettings, ReasoningSettings
from orchestrator.utils.logger import Logger
from orchestrator.utils.tokens import estimate_message_tokens

logger = Logger("Pipeline")


class Stage:
    """One step of the pipeline."""

    name = "stage"

    async def run(self, ctx: ProcessingContext) -> None:  # pragma: no cover
        raise NotImplementedError


# ==============================================================================
# Parsing / Validation
# ==============================================================================

class ParsingStage(Stage):
    name = "parsing"

    async def run(self, ctx: ProcessingContext) -> None:
        ctx.canonical = normalize_request(ctx.raw)


class ValidationStage(Stage):
    name = "validation"

    def __init__(self, settings: ContextSettings):
        self.settings = settings

    async def run(self, ctx: ProcessingContext) -> None:
        ctx.request = validate_request(ctx.canonical or {}, self.settings)


# ==============================================================================
# Enrichment
# ==============================================================================

class EnrichmentStage(Stage):
    """
    Loads history, then runs the context engine and memory search
    concurrently.

    History is kept within half of the token budget (oldest messages go
    first); the context engine gets what is left of the budget. Context and
    memory failures are logged and leave their block empty.
    """

    name = "enrichment"

    def __init__(
        self,
        router: LLMRouter,
        context_engine: ContextEngine,
        memory: MemoryManager,
        conversations: ConversationStore,
        pipeline_settings: PipelineSettings,
        context_settings: ContextSettings
    ):
        self.router = router
        self.context_engine = context_engine
        self.memory = memory
        self.conversations = conversations
        self.pipeline_settings = pipeline_settings
        self.context_settings = context_settings

    async def run(self, ctx: ProcessingContext) -> None:
        request = ctx.request
        resolved = await self.router.resolve_agent(request.agent_id, ctx)
        ctx.system_prompt = resolved.preference.settings.get("system_prompt") or self.pipeline_settings.system_prompt

        options = request.options
        budget = options.context.token_budget

        history = self.conversations.get_recent(request.conversation_id, options.context.max_messages)
        while history and estimate_message_tokens(history) > budget // 2:
            history = history[1:]
        ctx.history = history

        context_request = ContextRequest(
            query=request.text,
            agent_id=request.agent_id,
            token_budget=max(budget - estimate_message_tokens(history), 1),
            conversation_id=request.conversation_id,
            user_id=request.user_id,
            workspace_id=request.workspace_id,
            goal=OptimizationGoal(self.context_settings.optimization_goal),
            live_history_window=options.context.max_messages,
        )

        if options.memory.enabled:
            memory_call = self.memory.search(
                request.text,
                request.agent_id,
                {
                    "types": options.memory.types,
                    "max_results": options.memory.max_results,
                    "conversation_id": request.conversation_id,
                },
                ctx,
            )
        else:
            memory_call = _nothing()

        optimized, memories = await asyncio.gather(
            self.context_engine.build(context_request, ctx),
            memory_call,
            return_exceptions=True,
        )

        if isinstance(optimized, Exception):
            logger.warning(f"Context assembly failed: {optimized}", {"error_type": type(optimized).__name__})
        else:
            ctx.context_block = optimized.text
            ctx.context_tokens = optimized.total_tokens
            ctx.context_summary = optimized.summary()

        if isinstance(memories, Exception):
            logger.warning(f"Memory search failed: {memories}", {"error_type": type(memories).__name__})
        elif memories:
            ctx.memories = memories
            ctx.memory_block = self.memory.format_for_context(memories)

        logger.debug("Enrichment complete", {
            "history_messages": len(history),
            "context_tokens": ctx.context_tokens,
            "memories": len(ctx.memories),
        })


async def _nothing() -> list:
    return []


# ==============================================================================
# Reasoning
# ==============================================================================

class ReasoningStage(Stage):
    """Optional deliberation pass, gated by the agent's settings."""

    name = "reasoning"

    def __init__(self, router: LLMRouter, settings: ReasoningSettings):
        self.router = router
        self.settings = settings

    async def run(self, ctx: ProcessingContext) -> None:
        request = ctx.request
        resolved = await self.router.resolve_agent(request.agent_id, ctx)
        agent_settings = resolved.preference.settings

        complexity = score_complexity(request.text, ctx.context_tokens, request.options.context.token_budget)
        ctx.reasoning = {"score": complexity.score, "enabled": False, "style": None}

        if not agent_settings.get("reasoning_enabled"):
            return

        threshold = float(agent_settings.get("reasoning_threshold", self.settings.threshold))
        if complexity.score < threshold:
            logger.debug(f"Reasoning skipped ({complexity.reason})", {"score": complexity.score})
            return

        style = select_style(request.text)
        try:
            response = await self.router.chat(
                request.agent_id,
                reasoning_messages(request.text, style),
                ChatOptions(max_tokens=self.settings.max_tokens),
                context=ctx,
            )
        except OrchestratorError as e:
            logger.warning(f"Reasoning pass failed, continuing without notes: {e.message}")
            return

        ctx.tokens_used.add(response.usage)
        ctx.reasoning_notes = format_notes(parse_notes(response), style)
        ctx.reasoning = {"score": complexity.score, "enabled": True, "style": style}
        logger.debug(f"Reasoning notes added ({style})", {"score": complexity.score})


# ==============================================================================
# Main processing
# ==============================================================================

class MainProcessingStage(Stage):
    """
    Intent, tool discovery, and the bounded model/tool loop.

    `events()` drives the loop and yields StreamEvents (deltas only when
    streaming); `run()` drains it for the non-streaming path.
    """

    name = "main_processing"

    def __init__(
        self,
        router: LLMRouter,
        tool_executor: ToolExecutor,
        classifier: IntentClassifier,
        settings: PipelineSettings
    ):
        self.router = router
        self.tool_executor = tool_executor
        self.classifier = classifier
        self.settings = settings

    async def run(self, ctx: ProcessingContext) -> None:
        events = self.events(ctx, stream=False)
        try:
            async for _ in events:
                pass
        finally:
            await events.aclose()

    async def _discover(self, ctx: ProcessingContext) -> None:
        request = ctx.request
        ctx.intent = self.classifier.classify(request.text)
        logger.debug(f"Intent: {ctx.intent.detected_intent}", ctx.intent.to_dict())

        if not ctx.intent.requires_tools:
            return
        try:
            ctx.tools = await self.tool_executor.discover_tools(
                request.agent_id,
                request.user_id,
                request.conversation_id,
                message_count=len(ctx.history),
            )
        except ToolExecutionError as e:
            logger.warning(f"Continuing without tools: {e.message}")
            ctx.tools = []

    async def _call_model(
        self,
        ctx: ProcessingContext,
        options: ChatOptions,
        stream: bool
    ) -> AsyncIterator[StreamEvent | ChatResponse]:
        """
        One model call, repeated with a halved history window on overflow.

        Yields delta events while streaming, then the ChatResponse last.
        """
        agent_id = ctx.request.agent_id
        while True:
            try:
                if not stream:
                    response = await self.router.chat(agent_id, ctx.build_messages(), options, context=ctx)
                else:
                    parts: list[str] = []
                    final = None
                    chunks = self.router.stream_chat(agent_id, ctx.build_messages(), options, context=ctx)
                    try:
                        async for chunk in chunks:
                            if chunk.delta:
                                parts.append(chunk.delta)
                                yield StreamEvent("delta", {"text": chunk.delta})
                            if chunk.done:
                                final = chunk
                    finally:
                        await chunks.aclose()
                    response = ChatResponse(
                        text="".join(parts),
                        tool_calls=final.tool_calls if final else [],
                        usage=final.usage if final and final.usage else TokenUsage(),
                        response_id=final.response_id if final else "",
                        model=final.model if final else "",
                        finish_reason=final.finish_reason if final else None,
                    )
                yield response
                return
            except ContextOverflowError:
                window = len(ctx.history_window())
                if ctx.overflow_retries >= self.settings.max_overflow_retries or window == 0:
                    raise
                ctx.overflow_retries += 1
                ctx.history_limit = window // 2
                logger.warning(
                    "Context overflow, retrying with less history",
                    {"attempt": ctx.overflow_retries, "history_messages": ctx.history_limit}
                )

    def _partial_text(self, ctx: ProcessingContext, texts: list[str]) -> str:
        if texts:
            return "\n\n".join(texts)
        done = [d.name for d in ctx.tool_details if d.status == "success"]
        if done:
            return f"I ran out of steps before finishing. Completed: {', '.join(done)}."
        return "I ran out of steps before I could finish this request."

    async def events(self, ctx: ProcessingContext, stream: bool = False) -> AsyncIterator[StreamEvent]:
        await self._discover(ctx)

        tool_specs = [t.to_openai_function() for t in ctx.tools] or None
        max_calls = self.settings.max_llm_calls
        texts: list[str] = []

        while ctx.llm_calls < max_calls:
            last_call = ctx.llm_calls + 1 >= max_calls
            options = ChatOptions(
                tools=tool_specs,
                tool_choice="none" if last_call and tool_specs else "auto",
            )

            response = None
            call = self._call_model(ctx, options, stream)
            try:
                async for item in call:
                    if isinstance(item, ChatResponse):
                        response = item
                    else:
                        yield item
            finally:
                # Closing the run early must stop the provider stream now
                await call.aclose()

            ctx.llm_calls += 1
            ctx.tokens_used.add(response.usage)
            ctx.response_id = response.response_id or ctx.response_id
            ctx.model = response.model or ctx.model
            ctx.finish_reason = response.finish_reason
            if response.text:
                texts.append(response.text)

            if not response.tool_calls:
                ctx.response_text = response.text
                return

            if ctx.llm_calls >= max_calls:
                logger.warning(
                    "LLM call limit reached with tool calls pending; returning partial result",
                    {"llm_calls": ctx.llm_calls, "pending": [tc.name for tc in response.tool_calls]}
                )
                ctx.partial = True
                ctx.response_text = self._partial_text(ctx, texts)
                return

            calls = self.tool_executor.parse_tool_calls(response.tool_calls)
            for call in calls:
                yield StreamEvent("tool_call", {
                    "tool_call_id": call.tool_call_id,
                    "name": call.name,
                    "arguments": call.arguments,
                })

            assistant_message: dict[str, Any] = {
                "role": "assistant",
                "content": response.text or None,
                "tool_calls": [tc.to_openai() for tc in response.tool_calls],
            }
            outcome = await self.tool_executor.execute_tool_calls(calls, ctx, assistant_message)
            ctx.turn_messages.extend(outcome.updated_messages)

            for result in outcome.results:
                data: dict[str, Any] = {
                    "tool_call_id": result.tool_call_id,
                    "name": result.name,
                    "status": result.status.value,
                    "latency_ms": round(result.latency_ms, 2),
                }
                if result.success:
                    data["result"] = result.result
                else:
                    data["error"] = result.error
                yield StreamEvent("tool_result", data)

            if outcome.requires_llm_retry:
                logger.info("Retryable tool failure; asking the model to correct the call")


# ==============================================================================
# Response
# ==============================================================================

def build_success_envelope(ctx: ProcessingContext) -> dict[str, Any]:
    """The non-streaming success response for a finished run."""
    request = ctx.request
    response_options = request.options.response

    message: dict[str, Any] = {
        "id": ctx.message_id,
        "role": "assistant",
        "content": {"type": "text", "text": ctx.response_text},
    }
    if response_options.include_metadata:
        message["metadata"] = {
            "request_id": request.request_id,
            "agent_id": request.agent_id,
            "conversation_id": request.conversation_id,
            "finish_reason": ctx.finish_reason,
            "partial": ctx.partial,
        }

    metrics: dict[str, Any] = {"tokens": ctx.tokens_used.to_dict()}
    if response_options.include_metrics:
        metrics.update({
            "model": ctx.model,
            "processing_time_ms": round(ctx.elapsed_ms, 2),
            "llm_calls": ctx.llm_calls,
            "overflow_retries": ctx.overflow_retries,
            "stages": {name: round(ms, 2) for name, ms in ctx.stage_timings.items()},
        })

    return {
        "status": "success",
        "data": {"message": message},
        "metrics": metrics,
        "processing_details": {
            "context_tokens": ctx.context_tokens,
            "reasoning": dict(ctx.reasoning),
            "intent": ctx.intent.to_dict() if ctx.intent else None,
            "memories": len(ctx.memories),
            "tool_calls": [d.to_dict() for d in ctx.tool_details],
        },
    }


class ResponseStage(Stage):
    """
    Builds the response and hands the finished turn to persistence.

    Persistence and episodic-memory failures are logged; they never change
    the response.
    """

    name = "response"

    def __init__(self, conversations: ConversationStore, memory: MemoryManager):
        self.conversations = conversations
        self.memory = memory

    async def run(self, ctx: ProcessingContext) -> None:
        request = ctx.request
        ctx.message_id = ctx.response_id or f"msg_{uuid.uuid4().hex}"
        ctx.output = build_success_envelope(ctx)

        try:
            await self.conversations.save_turn({
                "conversation_id": request.conversation_id,
                "request_id": request.request_id,
                "user_text": request.text,
                "assistant_text": ctx.response_text,
                "request": ctx.canonical,
                "response": ctx.output,
                "metrics": ctx.output["metrics"],
            })
        except Exception as e:
            logger.error("Failed to persist turn", e)

        if request.options.memory.enabled and not ctx.partial:
            try:
                await self.memory.remember_turn(
                    request.agent_id,
                    request.conversation_id,
                    request.text,
                    ctx.response_text,
                    ctx,
                )
            except Exception as e:
                logger.error("Failed to store episodic memory", e)
