"""
Context Engine
==============

Produces the best OptimizedContext within a hard token budget:

1. Retrieval: every ContextSource is queried concurrently
2. Optimization: cross-source normalization and greedy selection
3. Compression: only when the selection cannot fit (see optimizer)
4. Structuring: one labeled section per source

No candidates from any source is not an error: the result is an empty
OptimizedContext with quality_score 0.
"""

import asyncio
from typing import Any

from orchestrator.context.models import ContextCandidate, ContextRequest, OptimizedContext
from orchestrator.context.optimizer import optimize
from orchestrator.context.sources import ContextSource
from orchestrator.context.structurer import header_tokens, structure
from orchestrator.utils.config import ContextSettings, get_config
from orchestrator.utils.logger import Logger
from orchestrator.utils.tokens import estimate_tokens

logger = Logger("ContextEngine")

# Re-selection passes when the rendered block overshoots the reserve
MAX_FIT_PASSES = 3


class ContextEngine:
    """
    Example:
        engine = ContextEngine([StaticSource(ContextSourceType.AGENT_KNOWLEDGE, entries), history_source])
        optimized = await engine.build(ContextRequest(query="refund status", agent_id="a1", token_budget=4000))
        print(optimized.text)
    """

    def __init__(self, sources: list[ContextSource] | None = None, settings: ContextSettings | None = None):
        self.sources = list(sources or [])
        self.settings = settings or get_config().context

    def add_source(self, source: ContextSource) -> None:
        self.sources.append(source)

    async def _retrieve_one(
        self,
        source: ContextSource,
        request: ContextRequest,
        context: Any
    ) -> list[ContextCandidate]:
        name = type(source).__name__
        try:
            candidates = await asyncio.wait_for(
                source.retrieve(request, context),
                timeout=self.settings.source_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Context source {name} timed out", {"timeout": self.settings.source_timeout_seconds})
            return []
        except Exception as e:
            logger.warning(f"Context source {name} failed: {e}", {"error_type": type(e).__name__})
            return []

        for index, candidate in enumerate(candidates):
            if not candidate.candidate_id:
                candidate.candidate_id = f"{candidate.source.value}:{name}:{index}"
        return candidates

    async def retrieve(self, request: ContextRequest, context: Any = None) -> list[ContextCandidate]:
        """Query every source concurrently; results are concatenated in source order."""
        if not self.sources:
            return []
        batches = await asyncio.gather(*(self._retrieve_one(s, request, context) for s in self.sources))
        return [candidate for batch in batches for candidate in batch if candidate.content.strip()]

    async def build(self, request: ContextRequest, context: Any = None) -> OptimizedContext:
        """
        Retrieve, select, compress and structure context for one turn.

        The section headers count against the budget: they are reserved
        before selection, and `total_tokens` is the size of the rendered
        block.

        Args:
            request: Query text, agent, budget, goal and pins
            context: Processing context (per-run provider resolution)

        Returns:
            OptimizedContext with `text` ready for the prompt
        """
        candidates = await self.retrieve(request, context)
        budget = request.token_budget
        reserve = header_tokens(c.source for c in candidates)

        optimized = OptimizedContext(token_budget=budget)
        for _ in range(MAX_FIT_PASSES):
            optimized = optimize(candidates, budget - reserve, request.goal, request.overrides)
            optimized.text = structure(optimized.candidates)
            rendered = estimate_tokens(optimized.text)
            if rendered <= budget:
                break
            # Bullets and rounding cost more than reserved; shrink by the excess
            reserve += rendered - budget

        optimized.token_budget = budget
        optimized.total_tokens = estimate_tokens(optimized.text)
        optimized.budget_utilization = optimized.total_tokens / budget if budget > 0 else 0.0

        logger.debug(
            f"Context built from {len(candidates)} candidates",
            optimized.summary()
        )
        if optimized.budget_utilization > 1.0:
            logger.warning(
                "Context exceeds budget after compression",
                {"total_tokens": optimized.total_tokens, "token_budget": optimized.token_budget}
            )
        return optimized
