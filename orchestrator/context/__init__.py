"""
Context Engine
==============

Token-budgeted context assembly from multiple sources.

Usage:
    from orchestrator.context import ContextEngine, ContextRequest, StaticSource, ContextSourceType

    engine = ContextEngine([
        StaticSource(ContextSourceType.AGENT_KNOWLEDGE, [{"content": "Refunds take 5 days"}]),
    ])
    optimized = await engine.build(ContextRequest(query="refund?", agent_id="a1", token_budget=4000))
"""

from orchestrator.context.compressor import compress_candidates, compress_text
from orchestrator.context.engine import ContextEngine
from orchestrator.context.models import (
    SOURCE_PRIORITY,
    ContextCandidate,
    ContextRequest,
    ContextSourceType,
    OptimizationGoal,
    OptimizedContext,
    PriorityOverrides,
)
from orchestrator.context.optimizer import optimize
from orchestrator.context.sources import (
    ChatHistorySource,
    ContextSource,
    StaticSource,
    ToolCatalogSource,
    VectorSearchSource,
    keyword_overlap,
)
from orchestrator.context.structurer import structure

__all__ = [
    "SOURCE_PRIORITY",
    "ChatHistorySource",
    "ContextCandidate",
    "ContextEngine",
    "ContextRequest",
    "ContextSource",
    "ContextSourceType",
    "OptimizationGoal",
    "OptimizedContext",
    "PriorityOverrides",
    "StaticSource",
    "ToolCatalogSource",
    "VectorSearchSource",
    "compress_candidates",
    "compress_text",
    "keyword_overlap",
    "optimize",
    "structure",
]
