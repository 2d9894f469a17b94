"""
Context engine data model.

Candidates live only for one engine invocation; the OptimizedContext is
consumed by the prompt assembler right away and never persisted.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from orchestrator.utils.tokens import estimate_tokens


class ContextSourceType(str, Enum):
    """Where a candidate came from."""
    SYSTEM = "system"
    AGENT_KNOWLEDGE = "agent_knowledge"
    WORKSPACE = "workspace"
    CHAT_HISTORY = "chat_history"
    TOOL_CATALOG = "tool_catalog"
    VECTOR_SEARCH = "vector_search"


# Tie-break order: lower value wins
SOURCE_PRIORITY: dict[ContextSourceType, int] = {
    ContextSourceType.SYSTEM: 0,
    ContextSourceType.AGENT_KNOWLEDGE: 1,
    ContextSourceType.WORKSPACE: 2,
    ContextSourceType.CHAT_HISTORY: 3,
    ContextSourceType.TOOL_CATALOG: 4,
    ContextSourceType.VECTOR_SEARCH: 5,
}

SECTION_TITLES: dict[ContextSourceType, str] = {
    ContextSourceType.SYSTEM: "System",
    ContextSourceType.AGENT_KNOWLEDGE: "Agent Knowledge",
    ContextSourceType.WORKSPACE: "Workspace",
    ContextSourceType.CHAT_HISTORY: "Earlier Conversation",
    ContextSourceType.TOOL_CATALOG: "Available Tools",
    ContextSourceType.VECTOR_SEARCH: "Related Documents",
}


class OptimizationGoal(str, Enum):
    MAXIMIZE_RELEVANCE = "maximize_relevance"
    MAXIMIZE_COVERAGE = "maximize_coverage"
    BALANCE_ALL = "balance_all"


@dataclass
class ContextCandidate:
    """
    One fragment offered by a source.

    Attributes:
        source: Producing source type
        content: Fragment text
        relevance: Source-local score in [0, 1]
        token_cost: Estimated tokens (computed from content if 0)
        candidate_id: Stable id, used for pins and deterministic ordering
        pinned: Always selected, bypassing the greedy cutoff
        metadata: Source-specific attributes
    """
    source: ContextSourceType
    content: str
    relevance: float
    token_cost: int = 0
    candidate_id: str = ""
    pinned: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    score: float = 0.0  # blended cross-source score, set by the optimizer

    def __post_init__(self):
        self.relevance = min(max(float(self.relevance), 0.0), 1.0)
        if self.token_cost <= 0:
            self.token_cost = estimate_tokens(self.content)

    @property
    def priority(self) -> int:
        return SOURCE_PRIORITY[self.source]


@dataclass(frozen=True)
class PriorityOverrides:
    """Explicit pins: whole sources or individual candidate ids."""
    sources: frozenset[ContextSourceType] = frozenset()
    candidate_ids: frozenset[str] = frozenset()

    def pins(self, candidate: ContextCandidate) -> bool:
        return candidate.pinned or candidate.source in self.sources or candidate.candidate_id in self.candidate_ids


@dataclass
class ContextRequest:
    """Input of one engine invocation."""
    query: str
    agent_id: str
    token_budget: int
    conversation_id: str | None = None
    user_id: str | None = None
    workspace_id: str | None = None
    goal: OptimizationGoal = OptimizationGoal.BALANCE_ALL
    overrides: PriorityOverrides = field(default_factory=PriorityOverrides)
    live_history_window: int = 20


@dataclass
class OptimizedContext:
    """
    The selected context window.

    `total_tokens <= token_budget` holds unless even compression could not
    fit the pinned candidates; then budget_utilization is reported above 1.0.
    """
    candidates: list[ContextCandidate] = field(default_factory=list)
    total_tokens: int = 0
    token_budget: int = 0
    budget_utilization: float = 0.0
    quality_score: float = 0.0
    compression_applied: bool = False
    text: str = ""
    source_counts: dict[str, int] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.candidates

    def summary(self) -> dict[str, Any]:
        return {
            "total_tokens": self.total_tokens,
            "token_budget": self.token_budget,
            "budget_utilization": round(self.budget_utilization, 4),
            "quality_score": round(self.quality_score, 4),
            "compression_applied": self.compression_applied,
            "candidates": len(self.candidates),
            "sources": dict(self.source_counts),
        }
