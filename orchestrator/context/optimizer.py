"""
Context Optimizer
=================

Selects candidates under a hard token budget.

Scoring:
    Sources score on different scales, so each candidate's relevance is
    also divided by the best relevance of its own source. The blended
    score is the mean of the raw and the normalized value.

    Selection is greedy on relevance per token: the blended score is
    divided by log(token_cost + 1), so a few cheap fragments of similar
    relevance win over one expensive fragment.

Ordering (by optimization goal):
    maximize_relevance  highest score per token first
    maximize_coverage   round-robin across sources (source priority order),
                        best candidate of each source per round
    balance_all         alternate between the two orders above

    Ties break by source priority:
    system > agent_knowledge > workspace > chat_history > tool_catalog > vector_search

Selection:
    Pinned candidates are taken first. The rest are added greedily in goal
    order, skipping any candidate that no longer fits. A candidate larger
    than the whole budget is compressed into what is left instead of being
    skipped. If the pinned set is over budget it is compressed.

The exact scoring is an internal tunable, not a compatibility contract.
"""

import math
from collections import defaultdict

from orchestrator.context.compressor import compress_candidates
from orchestrator.context.models import (
    ContextCandidate,
    OptimizationGoal,
    OptimizedContext,
    PriorityOverrides,
    SOURCE_PRIORITY,
)

COMPRESSION_QUALITY_PENALTY = 0.9

# Smallest remainder worth compressing an oversized candidate into
MIN_COMPRESSED_TOKENS = 8


def normalize_scores(candidates: list[ContextCandidate]) -> None:
    """Set `score` on every candidate (blended raw/per-source-normalized)."""
    best: dict = defaultdict(float)
    for candidate in candidates:
        best[candidate.source] = max(best[candidate.source], candidate.relevance)

    for candidate in candidates:
        top = best[candidate.source]
        normalized = candidate.relevance / top if top > 0 else 0.0
        candidate.score = (candidate.relevance + normalized) / 2


def density(candidate: ContextCandidate) -> float:
    """Blended score per log-token."""
    return candidate.score / math.log(max(candidate.token_cost, 1) + 1)


def _relevance_key(candidate: ContextCandidate):
    return (-density(candidate), candidate.priority, candidate.token_cost, candidate.candidate_id)


def relevance_order(candidates: list[ContextCandidate]) -> list[ContextCandidate]:
    return sorted(candidates, key=_relevance_key)


def coverage_order(candidates: list[ContextCandidate]) -> list[ContextCandidate]:
    by_source: dict = defaultdict(list)
    for candidate in relevance_order(candidates):
        by_source[candidate.source].append(candidate)

    queues = [by_source[s] for s in sorted(by_source, key=SOURCE_PRIORITY.__getitem__)]
    ordered: list[ContextCandidate] = []
    while any(queues):
        for queue in queues:
            if queue:
                ordered.append(queue.pop(0))
    return ordered


def balanced_order(candidates: list[ContextCandidate]) -> list[ContextCandidate]:
    by_relevance = relevance_order(candidates)
    by_coverage = coverage_order(candidates)
    ordered: list[ContextCandidate] = []
    seen: set[int] = set()

    for first, second in zip(by_relevance, by_coverage):
        for candidate in (first, second):
            if id(candidate) not in seen:
                seen.add(id(candidate))
                ordered.append(candidate)
    return ordered


_ORDERINGS = {
    OptimizationGoal.MAXIMIZE_RELEVANCE: relevance_order,
    OptimizationGoal.MAXIMIZE_COVERAGE: coverage_order,
    OptimizationGoal.BALANCE_ALL: balanced_order,
}


def quality_score(selected: list[ContextCandidate], compressed: bool) -> float:
    """Token-weighted mean score of the selection."""
    total = sum(c.token_cost for c in selected)
    if total <= 0:
        return 0.0
    quality = sum(c.score * c.token_cost for c in selected) / total
    return quality * COMPRESSION_QUALITY_PENALTY if compressed else quality


def optimize(
    candidates: list[ContextCandidate],
    token_budget: int,
    goal: OptimizationGoal = OptimizationGoal.BALANCE_ALL,
    overrides: PriorityOverrides | None = None
) -> OptimizedContext:
    """
    Select and, if needed, compress candidates into `token_budget` tokens.

    Returns:
        OptimizedContext without `text` (the structurer fills it)
    """
    overrides = overrides or PriorityOverrides()
    if not candidates or token_budget <= 0:
        return OptimizedContext(token_budget=token_budget)

    normalize_scores(candidates)
    pinned = relevance_order([c for c in candidates if overrides.pins(c)])
    rest = _ORDERINGS[goal]([c for c in candidates if not overrides.pins(c)])

    compressed = False
    selected: list[ContextCandidate] = []
    pinned_tokens = sum(c.token_cost for c in pinned)

    if pinned_tokens > token_budget:
        selected = compress_candidates(pinned, token_budget)
        compressed = True
    else:
        selected = list(pinned)
        used = pinned_tokens
        for candidate in rest:
            if used + candidate.token_cost <= token_budget:
                selected.append(candidate)
                used += candidate.token_cost
            elif candidate.token_cost > token_budget and token_budget - used >= MIN_COMPRESSED_TOKENS:
                shrunk = compress_candidates([candidate], token_budget - used)
                selected.extend(shrunk)
                used += sum(c.token_cost for c in shrunk)
                compressed = compressed or bool(shrunk)

    # Budgets too small to be worth splitting still get the best candidate
    if not selected and rest:
        selected = compress_candidates([rest[0]], token_budget)
        compressed = True

    total = sum(c.token_cost for c in selected)
    counts: dict[str, int] = defaultdict(int)
    for candidate in selected:
        counts[candidate.source.value] += 1

    return OptimizedContext(
        candidates=selected,
        total_tokens=total,
        token_budget=token_budget,
        budget_utilization=total / token_budget,
        quality_score=quality_score(selected, compressed),
        compression_applied=compressed,
        source_counts=dict(counts),
    )
