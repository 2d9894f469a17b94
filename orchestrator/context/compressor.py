"""
Context compression.

Applied only when the selection cannot fit the budget. Each candidate gets a
share of the budget proportional to its token cost, then is shrunk with the
cheapest strategy that fits:

1. collapse whitespace
2. keep leading sentences
3. hard truncation with an ellipsis marker
"""

import re
from dataclasses import replace

from orchestrator.context.models import ContextCandidate
from orchestrator.utils.tokens import estimate_tokens, truncate_to_tokens

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


def compress_text(text: str, max_tokens: int) -> str:
    """Shrink `text` so that estimate_tokens(result) <= max_tokens."""
    if max_tokens <= 0:
        return ""
    if estimate_tokens(text) <= max_tokens:
        return text

    collapsed = " ".join(text.split())
    if estimate_tokens(collapsed) <= max_tokens:
        return collapsed

    kept: list[str] = []
    for sentence in _SENTENCE_SPLIT.split(collapsed):
        candidate = " ".join(kept + [sentence])
        if estimate_tokens(candidate) > max_tokens:
            break
        kept.append(sentence)
    if kept:
        return " ".join(kept)

    return truncate_to_tokens(collapsed, max_tokens)


def allocate(costs: list[int], budget: int) -> list[int]:
    """
    Split `budget` proportionally to `costs`.

    Every item gets at least one token, so the sum can exceed a budget
    smaller than the item count.
    """
    total = sum(costs)
    if total <= 0:
        return [0 for _ in costs]
    shares = [max(budget * cost // total, 1) for cost in costs]

    # Hand the rounding remainder to the largest items first
    remainder = budget - sum(shares)
    for index in sorted(range(len(costs)), key=lambda i: -costs[i]):
        if remainder <= 0:
            break
        if shares[index] < costs[index]:
            shares[index] += 1
            remainder -= 1
    return shares


def compress_candidates(candidates: list[ContextCandidate], budget: int) -> list[ContextCandidate]:
    """Compress candidates into `budget` tokens, proportionally to their size."""
    shares = allocate([c.token_cost for c in candidates], budget)
    compressed = []
    for candidate, share in zip(candidates, shares):
        content = compress_text(candidate.content, share)
        if not content:
            continue
        compressed.append(replace(
            candidate,
            content=content,
            token_cost=estimate_tokens(content),
            metadata={**candidate.metadata, "compressed": True, "original_tokens": candidate.token_cost},
        ))
    return compressed
