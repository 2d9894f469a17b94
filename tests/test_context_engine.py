"""Tests for context retrieval, budgeted selection, compression and structuring."""

import asyncio

import pytest

from conftest import email_tool
from orchestrator.context import (
    ChatHistorySource,
    ContextCandidate,
    ContextEngine,
    ContextRequest,
    ContextSource,
    ContextSourceType,
    OptimizationGoal,
    PriorityOverrides,
    StaticSource,
    ToolCatalogSource,
    compress_text,
    optimize,
    structure,
)
from orchestrator.context.compressor import allocate
from orchestrator.memory import ConversationStore
from orchestrator.tools import ToolRegistry
from orchestrator.utils.config import ContextSettings
from orchestrator.utils.tokens import estimate_tokens


def _entries(prefix: str, relevances: list[float], tokens: int = 100) -> list[dict]:
    return [
        {"id": f"{prefix}{i}", "content": f"{prefix}{i} ".ljust(tokens * 4, "x"), "relevance": r}
        for i, r in enumerate(relevances)
    ]


def _request(budget: int = 4000, **kwargs) -> ContextRequest:
    return ContextRequest(query="refund policy", agent_id="agent-1", token_budget=budget, **kwargs)


class FailingSource(ContextSource):
    source_type = ContextSourceType.WORKSPACE

    async def retrieve(self, request, context=None):
        raise RuntimeError("workspace service down")


class SlowSource(ContextSource):
    source_type = ContextSourceType.WORKSPACE

    async def retrieve(self, request, context=None):
        await asyncio.sleep(1)
        return [ContextCandidate(ContextSourceType.WORKSPACE, "late", 1.0)]


# ==============================================================================
# Engine
# ==============================================================================

@pytest.mark.asyncio
async def test_large_candidate_set_fits_the_budget():
    relevances = [round(1.0 - i * 0.015, 3) for i in range(50)]
    engine = ContextEngine(
        [StaticSource(ContextSourceType.AGENT_KNOWLEDGE, _entries("doc", relevances, tokens=400))],
        settings=ContextSettings(),
    )

    result = await engine.build(_request(4000))

    assert result.total_tokens <= 4000
    assert result.total_tokens == estimate_tokens(result.text)
    assert result.budget_utilization <= 1.0
    assert len(result.candidates) == 9
    assert [c.candidate_id for c in result.candidates][:3] == ["doc0", "doc1", "doc2"]
    assert result.text.startswith("# Context\n\n## Agent Knowledge\n- doc0")


@pytest.mark.asyncio
async def test_no_candidates_is_an_empty_context():
    result = await ContextEngine([], settings=ContextSettings()).build(_request())

    assert result.is_empty
    assert result.text == ""
    assert result.quality_score == 0.0
    assert result.total_tokens == 0


@pytest.mark.asyncio
async def test_failing_and_slow_sources_only_lose_their_own_candidates():
    engine = ContextEngine(
        [
            FailingSource(),
            SlowSource(),
            StaticSource(ContextSourceType.AGENT_KNOWLEDGE, [{"content": "Refunds take five days."}]),
        ],
        settings=ContextSettings(source_timeout_seconds=0.05),
    )

    result = await engine.build(_request())

    assert [c.content for c in result.candidates] == ["Refunds take five days."]
    assert result.source_counts == {"agent_knowledge": 1}


@pytest.mark.asyncio
async def test_static_entries_are_scoped_and_system_is_pinned():
    source = StaticSource(ContextSourceType.SYSTEM, [{"content": "Answer in English."}])
    knowledge = StaticSource(ContextSourceType.AGENT_KNOWLEDGE, [
        {"content": "Refund policy: 30 days.", "agent_id": "agent-1"},
        {"content": "Other agent's secret.", "agent_id": "agent-2"},
        {"content": "Workspace note.", "workspace_id": "ws-9"},
    ])

    candidates = await ContextEngine([source, knowledge], settings=ContextSettings()).retrieve(_request())

    assert [c.content for c in candidates] == ["Answer in English.", "Refund policy: 30 days."]
    assert candidates[0].pinned is True
    assert candidates[1].relevance == 1.0


@pytest.mark.asyncio
async def test_chat_history_source_scores_older_turns():
    conversations = ConversationStore()
    for role, text in [
        ("user", "What is the refund policy?"),
        ("assistant", "Refunds within 30 days."),
        ("user", "And shipping?"),
        ("assistant", "Free over $50."),
        ("user", "Thanks"),
        ("assistant", "You're welcome"),
    ]:
        conversations.add_message("conv-1", role, text)

    candidates = await ChatHistorySource(conversations).retrieve(
        _request(conversation_id="conv-1", live_history_window=2)
    )

    assert len(candidates) == 4
    assert candidates[0].content == "user: What is the refund policy?"
    assert candidates[0].relevance == pytest.approx(0.7 * 1.0 + 0.3 * 0.25)
    assert candidates[2].relevance == pytest.approx(0.3 * 0.75)


@pytest.mark.asyncio
async def test_tool_catalog_source_lists_agent_tools():
    registry = ToolRegistry()
    registry.register(email_tool())

    candidates = await ToolCatalogSource(registry).retrieve(
        ContextRequest(query="send an email", agent_id="agent-1", token_budget=100)
    )

    assert [c.content for c in candidates] == ["email_send: Send an email to a recipient"]
    assert candidates[0].relevance == 1.0


# ==============================================================================
# Selection
# ==============================================================================

def _candidates(source: ContextSourceType, prefix: str, relevances: list[float]) -> list[ContextCandidate]:
    return [
        ContextCandidate(source, entry["content"], entry["relevance"], candidate_id=entry["id"])
        for entry in _entries(prefix, relevances)
    ]


@pytest.mark.parametrize("goal, expected", [
    (OptimizationGoal.MAXIMIZE_RELEVANCE, ["k0", "k1"]),
    (OptimizationGoal.MAXIMIZE_COVERAGE, ["k0", "w0"]),
])
def test_goal_changes_selection(goal, expected):
    candidates = (
        _candidates(ContextSourceType.AGENT_KNOWLEDGE, "k", [0.9, 0.8, 0.7])
        + _candidates(ContextSourceType.WORKSPACE, "w", [0.3, 0.2])
    )

    result = optimize(candidates, token_budget=200, goal=goal)

    assert [c.candidate_id for c in result.candidates] == expected
    assert result.budget_utilization == 1.0


def test_pins_are_selected_first():
    candidates = _candidates(ContextSourceType.VECTOR_SEARCH, "v", [0.9, 0.1])

    result = optimize(candidates, token_budget=100, overrides=PriorityOverrides(candidate_ids=frozenset({"v1"})))

    assert [c.candidate_id for c in result.candidates] == ["v1"]


def test_ties_break_by_source_priority():
    candidates = (
        _candidates(ContextSourceType.VECTOR_SEARCH, "v", [0.5])
        + _candidates(ContextSourceType.CHAT_HISTORY, "h", [0.5])
    )

    result = optimize(candidates, token_budget=100, goal=OptimizationGoal.MAXIMIZE_RELEVANCE)

    assert [c.candidate_id for c in result.candidates] == ["h0"]


def test_oversized_pins_are_compressed_into_the_budget():
    candidates = _candidates(ContextSourceType.SYSTEM, "s", [1.0, 1.0])
    for candidate in candidates:
        candidate.pinned = True

    result = optimize(candidates, token_budget=150)

    assert result.compression_applied is True
    assert result.total_tokens <= 150
    assert all(c.metadata["compressed"] for c in result.candidates)


def test_single_oversized_candidate_is_compressed_not_dropped():
    big = ContextCandidate(ContextSourceType.AGENT_KNOWLEDGE, "Refunds take five days. " * 500, 0.8, candidate_id="big")

    result = optimize([big], token_budget=50)

    assert len(result.candidates) == 1
    assert result.compression_applied is True
    assert result.total_tokens <= 50
    assert result.candidates[0].metadata["original_tokens"] == big.token_cost


def test_oversized_candidate_is_compressed_alongside_smaller_ones():
    big = ContextCandidate(ContextSourceType.AGENT_KNOWLEDGE, "Refunds take five days. " * 1300, 1.0, candidate_id="big")
    small = ContextCandidate(ContextSourceType.AGENT_KNOWLEDGE, "Shipping is free.", 0.05, candidate_id="small")

    result = optimize([big, small], token_budget=500, goal=OptimizationGoal.MAXIMIZE_RELEVANCE)

    ids = [c.candidate_id for c in result.candidates]
    assert "big" in ids
    assert result.compression_applied is True
    assert result.total_tokens <= 500
    assert result.candidates[ids.index("big")].metadata["original_tokens"] == big.token_cost


def test_cheap_fragments_beat_one_costly_fragment():
    candidates = [
        ContextCandidate(ContextSourceType.AGENT_KNOWLEDGE, entry["content"], entry["relevance"], candidate_id=entry["id"])
        for entry in _entries("big", [0.9], tokens=1000) + _entries("c", [0.85] * 10, tokens=10)
    ]

    result = optimize(candidates, token_budget=1000, goal=OptimizationGoal.MAXIMIZE_RELEVANCE)

    assert [c.candidate_id for c in result.candidates] == [f"c{i}" for i in range(10)]
    assert result.compression_applied is False


@pytest.mark.asyncio
async def test_section_headers_count_against_the_budget():
    engine = ContextEngine(
        [StaticSource(ContextSourceType.AGENT_KNOWLEDGE, _entries("doc", [1.0], tokens=100))],
        settings=ContextSettings(),
    )

    result = await engine.build(_request(100))

    assert result.text.startswith("# Context\n\n## Agent Knowledge\n- doc0")
    assert result.total_tokens == estimate_tokens(result.text)
    assert result.total_tokens <= 100
    assert result.compression_applied is True


def test_quality_is_penalized_by_compression():
    fits = optimize(_candidates(ContextSourceType.AGENT_KNOWLEDGE, "k", [0.6]), token_budget=100)
    squeezed = optimize(_candidates(ContextSourceType.AGENT_KNOWLEDGE, "k", [0.6]), token_budget=50)

    assert squeezed.quality_score == pytest.approx(fits.quality_score * 0.9)


# ==============================================================================
# Compression and structuring
# ==============================================================================

def test_compress_text_strategies():
    spaced = "Refunds   take\n\n five    days."
    assert compress_text(spaced, estimate_tokens("Refunds take five days.")) == "Refunds take five days."

    sentences = "First sentence here. Second sentence is longer than the first. Third."
    assert compress_text(sentences, 6) == "First sentence here."

    truncated = compress_text("x" * 400, 10)
    assert estimate_tokens(truncated) <= 10
    assert compress_text("anything", 0) == ""


def test_allocate_is_proportional():
    assert allocate([300, 100], 200) == [150, 50]
    assert sum(allocate([7, 3, 1], 10)) == 10
    assert allocate([0, 0], 10) == [0, 0]


def test_structure_groups_by_source_priority():
    candidates = [
        ContextCandidate(ContextSourceType.VECTOR_SEARCH, "doc hit", 0.9, candidate_id="v"),
        ContextCandidate(ContextSourceType.AGENT_KNOWLEDGE, "line one\nline two", 0.5, candidate_id="k"),
    ]

    assert structure(candidates) == (
        "# Context\n\n"
        "## Agent Knowledge\n- line one\n  line two\n\n"
        "## Related Documents\n- doc hit"
    )
    assert structure([]) == ""
