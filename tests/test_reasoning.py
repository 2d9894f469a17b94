"""Tests for complexity scoring, style selection and reasoning notes."""

from orchestrator.agent.reasoning import format_notes, parse_notes, reasoning_messages, score_complexity, select_style
from orchestrator.llm import ChatResponse


def test_simple_message_scores_zero():
    result = score_complexity("hi")
    assert result.score < 0.05
    assert result.reason == "simple request"


def test_analysis_and_steps_raise_the_score():
    text = "Compare Postgres versus MySQL for our workload, then explain the trade-offs and why one wins."
    result = score_complexity(text)

    assert result.score >= 0.4
    assert "analysis vocabulary" in result.reason
    assert "multi-step request" in result.reason


def test_score_is_capped_at_one():
    text = " ".join(["why compare then analyze?"] * 200)
    assert score_complexity(text, context_tokens=5000, token_budget=1000).score == 1.0


def test_context_pressure_contributes():
    base = score_complexity("summarize this").score
    pressured = score_complexity("summarize this", context_tokens=1000, token_budget=1000).score
    assert round(pressured - base, 4) == 0.1


def test_style_selection():
    assert select_style("Why does the deploy fail with an error?") == "diagnostic"
    assert select_style("Compare Redis versus Memcached") == "comparative"
    assert select_style("How do I set up replication?") == "procedural"
    assert select_style("Summarize the main themes of the report") == "analytical"


def test_reasoning_messages_carry_style_instruction():
    messages = reasoning_messages("Compare A and B", "comparative")
    assert messages[0]["role"] == "system"
    assert "criteria" in messages[0]["content"]
    assert messages[1] == {"role": "user", "content": "Compare A and B"}


def test_parse_notes_accepts_fenced_json():
    response = ChatResponse(text='```json\n{"key_points": ["a", "b"], "approach": "direct"}\n```')
    assert parse_notes(response) == {"key_points": ["a", "b"], "approach": "direct"}


def test_parse_notes_keeps_free_text():
    assert parse_notes(ChatResponse(text="just think it through")) == {"notes": "just think it through"}


def test_format_notes():
    block = format_notes({"key_points": ["latency", "cost"], "approach": "table"}, "comparative")

    assert block.splitlines() == [
        "## Reasoning Notes (comparative)",
        "Key points:",
        "- latency",
        "- cost",
        "Approach: table",
    ]
    assert format_notes({}, "analytical") == ""
