"""Tests for the shared cache, token estimation and environment config."""

from orchestrator.utils.cache import TTLCache
from orchestrator.utils.config import PipelineSettings, load_config
from orchestrator.utils.tokens import estimate_message_tokens, estimate_tokens, truncate_to_tokens


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_cache_entries_expire():
    clock = FakeClock()
    cache = TTLCache(ttl_seconds=10, clock=clock)
    cache.set("a", 1)

    clock.now = 9.9
    assert cache.get("a") == 1

    clock.now = 10.0
    assert cache.get("a") is None
    assert len(cache) == 0


def test_cache_drops_oldest_at_bound():
    clock = FakeClock()
    cache = TTLCache(ttl_seconds=100, max_entries=2, clock=clock)
    for i, key in enumerate("abc"):
        clock.now = float(i)
        cache.set(key, i)

    assert cache.get("a") is None
    assert cache.snapshot() == {"b": 1, "c": 2}


def test_cache_writes_do_not_mutate_held_snapshots():
    cache = TTLCache(ttl_seconds=100)
    cache.set("a", 1)
    held = cache._entries

    cache.set("b", 2)
    cache.invalidate("a")

    assert set(held) == {"a"}
    assert cache.snapshot() == {"b": 2}


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_truncate_to_tokens_respects_limit():
    text = "word " * 100
    cut = truncate_to_tokens(text, 10)

    assert estimate_tokens(cut) <= 10
    assert cut.endswith("…")
    assert truncate_to_tokens("short", 10) == "short"
    assert truncate_to_tokens("anything", 0) == ""


def test_estimate_message_tokens_counts_overhead_and_tool_calls():
    plain = estimate_message_tokens([{"role": "user", "content": "abcd"}])
    with_calls = estimate_message_tokens([{
        "role": "assistant",
        "content": None,
        "tool_calls": [{"id": "c1", "function": {"name": "x", "arguments": "{}"}}],
    }])

    assert plain == 5
    assert with_calls > 4


def test_load_config_reads_environment(monkeypatch):
    monkeypatch.setenv("DEFAULT_PROVIDER", "Anthropic")
    monkeypatch.setenv("MAX_LLM_CALLS", "5")
    monkeypatch.setenv("CONTEXT_TOKEN_BUDGET", "not-a-number")
    monkeypatch.setenv("DISABLED_PROVIDERS", "OpenAI, ")
    monkeypatch.setenv("MEMORY_STORE_TURNS", "false")

    config = load_config()

    assert config.providers.default_provider == "anthropic"
    assert config.pipeline.max_llm_calls == 5
    assert config.context.token_budget == 4000
    assert config.providers.disabled_providers == ("openai",)
    assert config.memory.store_turns is False


def test_tool_timeout_is_capped_by_deadline():
    pipeline = PipelineSettings(deadline_seconds=10.0, tool_timeout_seconds=20.0)
    assert pipeline.effective_tool_timeout == 5.0
