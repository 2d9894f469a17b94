"""
Token estimation.

Budgets are enforced on estimates, not on a vendor tokenizer: one token is
taken as four characters, rounded up. The estimate only needs to be stable
and monotonic in text length.
"""

import json
import math
from typing import Any

CHARS_PER_TOKEN = 4

# Fixed per-message overhead for role markers and separators
MESSAGE_OVERHEAD_TOKENS = 4


def estimate_tokens(text: str) -> int:
    """Estimate the token count of `text`."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_to_tokens(text: str, max_tokens: int, marker: str = " …") -> str:
    """
    Cut `text` so that estimate_tokens(result) <= max_tokens.

    A marker is appended when there is room for it.
    """
    if max_tokens <= 0:
        return ""
    if estimate_tokens(text) <= max_tokens:
        return text

    max_chars = max_tokens * CHARS_PER_TOKEN
    if max_chars <= len(marker):
        return text[:max_chars]
    return text[: max_chars - len(marker)].rstrip() + marker


def estimate_message_tokens(messages: list[dict[str, Any]]) -> int:
    """Estimate the prompt size of a list of OpenAI-format messages."""
    total = 0
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            total += estimate_tokens(content)
        elif content is not None:
            total += estimate_tokens(json.dumps(content, default=str))
        if message.get("tool_calls"):
            total += estimate_tokens(json.dumps(message["tool_calls"], default=str))
        total += MESSAGE_OVERHEAD_TOKENS
    return total
