"""
Reasoning Pass
==============

An optional deliberation step before the main model call. It is enabled
per agent (`settings.reasoning_enabled`) and runs only when the message
looks complex enough.

Complexity score (0-1), sum of capped signals:
    length                      up to 0.25  (words / 200)
    multi-step connectives      0.1 each, up to 0.3  ("then", "after that", ...)
    analysis vocabulary         0.1 each, up to 0.3  ("compare", "why", ...)
    several questions           0.1 per extra "?", up to 0.2
    context pressure            up to 0.1   (context tokens / budget)

Style selection picks the prompt framing:
    diagnostic   errors, failures, "why doesn't ..."
    comparative  compare, versus, pros and cons
    procedural   how to, steps, plan
    analytical   everything else

The pass makes one model call asking for short JSON notes and appends them
to the prompt as a system message. Its tokens count towards the turn.
"""

import json
import re
from dataclasses import dataclass
from typing import Any

from orchestrator.llm.providers import ChatResponse

_CONNECTIVES = re.compile(r"\b(then|after that|afterwards|next|finally|first|second|also|and then|step)\b")
_ANALYSIS = re.compile(
    r"\b(why|compare|analy[sz]e|evaluate|trade-?offs?|explain|reason|impact|implications?|"
    r"pros|cons|versus|vs\.?|difference|strategy|plan|optimi[sz]e|debug|root cause)\b"
)
_DIAGNOSTIC = re.compile(r"\b(error|fail(s|ed|ing|ure)?|broken|bug|crash(es|ed)?|not working|doesn'?t work|issue|debug|root cause)\b")
_COMPARATIVE = re.compile(r"\b(compare|comparison|versus|vs\.?|better|worse|pros|cons|trade-?offs?|difference)\b")
_PROCEDURAL = re.compile(r"\b(how (do|can|should|to)|steps?|plan|guide|process|procedure|set ?up|install|migrate)\b")

STYLE_INSTRUCTIONS = {
    "diagnostic": "Identify the likely causes, how to confirm each, and the most probable fix.",
    "comparative": "List the options, the criteria that matter, and how each option scores.",
    "procedural": "Break the task into ordered steps with prerequisites and checks.",
    "analytical": "Identify the key facts, assumptions, and the conclusion they support.",
}

REASONING_PROMPT = (
    "Before answering, think about the user's request. {instruction} "
    "Respond with JSON only: {{\"key_points\": [..], \"approach\": \"..\", \"uncertainties\": [..]}}. "
    "Keep it brief; this is not the final answer."
)


@dataclass(frozen=True)
class ComplexityScore:
    score: float
    reason: str


def score_complexity(text: str, context_tokens: int = 0, token_budget: int = 0) -> ComplexityScore:
    """Heuristic complexity score in [0, 1] with a short explanation."""
    lowered = text.lower()
    parts: list[str] = []

    length = min(len(lowered.split()) / 200, 0.25)
    if length >= 0.05:
        parts.append("long message")

    connectives = min(len(_CONNECTIVES.findall(lowered)) * 0.1, 0.3)
    if connectives:
        parts.append("multi-step request")

    analysis = min(len(_ANALYSIS.findall(lowered)) * 0.1, 0.3)
    if analysis:
        parts.append("analysis vocabulary")

    questions = min(max(lowered.count("?") - 1, 0) * 0.1, 0.2)
    if questions:
        parts.append("several questions")

    pressure = min(context_tokens / token_budget, 1.0) * 0.1 if token_budget > 0 else 0.0

    score = min(length + connectives + analysis + questions + pressure, 1.0)
    return ComplexityScore(round(score, 4), ", ".join(parts) or "simple request")


def select_style(text: str) -> str:
    lowered = text.lower()
    if _DIAGNOSTIC.search(lowered):
        return "diagnostic"
    if _COMPARATIVE.search(lowered):
        return "comparative"
    if _PROCEDURAL.search(lowered):
        return "procedural"
    return "analytical"


def reasoning_messages(text: str, style: str) -> list[dict[str, Any]]:
    """Messages for the deliberation call."""
    return [
        {"role": "system", "content": REASONING_PROMPT.format(instruction=STYLE_INSTRUCTIONS[style])},
        {"role": "user", "content": text},
    ]


def parse_notes(response: ChatResponse) -> dict[str, Any]:
    """
    Parse the model's JSON notes, tolerating code fences and prose around
    the object. Unparseable output is kept as free text.
    """
    raw = response.text.strip()
    match = re.search(r"\{.*\}", raw, re.DOTALL)
    if match:
        try:
            notes = json.loads(match.group(0))
            if isinstance(notes, dict):
                return notes
        except json.JSONDecodeError:
            pass
    return {"notes": raw}


def format_notes(notes: dict[str, Any], style: str) -> str:
    """Render notes as a prompt block."""
    lines = [f"## Reasoning Notes ({style})"]
    for key in ("key_points", "approach", "uncertainties", "notes"):
        value = notes.get(key)
        if not value:
            continue
        title = key.replace("_", " ").capitalize()
        if isinstance(value, list):
            lines.append(f"{title}:")
            lines.extend(f"- {item}" for item in value)
        else:
            lines.append(f"{title}: {value}")
    return "\n".join(lines) if len(lines) > 1 else ""
