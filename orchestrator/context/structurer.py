"""
Context structuring.

Formats the selection into one labeled block, one section per source in
priority order. Output depends only on the selection, never on the order
sources finished retrieving.
"""

from orchestrator.context.models import SECTION_TITLES, SOURCE_PRIORITY, ContextCandidate
from orchestrator.utils.tokens import estimate_tokens

HEADER = "# Context"


def structure(candidates: list[ContextCandidate]) -> str:
    """
    Render candidates as:

        # Context

        ## Agent Knowledge
        - first fragment
        - second fragment

        ## Related Documents
        - ...

    Returns:
        The block, or "" when there is nothing to render
    """
    if not candidates:
        return ""

    sections: dict = {}
    for candidate in sorted(candidates, key=lambda c: (SOURCE_PRIORITY[c.source], -c.score, c.candidate_id)):
        sections.setdefault(candidate.source, []).append(candidate)

    parts = [HEADER]
    for source, items in sections.items():
        lines = [f"## {SECTION_TITLES[source]}"]
        for item in items:
            content = item.content.strip().replace("\n", "\n  ")
            lines.append(f"- {content}")
        parts.append("\n".join(lines))

    return "\n\n".join(parts)


def header_tokens(sources) -> int:
    """Tokens the block spends on its title and one section header per source."""
    sources = set(sources)
    if not sources:
        return 0
    headers = [HEADER] + [f"## {SECTION_TITLES[s]}" for s in sorted(sources, key=SOURCE_PRIORITY.__getitem__)]
    return estimate_tokens("\n\n".join(headers))
