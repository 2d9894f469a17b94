"""
Context Sources
===============

Each source turns a ContextRequest into candidates with source-local
relevance scores in [0, 1]:

- StaticSource: fixed system / agent knowledge / workspace entries
- ChatHistorySource: conversation turns older than the live history window,
  scored by keyword overlap blended with recency
- VectorSearchSource: cosine similarity against indexed knowledge
- ToolCatalogSource: the agent's tools, scored by keyword overlap

Sources are queried concurrently by the engine; a source that raises or
times out only loses its own candidates.
"""

import re
from typing import Any

from orchestrator.context.models import ContextCandidate, ContextRequest, ContextSourceType
from orchestrator.memory.short_term import ConversationStore
from orchestrator.rag.embeddings import EmbeddingGenerator
from orchestrator.rag.vectorstore import VectorStore
from orchestrator.tools import ToolBackend

_WORD = re.compile(r"[a-z0-9][a-z0-9_'-]+")

STOPWORDS = frozenset({
    "the", "and", "for", "are", "but", "not", "you", "your", "with", "this", "that",
    "from", "have", "has", "was", "were", "what", "when", "where", "which", "who",
    "how", "can", "could", "would", "should", "will", "about", "into", "there",
    "their", "them", "they", "then", "than", "its", "our", "out", "all", "any",
    "please", "just", "also", "some", "does", "did", "let", "get",
})


def keywords(text: str) -> set[str]:
    """Lowercase content words of length >= 3."""
    return {w for w in _WORD.findall(text.lower()) if len(w) >= 3 and w not in STOPWORDS}


def keyword_overlap(query: str, text: str) -> float:
    """Fraction of the query's keywords present in `text`."""
    query_words = keywords(query)
    if not query_words:
        return 0.0
    return len(query_words & keywords(text)) / len(query_words)


class ContextSource:
    """Base class for candidate producers."""

    source_type: ContextSourceType

    async def retrieve(self, request: ContextRequest, context: Any = None) -> list[ContextCandidate]:  # pragma: no cover
        raise NotImplementedError


class StaticSource(ContextSource):
    """
    Fixed entries for one source type.

    Entries are dicts with `content` and optional `agent_id`, `workspace_id`,
    `relevance`, `pinned`, `id`. Entries scoped to another agent or
    workspace are skipped. Without an explicit relevance, entries score by
    keyword overlap with a floor, so relevant knowledge ranks first but
    unrelated knowledge is still eligible.
    """

    RELEVANCE_FLOOR = 0.2

    def __init__(self, source_type: ContextSourceType, entries: list[dict[str, Any]] | None = None):
        self.source_type = source_type
        self.entries = list(entries or [])

    def add(self, content: str, **attributes: Any) -> None:
        self.entries.append({"content": content, **attributes})

    async def retrieve(self, request: ContextRequest, context: Any = None) -> list[ContextCandidate]:
        candidates = []
        for index, entry in enumerate(self.entries):
            if entry.get("agent_id") not in (None, request.agent_id):
                continue
            if entry.get("workspace_id") not in (None, request.workspace_id):
                continue
            content = entry["content"]
            relevance = entry.get("relevance")
            if relevance is None:
                if self.source_type == ContextSourceType.SYSTEM:
                    relevance = 1.0
                else:
                    relevance = max(keyword_overlap(request.query, content), self.RELEVANCE_FLOOR)
            candidates.append(ContextCandidate(
                source=self.source_type,
                content=content,
                relevance=relevance,
                candidate_id=entry.get("id") or f"{self.source_type.value}:{index}",
                pinned=entry.get("pinned", self.source_type == ContextSourceType.SYSTEM),
            ))
        return candidates


class ChatHistorySource(ContextSource):
    """
    Older conversation turns that fell out of the live history window.

    relevance = 0.7 * keyword overlap + 0.3 * recency (newest older turn = 1)
    """

    source_type = ContextSourceType.CHAT_HISTORY

    def __init__(self, conversations: ConversationStore, overlap_weight: float = 0.7):
        self.conversations = conversations
        self.overlap_weight = overlap_weight

    async def retrieve(self, request: ContextRequest, context: Any = None) -> list[ContextCandidate]:
        older = self.conversations.get_older(request.conversation_id, request.live_history_window)
        candidates = []
        for position, message in enumerate(older):
            if message.role not in ("user", "assistant") or not message.content.strip():
                continue
            recency = (position + 1) / len(older)
            overlap = keyword_overlap(request.query, message.content)
            candidates.append(ContextCandidate(
                source=self.source_type,
                content=f"{message.role}: {message.content}",
                relevance=self.overlap_weight * overlap + (1 - self.overlap_weight) * recency,
                candidate_id=f"chat_history:{request.conversation_id}:{position}",
                metadata={"timestamp": message.timestamp.isoformat()},
            ))
        return candidates


class VectorSearchSource(ContextSource):
    """Semantic search over the agent's indexed knowledge."""

    source_type = ContextSourceType.VECTOR_SEARCH

    def __init__(self, embeddings: EmbeddingGenerator, vectorstore: VectorStore, top_k: int = 10):
        self.embeddings = embeddings
        self.vectorstore = vectorstore
        self.top_k = top_k

    async def retrieve(self, request: ContextRequest, context: Any = None) -> list[ContextCandidate]:
        if not request.query.strip() or len(self.vectorstore) == 0:
            return []

        query_vector = await self.embeddings.generate(request.agent_id, request.query, context=context)
        documents = self.vectorstore.search(
            query_vector,
            top_k=self.top_k,
            filter_metadata={"agent_id": request.agent_id},
            min_score=0.0,
        )
        return [
            ContextCandidate(
                source=self.source_type,
                content=doc.content,
                relevance=doc.score or 0.0,
                candidate_id=f"vector_search:{doc.id}",
                metadata={k: v for k, v in doc.metadata.items() if v is not None},
            )
            for doc in documents
        ]


class ToolCatalogSource(ContextSource):
    """
    A short catalog of the agent's tools, so the model knows what it can do
    even on turns where tool definitions are not attached.
    """

    source_type = ContextSourceType.TOOL_CATALOG

    def __init__(self, backend: ToolBackend, max_tools: int = 20):
        self.backend = backend
        self.max_tools = max_tools

    async def retrieve(self, request: ContextRequest, context: Any = None) -> list[ContextCandidate]:
        tools = await self.backend.list_tools(request.agent_id, request.user_id)
        candidates = []
        for tool in tools[:self.max_tools]:
            text = f"{tool.name}: {tool.description}"
            candidates.append(ContextCandidate(
                source=self.source_type,
                content=text,
                relevance=keyword_overlap(request.query, f"{tool.name.replace('_', ' ')} {tool.description}"),
                candidate_id=f"tool_catalog:{tool.name}",
            ))
        return candidates
