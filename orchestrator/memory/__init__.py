"""
Memory System
=============

Long-term memory across turns, split by kind:

1. EPISODIC: what happened, scoped to a conversation
2. SEMANTIC: what is known, shared across conversations
3. PROCEDURAL / WORKING: stored and decayed the same way, not recalled by
   default

This module provides a Facade: MemoryManager coordinates the record store,
embedding calls, ranking, consolidation and decay behind one interface.

Usage:
    from orchestrator.memory import MemoryManager

    memory = MemoryManager(embeddings)

    # Store a fact (embedding computed through the LLM router)
    memory_id = await memory.store(MemoryRecord(agent_id="agent-1", content="User prefers metric units"))

    # Recall relevant memories for a query
    results = await memory.search("which units should I use?", agent_id="agent-1")

    # Periodic maintenance
    await memory.consolidate(ConsolidationCriteria(agent_id="agent-1"))
    await memory.apply_decay("agent-1", timedelta(days=1))
"""

from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable

from orchestrator.memory.consolidation import find_clusters, merge_cluster
from orchestrator.memory.decay import decayed_importance, rank_score, recency_score
from orchestrator.memory.models import (
    DEFAULT_DECAY_RATES,
    ConsolidationCriteria,
    ConsolidationResult,
    DecayResult,
    MemoryQuery,
    MemoryRecord,
    MemorySearchResult,
    MemoryType,
    utcnow,
)
from orchestrator.memory.short_term import ConversationStore, Message
from orchestrator.memory.store import MemoryStore
from orchestrator.rag.embeddings import EmbeddingGenerator
from orchestrator.utils.config import MemorySettings, get_config
from orchestrator.utils.logger import Logger

logger = Logger("Memory")


class MemoryManager:
    """
    Facade for the memory system.

    Example:
        memory = MemoryManager(embeddings)

        await memory.store(MemoryRecord(agent_id="a1", content="Deploys happen on Tuesdays"))
        results = await memory.search("when do we deploy?", "a1")
        for result in results:
            print(result.similarity, result.record.content)
    """

    def __init__(
        self,
        embeddings: EmbeddingGenerator,
        store: MemoryStore | None = None,
        settings: MemorySettings | None = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Args:
            embeddings: Embedding generator (LLM router backed)
            store: Record store (a fresh in-memory one if None)
            settings: Memory settings (from config if None)
            clock: Current time, injectable for tests
        """
        self.embeddings = embeddings
        self.records = store or MemoryStore()
        self.settings = settings or get_config().memory
        self._clock = clock

    # ==========================================================================
    # Store / Retrieve
    # ==========================================================================

    async def store(self, record: MemoryRecord, context: Any = None) -> str:
        """
        Store a memory, filling defaults.

        - decay_rate defaults per memory type
        - the embedding is computed if absent
        - access_count and last_accessed are left untouched

        Returns:
            The record id
        """
        if not record.content.strip():
            raise ValueError("Memory content must not be empty")

        if record.decay_rate is None:
            record.decay_rate = DEFAULT_DECAY_RATES[record.memory_type]
        record.importance = min(max(record.importance, 0.0), 1.0)

        if record.embedding is None:
            record.embedding = await self.embeddings.generate(record.agent_id, record.content, context=context)

        self.records.put(record)
        logger.debug(
            f"Stored {record.memory_type.value} memory {record.id}",
            {"agent_id": record.agent_id, "importance": record.importance}
        )
        return record.id

    async def retrieve(self, query: MemoryQuery, context: Any = None) -> list[MemorySearchResult]:
        """
        Retrieve memories ranked by similarity, importance and recency.

        An empty result is valid. Every returned record has its
        access_count incremented and last_accessed set.
        """
        if query.max_results <= 0:
            return []

        embedding = query.embedding
        if embedding is None:
            if not query.text.strip():
                return []
            embedding = await self.embeddings.generate(query.agent_id, query.text, context=context)

        min_similarity = self.settings.min_similarity if query.min_similarity is None else query.min_similarity
        types = set(query.memory_types)
        now = self._clock()

        results: list[MemorySearchResult] = []
        for record, similarity in self.records.similar(query.agent_id, embedding, limit=len(self.records)):
            if record.memory_type not in types:
                continue
            if (
                record.memory_type == MemoryType.EPISODIC
                and query.conversation_id
                and record.conversation_id != query.conversation_id
            ):
                continue
            if similarity < min_similarity:
                continue
            if record.expires_at is not None and record.expires_at <= now:
                continue
            score = rank_score(similarity, record.importance, recency_score(record.created_at, now))
            results.append(MemorySearchResult(record=record, similarity=similarity, score=score))

        results.sort(key=lambda r: r.score, reverse=True)
        results = results[:query.max_results]

        for result in results:
            result.record.access_count += 1
            result.record.last_accessed = now

        logger.debug(f"Retrieved {len(results)} memories", {"agent_id": query.agent_id})
        return results

    async def search(
        self,
        text: str,
        agent_id: str,
        options: dict[str, Any] | None = None,
        context: Any = None
    ) -> list[MemorySearchResult]:
        """
        Embed `text` and retrieve.

        Args:
            options: Optional keys: types, max_results, min_similarity,
                conversation_id
        """
        options = options or {}
        types = options.get("types") or (MemoryType.EPISODIC, MemoryType.SEMANTIC)
        query = MemoryQuery(
            agent_id=agent_id,
            text=text,
            memory_types=tuple(MemoryType(t) for t in types),
            max_results=options.get("max_results", self.settings.max_results),
            min_similarity=options.get("min_similarity"),
            conversation_id=options.get("conversation_id"),
        )
        return await self.retrieve(query, context)

    # ==========================================================================
    # Maintenance
    # ==========================================================================

    async def consolidate(self, criteria: ConsolidationCriteria) -> ConsolidationResult:
        """
        Merge clusters of near-duplicate memories.

        Originals are marked superseded by the merged record and drop out of
        retrieval, but stay in the store.
        """
        threshold = criteria.similarity_threshold
        if threshold is None:
            threshold = self.settings.consolidation_threshold
        candidates = self.records.records(criteria.agent_id, criteria.memory_types)
        clusters = find_clusters(candidates, threshold, max(criteria.min_cluster_size, 2))

        result = ConsolidationResult(clusters_found=len(clusters))
        for cluster in clusters:
            merged = merge_cluster(cluster)
            self.records.put(merged)
            for record in cluster:
                record.superseded_by = merged.id
                self.records.put(record)
            result.created_ids.append(merged.id)
            result.superseded_ids.extend(r.id for r in cluster)
            result.memories_merged += len(cluster)

        logger.info(
            f"Consolidated {result.memories_merged} memories into {len(result.created_ids)}",
            {"agent_id": criteria.agent_id, "threshold": threshold}
        )
        return result

    async def apply_decay(self, agent_id: str, elapsed: timedelta | float) -> DecayResult:
        """
        Reduce importance exponentially by decay_rate * elapsed days.

        Records below the importance floor whose expiry (if set) has passed
        are flagged for deletion; `sweep_expired` deletes them.
        """
        now = self._clock()
        result = DecayResult()

        for record in self.records.records(agent_id, include_superseded=True):
            result.processed += 1
            rate = record.decay_rate if record.decay_rate is not None else DEFAULT_DECAY_RATES[record.memory_type]
            updated = decayed_importance(record.importance, rate, elapsed)
            if updated < record.importance:
                result.decayed += 1
            record.importance = updated

            expired = record.expires_at is None or record.expires_at <= now
            if record.importance < self.settings.importance_floor and expired:
                record.eligible_for_deletion = True
                result.eligible_for_deletion.append(record.id)

        logger.debug(
            f"Decayed {result.decayed}/{result.processed} memories",
            {"agent_id": agent_id, "eligible": len(result.eligible_for_deletion)}
        )
        return result

    async def sweep_expired(self, agent_id: str) -> int:
        """Physically delete records flagged by decay. Returns the count."""
        doomed = [
            r.id for r in self.records.records(agent_id, include_superseded=True)
            if r.eligible_for_deletion
        ]
        for memory_id in doomed:
            self.records.delete(memory_id)
        if doomed:
            logger.info(f"Swept {len(doomed)} expired memories", {"agent_id": agent_id})
        return len(doomed)

    def related(self, memory_id: str, depth: int = 1) -> list[MemoryRecord]:
        """
        Records reachable through `related_memories` within `depth` hops.

        Breadth-first with a visited set, so cycles terminate. The start
        record is not included; dangling ids are skipped.
        """
        start = self.records.get(memory_id)
        if start is None or depth <= 0:
            return []

        visited = {memory_id}
        found: list[MemoryRecord] = []
        queue = deque((rid, 1) for rid in sorted(start.related_memories))

        while queue:
            rid, level = queue.popleft()
            if rid in visited:
                continue
            visited.add(rid)
            record = self.records.get(rid)
            if record is None:
                continue
            found.append(record)
            if level < depth:
                queue.extend((nid, level + 1) for nid in sorted(record.related_memories) if nid not in visited)

        return found

    async def remember_turn(
        self,
        agent_id: str,
        conversation_id: str | None,
        user_text: str,
        assistant_text: str,
        context: Any = None
    ) -> str | None:
        """
        Store a finished turn as an episodic memory.

        Returns:
            The new record id, or None when disabled or nothing to store
        """
        if not self.settings.store_turns or not user_text.strip() or not assistant_text.strip():
            return None

        return await self.store(
            MemoryRecord(
                agent_id=agent_id,
                content=f"User: {user_text}\nAssistant: {assistant_text}",
                memory_type=MemoryType.EPISODIC,
                importance=self.settings.default_importance,
                conversation_id=conversation_id,
                metadata={"source": "turn"},
            ),
            context,
        )

    def format_for_context(self, results: list[MemorySearchResult]) -> str:
        """
        Format retrieved memories as a prompt block.

        Returns:
            Formatted string, or "" for no results
        """
        if not results:
            return ""
        lines = ["## Relevant Memories"]
        for result in results:
            lines.append(f"- ({result.record.memory_type.value}) {result.record.content}")
        return "\n".join(lines)


__all__ = [
    "ConsolidationCriteria",
    "ConsolidationResult",
    "ConversationStore",
    "DecayResult",
    "MemoryManager",
    "MemoryQuery",
    "MemoryRecord",
    "MemorySearchResult",
    "MemoryStore",
    "MemoryType",
    "Message",
]
