"""
Memory store.

Holds MemoryRecords by id and keeps active (non-superseded) records with an
embedding in a vector index for similarity search. Superseded records stay
in the store for audit and are only removed by an explicit expiry sweep.

Each agent chooses its own embedding model, so there is one index per
(agent_id, embedding width); a query only searches the index of its own
width.
"""

from typing import Iterable

from orchestrator.memory.models import MemoryRecord, MemoryType
from orchestrator.rag.vectorstore import VectorDocument, VectorStore


class MemoryStore:
    """
    In-process record store with vector indexes.

    Example:
        store = MemoryStore()
        store.put(record)
        hits = store.similar("agent-1", query_vector, limit=20)
    """

    def __init__(self):
        self._records: dict[str, MemoryRecord] = {}
        self._indexes: dict[tuple[str, int], VectorStore] = {}
        # Which index currently holds a record
        self._placement: dict[str, tuple[str, int]] = {}

    def _unindex(self, memory_id: str) -> None:
        key = self._placement.pop(memory_id, None)
        if key is not None:
            self._indexes[key].delete(memory_id)

    def put(self, record: MemoryRecord) -> None:
        """Insert or replace a record, keeping the indexes in sync."""
        self._records[record.id] = record
        if record.embedding is None or not record.is_active:
            self._unindex(record.id)
            return

        key = (record.agent_id, len(record.embedding))
        if self._placement.get(record.id) != key:
            self._unindex(record.id)
        self._indexes.setdefault(key, VectorStore()).add(VectorDocument(
            id=record.id,
            content=record.content,
            embedding=record.embedding,
            metadata={"agent_id": record.agent_id, "memory_type": record.memory_type.value},
        ))
        self._placement[record.id] = key

    def get(self, memory_id: str) -> MemoryRecord | None:
        return self._records.get(memory_id)

    def delete(self, memory_id: str) -> bool:
        """Physically delete a record."""
        if memory_id not in self._records:
            return False
        del self._records[memory_id]
        self._unindex(memory_id)
        return True

    def records(
        self,
        agent_id: str,
        memory_types: Iterable[MemoryType] | None = None,
        include_superseded: bool = False
    ) -> list[MemoryRecord]:
        """List an agent's records in insertion order."""
        types = set(memory_types) if memory_types is not None else None
        return [
            r for r in self._records.values()
            if r.agent_id == agent_id
            and (types is None or r.memory_type in types)
            and (include_superseded or r.is_active)
        ]

    def similar(
        self,
        agent_id: str,
        embedding: list[float],
        limit: int
    ) -> list[tuple[MemoryRecord, float]]:
        """Active records of an agent ordered by cosine similarity to `embedding`."""
        index = self._indexes.get((agent_id, len(embedding)))
        if index is None:
            return []
        documents = index.search(embedding, top_k=limit)
        return [(self._records[d.id], d.score or 0.0) for d in documents if d.id in self._records]

    def __len__(self) -> int:
        return len(self._records)
