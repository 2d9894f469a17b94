"""
Memory consolidation.

Near-duplicate memories (cosine similarity at or above a threshold) are
grouped into clusters and merged into one new record:

- content and type of the most important member
- importance = max over the cluster
- access_count = sum over the cluster
- embedding = mean of the members' embeddings
- related_memories = union of the members' relations, minus the cluster

Members are marked `superseded_by` the merged record; nothing is deleted.
"""

import numpy as np

from orchestrator.memory.models import MemoryRecord
from orchestrator.rag.vectorstore import cosine_similarity


def find_clusters(records: list[MemoryRecord], threshold: float, min_size: int = 2) -> list[list[MemoryRecord]]:
    """
    Greedy clustering: each unassigned record (most important first) seeds a
    cluster and absorbs every unassigned record similar enough to the seed.
    """
    candidates = sorted(
        (r for r in records if r.embedding is not None and r.is_active),
        key=lambda r: (-r.importance, r.created_at),
    )
    assigned: set[str] = set()
    clusters: list[list[MemoryRecord]] = []

    for seed in candidates:
        if seed.id in assigned:
            continue
        cluster = [seed]
        for other in candidates:
            if other.id == seed.id or other.id in assigned:
                continue
            if len(other.embedding) != len(seed.embedding):
                continue
            if cosine_similarity(seed.embedding, other.embedding) >= threshold:
                cluster.append(other)
        if len(cluster) >= min_size:
            assigned.update(r.id for r in cluster)
            clusters.append(cluster)

    return clusters


def merge_cluster(cluster: list[MemoryRecord]) -> MemoryRecord:
    """Build the consolidated record for a cluster (members are not modified)."""
    lead = max(cluster, key=lambda r: (r.importance, r.access_count))
    member_ids = {r.id for r in cluster}

    related: set[str] = set()
    for record in cluster:
        related |= record.related_memories
    related -= member_ids

    conversations = {r.conversation_id for r in cluster}
    embedding = np.mean(np.array([r.embedding for r in cluster], dtype=float), axis=0).tolist()

    return MemoryRecord(
        agent_id=lead.agent_id,
        content=lead.content,
        memory_type=lead.memory_type,
        embedding=embedding,
        importance=max(r.importance for r in cluster),
        decay_rate=lead.decay_rate,
        access_count=sum(r.access_count for r in cluster),
        related_memories=related,
        created_at=min(r.created_at for r in cluster),
        last_accessed=max((r.last_accessed for r in cluster if r.last_accessed), default=None),
        conversation_id=conversations.pop() if len(conversations) == 1 else None,
        metadata={**lead.metadata, "consolidated_from": sorted(member_ids)},
    )
