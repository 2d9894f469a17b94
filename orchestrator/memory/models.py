"""
Memory data model.

Records reference each other through `related_memories`, a set of ids that
may form cycles. Nothing holds another record directly; traversal goes
through the store with an explicit depth bound.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryType(str, Enum):
    """Kinds of memory."""
    EPISODIC = "episodic"      # what happened, scoped to a conversation
    SEMANTIC = "semantic"      # what is known, cross-conversation
    PROCEDURAL = "procedural"  # how to do things
    WORKING = "working"        # short-lived scratch notes


# Importance lost per day of elapsed time (exponential decay rate)
DEFAULT_DECAY_RATES: dict[MemoryType, float] = {
    MemoryType.EPISODIC: 0.1,
    MemoryType.SEMANTIC: 0.02,
    MemoryType.PROCEDURAL: 0.01,
    MemoryType.WORKING: 0.5,
}


@dataclass
class MemoryRecord:
    """
    One stored memory.

    Attributes:
        id: Unique id
        agent_id: Owning agent
        memory_type: Kind of memory
        content: The remembered text
        embedding: Vector of the content (dimension fixed by the embedding model)
        importance: 0-1, reduced by decay
        decay_rate: Per-day exponential decay rate
        access_count: Successful retrieval hits
        related_memories: Ids of related records (may be cyclic)
        created_at / last_accessed / expires_at: Timestamps (UTC)
        conversation_id: Scope for episodic memories
        metadata: Free-form attributes
        superseded_by: Id of the consolidated record that replaced this one
        eligible_for_deletion: Set by decay, acted on by the expiry sweep
    """
    agent_id: str
    content: str
    memory_type: MemoryType = MemoryType.SEMANTIC
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    embedding: list[float] | None = None
    importance: float = 0.5
    decay_rate: float | None = None
    access_count: int = 0
    related_memories: set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=utcnow)
    last_accessed: datetime | None = None
    expires_at: datetime | None = None
    conversation_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    superseded_by: str | None = None
    eligible_for_deletion: bool = False

    @property
    def is_active(self) -> bool:
        return self.superseded_by is None

    def to_dict(self) -> dict[str, Any]:
        """Serialize without the embedding."""
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "memory_type": self.memory_type.value,
            "content": self.content,
            "importance": round(self.importance, 4),
            "decay_rate": self.decay_rate,
            "access_count": self.access_count,
            "related_memories": sorted(self.related_memories),
            "created_at": self.created_at.isoformat(),
            "last_accessed": self.last_accessed.isoformat() if self.last_accessed else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "conversation_id": self.conversation_id,
            "metadata": self.metadata,
            "superseded_by": self.superseded_by,
        }


@dataclass
class MemoryQuery:
    """
    A retrieval request.

    Either `text` or `embedding` must be given; `search` fills in the
    embedding from the text.
    """
    agent_id: str
    text: str = ""
    embedding: list[float] | None = None
    memory_types: tuple[MemoryType, ...] = (MemoryType.EPISODIC, MemoryType.SEMANTIC)
    max_results: int = 5
    min_similarity: float | None = None
    conversation_id: str | None = None  # scopes episodic memories only


@dataclass
class MemorySearchResult:
    """A retrieved record with its similarity and combined ranking score."""
    record: MemoryRecord
    similarity: float
    score: float


@dataclass
class ConsolidationCriteria:
    """Which memories to consider for merging."""
    agent_id: str
    similarity_threshold: float | None = None
    memory_types: tuple[MemoryType, ...] = (MemoryType.EPISODIC, MemoryType.SEMANTIC)
    min_cluster_size: int = 2


@dataclass
class ConsolidationResult:
    """Outcome of a consolidation pass."""
    clusters_found: int = 0
    memories_merged: int = 0
    created_ids: list[str] = field(default_factory=list)
    superseded_ids: list[str] = field(default_factory=list)


@dataclass
class DecayResult:
    """Outcome of a decay pass."""
    processed: int = 0
    decayed: int = 0
    eligible_for_deletion: list[str] = field(default_factory=list)
