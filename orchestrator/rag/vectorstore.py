"""
Vector Store
============

An in-process vector index with cosine similarity search, used as the
vector-search collaborator of the context engine and as the index behind the
memory store.

Storage is in memory; pass a `storage_path` to persist to two files:
- documents.json: Document content and metadata
- embeddings.npy: Numpy array of embeddings

Cosine Similarity:
    cos(A, B) = (A · B) / (||A|| * ||B||)
    - 1 means identical direction (most similar)
    - 0 means unrelated
    - -1 means opposite direction
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np

from orchestrator.utils.logger import Logger

logger = Logger("VectorStore")


def cosine_similarity(a: list[float] | np.ndarray, b: list[float] | np.ndarray) -> float:
    """Cosine similarity of two vectors (0.0 if either is all zeros)."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


@dataclass
class VectorDocument:
    """
    A document stored in the vector store.

    Attributes:
        id: Unique identifier for the document
        content: The original text content
        embedding: The vector embedding
        metadata: Filterable attributes (agent_id, workspace, source, ...)
        score: Similarity score (set during search)
    """
    id: str
    content: str
    embedding: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)
    score: float | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {"id": self.id, "content": self.content, "metadata": self.metadata}


class VectorStore:
    """
    Cosine similarity index over VectorDocuments.

    Example:
        store = VectorStore()
        store.add(VectorDocument(
            id="doc-1",
            content="Refunds are processed within 5 business days",
            embedding=[0.1, -0.2, ...],
            metadata={"agent_id": "agent-1"}
        ))
        results = store.search(query_embedding, top_k=5, filter_metadata={"agent_id": "agent-1"})
    """

    def __init__(self, storage_path: Path | None = None):
        """
        Args:
            storage_path: Directory for persistence (memory only if None)
        """
        self.storage_path = storage_path
        self._documents: dict[str, VectorDocument] = {}
        self._ids: list[str] = []
        self._embeddings: np.ndarray | None = None

        if storage_path is not None:
            storage_path.mkdir(parents=True, exist_ok=True)
            self._load()

        logger.debug(f"Vector store initialized with {len(self._documents)} documents")

    @property
    def _documents_file(self) -> Path:
        return self.storage_path / "documents.json"

    @property
    def _embeddings_file(self) -> Path:
        return self.storage_path / "embeddings.npy"

    def _load(self) -> None:
        """Load existing data from disk."""
        if not self._documents_file.exists() or not self._embeddings_file.exists():
            return

        with open(self._documents_file) as f:
            docs_data = json.load(f)
        embeddings = np.load(self._embeddings_file)

        for row, data in zip(embeddings, docs_data):
            self._documents[data["id"]] = VectorDocument(
                id=data["id"],
                content=data["content"],
                embedding=row.tolist(),
                metadata=data.get("metadata", {}),
            )
        self._rebuild_index()
        logger.debug(f"Loaded {len(self._documents)} documents from disk")

    def save(self) -> None:
        """Write data to disk (no-op for memory-only stores)."""
        if self.storage_path is None:
            return

        with open(self._documents_file, "w") as f:
            json.dump([self._documents[i].to_dict() for i in self._ids], f)
        if self._embeddings is not None:
            np.save(self._embeddings_file, self._embeddings)
        elif self._embeddings_file.exists():
            self._embeddings_file.unlink()

        logger.debug(f"Saved {len(self._documents)} documents to disk")

    def _rebuild_index(self) -> None:
        self._ids = list(self._documents)
        if not self._ids:
            self._embeddings = None
            return
        self._embeddings = np.array([self._documents[i].embedding for i in self._ids], dtype=float)

    def add(self, document: VectorDocument) -> None:
        """
        Add a document to the store.

        If a document with the same ID exists, it is replaced.
        """
        if self._embeddings is not None and len(document.embedding) != self._embeddings.shape[1]:
            raise ValueError(
                f"Embedding dimension {len(document.embedding)} does not match "
                f"store dimension {self._embeddings.shape[1]}"
            )

        vector = np.asarray(document.embedding, dtype=float)
        if document.id in self._documents:
            self._documents[document.id] = document
            self._embeddings[self._ids.index(document.id)] = vector
            return

        self._documents[document.id] = document
        self._ids.append(document.id)
        if self._embeddings is None:
            self._embeddings = vector.reshape(1, -1)
        else:
            self._embeddings = np.vstack([self._embeddings, vector])

    def add_batch(self, documents: list[VectorDocument]) -> None:
        """Add multiple documents, then persist once."""
        for doc in documents:
            self.add(doc)
        self.save()
        logger.debug(f"Added batch of {len(documents)} documents")

    def search(
        self,
        query_vector: list[float],
        top_k: int = 10,
        filter_metadata: dict[str, Any] | None = None,
        min_score: float | None = None
    ) -> list[VectorDocument]:
        """
        Search for similar documents.

        Args:
            query_vector: The query embedding
            top_k: Number of results to return
            filter_metadata: Exact-match metadata filters; None values are ignored
            min_score: Drop results below this similarity

        Returns:
            Copies of the matching documents with `score` set, best first
        """
        if self._embeddings is None or top_k <= 0:
            return []

        query = np.asarray(query_vector, dtype=float)
        query_norm = np.linalg.norm(query)
        if query_norm == 0:
            return []

        doc_norms = np.linalg.norm(self._embeddings, axis=1)
        doc_norms = np.where(doc_norms == 0, 1, doc_norms)
        similarities = np.dot(self._embeddings, query) / (doc_norms * query_norm)

        results: list[tuple[str, float]] = []
        for doc_id, score in zip(self._ids, similarities):
            doc = self._documents[doc_id]
            if filter_metadata and not all(
                doc.metadata.get(k) == v for k, v in filter_metadata.items() if v is not None
            ):
                continue
            if min_score is not None and score < min_score:
                continue
            results.append((doc_id, float(score)))

        # Stable on ties: insertion order
        results.sort(key=lambda x: x[1], reverse=True)

        output = []
        for doc_id, score in results[:top_k]:
            doc = self._documents[doc_id]
            output.append(VectorDocument(
                id=doc.id,
                content=doc.content,
                embedding=doc.embedding,
                metadata=doc.metadata,
                score=score,
            ))
        return output

    def delete(self, doc_id: str) -> bool:
        """
        Delete a document by ID.

        Returns:
            True if the document was found and deleted
        """
        if doc_id not in self._documents:
            return False
        del self._documents[doc_id]
        self._rebuild_index()
        self.save()
        return True

    def get(self, doc_id: str) -> VectorDocument | None:
        """Get a document by ID."""
        return self._documents.get(doc_id)

    def clear(self) -> None:
        """Clear all documents from the store."""
        self._documents.clear()
        self._rebuild_index()
        self.save()
        logger.info("Vector store cleared")

    def __len__(self) -> int:
        return len(self._documents)
