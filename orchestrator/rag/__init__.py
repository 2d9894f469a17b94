"""
Retrieval
=========

Vector search over indexed knowledge, used by the context engine and the
memory store.

Components:
- embeddings.py: Cached embedding calls through the LLM router
- vectorstore.py: Cosine similarity index (numpy)
- indexer.py: Chunk and index knowledge documents

How it works:
1. During indexing: Documents are chunked, embedded and stored
2. During a turn: The query is embedded and similar chunks are found
3. Retrieved chunks become context candidates
"""

from orchestrator.rag.embeddings import EmbeddingGenerator
from orchestrator.rag.indexer import KnowledgeIndexer, chunk_text
from orchestrator.rag.vectorstore import VectorDocument, VectorStore, cosine_similarity

__all__ = [
    "EmbeddingGenerator",
    "KnowledgeIndexer",
    "VectorDocument",
    "VectorStore",
    "chunk_text",
    "cosine_similarity",
]
