"""
Knowledge Indexer
=================

Indexes agent knowledge documents into the vector store so the context
engine's vector-search source can find them.

The indexer:
1. Splits each document into paragraph-sized chunks
2. Generates embeddings for the chunks in one batch
3. Stores them with agent/document metadata

Chunk ids are derived from the document id and chunk position, so
re-indexing a document replaces its chunks instead of duplicating them.
"""

import re
from typing import Any

from orchestrator.rag.embeddings import EmbeddingGenerator
from orchestrator.rag.vectorstore import VectorDocument, VectorStore
from orchestrator.utils.logger import Logger

logger = Logger("Indexer")


def chunk_text(text: str, max_chars: int = 1200, min_chars: int = 20) -> list[str]:
    """
    Split text into chunks on blank lines, packing paragraphs up to max_chars.

    Paragraphs longer than max_chars are split on sentence boundaries, then
    hard-cut if a single sentence is still too long.
    """
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text) if p.strip()]
    pieces: list[str] = []
    for paragraph in paragraphs:
        if len(paragraph) <= max_chars:
            pieces.append(paragraph)
            continue
        for sentence in re.split(r"(?<=[.!?])\s+", paragraph):
            while len(sentence) > max_chars:
                pieces.append(sentence[:max_chars])
                sentence = sentence[max_chars:]
            if sentence:
                pieces.append(sentence)

    chunks: list[str] = []
    current = ""
    for piece in pieces:
        candidate = f"{current}\n\n{piece}" if current else piece
        if len(candidate) <= max_chars:
            current = candidate
        else:
            chunks.append(current)
            current = piece
    if current:
        chunks.append(current)

    return [c for c in chunks if len(c) >= min_chars]


class KnowledgeIndexer:
    """
    Indexes knowledge documents for vector search.

    Example:
        indexer = KnowledgeIndexer(embeddings=generator, vectorstore=store)
        count = await indexer.index_document(
            agent_id="agent-1",
            document_id="refund-policy",
            text=policy_text,
            metadata={"title": "Refund policy"}
        )
    """

    def __init__(
        self,
        embeddings: EmbeddingGenerator,
        vectorstore: VectorStore,
        max_chunk_chars: int = 1200,
        min_chunk_chars: int = 20
    ):
        """
        Args:
            embeddings: Embedding generator for creating vectors
            vectorstore: Vector store receiving the chunks
            max_chunk_chars: Upper bound on chunk size
            min_chunk_chars: Chunks shorter than this are skipped
        """
        self.embeddings = embeddings
        self.vectorstore = vectorstore
        self.max_chunk_chars = max_chunk_chars
        self.min_chunk_chars = min_chunk_chars

    async def index_document(
        self,
        agent_id: str,
        document_id: str,
        text: str,
        metadata: dict[str, Any] | None = None,
        workspace_id: str | None = None
    ) -> int:
        """
        Index one document for an agent.

        Returns:
            Number of chunks indexed
        """
        chunks = chunk_text(text, self.max_chunk_chars, self.min_chunk_chars)
        if not chunks:
            logger.debug(f"No indexable content in document {document_id}")
            return 0

        vectors = await self.embeddings.generate_batch(agent_id, chunks)

        documents = []
        for position, (chunk, vector) in enumerate(zip(chunks, vectors)):
            documents.append(VectorDocument(
                id=f"{agent_id}:{document_id}:{position}",
                content=chunk,
                embedding=vector,
                metadata={
                    **(metadata or {}),
                    "agent_id": agent_id,
                    "workspace_id": workspace_id,
                    "document_id": document_id,
                    "chunk": position,
                },
            ))

        self.vectorstore.add_batch(documents)
        logger.info(f"Indexed {len(documents)} chunks from document {document_id}")
        return len(documents)

    async def index_multiple(self, agent_id: str, documents: list[dict[str, Any]]) -> dict[str, int]:
        """
        Index several documents.

        Args:
            agent_id: Owning agent
            documents: Dicts with 'id' and 'text' (optional 'metadata')

        Returns:
            Dict mapping document id to number of chunks indexed
        """
        results = {}
        for document in documents:
            document_id = document.get("id")
            if not document_id:
                continue
            results[document_id] = await self.index_document(
                agent_id,
                document_id,
                document.get("text", ""),
                document.get("metadata"),
            )

        logger.info(f"Indexed {sum(results.values())} chunks across {len(results)} documents")
        return results
