"""
Embedding Generation
====================

Generates vector embeddings through the LLM router, so each agent embeds
with its own configured provider and model.

What are embeddings?
- A vector (list of numbers) that represents the meaning of text
- Texts with similar meanings have similar vectors
- Enables semantic search (finding similar content by meaning)

The memory manager and the vector-search context source both need the
query embedded; with the cache below a turn embeds its query text once.

Caching:
    Embeddings are cached per (agent, model, text hash). Identical texts
    embedded for different agents are kept apart because agents may use
    different embedding models with different dimensions.
"""

import hashlib
from typing import Any, Sequence

from orchestrator.llm.router import LLMRouter
from orchestrator.utils.logger import Logger

logger = Logger("Embeddings")


class EmbeddingGenerator:
    """
    Cached embedding calls on top of `LLMRouter.embed`.

    Example:
        generator = EmbeddingGenerator(router)

        # Single text
        vector = await generator.generate("agent-1", "How do I use this feature?")

        # Multiple texts (one provider call for all uncached texts)
        vectors = await generator.generate_batch("agent-1", ["First", "Second"])
    """

    def __init__(self, router: LLMRouter, max_cache_size: int = 10_000):
        """
        Args:
            router: The LLM router used for embedding calls
            max_cache_size: Cache entries kept before the cache is reset
        """
        self.router = router
        self.max_cache_size = max_cache_size

        # Key: (agent_id, model_hint, md5 of text), Value: embedding vector
        self._cache: dict[tuple[str, str, str], list[float]] = {}

    def _hash_text(self, text: str) -> str:
        """Create a hash key for caching."""
        return hashlib.md5(text.encode()).hexdigest()

    async def generate(
        self,
        agent_id: str,
        text: str,
        model_hint: str | None = None,
        context: Any = None
    ) -> list[float]:
        """
        Generate an embedding for a single text.

        Args:
            agent_id: The agent whose embedding model applies
            text: The text to embed
            model_hint: Optional embedding model override
            context: Processing context (per-run provider resolution)

        Returns:
            Vector embedding as a list of floats
        """
        vectors = await self.generate_batch(agent_id, [text], model_hint, context)
        return vectors[0]

    async def generate_batch(
        self,
        agent_id: str,
        texts: Sequence[str],
        model_hint: str | None = None,
        context: Any = None
    ) -> list[list[float]]:
        """
        Generate embeddings for multiple texts.

        Only texts missing from the cache are sent, in one batched call.

        Returns:
            List of embedding vectors (same order as input)
        """
        if not texts:
            return []

        results: list[list[float] | None] = []
        texts_to_generate: list[tuple[int, str]] = []

        for i, text in enumerate(texts):
            cached = self._cache.get((agent_id, model_hint or "", self._hash_text(text)))
            results.append(cached)
            if cached is None:
                texts_to_generate.append((i, text))

        if not texts_to_generate:
            logger.debug(f"All {len(texts)} embeddings found in cache")
            return [r for r in results if r is not None]

        logger.debug(f"Generating {len(texts_to_generate)} embeddings (batch)")
        vectors = await self.router.embed(
            agent_id,
            [t for _, t in texts_to_generate],
            model_hint=model_hint,
            context=context,
        )

        if len(self._cache) + len(vectors) > self.max_cache_size:
            self._cache = {}

        for (original_index, text), vector in zip(texts_to_generate, vectors):
            results[original_index] = vector
            self._cache[(agent_id, model_hint or "", self._hash_text(text))] = vector

        return [r for r in results if r is not None]

    def clear_cache(self) -> None:
        """Clear the embedding cache."""
        self._cache.clear()
        logger.info("Embedding cache cleared")

    def get_cache_size(self) -> int:
        """Get the number of cached embeddings."""
        return len(self._cache)
