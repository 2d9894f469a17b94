"""Tests for embedding caching, the vector store and knowledge indexing."""

import pytest

from conftest import FakeAdapter, hashed_embedding, make_router
from orchestrator.llm import AgentLLMPreference
from orchestrator.rag import EmbeddingGenerator, KnowledgeIndexer, VectorDocument, VectorStore, chunk_text, cosine_similarity


def _doc(doc_id: str, vector: list[float], **metadata) -> VectorDocument:
    return VectorDocument(id=doc_id, content=f"content of {doc_id}", embedding=vector, metadata=metadata)


# ==============================================================================
# Embeddings
# ==============================================================================

@pytest.mark.asyncio
async def test_only_uncached_texts_are_embedded(config):
    adapter = FakeAdapter()
    generator = EmbeddingGenerator(make_router(adapter, config))

    first = await generator.generate_batch("agent-1", ["alpha", "beta"])
    second = await generator.generate_batch("agent-1", ["beta", "gamma", "alpha"])

    assert adapter.embed_calls == [["alpha", "beta"], ["gamma"]]
    assert second[0] == first[1]
    assert second[2] == first[0]
    assert generator.get_cache_size() == 3


@pytest.mark.asyncio
async def test_cache_is_keyed_per_agent(config):
    adapter = FakeAdapter()
    generator = EmbeddingGenerator(make_router(adapter, config, [
        AgentLLMPreference("agent-1", "openai", "gpt-4o-mini"),
        AgentLLMPreference("agent-2", "openai", "gpt-4o-mini"),
    ]))

    await generator.generate("agent-1", "same text")
    await generator.generate("agent-2", "same text")

    assert len(adapter.embed_calls) == 2


# ==============================================================================
# Vector store
# ==============================================================================

def test_cosine_similarity():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([0, 0], [1, 0]) == 0.0


def test_search_orders_and_filters():
    store = VectorStore()
    store.add(_doc("a", [1.0, 0.0], agent_id="agent-1"))
    store.add(_doc("b", [0.7, 0.7], agent_id="agent-1"))
    store.add(_doc("c", [1.0, 0.1], agent_id="agent-2"))

    results = store.search([1.0, 0.0], top_k=5, filter_metadata={"agent_id": "agent-1", "workspace_id": None})

    assert [r.id for r in results] == ["a", "b"]
    assert results[0].score == pytest.approx(1.0)
    assert store.search([1.0, 0.0], min_score=0.9, filter_metadata={"agent_id": "agent-1"})[0].id == "a"
    assert len(store.search([1.0, 0.0], min_score=0.9, filter_metadata={"agent_id": "agent-1"})) == 1


def test_add_replaces_existing_id_and_checks_dimension():
    store = VectorStore()
    store.add(_doc("a", [1.0, 0.0]))
    store.add(_doc("a", [0.0, 1.0]))

    assert len(store) == 1
    assert store.search([0.0, 1.0], top_k=1)[0].score == pytest.approx(1.0)

    with pytest.raises(ValueError):
        store.add(_doc("b", [1.0, 0.0, 0.0]))


def test_delete_and_empty_queries():
    store = VectorStore()
    assert store.search([1.0, 0.0]) == []

    store.add(_doc("a", [1.0, 0.0]))
    assert store.search([0.0, 0.0]) == []
    assert store.delete("a") is True
    assert store.delete("a") is False
    assert store.search([1.0, 0.0]) == []


def test_store_persists_to_disk(tmp_path):
    store = VectorStore(storage_path=tmp_path)
    store.add_batch([_doc("a", [1.0, 0.0], agent_id="agent-1"), _doc("b", [0.0, 1.0])])

    reloaded = VectorStore(storage_path=tmp_path)

    assert len(reloaded) == 2
    assert reloaded.get("a").metadata == {"agent_id": "agent-1"}
    assert reloaded.search([0.0, 1.0], top_k=1)[0].id == "b"


# ==============================================================================
# Indexer
# ==============================================================================

def test_chunk_text_packs_paragraphs():
    text = "First paragraph about refunds.\n\nSecond paragraph about shipping.\n\nok"
    assert chunk_text(text, max_chars=80) == [
        "First paragraph about refunds.\n\nSecond paragraph about shipping.\n\nok"
    ]
    assert chunk_text(text, max_chars=40) == [
        "First paragraph about refunds.",
        "Second paragraph about shipping.\n\nok",
    ]


def test_chunk_text_splits_long_paragraphs():
    sentence = "This sentence is exactly long enough to matter. "
    chunks = chunk_text(sentence * 10, max_chars=120)

    assert len(chunks) > 1
    assert all(len(c) <= 120 for c in chunks)


@pytest.mark.asyncio
async def test_reindexing_replaces_chunks(config):
    adapter = FakeAdapter()
    store = VectorStore()
    indexer = KnowledgeIndexer(EmbeddingGenerator(make_router(adapter, config)), store, max_chunk_chars=60)
    text = "Refunds are processed within five business days.\n\nShipping is free for orders over fifty dollars."

    first = await indexer.index_document("agent-1", "policy", text, {"title": "Policy"}, workspace_id="ws-1")
    second = await indexer.index_document("agent-1", "policy", text)

    assert first == second == 2
    assert len(store) == 2
    chunk = store.get("agent-1:policy:0")
    assert chunk.metadata["document_id"] == "policy"

    hits = store.search(hashed_embedding("refunds processed"), top_k=1, filter_metadata={"agent_id": "agent-1"})
    assert hits[0].id == "agent-1:policy:0"


@pytest.mark.asyncio
async def test_index_multiple_skips_documents_without_id(config):
    indexer = KnowledgeIndexer(EmbeddingGenerator(make_router(FakeAdapter(), config)), VectorStore())

    results = await indexer.index_multiple("agent-1", [
        {"id": "faq", "text": "Our support hours are nine to five on weekdays."},
        {"text": "orphan document without an identifier"},
        {"id": "empty", "text": ""},
    ])

    assert results == {"faq": 1, "empty": 0}
