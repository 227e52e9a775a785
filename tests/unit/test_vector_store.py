"""
Unit Tests for the vector store and its external index fallback.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from research_agents.qdrant_index import IndexMatch
from research_agents.vector_store import (
    SearchResult,
    VectorDocument,
    VectorStore,
    assemble_context,
    estimate_tokens,
    matches_filter,
)


class FakeIndex:
    """External index double with switchable failure modes."""

    def __init__(self, matches: Optional[List[IndexMatch]] = None):
        self.matches = matches or []
        self.upserts: List[str] = []
        self.fail_upsert = False
        self.fail_query = False
        self.query_delay = 0.0

    async def upsert(self, doc_id: str, vector: List[float], metadata: Dict[str, Any]):
        if self.fail_upsert:
            raise ConnectionError("index down")
        self.upserts.append(doc_id)

    async def query(self, vector: List[float], top_k: int, filter: Optional[Dict[str, Any]] = None):
        if self.query_delay:
            await asyncio.sleep(self.query_delay)
        if self.fail_query:
            raise ConnectionError("index down")
        return self.matches

    async def delete(self, doc_ids: List[str]):
        pass

    async def clear(self):
        pass


def doc(doc_id: str, content: str, **metadata) -> VectorDocument:
    return VectorDocument(id=doc_id, content=content, metadata=metadata)


class TestHelpers:
    """Filter and context assembly."""

    def test_matches_filter(self):
        metadata = {"company": "Acme", "worker": "news"}
        assert matches_filter(metadata, None)
        assert matches_filter(metadata, {"company": "Acme"})
        assert not matches_filter(metadata, {"company": "Globex"})
        assert not matches_filter(metadata, {"region": "EU"})

    def test_estimate_tokens_rounds_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_assemble_context_uses_source(self):
        results = [
            SearchResult(doc("1", "Acme grew 20%.", source="https://acme.example/news"), 0.9),
            SearchResult(doc("2", "No source here."), 0.8),
        ]
        context = assemble_context(results, 1000)
        assert context.startswith("[Source: https://acme.example/news]\nAcme grew 20%.\n\n")
        assert "[Source: Unknown]\nNo source here." in context

    def test_assemble_context_stops_at_budget(self):
        results = [SearchResult(doc(str(i), "x" * 40), 1.0) for i in range(5)]
        context = assemble_context(results, 30)
        assert context.count("[Source:") == 2


class TestInProcessSearch:
    """Exact cosine search over stored documents."""

    @pytest.mark.asyncio
    async def test_add_and_search(self, vector_store):
        await vector_store.add_documents([
            doc("pricing", "acme pricing plans enterprise tier", company="Acme"),
            doc("weather", "sunny weather forecast tomorrow", company="Acme"),
        ])

        results = await vector_store.search("acme enterprise pricing", top_k=1)
        assert [r.document.id for r in results] == ["pricing"]
        assert vector_store.count() == 2

    @pytest.mark.asyncio
    async def test_scores_are_sorted_descending(self, vector_store):
        await vector_store.add_documents([
            doc("a", "alpha beta gamma"),
            doc("b", "alpha beta"),
            doc("c", "delta epsilon"),
        ])
        results = await vector_store.search("alpha beta", top_k=3)
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)
        assert results[0].document.id == "b"

    @pytest.mark.asyncio
    async def test_filter_restricts_candidates(self, vector_store):
        await vector_store.add_documents([
            doc("acme", "quarterly revenue report", company="Acme"),
            doc("globex", "quarterly revenue report", company="Globex"),
        ])
        results = await vector_store.search("quarterly revenue", filter={"company": "Globex"})
        assert [r.document.id for r in results] == ["globex"]

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, vector_store):
        await vector_store.add_document(doc("a", "alpha"))
        assert await vector_store.delete_document("a") is True
        assert await vector_store.delete_document("a") is False

        await vector_store.add_document(doc("b", "beta"))
        await vector_store.clear()
        assert vector_store.count() == 0

    @pytest.mark.asyncio
    async def test_retrieve_context(self, vector_store):
        await vector_store.add_document(doc("a", "acme launches product", source="https://acme.example"))
        context = await vector_store.retrieve_context("acme product")
        assert "[Source: https://acme.example]" in context


class TestExternalIndex:
    """Delegation to an external index."""

    @pytest.mark.asyncio
    async def test_upserts_are_mirrored(self, embeddings):
        index = FakeIndex()
        store = VectorStore(embeddings, index=index)
        await store.add_document(doc("a", "alpha"))
        await store.flush()
        assert index.upserts == ["a"]

    @pytest.mark.asyncio
    async def test_upsert_failure_is_not_surfaced(self, embeddings):
        index = FakeIndex()
        index.fail_upsert = True
        store = VectorStore(embeddings, index=index)

        stored = await store.add_document(doc("a", "alpha"))
        await store.flush()

        assert stored.embedding is not None
        assert store.get_stats()["index_upsert_failures"] == 1

    @pytest.mark.asyncio
    async def test_search_uses_index_matches(self, embeddings):
        index = FakeIndex([IndexMatch(id="remote", score=0.77, metadata={"content": "from index", "company": "Acme"})])
        store = VectorStore(embeddings, index=index)

        results = await store.search("anything")
        assert len(results) == 1
        assert results[0].document.content == "from index"
        assert results[0].document.metadata == {"company": "Acme"}
        assert results[0].score == 0.77

    @pytest.mark.asyncio
    async def test_query_error_falls_back_to_local(self, embeddings):
        index = FakeIndex()
        store = VectorStore(embeddings, index=index)
        await store.add_document(doc("local", "alpha beta"))
        index.fail_query = True

        results = await store.search("alpha beta")
        assert [r.document.id for r in results] == ["local"]
        assert store.get_stats()["index_query_failures"] == 1

    @pytest.mark.asyncio
    async def test_query_timeout_returns_empty(self, embeddings):
        index = FakeIndex()
        store = VectorStore(embeddings, index=index, index_timeout=0.01)
        await store.add_document(doc("local", "alpha beta"))
        index.query_delay = 0.2

        assert await store.search("alpha beta") == []
        assert store.get_stats()["index_query_timeouts"] == 1
