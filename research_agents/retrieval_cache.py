"""
Retrieval Cache

Puts two bounded LRU caches in front of the vector store:
- document cache (id -> VectorDocument), default capacity 500
- search cache (query/filter/top_k -> results), default capacity 100

Writes update the document cache and invalidate the search cache, so a
search never serves results that predate a document it should have seen.

Also provides retrieval-augmented generation: best matches are assembled
into a context block and passed to the generation router.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from .llm_backends import LLMResponse
from .llm_router import LLMRouter
from .lru_cache import LRUCache
from .vector_store import SearchResult, VectorDocument, VectorStore, assemble_context

logger = logging.getLogger(__name__)

DEFAULT_RAG_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Use the provided context to answer questions accurately."
)


def search_cache_key(query: str, filter: Optional[Dict[str, Any]], top_k: int) -> str:
    filter_key = json.dumps(filter, sort_keys=True, default=str) if filter else ""
    return f"search:{query}:{filter_key}:{top_k}"


class RetrievalCache:
    """Vector store fronted by document and search LRU caches."""

    def __init__(
        self,
        store: VectorStore,
        router: Optional[LLMRouter] = None,
        document_cache_capacity: int = 500,
        search_cache_capacity: int = 100,
        default_top_k: int = 5,
        max_context_tokens: int = 4000
    ):
        self.store = store
        self.router = router
        self.document_cache: LRUCache[str, VectorDocument] = LRUCache(
            document_cache_capacity, name="documents"
        )
        self.search_cache: LRUCache[str, List[SearchResult]] = LRUCache(
            search_cache_capacity, name="search"
        )
        self.default_top_k = default_top_k
        self.max_context_tokens = max_context_tokens

    async def add_document(self, document: VectorDocument) -> VectorDocument:
        stored = await self.store.add_document(document)
        self.document_cache.set(stored.id, stored)
        self.search_cache.clear()
        return stored

    async def add_documents(self, documents: List[VectorDocument]) -> int:
        count = await self.store.add_documents(documents)
        for document in documents:
            self.document_cache.set(document.id, document)
        self.search_cache.clear()
        return count

    def get_document(self, doc_id: str) -> Optional[VectorDocument]:
        """Document by id, served from the document cache when possible."""
        cached = self.document_cache.get(doc_id)
        if cached is not None:
            return cached

        document = self.store.get_document(doc_id)
        if document is not None:
            self.document_cache.set(doc_id, document)
        return document

    async def delete_document(self, doc_id: str) -> bool:
        self.document_cache.delete(doc_id)
        self.search_cache.clear()
        return await self.store.delete_document(doc_id)

    async def clear(self):
        await self.store.clear()
        self.clear_cache()

    def count(self) -> int:
        return self.store.count()

    async def search(
        self,
        query: str,
        top_k: Optional[int] = None,
        filter: Optional[Dict[str, Any]] = None
    ) -> List[SearchResult]:
        """Cached nearest-neighbour search."""
        results, _ = await self.search_with_status(query, top_k=top_k, filter=filter)
        return results

    async def search_with_status(
        self,
        query: str,
        top_k: Optional[int] = None,
        filter: Optional[Dict[str, Any]] = None
    ) -> Tuple[List[SearchResult], bool]:
        """Cached search plus whether the answer is complete; timed-out searches are not cached."""
        top_k = top_k or self.default_top_k
        key = search_cache_key(query, filter, top_k)

        cached = self.search_cache.get(key)
        if cached is not None:
            logger.debug(f"Search cache hit: {key[:80]}")
            return list(cached), True

        results, complete = await self.store.search_with_status(query, top_k=top_k, filter=filter)
        if complete:
            self.search_cache.set(key, results)
        return list(results), complete

    async def retrieve_context(
        self,
        query: str,
        top_k: Optional[int] = None,
        max_tokens: Optional[int] = None,
        filter: Optional[Dict[str, Any]] = None
    ) -> str:
        results = await self.search(query, top_k=top_k, filter=filter)
        return assemble_context(results, max_tokens or self.max_context_tokens)

    async def generate_with_rag(
        self,
        query: str,
        system_prompt: Optional[str] = None,
        max_context_tokens: Optional[int] = None,
        provider: Optional[str] = None
    ) -> LLMResponse:
        """Answer a question using retrieved context."""
        if self.router is None:
            raise RuntimeError("RetrievalCache has no generation router configured")

        context = await self.retrieve_context(query, max_tokens=max_context_tokens)
        prompt = (
            f"{system_prompt or DEFAULT_RAG_SYSTEM_PROMPT}\n\n"
            f"Context:\n{context}\n\n"
            f"Question: {query}\n\n"
            f"Answer:"
        )
        return await self.router.generate_text(prompt, provider=provider)

    def get_cache_stats(self) -> Dict[str, Any]:
        return {
            "document_cache": self.document_cache.get_stats(),
            "search_cache": self.search_cache.get_stats(),
        }

    def clear_cache(self):
        self.document_cache.clear()
        self.search_cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.get_cache_stats(),
            "store": self.store.get_stats(),
        }
