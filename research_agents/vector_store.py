"""
Vector Store with External Index Fallback

Documents are always kept in-process (id -> VectorDocument). When an
external index is configured, writes are mirrored to it and searches are
delegated to it:

- Upserts are fire-and-forget: they run in the background under a time
  box and a failure is logged, never surfaced to the caller.
- A search that exceeds its time box returns no results rather than
  blocking. Any other index error falls through to the in-process search.

In-process search is exact cosine similarity over every stored document
that passes the exact-match metadata filter, sorted descending and
truncated to top_k.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

from core.exceptions import OperationTimeoutError
from .embeddings import EmbeddingService, cosine_similarity
from .qdrant_index import CONTENT_FIELD, IndexMatch
from .retry_strategy import race_timeout

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


@dataclass
class VectorDocument:
    """A piece of content with its embedding and metadata."""
    id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    embedding: Optional[List[float]] = None

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "content": self.content,
            "metadata": dict(self.metadata),
        }
        if include_embedding:
            data["embedding"] = self.embedding
        return data


@dataclass
class SearchResult:
    """A document and its similarity to the query."""
    document: VectorDocument
    score: float


class ExternalVectorIndex(Protocol):
    """Contract for an external nearest-neighbour index."""

    async def upsert(self, doc_id: str, vector: List[float], metadata: Dict[str, Any]) -> Any: ...

    async def query(
        self, vector: List[float], top_k: int, filter: Optional[Dict[str, Any]] = None
    ) -> List[IndexMatch]: ...

    async def delete(self, doc_ids: List[str]) -> Any: ...

    async def clear(self) -> Any: ...


def matches_filter(metadata: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    """Exact-match filter: every key must be present with an equal value."""
    if not filter:
        return True
    return all(key in metadata and metadata[key] == value for key, value in filter.items())


def estimate_tokens(text: str) -> int:
    """Rough token estimate: four characters per token, rounded up."""
    return -(-len(text) // 4)


def assemble_context(results: List[SearchResult], max_tokens: int) -> str:
    """Join results as [Source: ...] blocks until the token budget is reached."""
    parts: List[str] = []
    tokens = 0
    for result in results:
        source = result.document.metadata.get("source", "Unknown")
        block = f"[Source: {source}]\n{result.document.content}\n\n"
        estimated = estimate_tokens(block)
        if tokens + estimated > max_tokens:
            break
        parts.append(block)
        tokens += estimated
    return "".join(parts)


class VectorStore:
    """Embedding-indexed document store."""

    def __init__(
        self,
        embeddings: EmbeddingService,
        index: Optional[ExternalVectorIndex] = None,
        index_timeout: float = 30.0
    ):
        self.embeddings = embeddings
        self.index = index
        self.index_timeout = index_timeout

        self._documents: Dict[str, VectorDocument] = {}
        self._lock = threading.Lock()
        self._pending: Set[asyncio.Task] = set()
        self._stats = {
            "index_upsert_failures": 0,
            "index_query_failures": 0,
            "index_query_timeouts": 0,
            "local_searches": 0,
        }

    # ----- writes -----

    async def add_document(self, document: VectorDocument) -> VectorDocument:
        """Embed and store a document; mirror it to the external index in the background."""
        document.embedding = await self.embeddings.embed(document.content)
        with self._lock:
            self._documents[document.id] = document

        if self.index is not None:
            task = asyncio.ensure_future(self._upsert_to_index(document))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return document

    async def _upsert_to_index(self, document: VectorDocument):
        metadata = {CONTENT_FIELD: document.content, **document.metadata}
        try:
            await race_timeout(
                self.index.upsert(document.id, document.embedding, metadata),
                self.index_timeout,
                "vector index upsert",
            )
        except Exception as e:
            self._stats["index_upsert_failures"] += 1
            logger.error(f"Failed to upsert '{document.id}' to vector index: {e}")

    async def add_documents(
        self,
        documents: List[VectorDocument],
        batch_size: int = DEFAULT_BATCH_SIZE
    ) -> int:
        """Add documents in concurrent batches."""
        for start in range(0, len(documents), batch_size):
            batch = documents[start:start + batch_size]
            await asyncio.gather(*(self.add_document(doc) for doc in batch))
        return len(documents)

    async def flush(self):
        """Wait for background index writes to settle."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def delete_document(self, doc_id: str) -> bool:
        with self._lock:
            removed = self._documents.pop(doc_id, None) is not None

        if self.index is not None:
            try:
                await race_timeout(
                    self.index.delete([doc_id]), self.index_timeout, "vector index delete"
                )
            except Exception as e:
                logger.error(f"Failed to delete '{doc_id}' from vector index: {e}")
        return removed

    async def clear(self):
        with self._lock:
            self._documents.clear()

        if self.index is not None:
            try:
                await race_timeout(self.index.clear(), self.index_timeout, "vector index clear")
            except Exception as e:
                logger.error(f"Failed to clear vector index: {e}")

    # ----- reads -----

    def get_document(self, doc_id: str) -> Optional[VectorDocument]:
        with self._lock:
            return self._documents.get(doc_id)

    def count(self) -> int:
        with self._lock:
            return len(self._documents)

    async def search(
        self,
        query: str,
        top_k: int = 5,
        filter: Optional[Dict[str, Any]] = None
    ) -> List[SearchResult]:
        """Nearest-neighbour search by cosine similarity."""
        results, _ = await self.search_with_status(query, top_k, filter)
        return results

    async def search_with_status(
        self,
        query: str,
        top_k: int = 5,
        filter: Optional[Dict[str, Any]] = None
    ) -> Tuple[List[SearchResult], bool]:
        """
        Search and report whether the answer is complete.

        The flag is False only when the external index ran out of time, in
        which case the results are empty rather than authoritative.
        """
        query_embedding = await self.embeddings.embed(query)

        if self.index is not None:
            try:
                matches = await race_timeout(
                    self.index.query(query_embedding, top_k, filter),
                    self.index_timeout,
                    "vector index query",
                )
                return [self._from_match(match) for match in matches][:top_k], True
            except OperationTimeoutError:
                self._stats["index_query_timeouts"] += 1
                logger.warning(f"Vector index query timed out after {self.index_timeout}s")
                return [], False
            except Exception as e:
                self._stats["index_query_failures"] += 1
                logger.error(f"Vector index query failed, using in-process search: {e}")

        return self._search_local(query_embedding, top_k, filter), True

    def _from_match(self, match: IndexMatch) -> SearchResult:
        local = self.get_document(match.id)
        if local is not None:
            return SearchResult(document=local, score=match.score)
        metadata = dict(match.metadata)
        content = metadata.pop(CONTENT_FIELD, "")
        return SearchResult(
            document=VectorDocument(id=match.id, content=content, metadata=metadata),
            score=match.score,
        )

    def _search_local(
        self,
        query_embedding: List[float],
        top_k: int,
        filter: Optional[Dict[str, Any]]
    ) -> List[SearchResult]:
        self._stats["local_searches"] += 1
        with self._lock:
            candidates = [
                doc for doc in self._documents.values()
                if matches_filter(doc.metadata, filter)
            ]

        results = [
            SearchResult(document=doc, score=cosine_similarity(query_embedding, doc.embedding))
            for doc in candidates
        ]
        # sorted() is stable, so equal scores keep insertion order
        results = sorted(results, key=lambda r: r.score, reverse=True)
        return results[:top_k]

    async def retrieve_context(
        self,
        query: str,
        top_k: int = 5,
        max_tokens: int = 4000,
        filter: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Concatenate the best matches into a context block.

        Tokens are estimated at four characters each; assembly stops at the
        first document that would exceed the budget.
        """
        results = await self.search(query, top_k=top_k, filter=filter)
        return assemble_context(results, max_tokens)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "documents": self.count(),
            "external_index": self.index is not None,
            "pending_index_writes": len(self._pending),
            **self._stats,
            "embeddings": self.embeddings.get_stats(),
        }
