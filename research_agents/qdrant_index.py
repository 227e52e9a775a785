"""
Qdrant adapter for the external vector index.

Implements the three calls the retrieval layer delegates to an external
index: upsert, query and delete. Document ids are mapped onto stable UUIDs
(Qdrant only accepts unsigned ints or UUIDs as point ids) and the original
id is kept in the payload.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from qdrant_client import AsyncQdrantClient
from qdrant_client.http import models as qdrant_models

logger = logging.getLogger(__name__)

DOC_ID_FIELD = "doc_id"
CONTENT_FIELD = "content"


@dataclass
class IndexMatch:
    """One match returned by the external index."""
    id: str
    score: float
    metadata: Dict[str, Any]


@dataclass
class QdrantIndexConfig:
    """Connection settings for the Qdrant collection."""
    url: str
    collection: str = "account_research"
    api_key: Optional[str] = None
    dimensions: int = 1536
    max_payload_content: int = 1000  # chars of content mirrored into the payload


def point_id_for(doc_id: str) -> str:
    """Stable UUID for a document id."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, doc_id))


class QdrantVectorIndex:
    """External vector index backed by a Qdrant collection."""

    def __init__(
        self,
        config: QdrantIndexConfig,
        client: Optional[AsyncQdrantClient] = None
    ):
        self.config = config
        self._client = client
        self._collection_ready = False
        self._collection_lock = asyncio.Lock()

    async def _get_client(self) -> AsyncQdrantClient:
        """Get or create async client."""
        if self._client is None:
            self._client = AsyncQdrantClient(url=self.config.url, api_key=self.config.api_key)
        return self._client

    async def _ensure_collection(self, dimensions: int) -> AsyncQdrantClient:
        client = await self._get_client()
        if self._collection_ready:
            return client

        # Concurrent first writes must not race to create the collection
        async with self._collection_lock:
            if self._collection_ready:
                return client
            if not await client.collection_exists(self.config.collection):
                await client.create_collection(
                    collection_name=self.config.collection,
                    vectors_config=qdrant_models.VectorParams(
                        size=dimensions,
                        distance=qdrant_models.Distance.COSINE,
                    ),
                )
                logger.info(f"Created Qdrant collection '{self.config.collection}' (dim={dimensions})")
            self._collection_ready = True
        return client

    @staticmethod
    def _build_filter(filter: Optional[Dict[str, Any]]) -> Optional[qdrant_models.Filter]:
        if not filter:
            return None
        return qdrant_models.Filter(
            must=[
                qdrant_models.FieldCondition(
                    key=key,
                    match=qdrant_models.MatchValue(value=value),
                )
                for key, value in filter.items()
            ]
        )

    async def upsert(self, doc_id: str, vector: List[float], metadata: Dict[str, Any]):
        client = await self._ensure_collection(len(vector))
        payload = {
            **metadata,
            DOC_ID_FIELD: doc_id,
        }
        if CONTENT_FIELD in payload and isinstance(payload[CONTENT_FIELD], str):
            payload[CONTENT_FIELD] = payload[CONTENT_FIELD][: self.config.max_payload_content]

        await client.upsert(
            collection_name=self.config.collection,
            points=[
                qdrant_models.PointStruct(
                    id=point_id_for(doc_id),
                    vector=list(vector),
                    payload=payload,
                )
            ],
        )
        logger.debug(f"Upserted '{doc_id}' to '{self.config.collection}'")

    async def query(
        self,
        vector: List[float],
        top_k: int,
        filter: Optional[Dict[str, Any]] = None
    ) -> List[IndexMatch]:
        client = await self._ensure_collection(len(vector))
        response = await client.query_points(
            collection_name=self.config.collection,
            query=list(vector),
            limit=top_k,
            query_filter=self._build_filter(filter),
            with_payload=True,
        )

        matches = []
        for point in response.points:
            payload = dict(point.payload or {})
            doc_id = str(payload.pop(DOC_ID_FIELD, point.id))
            matches.append(IndexMatch(id=doc_id, score=float(point.score), metadata=payload))
        return matches

    async def delete(self, doc_ids: List[str]):
        client = await self._get_client()
        await client.delete(
            collection_name=self.config.collection,
            points_selector=qdrant_models.PointIdsList(
                points=[point_id_for(doc_id) for doc_id in doc_ids]
            ),
        )

    async def clear(self):
        client = await self._get_client()
        if await client.collection_exists(self.config.collection):
            await client.delete_collection(self.config.collection)
        self._collection_ready = False

    async def close(self):
        """Close connections."""
        if self._client is not None:
            await self._client.close()
            self._client = None
