"""
Session Memory Manager

Coordinates two kinds of memory for research sessions:

- short-term: key-value entries with a TTL (Redis when configured and
  reachable, otherwise an in-process store with the same interface)
- long-term: conversation turns and entities indexed in the retrieval
  cache for semantic search

Two bounded LRU caches sit in front of reads: one for conversation
histories and entities, one for semantic search results. Saving a
message invalidates the cached history of its session.

Memory failures never break a research session: backend errors are
logged and reads degrade to empty results.

Usage:
    memory = SessionMemoryManager(retrieval, await create_short_term_memory(settings))
    await memory.save_message("session-1", MemoryEntry.create("session-1", "Research Acme"))
    context = await memory.build_context("session-1", query="Acme")
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import redis.asyncio as redis

from .lru_cache import LRUCache
from .retrieval_cache import RetrievalCache
from .vector_store import VectorDocument

logger = logging.getLogger(__name__)


# ============================================
# DATA MODEL
# ============================================

class MemoryType(str, Enum):
    """Kinds of memory entries"""
    CONVERSATION = "conversation"
    ENTITY = "entity"
    EPISODIC = "episodic"
    SEMANTIC = "semantic"


@dataclass
class MemoryEntry:
    """One remembered item"""
    id: str
    session_id: str
    type: MemoryType
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = None
    user_id: Optional[str] = None

    @classmethod
    def create(
        cls,
        session_id: str,
        content: str,
        type: MemoryType = MemoryType.CONVERSATION,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> "MemoryEntry":
        return cls(
            id=uuid.uuid4().hex,
            session_id=session_id,
            type=type,
            content=content,
            metadata=dict(metadata or {}),
            user_id=user_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "type": self.type.value,
            "content": self.content,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "user_id": self.user_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryEntry":
        expires_at = data.get("expires_at")
        return cls(
            id=data["id"],
            session_id=data.get("session_id", ""),
            type=MemoryType(data.get("type", MemoryType.CONVERSATION.value)),
            content=data.get("content", ""),
            metadata=dict(data.get("metadata") or {}),
            timestamp=datetime.fromisoformat(data["timestamp"]) if data.get("timestamp") else datetime.now(timezone.utc),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
            user_id=data.get("user_id"),
        )


@dataclass
class MemorySearchResult:
    entry: MemoryEntry
    score: float


@dataclass
class ConversationSummary:
    session_id: str
    summary: str
    key_topics: List[str]
    entities: List[str]
    message_count: int
    start_time: datetime
    last_update: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "summary": self.summary,
            "key_topics": self.key_topics,
            "entities": self.entities,
            "message_count": self.message_count,
            "start_time": self.start_time.isoformat(),
            "last_update": self.last_update.isoformat(),
        }


@dataclass
class MemoryConfig:
    """Memory tuning"""
    short_term_ttl: int = 3600
    long_term_ttl: int = 2592000  # 30 days
    max_conversation_length: int = 50
    enable_semantic_memory: bool = True
    document_cache_capacity: int = 500
    search_cache_capacity: int = 100


def message_key(session_id: str, entry_id: str) -> str:
    return f"session:{session_id}:message:{entry_id}"


def entity_key(entity_type: str, entity_name: str) -> str:
    return f"entity:{entity_type}:{entity_name}"


# ============================================
# SHORT-TERM STORES
# ============================================

class ShortTermMemory(Protocol):
    """Key-value memory with per-entry TTL."""

    async def set(self, key: str, entry: MemoryEntry, ttl: Optional[int] = None) -> None: ...

    async def get(self, key: str) -> Optional[MemoryEntry]: ...

    async def session_messages(self, session_id: str, limit: int) -> List[MemoryEntry]: ...

    async def clear_session(self, session_id: str) -> int: ...

    async def extend_ttl(self, session_id: str, seconds: int) -> int: ...

    async def close(self) -> None: ...


def _oldest_first(entries: List[MemoryEntry], limit: int) -> List[MemoryEntry]:
    entries.sort(key=lambda e: e.timestamp)
    return entries[-limit:] if limit else entries


class InMemoryShortTermMemory:
    """In-process short-term memory; expired entries vanish on access."""

    backend = "memory"

    def __init__(self, ttl: int = 3600, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[MemoryEntry, float]] = {}

    def _live(self, key: str) -> Optional[MemoryEntry]:
        item = self._entries.get(key)
        if item is None:
            return None
        entry, expires_at = item
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    def _session_keys(self, session_id: str) -> List[str]:
        prefix = f"session:{session_id}:"
        return [k for k in list(self._entries) if k.startswith(prefix) and self._live(k) is not None]

    async def set(self, key: str, entry: MemoryEntry, ttl: Optional[int] = None):
        self._entries[key] = (entry, self._clock() + (ttl or self.ttl))

    async def get(self, key: str) -> Optional[MemoryEntry]:
        return self._live(key)

    async def session_messages(self, session_id: str, limit: int) -> List[MemoryEntry]:
        prefix = f"session:{session_id}:message:"
        entries = [self._entries[k][0] for k in self._session_keys(session_id) if k.startswith(prefix)]
        return _oldest_first(entries, limit)

    async def clear_session(self, session_id: str) -> int:
        keys = self._session_keys(session_id)
        for key in keys:
            del self._entries[key]
        return len(keys)

    async def extend_ttl(self, session_id: str, seconds: int) -> int:
        keys = self._session_keys(session_id)
        expires_at = self._clock() + seconds
        for key in keys:
            self._entries[key] = (self._entries[key][0], expires_at)
        return len(keys)

    async def close(self):
        self._entries.clear()


class RedisShortTermMemory:
    """Short-term memory in Redis; entries are JSON strings written with SETEX."""

    backend = "redis"

    def __init__(self, redis_url: str, ttl: int = 3600, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.ttl = ttl
        self._redis = client or redis.from_url(redis_url, decode_responses=True)

    async def connect(self) -> bool:
        """Ping Redis. False when it is unreachable."""
        try:
            await self._redis.ping()
        except Exception as e:
            logger.warning(f"Redis connection failed: {e}")
            return False
        logger.info(f"Connected to Redis at {self.redis_url}")
        return True

    async def _scan(self, pattern: str) -> List[str]:
        return [key async for key in self._redis.scan_iter(match=pattern, count=100)]

    async def set(self, key: str, entry: MemoryEntry, ttl: Optional[int] = None):
        await self._redis.setex(key, ttl or self.ttl, json.dumps(entry.to_dict()))

    async def get(self, key: str) -> Optional[MemoryEntry]:
        data = await self._redis.get(key)
        return MemoryEntry.from_dict(json.loads(data)) if data else None

    async def session_messages(self, session_id: str, limit: int) -> List[MemoryEntry]:
        keys = await self._scan(f"session:{session_id}:message:*")
        if not keys:
            return []
        values = await self._redis.mget(keys)
        entries = [MemoryEntry.from_dict(json.loads(v)) for v in values if v]
        return _oldest_first(entries, limit)

    async def clear_session(self, session_id: str) -> int:
        keys = await self._scan(f"session:{session_id}:*")
        if not keys:
            return 0
        return await self._redis.delete(*keys)

    async def extend_ttl(self, session_id: str, seconds: int) -> int:
        keys = await self._scan(f"session:{session_id}:*")
        for key in keys:
            await self._redis.expire(key, seconds)
        return len(keys)

    async def close(self):
        await self._redis.aclose()


async def create_short_term_memory(settings) -> ShortTermMemory:
    """Redis when redis_url is set and reachable, otherwise in-process."""
    if settings.redis_url:
        store = RedisShortTermMemory(settings.redis_url, ttl=settings.short_term_ttl)
        if await store.connect():
            return store
        await store.close()
        logger.warning("Redis unavailable, session memory falls back to in-process storage")
    return InMemoryShortTermMemory(ttl=settings.short_term_ttl)


# ============================================
# MANAGER
# ============================================

class SessionMemoryManager:
    """Short-term and semantic memory for research sessions."""

    def __init__(
        self,
        retrieval: Optional[RetrievalCache] = None,
        short_term: Optional[ShortTermMemory] = None,
        config: Optional[MemoryConfig] = None
    ):
        self.config = config or MemoryConfig()
        self.retrieval = retrieval
        self.short_term = short_term or InMemoryShortTermMemory(ttl=self.config.short_term_ttl)
        self.document_cache: LRUCache[str, Any] = LRUCache(self.config.document_cache_capacity, name="memory_documents")
        self.search_cache: LRUCache[str, List[MemorySearchResult]] = LRUCache(
            self.config.search_cache_capacity, name="memory_searches"
        )

    @property
    def semantic_enabled(self) -> bool:
        return self.config.enable_semantic_memory and self.retrieval is not None

    def _invalidate_conversation(self, session_id: str):
        prefix = f"conversation:{session_id}:"
        for key in self.document_cache.keys():
            if key.startswith(prefix):
                self.document_cache.delete(key)

    async def _index(self, doc_id: str, content: str, metadata: Dict[str, Any]):
        try:
            await self.retrieval.add_document(VectorDocument(id=doc_id, content=content, metadata=metadata))
            self.search_cache.clear()
        except Exception as e:
            logger.error(f"Failed to index memory {doc_id}: {e}")

    # ----- conversation -----

    async def save_message(self, session_id: str, entry: MemoryEntry):
        """Store a message in short-term memory and, for conversation turns, the semantic index."""
        try:
            await self.short_term.set(message_key(session_id, entry.id), entry)
        except Exception as e:
            logger.error(f"Failed to save message to short-term memory: {e}")
        self._invalidate_conversation(session_id)

        if self.semantic_enabled and entry.type == MemoryType.CONVERSATION:
            await self._index(entry.id, entry.content, {
                **entry.metadata,
                "session_id": session_id,
                "timestamp": entry.timestamp.isoformat(),
                "type": entry.type.value,
            })

    async def get_conversation_history(self, session_id: str, limit: Optional[int] = None) -> List[MemoryEntry]:
        """Most recent messages, oldest first."""
        limit = limit or self.config.max_conversation_length
        cache_key = f"conversation:{session_id}:{limit}"
        cached = self.document_cache.get(cache_key)
        if cached is not None:
            return list(cached)

        try:
            messages = await self.short_term.session_messages(session_id, limit)
        except Exception as e:
            logger.error(f"Failed to read conversation {session_id}: {e}")
            return []

        self.document_cache.set(cache_key, messages)
        return list(messages)

    async def search_relevant_memories(
        self,
        query: str,
        top_k: int = 5,
        filter: Optional[Dict[str, Any]] = None,
        threshold: float = 0.0
    ) -> List[MemorySearchResult]:
        """Semantic search over indexed memories; [] when disabled or on failure."""
        if not self.semantic_enabled:
            return []

        cache_key = f"search:{query}:{json.dumps(filter or {}, sort_keys=True)}:{top_k}:{threshold}"
        cached = self.search_cache.get(cache_key)
        if cached is not None:
            return list(cached)

        try:
            results, complete = await self.retrieval.search_with_status(query, top_k=top_k, filter=filter)
        except Exception as e:
            logger.error(f"Semantic memory search failed: {e}")
            return []

        mapped = []
        for result in results:
            if result.score < threshold:
                continue
            metadata = result.document.metadata
            try:
                memory_type = MemoryType(metadata.get("type", MemoryType.CONVERSATION.value))
            except ValueError:
                memory_type = MemoryType.SEMANTIC
            timestamp = metadata.get("timestamp")
            mapped.append(MemorySearchResult(
                entry=MemoryEntry(
                    id=result.document.id,
                    session_id=metadata.get("session_id", ""),
                    type=memory_type,
                    content=result.document.content,
                    metadata=dict(metadata),
                    timestamp=datetime.fromisoformat(timestamp) if timestamp else datetime.now(timezone.utc),
                ),
                score=result.score,
            ))

        if complete:
            self.search_cache.set(cache_key, mapped)
        return list(mapped)

    # ----- entities -----

    async def store_entity(
        self,
        entity_type: str,
        entity_name: str,
        data: Dict[str, Any],
        session_id: Optional[str] = None
    ) -> MemoryEntry:
        """Remember structured data about a company, contact, etc."""
        entry = MemoryEntry.create(
            session_id or "global",
            json.dumps(data, default=str),
            type=MemoryType.ENTITY,
            metadata={"entity_type": entity_type, "entity_name": entity_name},
        )
        key = entity_key(entity_type, entity_name)
        try:
            await self.short_term.set(key, entry, ttl=self.config.long_term_ttl)
        except Exception as e:
            logger.error(f"Failed to store entity {key}: {e}")
        self.document_cache.set(key, dict(data))

        if self.semantic_enabled:
            await self._index(
                entry.id,
                f"{entity_type}: {entity_name} {entry.content}",
                {**entry.metadata, "session_id": entry.session_id, "type": MemoryType.ENTITY.value},
            )
        return entry

    async def get_entity(self, entity_type: str, entity_name: str) -> Optional[Dict[str, Any]]:
        key = entity_key(entity_type, entity_name)
        cached = self.document_cache.get(key)
        if cached is not None:
            return dict(cached)

        try:
            entry = await self.short_term.get(key)
        except Exception as e:
            logger.error(f"Failed to read entity {key}: {e}")
            return None
        if entry is None:
            return None

        data = json.loads(entry.content)
        self.document_cache.set(key, data)
        return dict(data)

    # ----- sessions -----

    async def generate_summary(self, session_id: str) -> Optional[ConversationSummary]:
        messages = await self.get_conversation_history(session_id)
        if not messages:
            return None

        topics: List[str] = []
        entities: List[str] = []
        for message in messages:
            topic = message.metadata.get("topic")
            company = message.metadata.get("company")
            if topic and topic not in topics:
                topics.append(topic)
            if company and company not in entities:
                entities.append(company)

        return ConversationSummary(
            session_id=session_id,
            summary=f"Conversation with {len(messages)} messages",
            key_topics=topics,
            entities=entities,
            message_count=len(messages),
            start_time=messages[0].timestamp,
            last_update=messages[-1].timestamp,
        )

    async def clear_session(self, session_id: str) -> int:
        self._invalidate_conversation(session_id)
        try:
            return await self.short_term.clear_session(session_id)
        except Exception as e:
            logger.error(f"Failed to clear session {session_id}: {e}")
            return 0

    async def keep_alive(self, session_id: str, seconds: Optional[int] = None) -> int:
        """Extend the TTL of every short-term entry of a session."""
        try:
            return await self.short_term.extend_ttl(session_id, seconds or self.config.short_term_ttl)
        except Exception as e:
            logger.error(f"Failed to extend session {session_id}: {e}")
            return 0

    async def build_context(
        self,
        session_id: str,
        query: Optional[str] = None,
        history_limit: int = 10,
        top_k: int = 5
    ) -> Dict[str, Any]:
        """Prior session context to hand to a workflow."""
        history = await self.get_conversation_history(session_id, history_limit)
        memories = await self.search_relevant_memories(query, top_k=top_k) if query else []
        summary = await self.generate_summary(session_id)
        return {
            "session_id": session_id,
            "recent_messages": [m.content for m in history],
            "relevant_memories": [
                {"content": r.entry.content, "score": round(r.score, 4)}
                for r in memories
                if r.entry.session_id != session_id or r.entry.type != MemoryType.CONVERSATION
            ],
            "summary": summary.summary if summary else None,
        }

    # ----- caches -----

    def get_cache_stats(self) -> Dict[str, Any]:
        return {
            "documents": self.document_cache.get_stats(),
            "searches": self.search_cache.get_stats(),
            "short_term_backend": getattr(self.short_term, "backend", type(self.short_term).__name__),
        }

    def clear_cache(self):
        self.document_cache.clear()
        self.search_cache.clear()

    async def close(self):
        await self.short_term.close()
