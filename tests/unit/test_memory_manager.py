"""
Unit Tests for session memory.
"""

import fnmatch
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from conftest import StallingIndex
from config.settings import ResearchSettings
from research_agents import memory_manager
from research_agents.memory_manager import (
    InMemoryShortTermMemory,
    MemoryConfig,
    MemoryEntry,
    MemoryType,
    RedisShortTermMemory,
    SessionMemoryManager,
    create_short_term_memory,
    message_key,
)
from research_agents.qdrant_index import IndexMatch
from research_agents.retrieval_cache import RetrievalCache
from research_agents.vector_store import VectorStore

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def message(session_id: str, content: str, minute: int, **metadata) -> MemoryEntry:
    entry = MemoryEntry.create(session_id, content, metadata=metadata)
    entry.timestamp = T0 + timedelta(minutes=minute)
    return entry


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the short-term store."""

    def __init__(self, reachable: bool = True):
        self.reachable = reachable
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.closed = False

    async def ping(self):
        if not self.reachable:
            raise ConnectionError("Connection refused")
        return True

    async def setex(self, key: str, ttl: int, value: str):
        self.data[key] = value
        self.ttls[key] = ttl

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def mget(self, keys: List[str]) -> List[Optional[str]]:
        return [self.data.get(k) for k in keys]

    async def scan_iter(self, match: str = "*", count: int = 10):
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def expire(self, key: str, seconds: int):
        self.ttls[key] = seconds

    async def aclose(self):
        self.closed = True


class BrokenStore(InMemoryShortTermMemory):
    async def set(self, key, entry, ttl=None):
        raise ConnectionError("store offline")

    async def session_messages(self, session_id, limit):
        raise ConnectionError("store offline")


class TestMemoryEntry:
    def test_dict_round_trip_keeps_type_and_times(self):
        entry = message("s1", "hello", 0, topic="intro")
        entry.type = MemoryType.EPISODIC
        restored = MemoryEntry.from_dict(entry.to_dict())
        assert restored == entry


class TestInMemoryShortTermMemory:
    """TTL expiry with an injected clock."""

    @pytest.mark.asyncio
    async def test_entries_expire(self, clock):
        store = InMemoryShortTermMemory(ttl=60, clock=clock)
        entry = message("s1", "hello", 0)
        await store.set(message_key("s1", entry.id), entry)

        clock.advance(59)
        assert await store.get(message_key("s1", entry.id)) is entry
        clock.advance(1)
        assert await store.get(message_key("s1", entry.id)) is None

    @pytest.mark.asyncio
    async def test_session_messages_oldest_first_and_limited(self, clock):
        store = InMemoryShortTermMemory(clock=clock)
        for minute in (2, 0, 1):
            entry = message("s1", f"m{minute}", minute)
            await store.set(message_key("s1", entry.id), entry)
        other = message("s2", "elsewhere", 0)
        await store.set(message_key("s2", other.id), other)

        assert [e.content for e in await store.session_messages("s1", 10)] == ["m0", "m1", "m2"]
        assert [e.content for e in await store.session_messages("s1", 2)] == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_extend_ttl_and_clear(self, clock):
        store = InMemoryShortTermMemory(ttl=10, clock=clock)
        entry = message("s1", "hello", 0)
        await store.set(message_key("s1", entry.id), entry)

        assert await store.extend_ttl("s1", 100) == 1
        clock.advance(50)
        assert len(await store.session_messages("s1", 10)) == 1

        assert await store.clear_session("s1") == 1
        assert await store.session_messages("s1", 10) == []


class TestRedisShortTermMemory:
    """JSON entries under SETEX against a fake client."""

    @pytest.mark.asyncio
    async def test_set_get_and_session_scan(self):
        client = FakeRedis()
        store = RedisShortTermMemory("redis://test", ttl=120, client=client)
        first, second = message("s1", "first", 0, topic="intro"), message("s1", "second", 1)
        for entry in (second, first):
            await store.set(message_key("s1", entry.id), entry)

        assert await store.connect() is True
        assert client.ttls[message_key("s1", first.id)] == 120
        restored = await store.get(message_key("s1", first.id))
        assert restored.content == "first"
        assert restored.metadata == {"topic": "intro"}
        assert [e.content for e in await store.session_messages("s1", 10)] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_clear_and_extend(self):
        client = FakeRedis()
        store = RedisShortTermMemory("redis://test", client=client)
        entry = message("s1", "hello", 0)
        await store.set(message_key("s1", entry.id), entry)

        assert await store.extend_ttl("s1", 900) == 1
        assert client.ttls[message_key("s1", entry.id)] == 900
        assert await store.clear_session("s1") == 1
        assert await store.clear_session("s1") == 0
        await store.close()
        assert client.closed

    @pytest.mark.asyncio
    async def test_factory_falls_back_when_unreachable(self, monkeypatch):
        client = FakeRedis(reachable=False)
        monkeypatch.setattr(memory_manager.redis, "from_url", lambda url, **kwargs: client)

        store = await create_short_term_memory(ResearchSettings(redis_url="redis://down:6379"))

        assert isinstance(store, InMemoryShortTermMemory)
        assert client.closed

    @pytest.mark.asyncio
    async def test_factory_uses_reachable_redis(self, monkeypatch):
        client = FakeRedis()
        monkeypatch.setattr(memory_manager.redis, "from_url", lambda url, **kwargs: client)

        store = await create_short_term_memory(ResearchSettings(redis_url="redis://up:6379", short_term_ttl=30))

        assert store.backend == "redis"
        assert store.ttl == 30

    @pytest.mark.asyncio
    async def test_factory_without_url(self):
        store = await create_short_term_memory(ResearchSettings(redis_url=None))
        assert store.backend == "memory"


class TestConversationHistory:
    """Cached histories and invalidation."""

    @pytest.mark.asyncio
    async def test_save_invalidates_cached_history(self):
        memory = SessionMemoryManager()
        await memory.save_message("s1", message("s1", "first", 0))

        assert [m.content for m in await memory.get_conversation_history("s1")] == ["first"]
        assert memory.document_cache.has("conversation:s1:50")

        await memory.save_message("s1", message("s1", "second", 1))
        assert not memory.document_cache.has("conversation:s1:50")
        assert [m.content for m in await memory.get_conversation_history("s1")] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_history_served_from_cache(self):
        memory = SessionMemoryManager()
        await memory.save_message("s1", message("s1", "first", 0))

        await memory.get_conversation_history("s1", 5)
        await memory.get_conversation_history("s1", 5)
        assert memory.get_cache_stats()["documents"]["hits"] == 1

    @pytest.mark.asyncio
    async def test_store_failures_degrade_to_empty(self):
        memory = SessionMemoryManager(short_term=BrokenStore())
        await memory.save_message("s1", message("s1", "lost", 0))
        assert await memory.get_conversation_history("s1") == []

    @pytest.mark.asyncio
    async def test_summary(self):
        memory = SessionMemoryManager()
        assert await memory.generate_summary("s1") is None

        await memory.save_message("s1", message("s1", "Research Acme", 0, topic="research-request", company="Acme"))
        await memory.save_message("s1", message("s1", "Now Globex", 5, topic="research-request", company="Globex"))

        summary = await memory.generate_summary("s1")
        assert summary.summary == "Conversation with 2 messages"
        assert summary.key_topics == ["research-request"]
        assert summary.entities == ["Acme", "Globex"]
        assert summary.start_time == T0
        assert summary.last_update == T0 + timedelta(minutes=5)
        assert summary.to_dict()["message_count"] == 2

    @pytest.mark.asyncio
    async def test_clear_session_and_keep_alive(self, clock):
        memory = SessionMemoryManager(short_term=InMemoryShortTermMemory(ttl=10, clock=clock))
        await memory.save_message("s1", message("s1", "hello", 0))

        assert await memory.keep_alive("s1", 100) == 1
        clock.advance(50)
        assert len(await memory.get_conversation_history("s1")) == 1

        assert await memory.clear_session("s1") == 1
        assert await memory.get_conversation_history("s1") == []


class TestEntities:
    @pytest.mark.asyncio
    async def test_store_and_get(self, clock):
        store = InMemoryShortTermMemory(ttl=10, clock=clock)
        memory = SessionMemoryManager(short_term=store, config=MemoryConfig(short_term_ttl=10, long_term_ttl=1000))

        await memory.store_entity("company", "Acme", {"industry": "robotics"})
        assert await memory.get_entity("company", "Acme") == {"industry": "robotics"}

        # Entities outlive short-term entries
        memory.clear_cache()
        clock.advance(500)
        assert await memory.get_entity("company", "Acme") == {"industry": "robotics"}
        assert await memory.get_entity("company", "Globex") is None


class TestSemanticMemory:
    """Indexing into and searching the retrieval cache."""

    @pytest.mark.asyncio
    async def test_disabled_without_retrieval(self):
        memory = SessionMemoryManager()
        assert not memory.semantic_enabled
        assert await memory.search_relevant_memories("anything") == []

    @pytest.mark.asyncio
    async def test_conversation_messages_are_indexed(self, retrieval):
        memory = SessionMemoryManager(retrieval)
        entry = message("s1", "Acme builds industrial robots", 0, company="Acme")
        await memory.save_message("s1", entry)

        document = retrieval.get_document(entry.id)
        assert document.metadata["session_id"] == "s1"
        assert document.metadata["type"] == "conversation"
        assert document.metadata["company"] == "Acme"

        results = await memory.search_relevant_memories("industrial robots")
        assert results[0].entry.id == entry.id
        assert results[0].entry.timestamp == T0
        assert results[0].score > 0

    @pytest.mark.asyncio
    async def test_non_conversation_entries_not_indexed(self, retrieval):
        memory = SessionMemoryManager(retrieval)
        entry = MemoryEntry.create("s1", "a scratch note", type=MemoryType.EPISODIC)
        await memory.save_message("s1", entry)
        assert retrieval.get_document(entry.id) is None

    @pytest.mark.asyncio
    async def test_threshold_and_filter(self, retrieval):
        memory = SessionMemoryManager(retrieval)
        await memory.save_message("s1", message("s1", "Acme builds industrial robots", 0))
        await memory.save_message("s2", message("s2", "Globex sells garden furniture", 0))

        only_s2 = await memory.search_relevant_memories("robots", filter={"session_id": "s2"})
        assert [r.entry.session_id for r in only_s2] == ["s2"]
        assert await memory.search_relevant_memories("robots", threshold=1.01) == []

    @pytest.mark.asyncio
    async def test_search_results_cached_until_next_write(self, retrieval):
        memory = SessionMemoryManager(retrieval)
        await memory.save_message("s1", message("s1", "Acme builds industrial robots", 0))

        await memory.search_relevant_memories("robots")
        await memory.search_relevant_memories("robots")
        assert memory.get_cache_stats()["searches"]["hits"] == 1

        await memory.save_message("s1", message("s1", "Acme also sells robot arms", 1))
        assert len(await memory.search_relevant_memories("robots")) == 2

    @pytest.mark.asyncio
    async def test_timed_out_search_is_not_cached(self, embeddings):
        index = StallingIndex([IndexMatch(
            id="m1", score=0.9, metadata={"content": "Acme builds robots", "session_id": "s1", "type": "conversation"},
        )])
        memory = SessionMemoryManager(RetrievalCache(VectorStore(embeddings, index=index, index_timeout=0.01)))

        index.stall = 0.2
        assert await memory.search_relevant_memories("robots") == []

        index.stall = 0.0
        results = await memory.search_relevant_memories("robots")
        assert [r.entry.id for r in results] == ["m1"]
        assert memory.get_cache_stats()["searches"]["hits"] == 0

    @pytest.mark.asyncio
    async def test_entities_are_searchable(self, retrieval):
        memory = SessionMemoryManager(retrieval)
        entry = await memory.store_entity("company", "Acme", {"industry": "robotics"}, session_id="s1")

        results = await memory.search_relevant_memories("company Acme")
        assert results[0].entry.id == entry.id
        assert results[0].entry.type == MemoryType.ENTITY


class TestBuildContext:
    @pytest.mark.asyncio
    async def test_context_for_workflow(self, retrieval):
        memory = SessionMemoryManager(retrieval)
        await memory.save_message("s1", message("s1", "Research Acme robots", 0, company="Acme"))
        await memory.save_message("s0", message("s0", "Acme robots won an award last year", 0))

        context = await memory.build_context("s1", query="Acme robots")

        assert context["session_id"] == "s1"
        assert context["recent_messages"] == ["Research Acme robots"]
        assert context["summary"] == "Conversation with 1 messages"
        related = [m["content"] for m in context["relevant_memories"]]
        assert related == ["Acme robots won an award last year"]

    @pytest.mark.asyncio
    async def test_empty_session(self):
        context = await SessionMemoryManager().build_context("new")
        assert context == {"session_id": "new", "recent_messages": [], "relevant_memories": [], "summary": None}
