"""
Shared pytest fixtures for research core tests.

Everything here runs offline: generation goes through scripted backends,
embeddings fall back to the hashing embedder, and time is injected.
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import pytest
from pydantic import BaseModel

# Add repository root to path
ROOT_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT_DIR))

from research_agents.circuit_breaker import CircuitBreakerRegistry  # noqa: E402
from research_agents.embeddings import EmbeddingService  # noqa: E402
from research_agents.llm_backends import GenerationBackend, GenerationOptions, LLMResponse  # noqa: E402
from research_agents.llm_router import LLMRouter, RouterConfig  # noqa: E402
from research_agents.qdrant_index import IndexMatch  # noqa: E402
from research_agents.retrieval_cache import RetrievalCache  # noqa: E402
from research_agents.tool_registry import Tool, ToolCategory  # noqa: E402
from research_agents.vector_store import VectorStore  # noqa: E402


# ============================================
# Time Fixtures
# ============================================

class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class SleepRecorder:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return SleepRecorder()


# ============================================
# Generation Fixtures
# ============================================

Reply = Union[str, BaseException, Callable[[str], str]]


class ScriptedBackend(GenerationBackend):
    """
    Generation backend that replays scripted replies.

    Each reply is a string, an exception to raise, or a callable that maps
    the prompt to a string. The last reply repeats once the script runs out.
    """

    def __init__(self, name: str, replies: Optional[List[Reply]] = None, available: bool = True):
        super().__init__(api_key="test-key" if available else None, model=f"{name}-model")
        self.name = name
        self.replies: List[Reply] = list(replies or ["{}"])
        self.prompts: List[str] = []

    async def _generate(self, prompt: str, options: GenerationOptions) -> LLMResponse:
        self.prompts.append(prompt)
        index = min(len(self.prompts) - 1, len(self.replies) - 1)
        reply = self.replies[index]
        if isinstance(reply, BaseException):
            raise reply
        text = reply(prompt) if callable(reply) else reply
        return LLMResponse(text=text, provider=self.name, model=self.model)


@pytest.fixture
def make_router(sleep):
    """Build an LLMRouter over scripted backends, registered in order."""

    def _make(*backends: ScriptedBackend, clock: Any = None, **config) -> LLMRouter:
        breakers = CircuitBreakerRegistry(clock=clock) if clock else CircuitBreakerRegistry()
        config.setdefault("preferred_backend", backends[0].name)
        return LLMRouter(
            {b.name: b for b in backends},
            breakers,
            RouterConfig(**config),
            sleep=sleep,
        )

    return _make


# ============================================
# Retrieval Fixtures
# ============================================

@pytest.fixture
def embeddings():
    """Provider-less embedding service: always the hashing embedder."""
    return EmbeddingService(dimensions=64)


@pytest.fixture
def vector_store(embeddings):
    return VectorStore(embeddings)


@pytest.fixture
def retrieval(vector_store):
    return RetrievalCache(vector_store, document_cache_capacity=10, search_cache_capacity=5)


class StallingIndex:
    """External index that answers with fixed matches, or stalls when told to."""

    def __init__(self, matches: Optional[List[IndexMatch]] = None):
        self.matches = matches or []
        self.stall = 0.0
        self.queries = 0

    async def upsert(self, doc_id: str, vector: List[float], metadata: Dict[str, Any]):
        pass

    async def query(self, vector: List[float], top_k: int, filter: Optional[Dict[str, Any]] = None):
        self.queries += 1
        if self.stall:
            await asyncio.sleep(self.stall)
        return self.matches

    async def delete(self, doc_ids: List[str]):
        pass

    async def clear(self):
        pass


# ============================================
# Tool Fixtures
# ============================================

class FakeSearchParams(BaseModel):
    query: str
    num_results: int = 5


class FakeWebSearch(Tool):
    """web_search stand-in that returns the same results for every query."""

    name = "web_search"
    category = ToolCategory.SEARCH
    parameters = FakeSearchParams

    def __init__(self, results: List[dict]):
        self.results = results
        self.queries: List[str] = []

    async def execute(self, params: FakeSearchParams):
        self.queries.append(params.query)
        return {"query": params.query, "results": list(self.results), "count": len(self.results)}
