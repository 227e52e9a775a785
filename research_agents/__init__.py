"""
Research Agents

Orchestration core for multi-phase company research:
- Scheduler: runs workers in phases (parallel or sequential) with
  dependency gating and progress events
- Workers: uniform execute/retry/timeout contract with per-worker stats
- Router: circuit-breaker-protected fallback across generation backends
- Retrieval: embeddings, vector search, LRU-cached documents and searches
- Tools: validated, rate-limited, time-boxed tool execution
- Memory: short-term session memory plus semantic long-term memory

Build everything at once with ResearchServices.from_settings().
"""

from .base_worker import BaseWorker, TaskPayload, WorkerStats
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitOpenError,
    CircuitState,
)
from .embeddings import EmbeddingService, HashingEmbedder, cosine_similarity
from .events import EventEmitter, WorkflowEvent, WorkflowEventType
from .llm_backends import GenerationBackend, LLMResponse
from .llm_router import LLMRouter, RouterConfig
from .lru_cache import LRUCache
from .memory_manager import (
    InMemoryShortTermMemory,
    MemoryConfig,
    MemoryEntry,
    MemoryType,
    RedisShortTermMemory,
    SessionMemoryManager,
)
from .retrieval_cache import RetrievalCache
from .retry_strategy import RetryPolicy
from .scheduler import (
    PhasePolicy,
    PhaseSpec,
    TaskSpec,
    TaskStatus,
    WorkflowScheduler,
    WorkUnit,
    default_research_phases,
)
from .services import ResearchServices, get_research_services, shutdown_research_services
from .structured_output import parse_structured
from .tool_registry import Tool, ToolCall, ToolCategory, ToolRegistry
from .vector_store import SearchResult, VectorDocument, VectorStore

__all__ = [
    # Workers
    "BaseWorker",
    "TaskPayload",
    "WorkerStats",
    # Resilience
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
    "RetryPolicy",
    "GenerationBackend",
    "LLMResponse",
    "LLMRouter",
    "RouterConfig",
    # Retrieval
    "EmbeddingService",
    "HashingEmbedder",
    "cosine_similarity",
    "LRUCache",
    "RetrievalCache",
    "SearchResult",
    "VectorDocument",
    "VectorStore",
    # Tools
    "Tool",
    "ToolCall",
    "ToolCategory",
    "ToolRegistry",
    # Memory
    "InMemoryShortTermMemory",
    "MemoryConfig",
    "MemoryEntry",
    "MemoryType",
    "RedisShortTermMemory",
    "SessionMemoryManager",
    # Scheduling
    "EventEmitter",
    "WorkflowEvent",
    "WorkflowEventType",
    "PhasePolicy",
    "PhaseSpec",
    "TaskSpec",
    "TaskStatus",
    "WorkflowScheduler",
    "WorkUnit",
    "default_research_phases",
    "parse_structured",
    # Services
    "ResearchServices",
    "get_research_services",
    "shutdown_research_services",
]
