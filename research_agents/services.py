"""
Research Services

Builds the shared service graph once from ResearchSettings and hands it to
whoever needs it. One CircuitBreakerRegistry, one LLMRouter, one
RetrievalCache, one ToolRegistry, one WorkflowScheduler and one
SessionMemoryManager per container; nothing here is module-global except
the optional get_research_services() singleton.

Usage:
    services = await ResearchServices.from_settings(get_settings())
    async for event in services.run_research("Acme Corp", ["pricing"], session_id="s-1"):
        print(event.to_sse())
    await services.close()
"""

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional, Sequence

import httpx

from config.logging_config import ExecutionAuditLogger
from config.settings import ResearchSettings, get_settings
from core.error_handler import ErrorHandler
from .base_worker import BaseWorker
from .circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from .embeddings import build_embedding_service
from .events import EventEmitter, WorkflowEvent, WorkflowEventType
from .llm_backends import build_backends
from .llm_router import LLMRouter, RouterConfig
from .memory_manager import MemoryConfig, MemoryEntry, SessionMemoryManager, create_short_term_memory
from .qdrant_index import QdrantIndexConfig, QdrantVectorIndex
from .retrieval_cache import RetrievalCache
from .scheduler import WorkflowScheduler
from .tool_registry import ToolRegistry
from .tools import SearXNGClient, register_default_tools
from .vector_store import VectorStore
from .workers import build_default_workers

logger = logging.getLogger(__name__)


@dataclass
class ResearchServices:
    """Container for the shared research services."""

    settings: ResearchSettings
    http_client: httpx.AsyncClient
    breakers: CircuitBreakerRegistry
    router: LLMRouter
    store: VectorStore
    retrieval: RetrievalCache
    search_client: SearXNGClient
    tools: ToolRegistry
    error_handler: ErrorHandler
    workers: Dict[str, BaseWorker]
    emitter: EventEmitter
    scheduler: WorkflowScheduler
    memory: SessionMemoryManager
    index: Optional[QdrantVectorIndex] = None

    @classmethod
    async def from_settings(cls, settings: Optional[ResearchSettings] = None) -> "ResearchServices":
        settings = settings or get_settings()
        http_client = httpx.AsyncClient(timeout=settings.llm_request_timeout)

        breakers = CircuitBreakerRegistry(CircuitBreakerConfig(
            failure_threshold=settings.circuit_failure_threshold,
            cooldown_seconds=settings.circuit_cooldown_seconds,
        ))
        router = LLMRouter(
            build_backends(settings, client=http_client),
            breakers,
            RouterConfig(
                preferred_backend=settings.default_llm_provider,
                request_timeout=settings.llm_request_timeout,
                max_attempts=settings.llm_max_retries,
                retry_delay=settings.llm_retry_delay,
                max_tokens=settings.llm_max_tokens,
                temperature=settings.llm_temperature,
                provider_order=list(settings.llm_provider_order),
            ),
        )

        embeddings = build_embedding_service(settings, client=http_client)
        index = None
        if settings.qdrant_url:
            index = QdrantVectorIndex(QdrantIndexConfig(
                url=settings.qdrant_url,
                collection=settings.qdrant_collection,
                api_key=settings.qdrant_api_key,
                dimensions=settings.embedding_dimensions,
            ))
        store = VectorStore(embeddings, index=index, index_timeout=settings.vector_index_timeout)
        retrieval = RetrievalCache(
            store,
            router=router,
            document_cache_capacity=settings.document_cache_capacity,
            search_cache_capacity=settings.search_cache_capacity,
            default_top_k=settings.rag_top_k,
            max_context_tokens=settings.rag_max_context_tokens,
        )

        search_client = SearXNGClient(settings.searxng_url, timeout=settings.tool_timeout)
        tools = register_default_tools(
            ToolRegistry(
                default_timeout=settings.tool_timeout,
                max_concurrency=settings.tool_max_concurrency,
                history_limit=settings.tool_history_limit,
            ),
            search_client,
        )

        error_handler = ErrorHandler()
        workers = build_default_workers(router, retrieval, tools, settings=settings, error_handler=error_handler)
        emitter = EventEmitter()
        scheduler = WorkflowScheduler(
            workers,
            emitter=emitter,
            audit=ExecutionAuditLogger(),
            dependency_timeout=settings.dependency_timeout,
        )

        memory = SessionMemoryManager(
            retrieval,
            await create_short_term_memory(settings),
            MemoryConfig(
                short_term_ttl=settings.short_term_ttl,
                long_term_ttl=settings.long_term_ttl,
                max_conversation_length=settings.max_conversation_length,
                enable_semantic_memory=settings.enable_semantic_memory,
                document_cache_capacity=settings.document_cache_capacity,
                search_cache_capacity=settings.search_cache_capacity,
            ),
        )

        logger.info(
            f"Research services ready: backends={router.get_available_backends()}, "
            f"workers={len(workers)}, qdrant={'on' if index else 'off'}"
        )
        return cls(
            settings=settings,
            http_client=http_client,
            breakers=breakers,
            router=router,
            store=store,
            retrieval=retrieval,
            search_client=search_client,
            tools=tools,
            error_handler=error_handler,
            workers=workers,
            emitter=emitter,
            scheduler=scheduler,
            memory=memory,
            index=index,
        )

    async def run_research(
        self,
        company_name: str,
        goals: Optional[Sequence[str]] = None,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> AsyncIterator[WorkflowEvent]:
        """
        Run the research workflow, threading session memory through it.

        With a session_id the request and the outcome are saved as
        conversation turns, and prior turns are passed to workers as context.
        """
        goals = list(goals or [])
        context = None
        if session_id:
            context = await self.memory.build_context(session_id, query=company_name)
            request = f"Research {company_name}" + (f": {', '.join(goals)}" if goals else "")
            await self.memory.save_message(session_id, MemoryEntry.create(
                session_id, request, metadata={"company": company_name, "topic": "research-request", "role": "user"},
                user_id=user_id,
            ))

        async for event in self.scheduler.run(company_name, goals, context=context):
            if session_id and event.is_terminal:
                await self._remember_outcome(session_id, company_name, event, user_id)
            yield event

    async def _remember_outcome(self, session_id: str, company_name: str, event: WorkflowEvent, user_id: Optional[str]):
        if event.event_type == WorkflowEventType.WORKFLOW_ERROR:
            content = f"Research on {company_name} failed: {event.error}"
        else:
            synthesis = (event.results or {}).get("synthesis", {}).get("synthesis", {})
            content = synthesis.get("summary") or f"Research on {company_name} completed"
        await self.memory.save_message(session_id, MemoryEntry.create(
            session_id, content,
            metadata={"company": company_name, "topic": "research-result", "role": "assistant",
                      "workflow_id": event.workflow_id},
            user_id=user_id,
        ))

    def get_status(self) -> Dict[str, object]:
        return {
            "router": self.router.get_health(),
            "retrieval": self.retrieval.get_stats(),
            "tools": self.tools.get_statistics(),
            "workers": {name: stats.to_dict() for name, stats in self.scheduler.get_worker_stats().items()},
            "memory": self.memory.get_cache_stats(),
            "errors": self.error_handler.get_error_stats(),
        }

    async def close(self):
        self.emitter.close()
        await self.store.flush()
        await self.router.close()
        await self.search_client.close()
        if self.index is not None:
            await self.index.close()
        await self.memory.close()
        await self.http_client.aclose()
        logger.info("Research services closed")


# Singleton instance
_services: Optional[ResearchServices] = None


async def get_research_services() -> ResearchServices:
    """Get or create the process-wide ResearchServices instance"""
    global _services
    if _services is None:
        _services = await ResearchServices.from_settings()
    return _services


async def shutdown_research_services():
    global _services
    if _services is not None:
        await _services.close()
        _services = None
