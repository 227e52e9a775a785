"""
Shared plumbing for research workers.

Most workers follow the same recipe:

1. optionally run a few web searches through the tool registry and index
   what comes back into the retrieval cache
2. pull retrieved context for the company
3. build a prompt from the target, the research goals, earlier-phase
   results and that context
4. call the generation router and parse the answer into the worker's
   pydantic output model (defaults when the answer has no usable block)

Subclasses mostly declare data: prompts, search queries, the output model.
"""

import hashlib
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Type

from pydantic import BaseModel

from ..base_worker import BaseWorker, TaskPayload
from ..llm_router import LLMRouter
from ..retrieval_cache import RetrievalCache
from ..structured_output import parse_structured
from ..tool_registry import ToolRegistry
from ..vector_store import VectorDocument

logger = logging.getLogger(__name__)

MAX_PRIOR_DATA_CHARS = 6000
SEARCH_TOOL = "web_search"


def source_document_id(worker_name: str, url: str) -> str:
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:16]
    return f"{worker_name}:{digest}"


def dedupe_sources(sources: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Keep the first source seen for each URL."""
    seen = set()
    unique = []
    for source in sources:
        url = source.get("url")
        if not url or url in seen:
            continue
        seen.add(url)
        unique.append(source)
    return unique


class ServiceWorker(BaseWorker):
    """
    Base for workers that talk to the shared services.

    Holds the router, retrieval cache and tool registry; any of them may be
    None, in which case the matching step is skipped.
    """

    required_fields = ("company_name",)

    # Retrieval
    context_query: str = "{company}"
    context_top_k: int = 5

    # Web search: query templates formatted with {company}
    search_queries: Sequence[str] = ()
    results_per_query: int = 5

    def __init__(
        self,
        router: Optional[LLMRouter] = None,
        retrieval: Optional[RetrievalCache] = None,
        tools: Optional[ToolRegistry] = None,
        **kwargs
    ):
        super().__init__(**kwargs)
        self.router = router
        self.retrieval = retrieval
        self.tools = tools

    # ----- search -----

    async def search_web(self, queries: Sequence[str]) -> List[Dict[str, Any]]:
        """Run queries through the web_search tool; failed calls yield nothing."""
        if self.tools is None or self.tools.get_tool(SEARCH_TOOL) is None or not queries:
            return []

        calls = await self.tools.execute_tools([
            {"name": SEARCH_TOOL, "params": {"query": q, "num_results": self.results_per_query}}
            for q in queries
        ])

        sources: List[Dict[str, Any]] = []
        for call in calls:
            if call.succeeded:
                sources.extend(call.result.get("results", []))
            else:
                logger.debug(f"[{self.name}] search '{call.params.get('query')}' failed: {call.error}")
        return dedupe_sources(sources)

    async def index_sources(self, company: str, sources: Sequence[Dict[str, Any]]) -> int:
        """Store search results in the retrieval cache for later phases."""
        if self.retrieval is None or not sources:
            return 0

        documents = [
            VectorDocument(
                id=source_document_id(self.name, s["url"]),
                content=f"{s.get('title', '')}\n{s.get('snippet', '')}".strip(),
                metadata={
                    "company": company,
                    "source": s["url"],
                    "worker": self.name,
                    "title": s.get("title", ""),
                },
            )
            for s in sources
        ]
        return await self.retrieval.add_documents(documents)

    async def retrieve(self, company: str) -> str:
        """Retrieved context for the company, or "" when retrieval fails."""
        if self.retrieval is None:
            return ""
        query = self.context_query.format(company=company)
        try:
            return await self.retrieval.retrieve_context(
                query,
                top_k=self.context_top_k,
                filter={"company": company},
            )
        except Exception as e:
            logger.warning(f"[{self.name}] context retrieval failed: {e}")
            return ""


class LLMWorker(ServiceWorker):
    """A worker whose answer comes from the generation router."""

    output_model: Type[BaseModel]
    system_prompt: str = "You are a business research analyst."
    temperature: float = 0.7
    max_tokens: int = 2000

    # Earlier workers whose results are quoted in the prompt
    uses_results: Sequence[str] = ()

    def task_prompt(self, payload: TaskPayload) -> str:
        """Task statement and requirements. Subclasses override."""
        return f"Analyze **{payload.text('company_name')}**."

    def output_format(self) -> str:
        example = self.output_model().model_dump(mode="json")
        return json.dumps(example, indent=2)

    def prior_findings(self, payload: TaskPayload) -> Dict[str, Any]:
        names = self.uses_results or list(payload.mapping("data"))
        return {name: payload.result_of(name) for name in names if payload.result_of(name)}

    def session_context(self, payload: TaskPayload) -> str:
        """Summary, recent messages and related memories passed in by the caller."""
        session = payload.mapping("context")
        lines = []
        if session.get("summary"):
            lines.append(str(session["summary"]))
        for message in session.get("recent_messages") or []:
            lines.append(f"- {message}")
        for memory in session.get("relevant_memories") or []:
            content = memory.get("content") if isinstance(memory, dict) else memory
            lines.append(f"- (related) {content}")
        return "\n".join(lines)

    def build_prompt(
        self,
        payload: TaskPayload,
        context: str = "",
        sources: Sequence[Dict[str, Any]] = ()
    ) -> str:
        sections = [self.task_prompt(payload)]

        goals = payload.sequence("goals")
        if goals:
            sections.append("**Research Goals:**\n" + "\n".join(f"- {g}" for g in goals))

        if sources:
            lines = [
                f"{i}. {s.get('title', '')} ({s.get('url', '')})\n   {s.get('snippet', '')}"
                for i, s in enumerate(sources[:10], 1)
            ]
            sections.append("**Search Results:**\n" + "\n".join(lines))

        if context:
            sections.append(f"**Retrieved Context:**\n{context.strip()}")

        session = self.session_context(payload)
        if session:
            sections.append(f"**Prior Session Context:**\n{session}")

        findings = self.prior_findings(payload)
        if findings:
            text = json.dumps(findings, indent=2, default=str)
            if len(text) > MAX_PRIOR_DATA_CHARS:
                text = text[:MAX_PRIOR_DATA_CHARS] + "\n..."
            sections.append(f"**Earlier Findings:**\n{text}")

        missing = payload.failed_workers()
        if missing:
            sections.append(f"**Unavailable Inputs:** {', '.join(missing)} (treat as unknown)")

        sections.append(
            "Respond with a single JSON object in this format:\n"
            f"```json\n{self.output_format()}\n```"
        )
        return "\n\n".join(sections)

    def finalize(self, result: Dict[str, Any], payload: TaskPayload, sources: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        """Hook for post-processing the parsed answer."""
        return result

    async def execute(self, payload: TaskPayload) -> Dict[str, Any]:
        if self.router is None:
            raise RuntimeError(f"Worker {self.name} has no generation router configured")

        company = payload.text("company_name")
        queries = [q.format(company=company) for q in self.search_queries]
        sources = await self.search_web(queries)
        await self.index_sources(company, sources)
        context = await self.retrieve(company)

        prompt = self.build_prompt(payload, context, sources)
        response = await self.router.generate_text(
            prompt,
            system_prompt=self.system_prompt,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )

        extraction = parse_structured(response.text, self.output_model)
        if not extraction.found_block:
            logger.warning(f"[{self.name}] no structured block in {response.provider} answer, using defaults")

        result = self.finalize(extraction.value.model_dump(mode="json"), payload, sources)
        result["metadata"] = {
            "provider": response.provider,
            "model": response.model,
            "structured": extraction.found_block,
            "fallback_fields": extraction.fallback_fields,
            "sources_indexed": len(sources),
        }
        return result
