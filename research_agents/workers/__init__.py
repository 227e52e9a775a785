"""
Research workers for the four-phase account research workflow.

    discovery:          research, news, product, market, contact
    analysis:           financial, competitive, risk, opportunity
    synthesis:          synthesis, strategy, writing
    quality-assurance:  validation, quality
"""

from typing import Any, Dict, Optional

from core.error_handler import ErrorHandler
from ..base_worker import BaseWorker
from ..llm_router import LLMRouter
from ..retrieval_cache import RetrievalCache
from ..tool_registry import ToolRegistry
from .analysis import CompetitiveWorker, FinancialWorker, OpportunityWorker, RiskWorker
from .base import LLMWorker, ServiceWorker
from .discovery import CompanyResearchWorker, ContactWorker, MarketWorker, NewsWorker, ProductWorker
from .quality import QualityWorker, ValidationWorker
from .synthesis import StrategyWorker, SynthesisWorker, WritingWorker

DEFAULT_WORKERS = (
    CompanyResearchWorker,
    NewsWorker,
    ProductWorker,
    MarketWorker,
    ContactWorker,
    FinancialWorker,
    CompetitiveWorker,
    RiskWorker,
    OpportunityWorker,
    SynthesisWorker,
    StrategyWorker,
    WritingWorker,
    ValidationWorker,
    QualityWorker,
)


def build_default_workers(
    router: Optional[LLMRouter] = None,
    retrieval: Optional[RetrievalCache] = None,
    tools: Optional[ToolRegistry] = None,
    settings: Optional[Any] = None,
    error_handler: Optional[ErrorHandler] = None,
    **kwargs
) -> Dict[str, BaseWorker]:
    """One instance of every research worker, keyed by name."""
    if settings is not None:
        kwargs.setdefault("max_attempts", settings.worker_max_attempts)
        kwargs.setdefault("retry_delay", settings.worker_retry_delay)
        kwargs.setdefault("timeout", settings.worker_timeout)
    error_handler = error_handler or ErrorHandler()

    workers = {}
    for worker_cls in DEFAULT_WORKERS:
        worker = worker_cls(
            router=router,
            retrieval=retrieval,
            tools=tools,
            error_handler=error_handler,
            **kwargs,
        )
        workers[worker.name] = worker
    return workers


__all__ = [
    "build_default_workers",
    "DEFAULT_WORKERS",
    "ServiceWorker",
    "LLMWorker",
    "CompanyResearchWorker",
    "NewsWorker",
    "ProductWorker",
    "MarketWorker",
    "ContactWorker",
    "FinancialWorker",
    "CompetitiveWorker",
    "RiskWorker",
    "OpportunityWorker",
    "SynthesisWorker",
    "StrategyWorker",
    "WritingWorker",
    "ValidationWorker",
    "QualityWorker",
]
