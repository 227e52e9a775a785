"""
Discovery phase workers.

They run in parallel at the start of a workflow, gather raw material from
web search, and index it into the retrieval cache so the analysis workers
can retrieve it.

- research: search-only company overview (no generation call)
- news: recent developments and coverage sentiment
- product: products, services and value propositions
- market: market position, trends, opportunities and threats
- contact: leadership and decision-makers
"""

import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from ..base_worker import TaskPayload
from .base import LLMWorker, ServiceWorker

logger = logging.getLogger(__name__)

MIN_FINDING_LENGTH = 20
FINDINGS_PER_SNIPPET = 3

BASE_QUERIES = (
    "{company} company information",
    "{company} overview",
    "{company} business",
)

FOCUS_QUERIES: Dict[str, Sequence[str]] = {
    "overview": ("{company} company profile", "{company} about", "{company} history"),
    "recent-news": ("{company} latest news", "{company} recent developments", "{company} press releases"),
    "products-services": ("{company} products", "{company} services", "{company} offerings"),
    "market-position": ("{company} market position", "{company} industry", "{company} competitors"),
    "decision-makers": ("{company} leadership team", "{company} executives", "{company} management"),
}

_SENTENCE_SPLIT = re.compile(r"[.!?]+")


def extract_findings(snippet: str) -> List[str]:
    """Up to three substantial sentences from a search snippet."""
    sentences = [s.strip() for s in _SENTENCE_SPLIT.split(snippet or "")]
    return [s for s in sentences if len(s) > MIN_FINDING_LENGTH][:FINDINGS_PER_SNIPPET]


class CompanyResearchWorker(ServiceWorker):
    """Search-driven overview: sources, key findings and a short summary."""

    name = "research"
    description = "Gathers company information from web search"
    capabilities = ("web-search", "information-gathering", "source-collection")

    def queries_for(self, company: str, focus: str) -> List[str]:
        templates = list(BASE_QUERIES) + list(FOCUS_QUERIES.get(focus, ()))
        return [t.format(company=company) for t in templates]

    async def execute(self, payload: TaskPayload) -> Dict[str, Any]:
        company = payload.text("company_name")
        focus = payload.text("focus", "overview")

        sources = await self.search_web(self.queries_for(company, focus))
        await self.index_sources(company, sources)

        findings: List[str] = []
        for source in sources:
            for finding in extract_findings(source.get("snippet", "")):
                if finding not in findings:
                    findings.append(finding)

        logger.info(f"[research] {company}: {len(sources)} sources, {len(findings)} findings")
        return {
            "sources": sources,
            "key_findings": findings,
            "summary": (
                f"Research completed for {company} focusing on {focus}. "
                f"Found {len(findings)} key findings from multiple sources."
            ),
        }


# ============================================
# NEWS
# ============================================

class NewsItem(BaseModel):
    title: str = ""
    source: str = ""
    url: str = ""
    summary: str = ""
    sentiment: str = "neutral"


class SentimentBreakdown(BaseModel):
    positive: int = 0
    negative: int = 0
    neutral: int = 0


class NewsOutput(BaseModel):
    news_items: List[NewsItem] = Field(default_factory=list)
    recent_developments: List[str] = Field(default_factory=list)
    trends: List[str] = Field(default_factory=list)
    sentiment: SentimentBreakdown = Field(default_factory=SentimentBreakdown)


class NewsWorker(LLMWorker):
    name = "news"
    description = "Tracks recent news and developments"
    capabilities = ("news-monitoring", "sentiment-analysis", "trend-detection")
    output_model = NewsOutput
    system_prompt = "You are a news analyst. Summarize coverage accurately and only from the sources given."
    temperature = 0.5
    search_queries = ("{company} latest news", "{company} announcement", "{company} press release")
    context_query = "{company} news announcements developments"

    def task_prompt(self, payload: TaskPayload) -> str:
        company = payload.text("company_name")
        return (
            f"Review recent news coverage of **{company}**.\n\n"
            "1. List the most relevant news items with source and sentiment (positive/negative/neutral)\n"
            "2. Summarize recent developments (launches, partnerships, leadership changes, funding)\n"
            "3. Identify trends across the coverage\n"
            "4. Count items per sentiment"
        )

    def finalize(self, result: Dict[str, Any], payload: TaskPayload, sources: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        # Sentiment counts always reflect the items actually returned
        counts = {"positive": 0, "negative": 0, "neutral": 0}
        for item in result["news_items"]:
            label = item.get("sentiment", "neutral")
            counts[label if label in counts else "neutral"] += 1
        if result["news_items"]:
            result["sentiment"] = counts
        return result


# ============================================
# PRODUCT
# ============================================

class Product(BaseModel):
    name: str = ""
    description: str = ""
    category: str = ""
    target_market: str = ""


class ProductOutput(BaseModel):
    products: List[Product] = Field(default_factory=list)
    services: List[str] = Field(default_factory=list)
    value_propositions: List[str] = Field(default_factory=list)
    pricing: Optional[str] = None


class ProductWorker(LLMWorker):
    name = "product"
    description = "Maps products, services and value propositions"
    capabilities = ("product-analysis", "offering-mapping")
    output_model = ProductOutput
    system_prompt = "You are a product analyst. Describe offerings precisely; do not invent products."
    temperature = 0.5
    search_queries = ("{company} products", "{company} services", "{company} pricing")
    context_query = "{company} products services offerings"

    def task_prompt(self, payload: TaskPayload) -> str:
        company = payload.text("company_name")
        return (
            f"Catalogue the offerings of **{company}**.\n\n"
            "1. Products: name, description, category, target market\n"
            "2. Services offered\n"
            "3. Core value propositions\n"
            "4. Pricing model, if stated in the sources"
        )


# ============================================
# MARKET
# ============================================

class MarketOutput(BaseModel):
    market_position: str = "Unknown"
    market_share: Optional[float] = None
    industry_trends: List[str] = Field(default_factory=list)
    opportunities: List[str] = Field(default_factory=list)
    threats: List[str] = Field(default_factory=list)


class MarketWorker(LLMWorker):
    name = "market"
    description = "Assesses market position and industry dynamics"
    capabilities = ("market-analysis", "industry-trends")
    output_model = MarketOutput
    system_prompt = "You are a market research analyst. Ground every claim in the sources provided."
    search_queries = ("{company} market share", "{company} industry trends", "{company} competitors")
    context_query = "{company} market industry position"
    context_top_k = 10

    def task_prompt(self, payload: TaskPayload) -> str:
        company = payload.text("company_name")
        return (
            f"Assess the market position of **{company}**.\n\n"
            "1. Market position (leader, challenger, niche, emerging)\n"
            "2. Estimated market share as a percentage, if known\n"
            "3. Industry trends affecting the company\n"
            "4. Market opportunities and threats"
        )


# ============================================
# CONTACT
# ============================================

class Contact(BaseModel):
    name: str = ""
    title: str = ""
    level: str = "unknown"
    email: Optional[str] = None
    linkedin: Optional[str] = None


class ContactOutput(BaseModel):
    contacts: List[Contact] = Field(default_factory=list)
    decision_makers: List[Contact] = Field(default_factory=list)
    org_structure: str = ""


class ContactWorker(LLMWorker):
    name = "contact"
    description = "Identifies leadership and decision-makers"
    capabilities = ("contact-discovery", "org-mapping")
    output_model = ContactOutput
    system_prompt = (
        "You are an expert at extracting contact information. Be accurate and only "
        "include information explicitly stated in the sources."
    )
    temperature = 0.3
    max_tokens = 1500
    search_queries = (
        "{company} leadership team",
        "{company} about team page",
        "{company} executives LinkedIn",
    )
    context_query = "{company} leadership executives team"

    def task_prompt(self, payload: TaskPayload) -> str:
        company = payload.text("company_name")
        return (
            f"Extract executive and decision-maker contact information for **{company}**.\n\n"
            "For each person: name, title/role, level (executive/manager/individual), "
            "email and LinkedIn URL if available. Describe the organisation structure briefly."
        )

    def finalize(self, result: Dict[str, Any], payload: TaskPayload, sources: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        if not result["decision_makers"]:
            result["decision_makers"] = [c for c in result["contacts"] if c.get("level") == "executive"]
        return result
