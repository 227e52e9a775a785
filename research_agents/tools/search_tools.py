"""
Search tools backed by a SearXNG metasearch instance.

- web_search: general web results
- news_search: news category, restricted to a recent time range
- company_search: official-site lookup plus recent news for a company
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, Field

from core.exceptions import ErrorCode, ExternalServiceError
from ..rate_limiter import RateLimit
from ..retry_strategy import RetryPolicy
from ..tool_registry import Tool, ToolCategory

logger = logging.getLogger(__name__)


@dataclass
class SearchResultItem:
    """Normalized search result"""
    title: str
    url: str
    snippet: str
    source_domain: str = ""
    engine: str = "searxng"
    published_date: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "url": self.url,
            "snippet": self.snippet,
            "domain": self.source_domain,
            "engine": self.engine,
            "published_date": self.published_date,
        }


class SearXNGClient:
    """Minimal async client for the SearXNG JSON API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        default_engines: Optional[List[str]] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.default_engines = default_engines
        self._client = client
        self._stats = {
            "total_searches": 0,
            "total_results": 0,
            "failed_searches": 0,
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _extract_domain(url: str) -> str:
        try:
            return urlparse(url).netloc.removeprefix("www.")
        except ValueError:
            return ""

    async def search(
        self,
        query: str,
        max_results: int = 10,
        categories: Optional[str] = None,
        time_range: Optional[str] = None
    ) -> List[SearchResultItem]:
        """Run one query. Raises ExternalServiceError when SearXNG fails."""
        params: Dict[str, Any] = {"q": query, "format": "json", "language": "en-US"}
        if self.default_engines:
            params["engines"] = ",".join(self.default_engines)
        if categories:
            params["categories"] = categories
        if time_range:
            params["time_range"] = time_range

        client = await self._get_client()
        self._stats["total_searches"] += 1
        try:
            response = await client.get(f"{self.base_url}/search", params=params)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self._stats["failed_searches"] += 1
            logger.error(f"SearXNG search failed for '{query[:30]}...': {e}")
            raise ExternalServiceError("searxng", str(e), code=ErrorCode.SEARXNG_ERROR)

        results = []
        seen_urls = set()
        for item in data.get("results", []):
            url = item.get("url", "")
            if not url or url in seen_urls:
                continue
            seen_urls.add(url)
            results.append(SearchResultItem(
                title=item.get("title", ""),
                url=url,
                snippet=item.get("content", "") or "",
                source_domain=self._extract_domain(url),
                engine=item.get("engine", "searxng"),
                published_date=item.get("publishedDate"),
                metadata={"category": item.get("category", "general")},
            ))
            if len(results) >= max_results:
                break

        self._stats["total_results"] += len(results)
        logger.debug(f"SearXNG query '{query[:30]}...': {len(results)} results")
        return results

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)


def days_to_time_range(days: int) -> str:
    if days <= 1:
        return "day"
    if days <= 7:
        return "week"
    if days <= 31:
        return "month"
    return "year"


class WebSearchParams(BaseModel):
    query: str = Field(..., min_length=1, description="Search query - be specific and include relevant keywords")
    num_results: int = Field(10, ge=1, le=20, description="Number of results to return (1-20)")
    time_range: Optional[str] = Field(None, pattern="^(day|week|month|year|all)$", description="Filter results by time range")


class WebSearchTool(Tool):
    name = "web_search"
    description = "Search the web for current information. Returns top results with titles, URLs, and snippets."
    category = ToolCategory.SEARCH
    parameters = WebSearchParams
    retry_policy = RetryPolicy(max_attempts=4, base_delay=1.0)
    rate_limit = RateLimit(max_calls=30, window_seconds=60.0)

    def __init__(self, client: SearXNGClient):
        self.client = client

    async def execute(self, params: WebSearchParams) -> Dict[str, Any]:
        time_range = None if params.time_range in (None, "all") else params.time_range
        results = await self.client.search(params.query, params.num_results, time_range=time_range)
        return {
            "results": [r.to_dict() for r in results],
            "count": len(results),
            "query": params.query,
        }


class NewsSearchParams(BaseModel):
    query: str = Field(..., min_length=1, description="News search query or company name")
    days: int = Field(7, ge=1, le=30, description="Days back to search (1-30)")
    limit: int = Field(10, ge=1, le=50, description="Maximum number of articles")


class NewsSearchTool(Tool):
    name = "news_search"
    description = "Search recent news articles about a topic, company, or person, with publication dates."
    category = ToolCategory.SEARCH
    parameters = NewsSearchParams
    rate_limit = RateLimit(max_calls=30, window_seconds=60.0)

    def __init__(self, client: SearXNGClient):
        self.client = client

    async def execute(self, params: NewsSearchParams) -> Dict[str, Any]:
        results = await self.client.search(
            params.query,
            params.limit,
            categories="news",
            time_range=days_to_time_range(params.days),
        )
        return {
            "articles": [
                {
                    "title": r.title,
                    "url": r.url,
                    "source": r.source_domain,
                    "published_at": r.published_date,
                    "description": r.snippet,
                }
                for r in results
            ],
            "count": len(results),
            "query": params.query,
        }


class CompanySearchParams(BaseModel):
    company_name: str = Field(..., min_length=1, description="Company name to search for")
    include_news: bool = Field(True, description="Include recent news")


class CompanySearchTool(Tool):
    name = "company_search"
    description = "Search for company information: official website, description, and recent news."
    category = ToolCategory.SEARCH
    parameters = CompanySearchParams

    def __init__(self, client: SearXNGClient):
        self.client = client

    async def execute(self, params: CompanySearchParams) -> Dict[str, Any]:
        web_query = self.client.search(f"{params.company_name} company official website", 5)
        if params.include_news:
            web_results, news_results = await asyncio.gather(
                web_query,
                self.client.search(params.company_name, 5, categories="news", time_range="month"),
            )
        else:
            web_results, news_results = await web_query, []

        return {
            "company": {
                "name": params.company_name,
                "sources": [r.to_dict() for r in web_results[:3]],
                "recent_news": [r.to_dict() for r in news_results[:3]],
            }
        }
