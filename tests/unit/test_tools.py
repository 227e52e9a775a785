"""
Unit Tests for the built-in tools.
"""

import httpx
import pytest

from core.exceptions import ExternalServiceError
from research_agents.tool_registry import ToolRegistry, ToolStatus
from research_agents.tools import SearXNGClient, register_default_tools
from research_agents.tools.search_tools import days_to_time_range


@pytest.fixture
def registry(sleep):
    return register_default_tools(ToolRegistry(sleep=sleep))


class TestCalculator:
    """Arithmetic over a whitelisted AST."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("expression,expected", [
        ("2 + 2 * 3", 8),
        ("2 * (3 + 4)", 14),
        ("sqrt(144)", 12),
        ("Math.sqrt(16) + Math.PI", 7.14),
        ("-5 % 3", 1),
        ("2 ** 10", 1024),
    ])
    async def test_expressions(self, registry, expression, expected):
        call = await registry.execute_tool("calculator", {"expression": expression})
        assert call.succeeded, call.error
        assert call.result["result"] == pytest.approx(expected)

    @pytest.mark.asyncio
    async def test_precision(self, registry):
        call = await registry.execute_tool("calculator", {"expression": "10 / 3", "precision": 4})
        assert call.result["result"] == 3.3333
        assert call.result["formatted"] == "10 / 3 = 3.3333"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("expression", [
        "__import__('os').system('ls')",
        "open('x')",
        "1 / 0",
        "2 +",
        "'text'",
        "2 ** 100000",
    ])
    async def test_rejected_expressions(self, registry, expression):
        call = await registry.execute_tool("calculator", {"expression": expression})
        assert call.status == ToolStatus.ERROR


class TestFinancialCalculator:
    """Financial formulas."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("metric,values,expected", [
        ("roi", {"initial": 100, "final": 150}, 50.0),
        ("growth_rate", {"initial": 200, "final": 150}, -25.0),
        ("cagr", {"initial": 100, "final": 121, "years": 2}, 10.0),
        ("pe_ratio", {"price": 50, "eps": 2.5}, 20.0),
        ("price_to_sales", {"market_cap": 1000, "revenue": 250}, 4.0),
        ("profit_margin", {"net_income": 15, "revenue": 60}, 25.0),
    ])
    async def test_metrics(self, registry, metric, values, expected):
        call = await registry.execute_tool("financial_calculator", {"metric": metric, "values": values})
        assert call.succeeded, call.error
        assert call.result["result"] == pytest.approx(expected)
        assert call.result["metric"] == metric

    @pytest.mark.asyncio
    async def test_missing_inputs(self, registry):
        call = await registry.execute_tool("financial_calculator", {"metric": "cagr", "values": {"initial": 100}})
        assert call.status == ToolStatus.ERROR
        assert "initial, final, years" in call.error

    @pytest.mark.asyncio
    async def test_zero_divisor_is_missing(self, registry):
        call = await registry.execute_tool("financial_calculator", {"metric": "pe_ratio", "values": {"price": 10, "eps": 0}})
        assert call.status == ToolStatus.ERROR

    @pytest.mark.asyncio
    async def test_unknown_metric_fails_validation(self, registry):
        call = await registry.execute_tool("financial_calculator", {"metric": "ebitda", "values": {}})
        assert call.error.startswith("Invalid parameters:")


class TestDataAnalysis:
    """Descriptive statistics."""

    @pytest.mark.asyncio
    async def test_default_operations(self, registry):
        call = await registry.execute_tool("data_analysis", {"data": [1, 2, 3, 4, 10]})
        assert call.result["results"] == {"mean": 4.0, "median": 3.0, "min": 1.0, "max": 10.0}
        assert call.result["data_points"] == 5

    @pytest.mark.asyncio
    async def test_selected_operations(self, registry):
        call = await registry.execute_tool(
            "data_analysis", {"data": [2, 4, 4, 4, 5, 5, 7, 9], "operations": ["std_dev", "sum", "count"]}
        )
        assert call.result["results"] == {"std_dev": 2.0, "sum": 40.0, "count": 8}

    @pytest.mark.asyncio
    async def test_empty_data_rejected(self, registry):
        call = await registry.execute_tool("data_analysis", {"data": []})
        assert call.status == ToolStatus.ERROR


SEARX_RESULTS = {
    "results": [
        {"title": "Acme Corp", "url": "https://www.acme.example/", "content": "Official site", "engine": "bing"},
        {"title": "Acme Corp dup", "url": "https://www.acme.example/", "content": "Duplicate"},
        {"title": "Acme News", "url": "https://news.example/acme", "content": "Acme raises",
         "publishedDate": "2025-01-02"},
    ]
}


def searx_client(handler) -> SearXNGClient:
    return SearXNGClient(
        "http://searx.test/",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestSearchTools:
    """SearXNG-backed tools against a mock transport."""

    def test_days_to_time_range(self):
        assert [days_to_time_range(d) for d in (1, 7, 30, 90)] == ["day", "week", "month", "year"]

    @pytest.mark.asyncio
    async def test_client_normalizes_and_dedupes(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=SEARX_RESULTS)

        client = searx_client(handler)
        results = await client.search("acme", max_results=10, time_range="week")
        await client.close()

        assert [r.url for r in results] == ["https://www.acme.example/", "https://news.example/acme"]
        assert results[0].source_domain == "acme.example"
        assert results[1].published_date == "2025-01-02"
        assert requests[0].url.params["time_range"] == "week"
        assert requests[0].url.path == "/search"

    @pytest.mark.asyncio
    async def test_client_raises_on_http_error(self):
        client = searx_client(lambda request: httpx.Response(502))
        with pytest.raises(ExternalServiceError):
            await client.search("acme")
        assert client.get_stats()["failed_searches"] == 1

    @pytest.mark.asyncio
    async def test_web_search_tool(self, sleep):
        registry = register_default_tools(
            ToolRegistry(sleep=sleep),
            searx_client(lambda request: httpx.Response(200, json=SEARX_RESULTS)),
        )
        call = await registry.execute_tool("web_search", {"query": "acme", "num_results": 1})
        assert call.succeeded
        assert call.result["count"] == 1
        assert call.result["results"][0]["domain"] == "acme.example"

    @pytest.mark.asyncio
    async def test_news_search_tool_uses_news_category(self, sleep):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.url.params)
            return httpx.Response(200, json=SEARX_RESULTS)

        registry = register_default_tools(ToolRegistry(sleep=sleep), searx_client(handler))
        call = await registry.execute_tool("news_search", {"query": "acme", "days": 3})

        assert call.succeeded
        assert seen["categories"] == "news"
        assert seen["time_range"] == "week"
        assert call.result["articles"][1]["published_at"] == "2025-01-02"

    @pytest.mark.asyncio
    async def test_web_search_retries_then_fails(self, sleep):
        registry = register_default_tools(
            ToolRegistry(sleep=sleep),
            searx_client(lambda request: httpx.Response(503)),
        )
        call = await registry.execute_tool("web_search", {"query": "acme"})
        assert call.status == ToolStatus.ERROR
        assert sleep.delays == [1.0, 2.0, 4.0]

    def test_search_tools_need_a_client(self, registry):
        assert registry.get_tool("web_search") is None
        assert registry.get_tool("calculator") is not None
