"""Built-in tools and registry wiring."""

from typing import Optional

from ..tool_registry import ToolRegistry
from .compute_tools import CalculatorTool, DataAnalysisTool, FinancialCalculatorTool
from .search_tools import CompanySearchTool, NewsSearchTool, SearXNGClient, WebSearchTool


def register_default_tools(registry: ToolRegistry, search_client: Optional[SearXNGClient] = None) -> ToolRegistry:
    """Register the compute tools, and the search tools when a search client is given."""
    registry.register(CalculatorTool())
    registry.register(FinancialCalculatorTool())
    registry.register(DataAnalysisTool())
    if search_client is not None:
        registry.register(WebSearchTool(search_client))
        registry.register(NewsSearchTool(search_client))
        registry.register(CompanySearchTool(search_client))
    return registry


__all__ = [
    "register_default_tools",
    "CalculatorTool",
    "FinancialCalculatorTool",
    "DataAnalysisTool",
    "WebSearchTool",
    "NewsSearchTool",
    "CompanySearchTool",
    "SearXNGClient",
]
