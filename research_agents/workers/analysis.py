"""
Analysis phase workers.

Run sequentially with dependencies on discovery results:

    financial    <- research
    competitive  <- market
    risk         <- financial, competitive
    opportunity  <- risk, competitive
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from ..base_worker import TaskPayload
from .base import LLMWorker

logger = logging.getLogger(__name__)

SEVERITY_ORDER = {"high": 0, "medium": 1, "low": 2}


# ============================================
# FINANCIAL
# ============================================

class Revenue(BaseModel):
    amount: Optional[float] = None
    currency: str = "USD"
    period: str = ""


class Growth(BaseModel):
    rate: Optional[float] = None
    trend: str = "unknown"


class KeyMetric(BaseModel):
    name: str = ""
    value: str = ""


class FinancialOutput(BaseModel):
    revenue: Revenue = Field(default_factory=Revenue)
    growth: Growth = Field(default_factory=Growth)
    financial_health: str = "Unknown"
    key_metrics: List[KeyMetric] = Field(default_factory=list)


class FinancialWorker(LLMWorker):
    name = "financial"
    description = "Analyzes revenue, growth and financial health"
    capabilities = ("financial-analysis", "metrics-extraction")
    output_model = FinancialOutput
    system_prompt = "You are a financial analyst. Report figures only when the sources support them."
    temperature = 0.4
    search_queries = ("{company} revenue", "{company} annual report earnings")
    context_query = "{company} revenue growth funding earnings"
    uses_results = ("research",)

    def task_prompt(self, payload: TaskPayload) -> str:
        company = payload.text("company_name")
        return (
            f"Analyze the financial profile of **{company}**.\n\n"
            "1. Revenue: amount, currency and period\n"
            "2. Growth: annual rate as a percentage and trend (growing/stable/declining)\n"
            "3. Overall financial health\n"
            "4. Key metrics (name and value)"
        )

    async def growth_from_metrics(self, result: Dict[str, Any]) -> Optional[float]:
        """Derive a growth rate from reported metrics via the financial calculator."""
        values = {}
        for metric in result["key_metrics"]:
            label = metric.get("name", "").lower().replace(" ", "_")
            if label in ("previous_revenue", "prior_revenue"):
                values["initial"] = _to_float(metric.get("value"))
            elif label in ("current_revenue", "latest_revenue"):
                values["final"] = _to_float(metric.get("value"))
        if self.tools is None or values.get("initial") is None or values.get("final") is None:
            return None

        call = await self.tools.execute_tool(
            "financial_calculator",
            {"metric": "growth_rate", "values": values},
        )
        return call.result["result"] if call.succeeded else None

    async def execute(self, payload: TaskPayload) -> Dict[str, Any]:
        result = await super().execute(payload)
        if result["growth"]["rate"] is None:
            rate = await self.growth_from_metrics(result)
            if rate is not None:
                result["growth"]["rate"] = rate
        return result


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(str(value).replace(",", "").replace("$", ""))
    except (TypeError, ValueError):
        return None


# ============================================
# COMPETITIVE
# ============================================

class Competitor(BaseModel):
    name: str = ""
    description: str = ""
    strengths: List[str] = Field(default_factory=list)
    website: Optional[str] = None


class CompetitiveOutput(BaseModel):
    competitors: List[Competitor] = Field(default_factory=list)
    market_position: str = "Unknown"
    competitive_advantages: List[str] = Field(default_factory=list)
    threats: List[str] = Field(default_factory=list)


class CompetitiveWorker(LLMWorker):
    name = "competitive"
    description = "Maps competitors and competitive position"
    capabilities = ("competitive-analysis", "market-positioning")
    output_model = CompetitiveOutput
    system_prompt = "You are a competitive intelligence analyst."
    search_queries = ("{company} competitors", "{company} alternatives")
    context_query = "{company} competitors competition alternatives"
    context_top_k = 8
    uses_results = ("market", "product")

    def task_prompt(self, payload: TaskPayload) -> str:
        company = payload.text("company_name")
        return (
            f"Analyze the competitive landscape of **{company}**.\n\n"
            "1. Main competitors: name, description, strengths, website\n"
            "2. The company's position relative to them\n"
            "3. Its competitive advantages\n"
            "4. Competitive threats"
        )


# ============================================
# RISK
# ============================================

class Risk(BaseModel):
    type: str = "market"
    description: str = ""
    severity: str = "medium"
    mitigation: str = ""


class RiskOutput(BaseModel):
    risks: List[Risk] = Field(default_factory=list)
    overall_risk_level: str = "Moderate"
    recommendations: List[str] = Field(default_factory=list)


class RiskWorker(LLMWorker):
    name = "risk"
    required_fields = ("company_name", "data")
    description = "Identifies and analyzes business risks and challenges"
    capabilities = ("risk-analysis", "threat-assessment", "vulnerability-analysis")
    output_model = RiskOutput
    system_prompt = (
        "You are a senior risk analyst. Identify potential risks comprehensively "
        "and provide actionable mitigation strategies."
    )
    temperature = 0.6
    context_query = "{company} risks threats challenges vulnerabilities"
    context_top_k = 8
    uses_results = ("financial", "competitive", "news", "market")

    def task_prompt(self, payload: TaskPayload) -> str:
        company = payload.text("company_name")
        return (
            f"Conduct a comprehensive risk analysis for **{company}**.\n\n"
            "1. Business risks (5-8): type (market, operational, financial, regulatory, "
            "competitive, technology), description, severity (low/medium/high), mitigation\n"
            "2. Overall risk level: Low / Moderate / High / Critical\n"
            "3. Risk mitigation recommendations (5-7), prioritized by severity and urgency"
        )

    def finalize(self, result: Dict[str, Any], payload: TaskPayload, sources: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        result["risks"].sort(key=lambda r: SEVERITY_ORDER.get(r.get("severity"), len(SEVERITY_ORDER)))
        return result


# ============================================
# OPPORTUNITY
# ============================================

class Opportunity(BaseModel):
    type: str = ""
    description: str = ""
    potential: str = "medium"
    action_items: List[str] = Field(default_factory=list)


class OpportunityOutput(BaseModel):
    opportunities: List[Opportunity] = Field(default_factory=list)
    growth_areas: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class OpportunityWorker(LLMWorker):
    name = "opportunity"
    required_fields = ("company_name", "data")
    description = "Identifies growth opportunities and engagement angles"
    capabilities = ("opportunity-identification", "growth-analysis")
    output_model = OpportunityOutput
    system_prompt = "You are a business development strategist."
    context_query = "{company} growth expansion opportunities"
    context_top_k = 8
    uses_results = ("risk", "competitive", "market", "product")

    def task_prompt(self, payload: TaskPayload) -> str:
        company = payload.text("company_name")
        return (
            f"Identify business opportunities for and with **{company}**.\n\n"
            "1. Opportunities: type, description, potential (low/medium/high), action items\n"
            "2. Growth areas\n"
            "3. Recommendations that account for the identified risks"
        )
