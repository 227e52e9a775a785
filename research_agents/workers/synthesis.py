"""
Synthesis phase workers: synthesis -> strategy -> writing.

They see every earlier result and turn it into an integrated summary, an
engagement strategy and finally the written account brief.
"""

import logging
from typing import Any, Dict, List, Sequence

from pydantic import BaseModel, Field

from ..base_worker import TaskPayload
from .base import LLMWorker

logger = logging.getLogger(__name__)


class SynthesisOutput(BaseModel):
    summary: str = ""
    key_insights: List[str] = Field(default_factory=list)
    integrated_findings: Dict[str, Any] = Field(default_factory=dict)
    recommendations: List[str] = Field(default_factory=list)


class SynthesisWorker(LLMWorker):
    name = "synthesis"
    required_fields = ("company_name", "data")
    description = "Integrates findings from all earlier phases"
    capabilities = ("information-synthesis", "insight-generation")
    output_model = SynthesisOutput
    system_prompt = "You are a senior research analyst. Integrate findings into a coherent picture."
    context_query = "{company} overview business strategy"
    context_top_k = 15
    max_tokens = 3000

    def task_prompt(self, payload: TaskPayload) -> str:
        company = payload.text("company_name")
        return (
            f"Synthesize all research on **{company}** into one coherent picture.\n\n"
            "1. Executive summary (one paragraph)\n"
            "2. Key insights (5-8), each drawing on more than one finding where possible\n"
            "3. Integrated findings grouped by theme\n"
            "4. Recommendations"
        )


class StrategyRecommendation(BaseModel):
    priority: str = "medium"
    action: str = ""
    rationale: str = ""


class ActionPhase(BaseModel):
    phase: str = ""
    steps: List[str] = Field(default_factory=list)
    timeline: str = ""


class StrategyOutput(BaseModel):
    strategy: str = ""
    recommendations: List[StrategyRecommendation] = Field(default_factory=list)
    action_plan: List[ActionPhase] = Field(default_factory=list)
    success_metrics: List[str] = Field(default_factory=list)


class StrategyWorker(LLMWorker):
    name = "strategy"
    required_fields = ("company_name", "data")
    description = "Develops an account engagement strategy"
    capabilities = ("strategic-planning", "action-planning")
    output_model = StrategyOutput
    system_prompt = "You are a strategic account planner. Be concrete and prioritized."
    context_query = "{company} strategy priorities initiatives"
    context_top_k = 10
    uses_results = ("synthesis", "opportunity", "risk", "contact", "competitive")

    def task_prompt(self, payload: TaskPayload) -> str:
        company = payload.text("company_name")
        return (
            f"Develop an engagement strategy for **{company}**.\n\n"
            "1. Strategy statement\n"
            "2. Recommendations with priority (high/medium/low), action and rationale\n"
            "3. Action plan as phases with steps and timeline\n"
            "4. Success metrics"
        )


class Section(BaseModel):
    title: str = ""
    content: str = ""


class WritingOutput(BaseModel):
    content: str = ""
    sections: List[Section] = Field(default_factory=list)
    word_count: int = 0


class WritingWorker(LLMWorker):
    name = "writing"
    required_fields = ("company_name", "data")
    description = "Writes the account research brief"
    capabilities = ("report-writing", "content-structuring")
    output_model = WritingOutput
    system_prompt = "You are a professional business writer. Write clearly for a sales audience."
    context_query = "{company} company summary"
    context_top_k = 8
    max_tokens = 4000
    uses_results = ("synthesis", "strategy", "research", "financial", "risk", "opportunity")

    def task_prompt(self, payload: TaskPayload) -> str:
        company = payload.text("company_name")
        section = payload.text("section_type", "full report")
        return (
            f"Write the account research brief ({section}) for **{company}**.\n\n"
            "Sections: Company Overview, Market & Competition, Financials, Risks, "
            "Opportunities, Recommended Approach. Use markdown inside section content."
        )

    def finalize(self, result: Dict[str, Any], payload: TaskPayload, sources: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        if not result["content"] and result["sections"]:
            result["content"] = "\n\n".join(
                f"## {s['title']}\n\n{s['content']}" for s in result["sections"]
            )
        result["word_count"] = len(result["content"].split())
        return result
