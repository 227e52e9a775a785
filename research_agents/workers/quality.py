"""
Quality-assurance phase workers: validation -> quality.

Validation combines deterministic checks (target name, data completeness,
failed upstream workers, source URLs) with a best-effort generated fact
check. Quality scores the finished research for completeness and accuracy.
"""

import logging
import re
from typing import Any, Dict, List, Sequence

from pydantic import BaseModel, Field

from ..base_worker import TaskPayload
from ..structured_output import parse_structured
from .base import LLMWorker

logger = logging.getLogger(__name__)

MAX_COMPANY_NAME_LENGTH = 200
SEVERITY_PENALTY = {"high": 25, "medium": 10, "low": 5}

# Workers whose results a complete account brief draws on
EXPECTED_RESULTS = (
    "research", "news", "product", "market", "contact",
    "financial", "competitive", "risk", "opportunity",
    "synthesis", "strategy", "writing",
)

_HAS_ALNUM = re.compile(r"[A-Za-z0-9]")


class Issue(BaseModel):
    type: str = ""
    message: str = ""
    severity: str = "low"


class ValidationOutput(BaseModel):
    is_valid: bool = True
    issues: List[Issue] = Field(default_factory=list)
    score: int = 100
    recommendations: List[str] = Field(default_factory=list)


class FactCheckOutput(BaseModel):
    issues: List[Issue] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


def check_company_name(name: str) -> List[Issue]:
    stripped = name.strip()
    if not stripped:
        return [Issue(type="company-name", message="Company name is empty", severity="high")]
    if len(stripped) > MAX_COMPANY_NAME_LENGTH:
        return [Issue(type="company-name", message="Company name is too long", severity="high")]
    if not _HAS_ALNUM.search(stripped):
        return [Issue(type="company-name", message="Company name has no letters or digits", severity="high")]
    return []


def check_sources(sources: Sequence[Any]) -> List[Issue]:
    issues = []
    for source in sources:
        url = source.get("url", "") if isinstance(source, dict) else ""
        if not url.startswith(("http://", "https://")):
            issues.append(Issue(type="source", message=f"Source without a valid URL: {url or '(none)'}", severity="low"))
    return issues


def score_issues(issues: Sequence[Issue]) -> int:
    penalty = sum(SEVERITY_PENALTY.get(i.severity, SEVERITY_PENALTY["low"]) for i in issues)
    return max(0, 100 - penalty)


class ValidationWorker(LLMWorker):
    name = "validation"
    required_fields = ("company_name", "data")
    description = "Validates research data and checks facts"
    capabilities = ("fact-checking", "data-validation", "source-verification")
    output_model = FactCheckOutput
    system_prompt = "You are a meticulous fact checker. Flag only claims the context contradicts or cannot support."
    temperature = 0.3
    max_tokens = 1500
    context_query = "{company} facts"

    def task_prompt(self, payload: TaskPayload) -> str:
        company = payload.text("company_name")
        return (
            f"Fact-check the research on **{company}** against the retrieved context.\n\n"
            "List issues (type, message, severity low/medium/high) and recommendations."
        )

    def deterministic_issues(self, payload: TaskPayload) -> List[Issue]:
        issues = check_company_name(payload.text("company_name"))

        data = payload.mapping("data")
        if not data:
            issues.append(Issue(type="data-completeness", message="No data provided", severity="high"))

        for name in payload.failed_workers():
            issues.append(Issue(type="worker-failure", message=f"{name} produced no result", severity="medium"))

        issues.extend(check_sources(payload.result_of("research").get("sources", [])))
        return issues

    async def fact_check(self, payload: TaskPayload) -> FactCheckOutput:
        company = payload.text("company_name")
        context = await self.retrieve(company)
        response = await self.router.generate_text(
            self.build_prompt(payload, context),
            system_prompt=self.system_prompt,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        return parse_structured(response.text, FactCheckOutput).value

    async def execute(self, payload: TaskPayload) -> Dict[str, Any]:
        issues = self.deterministic_issues(payload)
        recommendations: List[str] = []
        fact_checked = False

        if self.router is not None and payload.mapping("data"):
            try:
                checked = await self.fact_check(payload)
                issues.extend(checked.issues)
                recommendations.extend(checked.recommendations)
                fact_checked = True
            except Exception as e:
                logger.warning(f"[validation] fact check skipped: {e}")

        if any(i.type == "worker-failure" for i in issues):
            recommendations.append("Re-run the failed workers before sharing the brief")

        result = ValidationOutput(
            is_valid=not any(i.severity == "high" for i in issues),
            issues=issues,
            score=score_issues(issues),
            recommendations=recommendations,
        ).model_dump(mode="json")
        result["metadata"] = {"fact_checked": fact_checked}
        return result


class QualityOutput(BaseModel):
    quality_score: int = 0
    completeness: int = 0
    accuracy: int = 0
    gaps: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)


def completeness_of(payload: TaskPayload) -> int:
    """Percentage of expected workers with a usable result."""
    present = sum(1 for name in EXPECTED_RESULTS if payload.result_of(name))
    return round(present / len(EXPECTED_RESULTS) * 100)


class QualityWorker(LLMWorker):
    name = "quality"
    required_fields = ("company_name", "data")
    description = "Scores completeness and accuracy of the research"
    capabilities = ("quality-assessment", "gap-analysis")
    output_model = QualityOutput
    system_prompt = "You are a research quality reviewer. Score strictly and name concrete gaps."
    temperature = 0.4
    context_query = "{company}"
    uses_results = ("validation", "writing", "synthesis")

    def task_prompt(self, payload: TaskPayload) -> str:
        company = payload.text("company_name")
        return (
            f"Assess the quality of the research brief on **{company}**.\n\n"
            "1. Quality score, completeness and accuracy (each 0-100)\n"
            "2. Gaps in coverage\n"
            "3. Concrete improvements"
        )

    def finalize(self, result: Dict[str, Any], payload: TaskPayload, sources: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        measured = completeness_of(payload)
        result["completeness"] = min(result["completeness"] or measured, measured)
        for name in EXPECTED_RESULTS:
            if not payload.result_of(name):
                gap = f"Missing {name} results"
                if gap not in result["gaps"]:
                    result["gaps"].append(gap)
        return result
