"""
Calculator and computation tools.

- calculator: arithmetic expressions, evaluated over a whitelisted AST
- financial_calculator: ROI, CAGR, P/E, price-to-sales, margins, growth
- data_analysis: descriptive statistics over a list of numbers

Bad inputs raise ValidationError so the registry records them without
retrying.
"""

import ast
import math
import operator
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import numpy as np
from pydantic import BaseModel, Field

from core.exceptions import ValidationError
from ..tool_registry import Tool, ToolCategory

MAX_EXPONENT = 1000

_BINARY_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: Dict[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

_FUNCTIONS: Dict[str, Callable[..., float]] = {
    "abs": abs,
    "acos": math.acos,
    "asin": math.asin,
    "atan": math.atan,
    "ceil": math.ceil,
    "cos": math.cos,
    "exp": math.exp,
    "floor": math.floor,
    "log": math.log,
    "log10": math.log10,
    "max": max,
    "min": min,
    "pow": math.pow,
    "round": round,
    "sin": math.sin,
    "sqrt": math.sqrt,
    "tan": math.tan,
}

_CONSTANTS = {
    "pi": math.pi,
    "PI": math.pi,
    "e": math.e,
    "E": math.e,
}


def _eval_node(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)

    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise ValidationError(f"Unsupported constant: {node.value!r}", field="expression")
        return node.value

    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        left = _eval_node(node.left)
        right = _eval_node(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > MAX_EXPONENT:
            raise ValidationError("Exponent too large", field="expression")
        return _BINARY_OPS[type(node.op)](left, right)

    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))

    if isinstance(node, ast.Name) and node.id in _CONSTANTS:
        return _CONSTANTS[node.id]

    # Math.sqrt(...) style calls resolve to the bare function name
    if isinstance(node, ast.Attribute) and isinstance(node.value, ast.Name) and node.value.id == "Math":
        if node.attr in _CONSTANTS:
            return _CONSTANTS[node.attr]

    if isinstance(node, ast.Call) and not node.keywords:
        func = node.func
        if isinstance(func, ast.Attribute) and isinstance(func.value, ast.Name) and func.value.id == "Math":
            name = func.attr
        elif isinstance(func, ast.Name):
            name = func.id
        else:
            name = None
        if name in _FUNCTIONS:
            return _FUNCTIONS[name](*[_eval_node(arg) for arg in node.args])

    raise ValidationError(f"Unsupported expression element: {type(node).__name__}", field="expression")


def evaluate_expression(expression: str) -> float:
    """Evaluate an arithmetic expression without executing code."""
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ValidationError(f"Calculator error: invalid expression ({e.msg})", field="expression")

    try:
        return _eval_node(tree)
    except ZeroDivisionError:
        raise ValidationError("Calculator error: division by zero", field="expression")
    except (ValueError, OverflowError, TypeError) as e:
        raise ValidationError(f"Calculator error: {e}", field="expression")


class CalculatorParams(BaseModel):
    expression: str = Field(..., min_length=1, description='Mathematical expression to evaluate (e.g., "2 + 2 * 3", "sqrt(144)")')
    precision: int = Field(2, ge=0, le=12, description="Decimal places for result")


class CalculatorTool(Tool):
    name = "calculator"
    description = (
        "Perform mathematical calculations. Supports arithmetic and basic functions "
        "(sin, cos, sqrt, etc.). Safe evaluation with no code execution."
    )
    category = ToolCategory.COMPUTE
    parameters = CalculatorParams

    async def execute(self, params: CalculatorParams) -> Dict[str, Any]:
        value = evaluate_expression(params.expression)
        rounded = round(float(value), params.precision)
        return {
            "result": rounded,
            "expression": params.expression,
            "formatted": f"{params.expression} = {rounded}",
        }


class FinancialMetric(str, Enum):
    ROI = "roi"
    CAGR = "cagr"
    PE_RATIO = "pe_ratio"
    PRICE_TO_SALES = "price_to_sales"
    PROFIT_MARGIN = "profit_margin"
    GROWTH_RATE = "growth_rate"


# metric -> (required inputs, formula description)
_FINANCIAL_FORMULAS = {
    FinancialMetric.ROI: (("initial", "final"), "((Final - Initial) / Initial) × 100"),
    FinancialMetric.CAGR: (("initial", "final", "years"), "((Final / Initial)^(1/Years) - 1) × 100"),
    FinancialMetric.PE_RATIO: (("price", "eps"), "Price / EPS"),
    FinancialMetric.PRICE_TO_SALES: (("market_cap", "revenue"), "Market Cap / Revenue"),
    FinancialMetric.PROFIT_MARGIN: (("net_income", "revenue"), "(Net Income / Revenue) × 100"),
    FinancialMetric.GROWTH_RATE: (("initial", "final"), "((Final - Initial) / Initial) × 100"),
}


class FinancialCalculatorParams(BaseModel):
    metric: FinancialMetric = Field(..., description="Financial metric to calculate")
    values: Dict[str, float] = Field(..., description="Input values as key-value pairs")


def compute_financial_metric(metric: FinancialMetric, values: Dict[str, float]) -> float:
    required, _ = _FINANCIAL_FORMULAS[metric]
    # Zero counts as missing: every required input is a divisor or base
    missing = [key for key in required if not values.get(key)]
    if missing:
        raise ValidationError(
            f"{metric.value} requires non-zero values for: {', '.join(required)}",
            field="values",
            missing=missing,
        )

    v = values
    if metric in (FinancialMetric.ROI, FinancialMetric.GROWTH_RATE):
        return (v["final"] - v["initial"]) / v["initial"] * 100
    if metric == FinancialMetric.CAGR:
        ratio = v["final"] / v["initial"]
        if ratio < 0:
            raise ValidationError("CAGR requires initial and final values of the same sign", field="values")
        return (ratio ** (1 / v["years"]) - 1) * 100
    if metric == FinancialMetric.PE_RATIO:
        return v["price"] / v["eps"]
    if metric == FinancialMetric.PRICE_TO_SALES:
        return v["market_cap"] / v["revenue"]
    return v["net_income"] / v["revenue"] * 100


class FinancialCalculatorTool(Tool):
    name = "financial_calculator"
    description = "Calculate financial metrics: ROI, CAGR, P/E ratio, price-to-sales, profit margins, growth rate."
    category = ToolCategory.COMPUTE
    parameters = FinancialCalculatorParams

    async def execute(self, params: FinancialCalculatorParams) -> Dict[str, Any]:
        result = compute_financial_metric(params.metric, params.values)
        return {
            "metric": params.metric.value,
            "result": round(result, 2),
            "formula": _FINANCIAL_FORMULAS[params.metric][1],
            "inputs": dict(params.values),
        }


class StatOperation(str, Enum):
    MEAN = "mean"
    MEDIAN = "median"
    STD_DEV = "std_dev"
    MIN = "min"
    MAX = "max"
    SUM = "sum"
    COUNT = "count"


DEFAULT_OPERATIONS = [StatOperation.MEAN, StatOperation.MEDIAN, StatOperation.MIN, StatOperation.MAX]


class DataAnalysisParams(BaseModel):
    data: List[float] = Field(..., min_length=1, description="Array of numbers to analyze")
    operations: Optional[List[StatOperation]] = Field(None, description="Statistical operations to perform")


def describe(data: List[float], operations: List[StatOperation]) -> Dict[str, float]:
    """Descriptive statistics, rounded to two decimals. std_dev is the population deviation."""
    values = np.asarray(data, dtype=np.float64)
    compute = {
        StatOperation.COUNT: lambda: float(values.size),
        StatOperation.SUM: lambda: float(values.sum()),
        StatOperation.MEAN: lambda: float(values.mean()),
        StatOperation.MEDIAN: lambda: float(np.median(values)),
        StatOperation.STD_DEV: lambda: float(values.std()),
        StatOperation.MIN: lambda: float(values.min()),
        StatOperation.MAX: lambda: float(values.max()),
    }
    results = {}
    for op in operations:
        value = round(compute[op](), 2)
        results[op.value] = int(value) if op == StatOperation.COUNT else value
    return results


class DataAnalysisTool(Tool):
    name = "data_analysis"
    description = "Analyze arrays of numbers: mean, median, standard deviation, min, max, sum, count."
    category = ToolCategory.COMPUTE
    parameters = DataAnalysisParams

    async def execute(self, params: DataAnalysisParams) -> Dict[str, Any]:
        operations = params.operations or DEFAULT_OPERATIONS
        return {
            "results": describe(params.data, operations),
            "data_points": len(params.data),
        }
