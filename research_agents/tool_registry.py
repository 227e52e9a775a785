"""
Tool Execution Framework

Tools are named capabilities with a declared parameter model (pydantic).
The registry executes them uniformly:

1. Look up the tool; an unknown name is recorded as a failed call.
2. Validate parameters against the tool's model. Validation failures are
   final and never retried.
3. Check the tool's sliding-window rate limit; excess calls are rejected.
4. Run the tool raced against its timeout, retrying per its retry policy.

Every call produces a ToolCall record (success, error or timeout) that is
kept in a bounded history. Tool failures are data, not exceptions.

Usage:
    registry = ToolRegistry()
    registry.register(CalculatorTool())
    call = await registry.execute_tool("calculator", {"expression": "2 * (3 + 4)"})
    call.status, call.result
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Type

import pydantic
from pydantic import BaseModel

from core.exceptions import (
    OperationTimeoutError,
    RateLimitError,
    ToolNotFoundError,
    is_validation_error,
)
from .rate_limiter import RateLimit, SlidingWindowRateLimiter, run_bounded
from .retry_strategy import RetryPolicy, SleepFunc, race_timeout, retry_async

logger = logging.getLogger(__name__)


class ToolCategory(str, Enum):
    """What kind of capability a tool provides."""
    SEARCH = "search"
    DATA = "data"
    COMPUTE = "compute"
    COMMUNICATION = "communication"
    FILE = "file"
    API = "api"


class ToolStatus(str, Enum):
    """Lifecycle of a tool call."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


class Tool:
    """
    Base class for tools.

    Subclasses set name, description, category and parameters (a pydantic
    model) and implement execute(), which receives validated parameters.
    """

    name: str = ""
    description: str = ""
    category: ToolCategory = ToolCategory.COMPUTE
    parameters: Type[BaseModel] = BaseModel
    retry_policy: Optional[RetryPolicy] = None
    rate_limit: Optional[RateLimit] = None
    timeout: Optional[float] = None

    async def execute(self, params: BaseModel) -> Any:
        raise NotImplementedError

    def get_metadata(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "category": self.category.value,
            "parameters": self.parameters.model_json_schema(),
        }

    def to_llm_schema(self) -> Dict[str, Any]:
        """Function-calling description (OpenAI/Gemini compatible)."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters.model_json_schema(),
        }


@dataclass
class ToolCall:
    """Record of one tool invocation."""
    tool: str
    params: Dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: ToolStatus = ToolStatus.PENDING
    result: Any = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: float = 0.0
    retry_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == ToolStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tool": self.tool,
            "params": self.params,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": round(self.duration_ms, 1),
            "retry_count": self.retry_count,
            "metadata": self.metadata,
        }


def _format_validation_error(error: pydantic.ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "params"
        problems.append(f"{location}: {item.get('msg', 'invalid')}")
    return "Invalid parameters: " + "; ".join(problems)


class ToolRegistry:
    """Registry and executor for tools."""

    def __init__(
        self,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        default_timeout: float = 30.0,
        max_concurrency: int = 5,
        history_limit: int = 1000,
        sleep: SleepFunc = asyncio.sleep
    ):
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.default_timeout = default_timeout
        self.max_concurrency = max_concurrency
        self._tools: Dict[str, Tool] = {}
        self._history: Deque[ToolCall] = deque(maxlen=history_limit)
        self._sleep = sleep

    # ----- registration -----

    def register(self, tool: Tool):
        if tool.name in self._tools:
            logger.warning(f"Tool '{tool.name}' already registered, overwriting")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> bool:
        self.rate_limiter.reset(name)
        return self._tools.pop(name, None) is not None

    def get_tool(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def require_tool(self, name: str) -> Tool:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def list_tools(self, category: Optional[ToolCategory] = None) -> List[Tool]:
        tools = list(self._tools.values())
        if category is not None:
            tools = [t for t in tools if t.category == category]
        return tools

    def get_tools_for_llm(self) -> List[Dict[str, Any]]:
        return [tool.to_llm_schema() for tool in self._tools.values()]

    def get_tool_metadata(self, name: str) -> Optional[Dict[str, Any]]:
        tool = self._tools.get(name)
        return tool.get_metadata() if tool else None

    # ----- execution -----

    def _finish(self, call: ToolCall, status: ToolStatus, start: float, error: Optional[str] = None):
        call.status = status
        call.error = error
        call.completed_at = datetime.now(timezone.utc)
        call.duration_ms = (time.perf_counter() - start) * 1000
        self._history.append(call)
        if status != ToolStatus.SUCCESS:
            logger.warning(f"Tool '{call.tool}' {status.value}: {error}")
        return call

    async def execute_tool(
        self,
        name: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ToolCall:
        """Validate and run one tool. Always returns a ToolCall record."""
        params = dict(params or {})
        call = ToolCall(tool=name, params=params, metadata=dict(metadata or {}))
        start = time.perf_counter()

        try:
            tool = self.require_tool(name)
        except ToolNotFoundError as e:
            return self._finish(call, ToolStatus.ERROR, start, e.message)

        try:
            validated = tool.parameters.model_validate(params)
        except pydantic.ValidationError as e:
            return self._finish(call, ToolStatus.ERROR, start, _format_validation_error(e))

        try:
            self.rate_limiter.acquire(name, tool.rate_limit)
        except RateLimitError as e:
            return self._finish(call, ToolStatus.ERROR, start, e.message)

        call_timeout = timeout or tool.timeout or self.default_timeout
        policy = tool.retry_policy or RetryPolicy(max_attempts=1)

        def on_retry(attempt: int, error: BaseException, delay: float):
            call.retry_count = attempt + 1

        async def attempt():
            call.status = ToolStatus.RUNNING
            return await race_timeout(tool.execute(validated), call_timeout, f"tool {name}")

        try:
            call.result = await retry_async(
                attempt,
                policy,
                should_retry=lambda e: not is_validation_error(e),
                on_retry=on_retry,
                sleep=self._sleep,
                operation=f"tool {name}",
            )
        except OperationTimeoutError as e:
            return self._finish(call, ToolStatus.TIMEOUT, start, e.message)
        except Exception as e:
            return self._finish(call, ToolStatus.ERROR, start, str(e) or type(e).__name__)

        return self._finish(call, ToolStatus.SUCCESS, start)

    async def execute_tools(
        self,
        calls: List[Dict[str, Any]],
        timeout: Optional[float] = None
    ) -> List[ToolCall]:
        """
        Run several tool calls concurrently.

        Each entry is {"name": ..., "params": {...}}; results keep input order.
        """
        jobs = [
            (lambda c=c: self.execute_tool(c["name"], c.get("params"), timeout=timeout))
            for c in calls
        ]
        return await run_bounded(jobs, max_at_once=self.max_concurrency)

    # ----- history -----

    def get_execution_history(self, limit: int = 100, tool: Optional[str] = None) -> List[ToolCall]:
        history = [c for c in self._history if tool is None or c.tool == tool]
        return history[-limit:]

    def clear_history(self):
        self._history.clear()

    def get_statistics(self) -> Dict[str, Any]:
        history = list(self._history)
        total = len(history)
        successful = sum(1 for c in history if c.status == ToolStatus.SUCCESS)
        durations = [c.duration_ms for c in history if c.completed_at is not None]

        tool_usage: Dict[str, int] = {}
        for c in history:
            tool_usage[c.tool] = tool_usage.get(c.tool, 0) + 1

        return {
            "total_executions": total,
            "success_rate": round(successful / total * 100, 2) if total else 0.0,
            "average_execution_time_ms": round(sum(durations) / len(durations), 1) if durations else 0.0,
            "tool_usage": tool_usage,
            "rate_limiter": self.rate_limiter.get_stats(),
        }
