"""
Worker Contract

Every unit of research logic subclasses BaseWorker and implements one
coroutine, execute(payload). Callers use execute_with_retry(), which wraps
it uniformly:

- each attempt races execute() against the worker timeout (default 60s);
  a timed-out attempt is abandoned, not cancelled
- up to max_attempts attempts with exponential backoff
  (retry_delay * 2^attempt), skipped entirely for validation errors
- exactly one stats record per invocation, success or failure

Payloads are TaskPayload mappings with typed accessors, so workers read
prior-phase results without guessing at shapes.
"""

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterator, List, Mapping, Optional, Sequence

from core.error_handler import ErrorHandler
from core.exceptions import ErrorCode, OperationTimeoutError, ValidationError, is_validation_error
from .retry_strategy import RetryPolicy, SleepFunc, race_timeout, retry_async

logger = logging.getLogger(__name__)

ROLLING_WINDOW = 100


class TaskPayload(Mapping[str, Any]):
    """Read-only key-value input for a worker, with typed accessors."""

    def __init__(self, data: Optional[Mapping[str, Any]] = None, **extra: Any):
        self._data: Dict[str, Any] = {**(data or {}), **extra}

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"TaskPayload({self._data!r})"

    def require(self, *fields: str):
        """Raise ValidationError for the first field that is missing or None."""
        for name in fields:
            if self._data.get(name) is None:
                raise ValidationError(
                    f"Required field missing: {name}",
                    field=name,
                    code=ErrorCode.MISSING_FIELD,
                )

    def text(self, key: str, default: str = "") -> str:
        value = self._data.get(key)
        if value is None:
            return default
        return value if isinstance(value, str) else str(value)

    def mapping(self, key: str) -> Dict[str, Any]:
        value = self._data.get(key)
        return dict(value) if isinstance(value, Mapping) else {}

    def sequence(self, key: str) -> List[Any]:
        value = self._data.get(key)
        if isinstance(value, (list, tuple)):
            return list(value)
        return []

    def result_of(self, worker_name: str) -> Dict[str, Any]:
        """
        Prior result of a worker, or {} if it failed or never ran.

        Results from earlier phases arrive under the "data" key, one entry
        per worker name; failed tasks carry an "error" entry instead.
        """
        value = self.mapping("data").get(worker_name)
        if isinstance(value, Mapping) and "error" not in value:
            return dict(value)
        return {}

    def failed_workers(self) -> List[str]:
        """Names of earlier workers whose result is a captured error."""
        return [
            name for name, value in self.mapping("data").items()
            if isinstance(value, Mapping) and "error" in value
        ]

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)


@dataclass
class WorkerStats:
    """Execution statistics for one worker."""
    tasks_completed: int = 0
    tasks_failed: int = 0
    average_duration_ms: float = 0.0  # rolling, successful executions only
    success_rate: float = 1.0
    last_execution_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "average_duration_ms": round(self.average_duration_ms, 1),
            "success_rate": round(self.success_rate, 4),
            "last_execution_time": (
                self.last_execution_time.isoformat() if self.last_execution_time else None
            ),
        }


class BaseWorker(ABC):
    """Base class for all research workers."""

    name: str = ""
    description: str = ""
    capabilities: Sequence[str] = ()
    required_fields: Sequence[str] = ()

    def __init__(
        self,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        timeout: Optional[float] = 60.0,
        error_handler: Optional[ErrorHandler] = None,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], float] = time.perf_counter
    ):
        if not self.name:
            raise ValueError(f"{type(self).__name__} must define a name")
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.error_handler = error_handler or ErrorHandler()
        self._sleep = sleep
        self._clock = clock

        self._stats = WorkerStats()
        self._durations: Deque[float] = deque(maxlen=ROLLING_WINDOW)
        self._stats_lock = threading.Lock()

    @abstractmethod
    async def execute(self, payload: TaskPayload) -> Any:
        """Produce this worker's result for one task."""

    def validate_input(self, payload: Mapping[str, Any], required_fields: Sequence[str]):
        """Raise ValidationError if a required field is missing."""
        if payload is None:
            raise ValidationError("Worker input is missing", code=ErrorCode.INVALID_REQUEST)
        TaskPayload(payload).require(*required_fields)

    async def execute_with_retry(self, payload: Optional[Mapping[str, Any]] = None) -> Any:
        """
        Run execute() under the timeout race and retry policy.

        Records exactly one stats entry. Terminal failures are reported to
        the error handler and re-raised.
        """
        task_payload = payload if isinstance(payload, TaskPayload) else TaskPayload(payload)
        policy = RetryPolicy(max_attempts=self.max_attempts, base_delay=self.retry_delay)
        start = self._clock()

        async def attempt():
            self.validate_input(task_payload, self.required_fields)
            return await race_timeout(
                self.execute(task_payload),
                self.timeout,
                f"Worker {self.name} execution",
            )

        try:
            result = await retry_async(
                attempt,
                policy,
                should_retry=lambda e: not is_validation_error(e),
                sleep=self._sleep,
                operation=f"Worker {self.name}",
            )
        except Exception as e:
            self._record_execution(False, (self._clock() - start) * 1000)
            if isinstance(e, OperationTimeoutError):
                logger.warning(f"Worker {self.name} timed out after {self.timeout}s")
            self.error_handler.handle(e, f"Worker: {self.name}")
            raise

        self._record_execution(True, (self._clock() - start) * 1000)
        return result

    def _record_execution(self, success: bool, duration_ms: float):
        with self._stats_lock:
            if success:
                self._stats.tasks_completed += 1
                self._durations.append(duration_ms)
                self._stats.average_duration_ms = sum(self._durations) / len(self._durations)
            else:
                self._stats.tasks_failed += 1

            total = self._stats.tasks_completed + self._stats.tasks_failed
            self._stats.success_rate = self._stats.tasks_completed / total
            self._stats.last_execution_time = datetime.now(timezone.utc)

    def get_stats(self) -> WorkerStats:
        """Snapshot of the worker's statistics."""
        with self._stats_lock:
            return replace(self._stats)

    def reset_stats(self):
        with self._stats_lock:
            self._stats = WorkerStats()
            self._durations.clear()

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "capabilities": list(self.capabilities),
        }
