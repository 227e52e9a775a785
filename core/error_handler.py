"""
Error history and user-facing messages for terminal failures.

Workers report their final failure here once retries are exhausted, so
recent problems can be inspected without trawling log files.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from .exceptions import AppException, ErrorCode

logger = logging.getLogger(__name__)


@dataclass
class ErrorRecord:
    """A single handled failure."""
    code: str
    message: str
    error_type: str
    context: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "error_type": self.error_type,
            "context": self.context,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class ErrorHandler:
    """Bounded error history with user-friendly message mapping."""

    def __init__(self, max_errors: int = 100):
        self.max_errors = max_errors
        self._errors: Deque[ErrorRecord] = deque(maxlen=max_errors)
        self._lock = threading.Lock()

    def handle(self, error: BaseException, context: Optional[str] = None) -> ErrorRecord:
        """Classify, log and remember a failure."""
        if isinstance(error, AppException):
            code = error.code.value
            details = dict(error.details)
        else:
            code = self._classify(error).value
            details = {}

        record = ErrorRecord(
            code=code,
            message=str(error) or type(error).__name__,
            error_type=type(error).__name__,
            context=context,
            details=details,
        )

        logger.error(f"[{code}] {context or 'unknown'}: {record.message}")

        with self._lock:
            self._errors.append(record)
        return record

    @staticmethod
    def _classify(error: BaseException) -> ErrorCode:
        message = str(error).lower()
        if "api key" in message or "unauthorized" in message:
            return ErrorCode.AUTH_FAILED
        if "timeout" in message or "timed out" in message:
            return ErrorCode.OPERATION_TIMEOUT
        if "rate limit" in message:
            return ErrorCode.RATE_LIMITED
        if "network" in message or "connect" in message:
            return ErrorCode.BACKEND_UNAVAILABLE
        return ErrorCode.INTERNAL_ERROR

    @staticmethod
    def get_user_message(error: BaseException) -> str:
        """Map an error to a message suitable for end users."""
        message = str(error)
        lowered = message.lower()
        if "api key" in lowered:
            return "API key is missing or invalid. Please check your configuration."
        if "network" in lowered or "connect" in lowered:
            return "Network error. Please check your internet connection and try again."
        if "timeout" in lowered or "timed out" in lowered:
            return "Request timed out. Please try again."
        if "rate limit" in lowered:
            return "Rate limit exceeded. Please wait a moment and try again."
        if "quota" in lowered:
            return "API quota exceeded. Please check your usage limits."
        return message or "An unexpected error occurred."

    def get_errors(self, limit: Optional[int] = None) -> List[ErrorRecord]:
        """Most recent errors first."""
        with self._lock:
            errors = list(reversed(self._errors))
        return errors[:limit] if limit else errors

    def clear_errors(self):
        with self._lock:
            self._errors.clear()

    def get_error_stats(self) -> Dict[str, Any]:
        with self._lock:
            errors = list(self._errors)
        by_code: Dict[str, int] = {}
        for record in errors:
            by_code[record.code] = by_code.get(record.code, 0) + 1
        return {
            "total": len(errors),
            "by_code": by_code,
            "recent": [r.to_dict() for r in reversed(errors[-10:])],
        }
