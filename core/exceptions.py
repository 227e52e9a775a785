"""
Unified exception handling for the research core.

Every failure the core raises is an AppException subclass so callers can
classify it without string matching. The classification drives retry and
circuit breaker behaviour:

- ValidationError: never retried, aborts immediately
- TransientBackendError: retried with backoff
- AuthOrConfigError: never retried, trips the backend's breaker at once
- OperationTimeoutError: retried, counts against retry budget and breaker
- FallbackExhaustedError: every backend in the resolved order failed

Usage:
    from core.exceptions import ValidationError, TransientBackendError

    raise ValidationError("Required field missing: company_name", field="company_name")
    raise TransientBackendError("openai", "HTTP 503", status_code=503)
"""

from enum import Enum
from typing import Any, Dict, Iterable, Optional

import pydantic


class ErrorCode(str, Enum):
    """
    Standardized error codes.

    Code ranges:
    - 1xxx: Validation errors
    - 2xxx: Authentication/configuration errors
    - 3xxx: Resource errors (not found, already exists, etc.)
    - 4xxx: Workflow/scheduling errors
    - 5xxx: External service errors (generation, embedding, index, search)
    - 9xxx: System errors (internal, unavailable, rate limited)
    """

    # Validation errors (1xxx)
    VALIDATION_ERROR = "ERR_1001"
    INVALID_REQUEST = "ERR_1002"
    MISSING_FIELD = "ERR_1003"
    INVALID_FORMAT = "ERR_1004"

    # Authentication/configuration errors (2xxx)
    AUTH_FAILED = "ERR_2002"
    MISSING_API_KEY = "ERR_2006"
    CLIENT_NOT_INITIALIZED = "ERR_2007"

    # Resource errors (3xxx)
    NOT_FOUND = "ERR_3001"
    TOOL_NOT_FOUND = "ERR_3005"
    WORKER_NOT_FOUND = "ERR_3006"

    # Workflow errors (4xxx)
    WORKFLOW_SETUP_FAILED = "ERR_4101"
    DEPENDENCY_FAILED = "ERR_4102"
    TASK_FAILED = "ERR_4103"
    OPERATION_TIMEOUT = "ERR_4104"

    # External service errors (5xxx)
    BACKEND_ERROR = "ERR_5101"
    BACKEND_UNAVAILABLE = "ERR_5102"
    ALL_BACKENDS_FAILED = "ERR_5103"
    EMBEDDING_ERROR = "ERR_5104"
    VECTOR_INDEX_ERROR = "ERR_5105"
    SEARXNG_ERROR = "ERR_5003"

    # System errors (9xxx)
    INTERNAL_ERROR = "ERR_9001"
    SERVICE_UNAVAILABLE = "ERR_9002"
    RATE_LIMITED = "ERR_9003"
    CONFIGURATION_ERROR = "ERR_9005"


class AppException(Exception):
    """
    Base exception for all research core errors.

    Args:
        code: ErrorCode enum value
        message: Human-readable error message
        details: Additional error context (optional)
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a serializable error record."""
        result = {
            "code": self.code.value,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Convenience subclasses for common error types
# =============================================================================

class ValidationError(AppException):
    """Raised when input validation fails. Never retried."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        **details
    ):
        self.field = field
        super().__init__(
            code=code,
            message=message,
            details={"field": field, **details} if field else details
        )


class TransientBackendError(AppException):
    """Raised when an external backend fails in a way worth retrying."""

    def __init__(
        self,
        service: str,
        message: str,
        status_code: Optional[int] = None,
        **details
    ):
        self.service = service
        self.status_code = status_code
        super().__init__(
            code=ErrorCode.BACKEND_ERROR,
            message=f"{service} error: {message}",
            details={"service": service, "status_code": status_code, **details}
        )


class AuthOrConfigError(AppException):
    """Raised for missing keys, rejected credentials or uninitialized clients."""

    def __init__(
        self,
        service: str,
        message: str,
        code: ErrorCode = ErrorCode.AUTH_FAILED,
        **details
    ):
        self.service = service
        super().__init__(
            code=code,
            message=f"{service} error: {message}",
            details={"service": service, **details}
        )


class OperationTimeoutError(AppException):
    """Raised when an operation loses its race against the timeout."""

    def __init__(
        self,
        operation: str,
        timeout_seconds: float,
        message: Optional[str] = None,
        **details
    ):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(
            code=ErrorCode.OPERATION_TIMEOUT,
            message=message or f"{operation} timed out after {timeout_seconds:g}s",
            details={"operation": operation, "timeout_seconds": timeout_seconds, **details}
        )


class FallbackExhaustedError(AppException):
    """Raised once every backend in the resolved order has failed."""

    def __init__(self, failures: Dict[str, str]):
        self.failures = dict(failures)
        if failures:
            summary = "; ".join(f"{name}: {reason}" for name, reason in failures.items())
        else:
            summary = "no backends available"
        super().__init__(
            code=ErrorCode.ALL_BACKENDS_FAILED,
            message=f"All generation backends failed ({summary})",
            details={"failures": self.failures}
        )


class SchedulerSetupError(AppException):
    """Raised when a workflow cannot be set up. Ends the workflow."""

    def __init__(
        self,
        message: str,
        phase: Optional[str] = None,
        **details
    ):
        self.phase = phase
        super().__init__(
            code=ErrorCode.WORKFLOW_SETUP_FAILED,
            message=message,
            details={"phase": phase, **details} if phase else details
        )


class DependencyError(AppException):
    """Raised when a task's dependency can never be satisfied."""

    def __init__(self, worker_name: str, dependency: str, reason: str):
        self.worker_name = worker_name
        self.dependency = dependency
        super().__init__(
            code=ErrorCode.DEPENDENCY_FAILED,
            message=f"{worker_name} cannot wait on '{dependency}': {reason}",
            details={"worker_name": worker_name, "dependency": dependency}
        )


class NotFoundError(AppException):
    """Raised when a resource is not found."""

    def __init__(
        self,
        resource: str,
        identifier: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
        **details
    ):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} not found: {identifier}"
        super().__init__(
            code=code,
            message=message,
            details={"resource": resource, "identifier": identifier, **details}
        )


class ToolNotFoundError(NotFoundError):
    """Raised when a tool name is not registered."""

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__("Tool", tool_name, code=ErrorCode.TOOL_NOT_FOUND)


class RateLimitError(AppException):
    """Raised when rate limit is exceeded."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[float] = None,
        **details
    ):
        self.retry_after = retry_after
        super().__init__(
            code=ErrorCode.RATE_LIMITED,
            message=message,
            details={"retry_after": retry_after, **details} if retry_after else details
        )


class ExternalServiceError(AppException):
    """Raised when a non-generation collaborator (search, index) fails."""

    def __init__(
        self,
        service: str,
        message: str,
        code: ErrorCode = ErrorCode.BACKEND_ERROR,
        **details
    ):
        super().__init__(
            code=code,
            message=f"{service} error: {message}",
            details={"service": service, **details}
        )


# =============================================================================
# Classification helpers
# =============================================================================

AUTH_CONFIG_MARKERS: Iterable[str] = (
    "api key",
    "api_key",
    "unauthorized",
    "not initialized",
)


def is_auth_or_config_error(error: BaseException) -> bool:
    """True for errors that retrying cannot fix (missing key, bad credentials)."""
    if isinstance(error, AuthOrConfigError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in AUTH_CONFIG_MARKERS)


def is_validation_error(error: BaseException) -> bool:
    """True for missing or invalid input, which fails without retry."""
    return isinstance(error, (ValidationError, pydantic.ValidationError))
