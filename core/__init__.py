"""
Research Core Components
Error taxonomy and error history shared by every service
"""

from .exceptions import (
    AppException,
    ErrorCode,
    ValidationError,
    TransientBackendError,
    AuthOrConfigError,
    OperationTimeoutError,
    FallbackExhaustedError,
    SchedulerSetupError,
    DependencyError,
    NotFoundError,
    ToolNotFoundError,
    RateLimitError,
    ExternalServiceError,
    is_auth_or_config_error,
    is_validation_error,
)
from .error_handler import ErrorHandler, ErrorRecord

__all__ = [
    "AppException",
    "ErrorCode",
    "ValidationError",
    "TransientBackendError",
    "AuthOrConfigError",
    "OperationTimeoutError",
    "FallbackExhaustedError",
    "SchedulerSetupError",
    "DependencyError",
    "NotFoundError",
    "ToolNotFoundError",
    "RateLimitError",
    "ExternalServiceError",
    "is_auth_or_config_error",
    "is_validation_error",
    "ErrorHandler",
    "ErrorRecord",
]
