from .errors import (
    check_critical_error,
    extract_error_message,
    is_service_unavailable,
    is_transient_error,
)
from .retry import RetryExhaustedError, RetryPolicy, retry_async

__all__ = [
    "RetryExhaustedError",
    "RetryPolicy",
    "check_critical_error",
    "extract_error_message",
    "is_service_unavailable",
    "is_transient_error",
    "retry_async",
]
