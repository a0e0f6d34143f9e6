"""
Shared utilities: error classification and result types
"""

from .error_handler import (
    EnhancedErrorHandler,
    ErrorCategory,
    ErrorContext,
    ErrorSeverity,
    classify_error,
    get_error_handler,
    unwrap_root_cause,
)
from .result import Result, ResultKind

__all__ = [
    "EnhancedErrorHandler",
    "ErrorCategory",
    "ErrorContext",
    "ErrorSeverity",
    "Result",
    "ResultKind",
    "classify_error",
    "get_error_handler",
    "unwrap_root_cause",
]
