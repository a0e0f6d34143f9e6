"""
Error classification for remote mailbox and listener operations
Wrapped exceptions are unwrapped to their root cause before classification
"""

import asyncio
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import httpx
import structlog


logger = structlog.get_logger(__name__)


class ErrorCategory(str, Enum):
    """Error categories for classification"""
    TRANSIENT = "transient"          # Retry on next run
    AUTHENTICATION = "authentication" # Credentials rejected
    AUTHORIZATION = "authorization"   # Permission denied
    CONFIGURATION = "configuration"   # Mailbox settings incomplete
    CLIENT_ERROR = "client_error"     # Request validation
    NOT_FOUND = "not_found"          # Item or folder gone
    RATE_LIMIT = "rate_limit"        # Throttled
    SERVER_ERROR = "server_error"     # Backend failure
    NETWORK_ERROR = "network_error"   # Connectivity
    TIMEOUT = "timeout"              # Request timeout
    PERMANENT = "permanent"          # Non-recoverable
    UNKNOWN = "unknown"              # Unclassified


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


TRANSIENT_CATEGORIES = frozenset({
    ErrorCategory.TRANSIENT,
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.TIMEOUT,
    ErrorCategory.NETWORK_ERROR,
    ErrorCategory.SERVER_ERROR,
})


@dataclass
class ErrorPattern:
    """Error pattern definition for classification"""
    pattern: str
    category: ErrorCategory
    severity: ErrorSeverity
    description: str
    tags: List[str] = field(default_factory=list)


@dataclass
class ErrorContext:
    """Classified error with the root cause that produced it"""
    error_code: str
    error_message: str
    category: ErrorCategory
    severity: ErrorSeverity
    status_code: int = 0
    correlation_id: Optional[str] = None
    operation: Optional[str] = None
    mailbox_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    additional_details: Dict[str, Any] = field(default_factory=dict)
    # Set only from a typed 404/410 status, never from message text
    confirmed_missing: bool = False

    @property
    def is_transient(self) -> bool:
        return self.category in TRANSIENT_CATEGORIES


MISSING_STATUS_CODES = frozenset({404, 410})


def has_missing_status(error: Any, context: Optional[Dict[str, Any]] = None) -> bool:
    """True when a typed status (response, exception attribute or caller context) is 404 or 410"""
    context = context or {}
    if "status_code" in context:
        return int(context["status_code"]) in MISSING_STATUS_CODES
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in MISSING_STATUS_CODES
    status_code = getattr(error, "status_code", None)
    return isinstance(status_code, int) and status_code in MISSING_STATUS_CODES


def unwrap_root_cause(error: BaseException) -> BaseException:
    """
    Follow exception groups and explicit/implicit causes down to the innermost error

    For groups the first leaf exception wins, so classification stays stable no
    matter how many transport layers wrapped the original failure.
    """
    seen = set()
    current = error
    while id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, BaseExceptionGroup) and current.exceptions:
            current = current.exceptions[0]
            continue
        if current.__cause__ is not None:
            current = current.__cause__
            continue
        if current.__context__ is not None and not current.__suppress_context__:
            current = current.__context__
            continue
        break
    return current


class EnhancedErrorHandler:
    """
    Error classification for synchronization and listener calls

    Exception types are checked first (timeouts, connectivity, HTTP status),
    then the message is matched against regex patterns.
    """

    def __init__(self):
        self.error_patterns = self._initialize_error_patterns()
        self.error_counts: Dict[str, int] = {}

    def _initialize_error_patterns(self) -> List[ErrorPattern]:
        return [
            ErrorPattern(
                pattern=r"401|unauthorized|invalid.*credentials|authentication.*failed|logon.*failure",
                category=ErrorCategory.AUTHENTICATION,
                severity=ErrorSeverity.HIGH,
                description="Mailbox credentials rejected",
                tags=["auth"]
            ),
            ErrorPattern(
                pattern=r"403|forbidden|access.*denied|insufficient.*privileges",
                category=ErrorCategory.AUTHORIZATION,
                severity=ErrorSeverity.HIGH,
                description="Mailbox access denied",
                tags=["auth", "permissions"]
            ),
            ErrorPattern(
                pattern=r"synchronization settings|credentials.*missing|incomplete.*configuration",
                category=ErrorCategory.CONFIGURATION,
                severity=ErrorSeverity.HIGH,
                description="Mailbox synchronization settings are incomplete",
                tags=["configuration"]
            ),
            ErrorPattern(
                pattern=r"429|too.*many.*requests|rate.*limit|throttl|server.*busy",
                category=ErrorCategory.RATE_LIMIT,
                severity=ErrorSeverity.MEDIUM,
                description="Backend throttling",
                tags=["throttling"]
            ),
            ErrorPattern(
                pattern=r"404|not.*found|item.*not.*found|folder.*not.*found|does not exist",
                category=ErrorCategory.NOT_FOUND,
                severity=ErrorSeverity.LOW,
                description="Item or folder no longer exists",
                tags=["not_found"]
            ),
            ErrorPattern(
                pattern=r"502|bad.*gateway|503|service.*unavailable|504|gateway.*timeout",
                category=ErrorCategory.TRANSIENT,
                severity=ErrorSeverity.HIGH,
                description="Transient server error",
                tags=["server_error", "transient"]
            ),
            ErrorPattern(
                pattern=r"500|internal.*server.*error|server.*error",
                category=ErrorCategory.SERVER_ERROR,
                severity=ErrorSeverity.HIGH,
                description="Internal server error",
                tags=["server_error"]
            ),
            ErrorPattern(
                pattern=r"connection.*refused|connection.*reset|name.*resolution|network.*unreachable|connect.*error",
                category=ErrorCategory.NETWORK_ERROR,
                severity=ErrorSeverity.HIGH,
                description="Network connectivity error",
                tags=["network"]
            ),
            ErrorPattern(
                pattern=r"timeout|timed out",
                category=ErrorCategory.TIMEOUT,
                severity=ErrorSeverity.MEDIUM,
                description="Request timeout",
                tags=["timeout"]
            ),
            ErrorPattern(
                pattern=r"ssl.*error|certificate|handshake.*failed",
                category=ErrorCategory.NETWORK_ERROR,
                severity=ErrorSeverity.HIGH,
                description="SSL/TLS connection error",
                tags=["ssl"]
            ),
            ErrorPattern(
                pattern=r"400|bad.*request|invalid.*request|validation.*failed|malformed",
                category=ErrorCategory.CLIENT_ERROR,
                severity=ErrorSeverity.MEDIUM,
                description="Request validation error",
                tags=["validation"]
            ),
            ErrorPattern(
                pattern=r"405|method.*not.*allowed|410|gone|501|not.*implemented",
                category=ErrorCategory.PERMANENT,
                severity=ErrorSeverity.HIGH,
                description="Permanent error",
                tags=["permanent"]
            ),
        ]

    def classify_error(self, error: Union[str, BaseException, Dict[str, Any]],
                       context: Optional[Dict[str, Any]] = None) -> ErrorContext:
        """
        Classify an error

        Args:
            error: Exception (unwrapped to its root cause first), message or error payload
            context: Optional operation / mailbox_id / correlation_id

        Returns:
            ErrorContext with category and root-cause details
        """
        context = context or {}
        root = unwrap_root_cause(error) if isinstance(error, BaseException) else error

        error_message = self._extract_error_message(root)
        status_code = self._extract_status_code(root, context)
        error_code = context.get("error_code") or self._extract_error_code(root)

        category, severity, description = self._classify_by_type(root, status_code)
        if category is None:
            pattern = self._match_error_pattern(error_message, status_code)
            category, severity, description = pattern.category, pattern.severity, pattern.description

        error_context = ErrorContext(
            error_code=error_code,
            error_message=error_message,
            category=category,
            severity=severity,
            status_code=status_code or 0,
            correlation_id=context.get("correlation_id") or str(uuid.uuid4()),
            operation=context.get("operation"),
            mailbox_id=context.get("mailbox_id"),
            additional_details={"description": description},
            confirmed_missing=has_missing_status(root, context),
        )

        self.error_counts[error_code] = self.error_counts.get(error_code, 0) + 1

        logger.debug("Error classified",
                     error_code=error_code,
                     category=category,
                     severity=severity,
                     operation=error_context.operation,
                     mailbox_id=error_context.mailbox_id)

        return error_context

    def _classify_by_type(self, error: Any, status_code: Optional[int]):
        if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
            return ErrorCategory.TIMEOUT, ErrorSeverity.MEDIUM, "Request timeout"
        if isinstance(error, (httpx.NetworkError, ConnectionError)):
            return ErrorCategory.NETWORK_ERROR, ErrorSeverity.HIGH, "Network connectivity error"
        if status_code:
            if status_code == 404 or status_code == 410:
                return ErrorCategory.NOT_FOUND, ErrorSeverity.LOW, "Item or folder no longer exists"
            if status_code == 429:
                return ErrorCategory.RATE_LIMIT, ErrorSeverity.MEDIUM, "Backend throttling"
            if status_code == 401:
                return ErrorCategory.AUTHENTICATION, ErrorSeverity.HIGH, "Mailbox credentials rejected"
            if status_code == 403:
                return ErrorCategory.AUTHORIZATION, ErrorSeverity.HIGH, "Mailbox access denied"
            if status_code in (502, 503, 504):
                return ErrorCategory.TRANSIENT, ErrorSeverity.HIGH, "Transient server error"
            if status_code >= 500:
                return ErrorCategory.SERVER_ERROR, ErrorSeverity.HIGH, "Internal server error"
        return None, None, None

    def _extract_error_message(self, error: Any) -> str:
        if isinstance(error, str):
            return error
        if isinstance(error, dict):
            for key in ["message", "Message", "error_description", "error", "detail"]:
                if key in error:
                    return str(error[key])
            return str(error)
        return str(error) or error.__class__.__name__

    def _extract_status_code(self, error: Any, context: Dict[str, Any]) -> Optional[int]:
        if "status_code" in context:
            return int(context["status_code"])

        if isinstance(error, httpx.HTTPStatusError):
            return error.response.status_code

        if isinstance(error, dict):
            for key in ["status_code", "statusCode", "status"]:
                if key in error:
                    try:
                        return int(error[key])
                    except (ValueError, TypeError):
                        continue

        status_code = getattr(error, "status_code", None)
        if status_code is not None:
            try:
                return int(status_code)
            except (ValueError, TypeError):
                pass

        if isinstance(error, (str, BaseException)):
            status_match = re.search(r'\b(4\d{2}|5\d{2})\b', str(error))
            if status_match:
                return int(status_match.group(1))

        return None

    def _extract_error_code(self, error: Any) -> str:
        if isinstance(error, dict):
            for key in ["error_code", "errorCode", "code", "type"]:
                if key in error:
                    return str(error[key])
            return "UNKNOWN"
        if isinstance(error, BaseException):
            return getattr(error, "error_code", None) or error.__class__.__name__
        return "UNKNOWN"

    def _match_error_pattern(self, error_message: str, status_code: Optional[int]) -> ErrorPattern:
        search_text = error_message.lower()
        if status_code:
            search_text = f"{status_code} {search_text}"

        for pattern in self.error_patterns:
            if re.search(pattern.pattern, search_text, re.IGNORECASE):
                return pattern

        return ErrorPattern(
            pattern=".*",
            category=ErrorCategory.UNKNOWN,
            severity=ErrorSeverity.MEDIUM,
            description="Unclassified error",
            tags=["unknown"]
        )


_error_handler: Optional[EnhancedErrorHandler] = None


def get_error_handler() -> EnhancedErrorHandler:
    """Get or create global error handler instance"""
    global _error_handler
    if _error_handler is None:
        _error_handler = EnhancedErrorHandler()
    return _error_handler


def classify_error(error: Union[str, BaseException, Dict[str, Any]],
                   context: Optional[Dict[str, Any]] = None) -> ErrorContext:
    """Convenience function to classify errors with the shared handler"""
    return get_error_handler().classify_error(error, context)
