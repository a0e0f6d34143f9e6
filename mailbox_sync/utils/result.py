"""
Tagged result type returned by remote provider and local store calls
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from .error_handler import ErrorCategory, ErrorContext, classify_error

T = TypeVar("T")


class ResultKind(str, Enum):
    OK = "ok"
    TRANSIENT = "transient"
    FATAL = "fatal"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Ok(value) | Transient(reason) | Fatal(reason) | NotFound(reason)"""
    kind: ResultKind
    value: Optional[T] = None
    reason: str = ""
    error: Optional[ErrorContext] = None

    @classmethod
    def ok(cls, value: Any = None) -> "Result":
        return cls(ResultKind.OK, value=value)

    @classmethod
    def transient(cls, reason: str, error: Optional[ErrorContext] = None) -> "Result":
        return cls(ResultKind.TRANSIENT, reason=reason, error=error)

    @classmethod
    def fatal(cls, reason: str, error: Optional[ErrorContext] = None) -> "Result":
        return cls(ResultKind.FATAL, reason=reason, error=error)

    @classmethod
    def not_found(cls, reason: str = "not found") -> "Result":
        return cls(ResultKind.NOT_FOUND, reason=reason)

    @classmethod
    def from_exception(cls, error: BaseException, **context: Any) -> "Result":
        """
        Classify an exception (root cause first) into a result kind

        NotFound requires a typed 404/410 status. Message matches that only look
        like a missing item are reported as Fatal.
        """
        error_context = classify_error(error, context)
        reason = f"{error_context.error_code}: {error_context.error_message}"
        if error_context.category == ErrorCategory.NOT_FOUND and error_context.confirmed_missing:
            return cls(ResultKind.NOT_FOUND, reason=reason, error=error_context)
        if error_context.is_transient:
            return cls.transient(reason, error_context)
        return cls.fatal(reason, error_context)

    @property
    def is_ok(self) -> bool:
        return self.kind == ResultKind.OK

    @property
    def is_transient(self) -> bool:
        return self.kind == ResultKind.TRANSIENT

    @property
    def is_not_found(self) -> bool:
        return self.kind == ResultKind.NOT_FOUND

    def unwrap(self) -> T:
        if self.kind != ResultKind.OK:
            raise ValueError(f"Result is {self.kind.value}: {self.reason}")
        return self.value
