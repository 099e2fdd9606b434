"""
GiftPacks — Error kinds and service results
Services return a Result instead of raising for expected outcomes.
Routers turn a failed Result into an HTTPException via unwrap().
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, List, Optional, TypeVar

from fastapi import HTTPException

T = TypeVar("T")


class ErrorKind(str, Enum):
    VALIDATION          = "VALIDATION_FAILED"
    CONFLICT            = "DUPLICATE"
    NOT_FOUND           = "NOT_FOUND"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    STATE               = "INVALID_STATE"
    FORBIDDEN           = "FORBIDDEN"
    # Ledger faults
    LEDGER_INACTIVE     = "LEDGER_INACTIVE"
    INSUFFICIENT_FUNDS  = "INSUFFICIENT_FUNDS"
    USER_REJECTED       = "ACTION_REJECTED"
    NETWORK             = "NETWORK_ERROR"
    CALL_REVERTED       = "CALL_EXCEPTION"


HTTP_STATUS = {
    ErrorKind.VALIDATION:          400,
    ErrorKind.STATE:               400,
    ErrorKind.INSUFFICIENT_FUNDS:  400,
    ErrorKind.CALL_REVERTED:       400,
    ErrorKind.FORBIDDEN:           403,
    ErrorKind.USER_REJECTED:       403,
    ErrorKind.NOT_FOUND:           404,
    ErrorKind.CONFLICT:            409,
    ErrorKind.LEDGER_INACTIVE:     423,
    ErrorKind.SERVICE_UNAVAILABLE: 503,
    ErrorKind.NETWORK:             503,
}


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    message: str
    details: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Result(Generic[T]):
    value: Optional[T] = None
    error: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str, details: Optional[List[str]] = None) -> "Result[T]":
        return cls(error=Failure(kind, message, list(details or [])))

    @classmethod
    def from_failure(cls, failure: Failure) -> "Result[T]":
        return cls(error=failure)


def to_http(failure: Failure) -> HTTPException:
    detail = {"error": failure.kind.value, "message": failure.message}
    if failure.details:
        detail["details"] = failure.details
    return HTTPException(status_code=HTTP_STATUS[failure.kind], detail=detail)


def unwrap(result: Result[T]) -> T:
    """Return the value of a successful result, raise the mapped HTTPException otherwise."""
    if result.error is not None:
        raise to_http(result.error)
    return result.value
