"""Explicit Ok/Err results threaded across component boundaries.

Components return Result values instead of raising for expected outcomes
(unknown catalog entity, sold out, bad signature, duplicate event). Exceptions
are reserved for bugs and infrastructure failures the caller cannot handle.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Closed error taxonomy. Value is the wire error_code."""

    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_REQUEST = "INVALID_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    SOLD_OUT = "SOLD_OUT"
    BELOW_MINIMUM = "BELOW_MINIMUM"
    ABOVE_MAXIMUM = "ABOVE_MAXIMUM"
    SUBTOTAL_MISMATCH = "SUBTOTAL_MISMATCH"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    DUPLICATE_EVENT = "DUPLICATE_EVENT"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    REDEMPTION_WINDOW_CLOSED = "REDEMPTION_WINDOW_CLOSED"
    ORDER_NOT_READY = "ORDER_NOT_READY"
    PROCESSOR_ERROR = "PROCESSOR_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.SOLD_OUT: 409,
    ErrorKind.BELOW_MINIMUM: 422,
    ErrorKind.ABOVE_MAXIMUM: 422,
    ErrorKind.SUBTOTAL_MISMATCH: 409,
    ErrorKind.SIGNATURE_INVALID: 400,
    ErrorKind.DUPLICATE_EVENT: 200,
    ErrorKind.AMOUNT_MISMATCH: 409,
    ErrorKind.REDEMPTION_WINDOW_CLOSED: 409,
    ErrorKind.ORDER_NOT_READY: 409,
    ErrorKind.PROCESSOR_ERROR: 502,
    ErrorKind.CONFIGURATION_ERROR: 500,
    ErrorKind.STORAGE_ERROR: 500,
}


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def http_status(self) -> int:
        return self.kind.http_status


Result = Union[Ok[T], Err]
