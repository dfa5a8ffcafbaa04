"""Render Err results as RFC 9457 problem responses.

Routers raise ResultProblem(err); the app-level handler in main.py turns it
into application/problem+json with the wire error_code.
"""

from typing import Optional

from resort_api.billing.result import Err, ErrorKind

PROBLEM_TYPE_BASE = "https://api.resort.example/problems"

_TITLES: dict[ErrorKind, str] = {
    ErrorKind.UNAUTHENTICATED: "Unauthorized",
    ErrorKind.FORBIDDEN: "Forbidden",
    ErrorKind.INVALID_REQUEST: "Invalid Request",
    ErrorKind.NOT_FOUND: "Not Found",
    ErrorKind.SOLD_OUT: "Sold Out",
    ErrorKind.BELOW_MINIMUM: "Amount Below Minimum",
    ErrorKind.ABOVE_MAXIMUM: "Amount Above Maximum",
    ErrorKind.SUBTOTAL_MISMATCH: "Subtotal Mismatch",
    ErrorKind.SIGNATURE_INVALID: "Invalid Signature",
    ErrorKind.DUPLICATE_EVENT: "Duplicate Event",
    ErrorKind.AMOUNT_MISMATCH: "Amount Mismatch",
    ErrorKind.REDEMPTION_WINDOW_CLOSED: "Redemption Window Closed",
    ErrorKind.ORDER_NOT_READY: "Order Not Ready",
    ErrorKind.PROCESSOR_ERROR: "Payment Processor Error",
    ErrorKind.CONFIGURATION_ERROR: "Service Misconfigured",
    ErrorKind.STORAGE_ERROR: "Internal Server Error",
}


class ResultProblem(Exception):
    """Raised by routers to return an Err as a problem response."""

    def __init__(self, err: Err):
        super().__init__(err.message or err.kind.value)
        self.err = err

    @property
    def status_code(self) -> int:
        return self.err.http_status

    @property
    def error_type(self) -> str:
        return f"{PROBLEM_TYPE_BASE}/{self.err.kind.value.lower().replace('_', '-')}"

    @property
    def title(self) -> str:
        return _TITLES[self.err.kind]

    @property
    def detail(self) -> Optional[str]:
        if self.status_code >= 500:
            # Internal causes stay in the logs
            return "An internal error occurred. Please try again later."
        return self.err.message or None
