"""Resort Payments API - FastAPI Application Entry Point."""

import logging
import os
import time
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from resort_api import __version__
from resort_api.billing.problems import PROBLEM_TYPE_BASE, ResultProblem
from resort_api.config.env import get_cors_allowed_origins
from resort_api.context import payment_intent_id_var, request_id_var, user_id_var
from resort_api.routers import health, payments, redemptions, webhooks
from resort_api.schemas import ProblemDetail
from resort_api.utils import configure_json_logging

app = FastAPI(
    title="Resort Payments API",
    description="Payment intent issuance, Stripe webhook fulfillment and staff redemption with RFC 9457 error handling.",
    version=__version__,
)

# Structured JSON logging
# Set RESORT_JSON_LOGS=false to disable (defaults to true for production)
if os.getenv("RESORT_JSON_LOGS", "true").lower() != "false":
    configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
    logger = logging.getLogger(__name__)
    logger.info("Structured JSON logging enabled")

# MDN: credentials mode CANNOT use wildcard origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "Idempotency-Key"],
    expose_headers=["X-Request-ID", "Retry-After"],
)


# ============================================================================
# HTTP completion logging
# ============================================================================


@app.middleware("http")
async def http_completion_logging_middleware(request: Request, call_next):
    """Log every HTTP request completion.

    - Fields: method, path, status_code, duration_ms (+ request context)
    - Logs even on exceptions (status_code=500)
    - Clears per-request contextvars at start and end so they never leak
      across requests on a reused task
    """
    user_id_var.set("")
    payment_intent_id_var.set("")

    start_time = time.perf_counter()
    status_code = 500

    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000

        log = logging.getLogger(__name__)
        log.info(
            "http.request.completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )

        user_id_var.set("")
        payment_intent_id_var.set("")


# ============================================================================
# Request ID Middleware (MUST BE OUTERMOST)
# ============================================================================


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Generate and propagate request_id for observability.

    - Accepts X-Request-ID header from client (optional)
    - Generates new UUID if not provided
    - Sets context variable for logging
    - Returns X-Request-ID in response headers

    IMPORTANT: This MUST be registered LAST (outermost middleware) so
    request_id is set in the parent async context before inner middlewares run.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(request_id)

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id

    return response


# ============================================================================
# RFC 9457 Global Exception Handlers
# ============================================================================


def _instance() -> str:
    """Opaque instance identifier built from the request id."""
    request_id = request_id_var.get()
    return f"urn:resort:trace:{request_id}" if request_id else f"urn:resort:trace:{uuid.uuid4()}"


@app.exception_handler(ResultProblem)
async def result_problem_handler(request: Request, exc: ResultProblem) -> JSONResponse:
    """Render an Err result as application/problem+json.

    Carries error / error_code for clients reading the flat error shape.
    """
    detail = exc.detail or exc.title
    problem = ProblemDetail(
        type=exc.error_type,
        title=exc.title,
        status=exc.status_code,
        detail=detail,
        instance=_instance(),
        error=detail,
        error_code=exc.err.kind.value,
        context=(exc.err.details or None) if exc.status_code < 500 else None,
    )

    log = logging.getLogger(__name__)
    log_extra = {"error_code": exc.err.kind.value, "status_code": exc.status_code}
    if exc.status_code >= 500:
        log.error("REQUEST_FAILED", extra={**log_extra, "reason": exc.err.message})
    else:
        log.info("REQUEST_REJECTED", extra=log_extra)

    headers = {}
    if exc.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"

    return JSONResponse(
        status_code=exc.status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=headers,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions with RFC 9457 Problem Details format.

    Returns application/problem+json with top-level RFC 9457 fields.
    No {"detail": ...} wrapper. Dict details are preserved.
    """
    detail_value = exc.detail if exc.detail is not None else _get_title_for_status(exc.status_code)

    problem = ProblemDetail(
        type=f"{PROBLEM_TYPE_BASE}/http-{exc.status_code}",
        title=_get_title_for_status(exc.status_code),
        status=exc.status_code,
        detail=detail_value,
        instance=_instance(),
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors with RFC 9457 Problem Details format.

    Returns 422 Unprocessable Entity with application/problem+json.
    """
    first_error = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    msg = first_error.get("msg", "Validation error")

    problem = ProblemDetail(
        type=f"{PROBLEM_TYPE_BASE}/validation-error",
        title="Request Validation Failed",
        status=422,
        detail=f"Invalid field '{field}': {msg}",
        instance=_instance(),
        error_code="VALIDATION_ERROR",
    )

    return JSONResponse(
        status_code=422,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions with RFC 9457 Problem Details format.

    Returns 500 Internal Server Error with application/problem+json.
    """
    problem = ProblemDetail(
        type=f"{PROBLEM_TYPE_BASE}/internal-error",
        title="Internal Server Error",
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="An unexpected error occurred. Please try again later.",
        instance=_instance(),
        error_code="INTERNAL_ERROR",
    )

    logging.getLogger(__name__).error(
        "UNHANDLED_EXCEPTION",
        extra={"error_type": type(exc).__name__},
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


def _get_title_for_status(status_code: int) -> str:
    """Get human-readable title for HTTP status code."""
    titles = {
        400: "Bad Request",
        401: "Unauthorized",
        403: "Forbidden",
        404: "Not Found",
        405: "Method Not Allowed",
        409: "Conflict",
        422: "Unprocessable Content",
        500: "Internal Server Error",
        502: "Bad Gateway",
        503: "Service Unavailable",
    }
    return titles.get(status_code, f"HTTP {status_code}")


# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(payments.router)
app.include_router(webhooks.router)
app.include_router(redemptions.router)
