"""
HTTP middleware and exception handlers.

Every error response has the same JSON shape (`ErrorResponse`): a
lowercase error code, a message, optional details, the request's trace id
and a timestamp. AgenticSQLException subclasses choose their own status
through `http_status`; engine errors keep the engine's text as message.

Chat turns never reach these handlers for generation, extraction or
execution failures: those end in a PipelineResult with a 200 response.
"""

import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..domain.errors import AgenticSQLException
from ..domain.responses import ErrorResponse
from ..utils.logging import get_module_logger
from ..utils.tracing import current_trace_id, generate_trace_id, set_trace_id

logger = get_module_logger()

TRACE_HEADER = "X-Trace-ID"

# Error codes for framework-raised HTTP errors (unknown routes, wrong methods)
_HTTP_ERROR_CODES: Dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


async def trace_id_middleware(request: Request, call_next: Callable) -> Response:
    """Adopt the caller's X-Trace-ID (or mint one) and echo it on the response."""
    trace_id = request.headers.get(TRACE_HEADER) or generate_trace_id()
    set_trace_id(trace_id)

    response = await call_next(request)
    response.headers[TRACE_HEADER] = trace_id
    return response


async def logging_middleware(request: Request, call_next: Callable) -> Response:
    """Log request start and completion; report the duration in X-Process-Time (ms)."""
    start = time.perf_counter()
    logger.info(
        "HTTP request started",
        method=request.method,
        path=request.url.path,
        client_ip=request.client.host if request.client else None,
        trace_id=current_trace_id()
    )

    response = await call_next(request)

    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Process-Time"] = str(duration_ms)
    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=duration_ms,
        trace_id=current_trace_id()
    )
    return response


def _error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=error_code.lower(),
        message=message,
        details=details or None,
        trace_id=current_trace_id(),
        timestamp=datetime.now(timezone.utc)
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json", exclude_none=True))


def _log_failure(request: Request, status_code: int, event: str, **fields: Any) -> None:
    log = logger.warning if status_code < 500 else logger.error
    log(event, http_status=status_code, method=request.method, path=request.url.path,
        trace_id=current_trace_id(), **fields)


async def agentic_sql_exception_handler(request: Request, exc: AgenticSQLException) -> JSONResponse:
    _log_failure(
        request,
        exc.http_status,
        f"{type(exc).__name__}: {exc.message}",
        error_code=exc.error_code,
        details=exc.details,
    )
    return _error_response(exc.http_status, exc.error_code, exc.message, exc.details)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body or parameter validation failed (422), one entry per field."""
    errors = [
        {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"], "type": error["type"]}
        for error in exc.errors()
    ]
    _log_failure(request, 422, "Request validation failed", errors=errors)
    return _error_response(422, "VALIDATION_ERROR", "Request validation failed", {"errors": errors})


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    error_code = _HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else f"HTTP {exc.status_code} error"
    _log_failure(request, exc.status_code, f"HTTP {exc.status_code}: {message}", error_code=error_code)
    return _error_response(exc.status_code, error_code, message)


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unexpected: full details in the log, a generic 500 to the client."""
    logger.error(
        "Unhandled exception occurred",
        error=str(exc),
        error_type=type(exc).__name__,
        method=request.method,
        path=request.url.path,
        trace_id=current_trace_id(),
        exc_info=True
    )
    return _error_response(500, "INTERNAL_ERROR", "An internal server error occurred. Please try again later.")


def register_exception_handlers(app: FastAPI) -> None:
    """Register handlers, most specific first; `Exception` is the fallback."""
    handlers = [
        (AgenticSQLException, agentic_sql_exception_handler),
        (RequestValidationError, validation_exception_handler),
        (StarletteHTTPException, http_exception_handler),
        (Exception, general_exception_handler),
    ]
    for exc_class, handler in handlers:
        # FastAPI's typing does not accept subclass-specific handlers
        app.add_exception_handler(exc_class, handler)  # type: ignore[arg-type]

    logger.info("Exception handlers registered", handlers=[exc_class.__name__ for exc_class, _ in handlers])


# OpenAPI documentation for error responses, used as responses={...} in route decorators

_EXAMPLE_TRACE_ID = "550e8400-e29b-41d4-a716-446655440000"
_EXAMPLE_TIMESTAMP = "2024-01-15T10:30:00Z"


def _error_example(description: str, error: str, message: str, details: Optional[Dict] = None) -> Dict:
    example: Dict[str, Any] = {"error": error, "message": message}
    if details:
        example["details"] = details
    example.update(trace_id=_EXAMPLE_TRACE_ID, timestamp=_EXAMPLE_TIMESTAMP)
    return {"description": description, "content": {"application/json": {"example": example}}}


ERROR_RESPONSES = {
    400: _error_example(
        "Bad Request - The engine rejected a statement or the script was empty",
        "database_query_error",
        "no such table: orders",
    ),
    404: _error_example(
        "Not Found - The database or table does not exist",
        "not_found",
        "Database 'sales' not found",
    ),
    409: _error_example(
        "Conflict - The database is already open",
        "conflict",
        "Database 'sales' is already open",
    ),
    422: _error_example(
        "Validation Error - Request validation failed",
        "validation_error",
        "Request validation failed",
        {"errors": [{"field": "body.question", "message": "Field required", "type": "missing"}]},
    ),
    500: _error_example(
        "Internal Server Error - An unexpected error occurred",
        "internal_error",
        "An internal server error occurred. Please try again later.",
    ),
    503: _error_example(
        "Service Unavailable - A required service is not available",
        "storage_error",
        "Snapshot storage is temporarily unavailable",
    ),
}
