"""
Application Middleware for the Direct Messaging API.

This module defines the FastAPI middleware responsible for cross-cutting
concerns of the HTTP surface: request correlation, error handling and request
timing. WebSocket traffic passes through untouched; the socket session sets its
own correlation id.

Key Middleware Components:
- `CorrelationMiddleware`: Assigns a correlation ID to every incoming request
  (taken from `X-Correlation-ID` or `X-Request-ID` when the client sends one),
  which is then attached to every log record of that request.
- `ErrorHandlingMiddleware`: A centralized error handler that turns
  `ChatAPIException` types and unexpected exceptions into standardized JSON
  error responses.
- `PerformanceMiddleware`: Logs the start and end of each request, calculates
  the processing time, and adds a `X-Process-Time` header to the response.

Architectural Design:
- Layered Processing Pipeline: `CorrelationMiddleware` is added last so it runs
  first, making the correlation ID available to the error handler and to all
  application code.
- Starlette's `BaseHTTPMiddleware`: All three are built on
  `BaseHTTPMiddleware`, which only sees `http` scopes.
"""

import time
import uuid
from typing import Any, Callable, Dict, Optional
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .exceptions import ChatAPIException
from .logging_config import get_logger, set_correlation_id

logger = get_logger("core.middleware")

SLOW_REQUEST_SECONDS = 1.0


def create_error_response(
    error_type: str,
    error_code: str,
    message: str,
    status_code: int = 400,
    correlation_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """Create standardized error response"""

    error_data = {
        "error": {
            "type": error_type,
            "code": error_code,
            "message": message,
            "correlation_id": correlation_id,
        }
    }

    if details:
        error_data["error"]["details"] = details

    return JSONResponse(status_code=status_code, content=error_data)


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Middleware to add correlation IDs to requests"""

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = (
            request.headers.get("X-Correlation-ID")
            or request.headers.get("X-Request-ID")
            or str(uuid.uuid4())
        )

        set_correlation_id(correlation_id)
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Middleware for centralized error handling"""

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)

        except ChatAPIException as e:
            log = logger.error if e.status_code >= 500 else logger.warning
            log(
                f"Application error: {e.message}",
                extra={
                    "error_type": type(e).__name__,
                    "error_code": e.error_code,
                    "path": request.url.path,
                    "method": request.method,
                },
            )
            return create_error_response(
                type(e).__name__,
                e.error_code,
                e.message,
                status_code=e.status_code,
                correlation_id=getattr(request.state, "correlation_id", None),
                details=e.details,
            )

        except Exception as e:
            logger.error(
                f"Unexpected error: {str(e)}",
                extra={
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                    "method": request.method,
                },
                exc_info=True,
            )
            return create_error_response(
                "InternalServerError",
                "INTERNAL_ERROR",
                "An unexpected error occurred",
                status_code=500,
                correlation_id=getattr(request.state, "correlation_id", None),
            )


class PerformanceMiddleware(BaseHTTPMiddleware):
    """Middleware for request timing and logging"""

    def __init__(self, app: ASGIApp, slow_threshold: float = SLOW_REQUEST_SECONDS):
        super().__init__(app)
        self.slow_threshold = slow_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        logger.debug(
            f"Request started: {request.method} {request.url.path}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "query_params": dict(request.query_params),
                "client_ip": request.client.host if request.client else None,
            },
        )

        response = await call_next(request)

        process_time_ms = round((time.time() - start_time) * 1000, 2)
        response.headers["X-Process-Time"] = str(process_time_ms)

        logger.info(
            f"Request completed: {request.method} {request.url.path} - "
            f"{response.status_code}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "process_time_ms": process_time_ms,
            },
        )

        if process_time_ms > self.slow_threshold * 1000:
            logger.warning(
                f"Slow request detected: {request.method} {request.url.path}",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "process_time_ms": process_time_ms,
                    "threshold_exceeded": True,
                },
            )

        return response
