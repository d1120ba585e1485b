"""
Lab Range - Error Handler Middleware
Request ids and one JSON error shape for every failure
"""

import asyncio
import traceback
from typing import Callable, Tuple
from uuid import uuid4

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from labrange.infrastructure.orchestrator.exceptions import OrchestratorError

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def error_body(code: str, detail: str, request: Request) -> dict:
    return {
        "error": code,
        "detail": detail,
        "request_id": getattr(request.state, "request_id", None),
    }


async def orchestrator_error_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
    """Answer an orchestration error with its reason code and status."""
    logger.info(
        "Request rejected",
        error=exc.code,
        detail=str(exc),
        path=request.url.path,
        method=request.method,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.code, str(exc), request),
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Outermost application middleware.

    Tags each request with an id (taken from X-Request-ID when the proxy
    sets one), binds it to the structlog context and turns anything that
    escaped the route handlers into a JSON error.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id)

        try:
            response = await call_next(request)
        except Exception as exc:
            code, status_code, detail = self._classify_error(exc)
            log = logger.error if status_code >= 500 else logger.warning
            log(
                "Request failed",
                error=str(exc),
                error_type=type(exc).__name__,
                path=request.url.path,
                method=request.method,
                traceback=traceback.format_exc() if status_code >= 500 else None,
            )
            response = JSONResponse(
                status_code=status_code,
                content=error_body(code, detail, request),
            )
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    def _classify_error(self, exc: Exception) -> Tuple[str, int, str]:
        """
        Map an exception to (error_code, status_code, detail).
        """
        from sqlalchemy.exc import IntegrityError, OperationalError

        if isinstance(exc, OrchestratorError):
            return exc.code, exc.status_code, str(exc)

        # The one-active-session index firing outside claim_slot
        if isinstance(exc, IntegrityError):
            return "SESSION_CONFLICT", 409, "Conflicting session state"

        if isinstance(exc, OperationalError):
            return "DATABASE_ERROR", 503, "Database operation failed"

        if isinstance(exc, asyncio.TimeoutError):
            return "TIMEOUT", 504, "Operation timed out"

        if isinstance(exc, ValueError):
            return "VALIDATION_ERROR", 400, str(exc)

        if isinstance(exc, PermissionError):
            return "PERMISSION_DENIED", 403, str(exc)

        return "INTERNAL_ERROR", 500, "An unexpected error occurred"
