# chatbridge/transport/middleware.py
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from chatbridge.infra.logging_config import get_logger, LogContext

logger = get_logger(__name__)

ROCKETCHAT_WEBHOOK_PATH = "/webhooks/rocketchat"
REQUEST_ID_HEADER = "X-Request-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Reuse the caller's X-Request-ID or mint one; echoed on the response"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One line per request on completion, with status and duration"""

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        log_ctx = LogContext(logger, request_id=getattr(request.state, "request_id", None))
        method, path = request.method, request.url.path
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000
            log_ctx.error(
                f"{method} {path} raised {exc.__class__.__name__} after {elapsed_ms:.1f}ms",
                extra={"method": method, "path": path, "error_type": exc.__class__.__name__,
                       "duration_ms": elapsed_ms},
            )
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        log_ctx.info(
            f"{method} {path} -> {response.status_code} in {elapsed_ms:.1f}ms",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms,
                "client_ip": request.client.host if request.client else None,
            },
        )
        return response


def _webhook_error_response() -> JSONResponse:
    # Rocket.Chat integrations read the success/message envelope
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error processing RocketChat webhook",
            "error": "Unknown error",
        },
    )


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Last-resort 500 for anything the routes did not handle"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", "unknown")
            logger.error(
                f"Unhandled exception on {request.url.path}: {exc.__class__.__name__}: {exc}",
                extra={"request_id": request_id},
                exc_info=True,
            )

            if request.url.path == ROCKETCHAT_WEBHOOK_PATH:
                return _webhook_error_response()

            return JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "request_id": request_id},
            )
