"""Structured request logging middleware.

Every request gets a fresh X-Request-ID which is bound into structlog's
context, so log lines emitted while handling it (webhook admission, sync
transitions) carry the same id. The access line records method, path,
status, duration, the operator when a bearer token decodes, and the webhook
topic for platform deliveries.

Production renders JSON; other environments use the console renderer.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.bundlesync.config import Environment, get_settings
from src.bundlesync.core.security import decode_token

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def configure_structlog() -> None:
    """Configure structlog processors based on environment."""
    settings = get_settings()
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.ENVIRONMENT == Environment.production
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _operator_id(request: Request) -> str | None:
    """Best-effort operator id for the access log; auth itself happens in deps."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    claims = decode_token(auth_header[7:])
    return claims.get("sub") if claims else None


class LoggingMiddleware(BaseHTTPMiddleware):
    """Binds a request id into the log context and writes one access line."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        fields = {
            "method": request.method,
            "path": request.url.path,
            "operator_id": _operator_id(request),
        }
        topic = request.headers.get("X-Shopify-Topic")
        if topic:
            fields["webhook_topic"] = topic

        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "http.request_failed",
                status_code=500,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
                **fields,
            )
            raise
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[REQUEST_ID_HEADER] = request_id
        if response.status_code >= 500:
            log = logger.error
        elif response.status_code >= 400:
            log = logger.warning
        else:
            log = logger.info
        log(
            "http.request_completed",
            status_code=response.status_code,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
            request_id=request_id,
            **fields,
        )
        return response
