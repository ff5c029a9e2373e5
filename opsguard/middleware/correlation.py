"""Correlation ID middleware.

Tags every HTTP request with a correlation ID (taken from the
X-Correlation-ID header when it looks sane, generated otherwise) so that
log lines emitted while serving it can be tied together. Scheduler ticks
set their own IDs; see services.cron_scheduler.

Pure ASGI rather than BaseHTTPMiddleware, which misbehaves with asyncpg
connections held across the request.
"""

import re
import time
import uuid

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from opsguard.logging_config import correlation_id_ctx, get_logger

logger = get_logger(__name__)

CORRELATION_ID_HEADER = "X-Correlation-ID"

_VALID_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._-]{1,128}$")

# Probe traffic is logged at debug level only
_QUIET_PATH_PREFIX = "/health"


def resolve_correlation_id(raw: bytes | None) -> str:
    """Use the caller's correlation ID if it is well formed, else a new UUID."""
    if raw:
        candidate = raw.decode("latin-1")
        if _VALID_CORRELATION_ID.match(candidate):
            return candidate
    return str(uuid.uuid4())


class CorrelationIdMiddleware:
    """Binds correlation_id_ctx for the request and echoes the header."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        correlation_id = resolve_correlation_id(headers.get(b"x-correlation-id"))
        token = correlation_id_ctx.set(correlation_id)

        method = scope.get("method", "")
        path = scope.get("path", "")
        log = logger.debug if path.startswith(_QUIET_PATH_PREFIX) else logger.info
        start_time = time.perf_counter()
        status_code: int | None = None

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status")
                response_headers = list(message.get("headers", []))
                response_headers.append(
                    (CORRELATION_ID_HEADER.lower().encode(), correlation_id.encode())
                )
                message = {**message, "headers": response_headers}
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
            log(
                "Request completed",
                method=method,
                path=path,
                status_code=status_code,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
        except Exception:
            logger.exception(
                "Request failed",
                method=method,
                path=path,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            raise
        finally:
            correlation_id_ctx.reset(token)
