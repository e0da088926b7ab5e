"""ASGI middleware for the webhook server."""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from cirelay.errors import CIRelayError, ConfigurationError, UnknownProviderError
from cirelay.utils.text import error_message

logger = logging.getLogger("cirelay.middleware")

# Polled by load balancers; logged at debug only.
_QUIET_PATHS = frozenset({"/health"})

# Checked in order, first match wins.
_ERROR_STATUS: tuple[tuple[type[BaseException], int, str], ...] = (
    (UnknownProviderError, status.HTTP_404_NOT_FOUND, "Unknown Provider"),
    (ConfigurationError, status.HTTP_400_BAD_REQUEST, "Invalid Configuration"),
    (ValueError, status.HTTP_400_BAD_REQUEST, "Invalid Request"),
    (CIRelayError, status.HTTP_502_BAD_GATEWAY, "Upstream Error"),
)


def error_response(exc: BaseException) -> JSONResponse:
    """Map an exception escaping a route to a JSON error body."""
    for exc_type, code, title in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            logger.warning("%s: %s", title, error_message(exc))
            return JSONResponse(status_code=code, content={"error": title, "detail": error_message(exc)})
    logger.error("Unhandled exception: %s", error_message(exc), exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal Server Error", "detail": "An unexpected error occurred"},
    )


class RequestLogMiddleware:
    """One log line per request with status and timing; webhook deliveries name their provider."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        started = time.monotonic()
        status_code = 0

        async def capture_status(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, capture_status)
        finally:
            elapsed = time.monotonic() - started
            level = logging.DEBUG if path in _QUIET_PATHS else logging.INFO
            if path.startswith("/webhook/"):
                logger.log(
                    level,
                    "Webhook from %s -> %d (%.3fs)",
                    path.removeprefix("/webhook/"),
                    status_code,
                    elapsed,
                )
            else:
                logger.log(level, "%s %s -> %d (%.3fs)", scope.get("method", ""), path, status_code, elapsed)


class ErrorMiddleware:
    """Converts exceptions escaping a route into JSON errors via :func:`error_response`."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = False

        async def track_start(message: Message) -> None:
            nonlocal started
            if message["type"] == "http.response.start":
                started = True
            await send(message)

        try:
            await self.app(scope, receive, track_start)
        except Exception as exc:
            if started:
                raise
            await error_response(exc)(scope, receive, send)


def setup_middleware(app: FastAPI) -> None:
    # The last one added is outermost, so errors are logged with their mapped status.
    app.add_middleware(ErrorMiddleware)
    app.add_middleware(RequestLogMiddleware)
