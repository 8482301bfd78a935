# src/core/middleware.py

import logging
import secrets
import time
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from src.core.config import IS_PRODUCTION

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
SLOW_REQUEST_SECONDS = 2.0


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Attach browser hardening headers; the API never serves framed or sniffable content."""

    HEADERS = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Permissions-Policy": "geolocation=(), microphone=(), camera=(), payment=(self)",
        "Cache-Control": "no-store",
    }

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        for name, value in self.HEADERS.items():
            response.headers.setdefault(name, value)
        if IS_PRODUCTION or request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Tag every request with an id (echoed in X-Request-ID) and log failures
    and slow requests. Query strings are dropped for paths that carry OAuth
    codes or checkout session ids.
    """

    REDACTED_QUERY_PATHS = ("/api/stripe/callback", "/api/checkout/confirm")

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or secrets.token_hex(8)
        request.state.request_id = request_id
        started = time.perf_counter()

        response = await call_next(request)

        elapsed = time.perf_counter() - started
        response.headers[REQUEST_ID_HEADER] = request_id

        if response.status_code >= 400 or elapsed >= SLOW_REQUEST_SECONDS:
            target = request.url.path
            if request.url.query and target not in self.REDACTED_QUERY_PATHS:
                target = f"{target}?{request.url.query}"
            client_ip = request.client.host if request.client else "-"
            level = logging.WARNING if response.status_code >= 400 else logging.INFO
            logger.log(
                level,
                f"[{request_id}] {request.method} {target} -> {response.status_code} "
                f"in {elapsed:.3f}s from {client_ip}",
            )

        return response
