import logging
from time import perf_counter
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.infrastructure.logging.context import reset_request_id, reset_user_id, set_request_id, set_user_id
from app.infrastructure.observability.metrics import record_request

logger = logging.getLogger("app")

SLOW_REQUEST_THRESHOLD_SECONDS = 2.0


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        started_at = perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration_seconds = perf_counter() - started_at
            if duration_seconds >= SLOW_REQUEST_THRESHOLD_SECONDS:
                logger.warning(
                    "slow_request method=%s path=%s status_code=%s duration_ms=%.1f",
                    request.method,
                    request.url.path,
                    status_code,
                    duration_seconds * 1000.0,
                )
            record_request(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_seconds=duration_seconds,
            )


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id
        request_token = set_request_id(request_id)
        user_token = set_user_id(None)
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            reset_user_id(user_token)
            reset_request_id(request_token)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        return response
