from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.core.config import get_settings
from app.core.context import surface_for
from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")

# Health checks are counted but not logged.
_QUIET_PATHS = frozenset({"/health", "/metrics"})


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        surface = surface_for(request.url.path)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            route = resolve_http_path_label(request)
            duration_ms = _elapsed_ms(started)
            observe_http_request(method=method, path=route, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={"method": method, "path": route, "surface": surface, "status_code": 500, "duration_ms": duration_ms},
            )
            raise

        # Route templates are resolved during routing, so the label is read afterwards.
        route = resolve_http_path_label(request)
        duration_ms = _elapsed_ms(started)
        observe_http_request(method=method, path=route, status=response.status_code, duration=duration_ms / 1000)
        if request.url.path in _QUIET_PATHS:
            return response

        fields = {
            "method": method,
            "path": route,
            "surface": surface,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
        if response.status_code >= 500:
            logger.warning("http.request", extra=fields)
        elif duration_ms >= get_settings().slow_request_ms:
            logger.warning("http.slow_request", extra=fields)
        else:
            logger.info("http.request", extra=fields)
        return response
