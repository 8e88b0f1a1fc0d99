from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


SURFACE_PREFIXES = (
    ("/api/admin", "admin"),
    ("/api/intake", "intake"),
    ("/api/portal", "portal"),
)


def surface_for(path: str) -> str:
    for prefix, surface in SURFACE_PREFIXES:
        if path.startswith(prefix):
            return surface
    return "system"


@dataclass
class RequestContext:
    correlation_id: str
    surface: str
    user_id: str | None = None
    client_host: str | None = None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attaches a RequestContext to request.state; auth fills in user_id once the token is decoded."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None) or ""
        context = RequestContext(
            correlation_id=correlation_id,
            surface=surface_for(request.url.path),
            client_host=request.client.host if request.client else None,
        )
        request.state.context = context
        response = await call_next(request)
        response.headers["x-request-surface"] = context.surface
        return response
