from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.auth import bearer_token, decode_claims
from app.core.config import Settings, get_settings
from app.metrics import observe_rate_limited


logger = logging.getLogger("app.rate_limit")

WINDOW_SECONDS = 60
# Route groups that remove client data irreversibly get their own, smaller budget.
DESTRUCTIVE_GROUPS = frozenset({"clients.delete", "submissions.bulk-delete"})


@dataclass(frozen=True)
class RatePolicy:
    route_group: str
    capacity: int
    window_seconds: int = WINDOW_SECONDS

    @property
    def refill_per_second(self) -> float:
        return self.capacity / float(self.window_seconds)


@dataclass
class _Bucket:
    tokens: float
    updated_at: float

    def refill(self, now: float, policy: RatePolicy) -> None:
        elapsed = max(0.0, now - self.updated_at)
        self.tokens = min(float(policy.capacity), self.tokens + elapsed * policy.refill_per_second)
        self.updated_at = now


class AdminRateLimiter:
    """Per-actor token buckets, one per admin route group."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def acquire(self, actor: str, policy: RatePolicy) -> int:
        """Take one token; returns 0 when allowed, otherwise the seconds to wait."""
        if policy.capacity <= 0:
            return policy.window_seconds

        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.setdefault((actor, policy.route_group), _Bucket(float(policy.capacity), now))
            bucket.refill(now, policy)
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return 0
            return max(1, math.ceil((1.0 - bucket.tokens) / policy.refill_per_second))

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = AdminRateLimiter()


def route_group_for(path: str) -> str:
    """`/api/admin/clients/delete` -> `clients.delete`; `/api/admin/submissions/{id}/status` -> `submissions`."""
    parts = [part for part in path.split("/") if part][2:]
    if not parts:
        return "admin"
    resource = parts[0]
    if len(parts) > 1 and (resource == "clients" or parts[1] == "bulk-delete"):
        return f"{resource}.{parts[1]}"
    return resource


def policy_for(path: str, settings: Settings) -> RatePolicy:
    group = route_group_for(path)
    if group in DESTRUCTIVE_GROUPS:
        return RatePolicy(route_group=group, capacity=settings.rate_limit_destructive_per_minute)
    return RatePolicy(route_group=group, capacity=settings.rate_limit_admin_mutations_per_minute)


def _actor_for(request: Request) -> str:
    claims = decode_claims(bearer_token(request))
    subject = claims.get("sub") if claims else None
    return str(subject) if subject is not None else "anonymous"


class AdminMutationRateLimitMiddleware(BaseHTTPMiddleware):
    mutating_methods = {"POST", "PATCH", "PUT", "DELETE"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or not path.startswith("/api/admin")
            or request.method.upper() not in self.mutating_methods
        ):
            return await call_next(request)

        policy = policy_for(path, settings)
        retry_after = _limiter.acquire(_actor_for(request), policy)
        if retry_after == 0:
            return await call_next(request)

        correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None) or str(uuid.uuid4())
        observe_rate_limited(policy.route_group)
        logger.warning(
            "rate_limit.rejected",
            extra={"route_group": policy.route_group, "retry_after_seconds": retry_after, "path": path},
        )
        return JSONResponse(
            status_code=429,
            content={
                "code": "rate_limited",
                "message": "Too many admin changes; slow down and retry",
                "details": {"route_group": policy.route_group, "retry_after_seconds": retry_after, "retryable": True},
                "correlation_id": correlation_id,
            },
            headers={"Retry-After": str(retry_after), "X-Correlation-Id": correlation_id},
        )


def reset_rate_limiter() -> None:
    _limiter.clear()
