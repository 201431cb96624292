from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import NamedTuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.api.errors import error_response
from app.core.auth import bearer_token, decode_user
from app.core.config import get_settings
from app.metrics import observe_rate_limited


logger = logging.getLogger("app.request")

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
WINDOW_SECONDS = 60


class BucketKey(NamedTuple):
    caller_id: str
    route_group: str


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


class MutationBudget:
    """Token buckets refilled continuously at ``capacity`` per window."""

    def __init__(self, window_seconds: int = WINDOW_SECONDS) -> None:
        self.window_seconds = window_seconds
        self._lock = threading.Lock()
        self._buckets: dict[BucketKey, _Bucket] = {}

    def spend(self, key: BucketKey, capacity: int) -> int:
        """Take one token. Returns 0 when allowed, otherwise the seconds to wait."""
        if capacity <= 0:
            return self.window_seconds

        per_second = capacity / float(self.window_seconds)
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.setdefault(key, _Bucket(tokens=float(capacity), refilled_at=now))
            bucket.tokens = min(float(capacity), bucket.tokens + max(0.0, now - bucket.refilled_at) * per_second)
            bucket.refilled_at = now
            if bucket.tokens < 1.0:
                return max(1, math.ceil((1.0 - bucket.tokens) / per_second))
            bucket.tokens -= 1.0
            return 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_budget = MutationBudget()


def route_group(path: str) -> str:
    # /api/companies/{id}/contacts/... -> contacts, /api/companies -> companies
    parts = [part for part in path.split("/") if part]
    if len(parts) >= 4:
        return parts[3]
    if len(parts) >= 2:
        return parts[1]
    return "api"


def caller_id(request: Request) -> str:
    return decode_user(bearer_token(request)).sub or "anonymous"


class CompanyMutationRateLimitMiddleware(BaseHTTPMiddleware):
    """Per-caller token bucket over mutating requests, bucketed by resource collection."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if settings.rate_limit_disabled or request.method.upper() not in MUTATING_METHODS or not path.startswith("/api/"):
            return await call_next(request)

        key = BucketKey(caller_id(request), route_group(path))
        retry_after = _budget.spend(key, settings.rate_limit_mutations_per_minute)
        if not retry_after:
            return await call_next(request)

        observe_rate_limited(key.route_group)
        logger.warning("rate.limited", extra={"path": path, "actor": key.caller_id, "resource": key.route_group})
        response = error_response(
            request,
            status_code=429,
            code="rate_limited",
            message="too many requests",
            details={"retry_after": retry_after},
        )
        response.headers["Retry-After"] = str(retry_after)
        return response


def reset_rate_limiter() -> None:
    _budget.clear()
