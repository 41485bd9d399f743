from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from corridortrack.tracking.errors import RateLimited


@dataclass(frozen=True)
class RateLimitConfig:
    enabled: bool
    window_seconds: float
    max_requests: int
    include_paths: tuple[str, ...]


def _matches_prefix(path: str, prefixes: tuple[str, ...]) -> bool:
    return any(path.startswith(prefix) for prefix in prefixes)


class SlidingWindowLimiter:
    """Per-key request counter over a sliding time window."""

    def __init__(self, window_seconds: float, max_requests: int) -> None:
        self.window_seconds = float(window_seconds)
        self.max_requests = int(max_requests)
        self._hits: dict[tuple[str, str], Deque[float]] = {}
        self._last_sweep = 0.0

    def check(self, key: tuple[str, str], now: Optional[float] = None) -> None:
        """Record a hit for `key`, raising RateLimited when the window is already full."""

        current = time.time() if now is None else now
        window_start = current - self.window_seconds
        if current - self._last_sweep >= self.window_seconds:
            self._sweep(window_start)
            self._last_sweep = current
        bucket = self._hits.setdefault(key, deque())
        while bucket and bucket[0] < window_start:
            bucket.popleft()

        if len(bucket) >= self.max_requests:
            retry_after = max(1, int(bucket[0] + self.window_seconds - current)) if bucket else int(self.window_seconds)
            raise RateLimited("Rate limit exceeded", retry_after_seconds=float(retry_after))
        bucket.append(current)

    def _sweep(self, window_start: float) -> None:
        """Drop buckets with no hit inside the window so idle clients do not accumulate."""

        for key, bucket in list(self._hits.items()):
            if not bucket or bucket[-1] < window_start:
                del self._hits[key]

    def __len__(self) -> int:
        return len(self._hits)


class SimpleRateLimitMiddleware(BaseHTTPMiddleware):
    """Throttle snapshot polling (`GET /corridor/...`) per client address and path."""

    def __init__(self, app, config: RateLimitConfig) -> None:  # type: ignore[no-untyped-def]
        super().__init__(app)
        self._config = config
        self._limiter = SlidingWindowLimiter(config.window_seconds, config.max_requests)

    def _client_ip(self, request: Request) -> str:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        if request.client:
            return request.client.host
        return "unknown"

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        cfg = self._config
        if not cfg.enabled or request.method != "GET":
            return await call_next(request)

        path = request.url.path
        if not _matches_prefix(path, cfg.include_paths):
            return await call_next(request)

        try:
            self._limiter.check((self._client_ip(request), path))
        except RateLimited as exc:
            return JSONResponse(
                status_code=429,
                content={"success": False, "code": exc.code, "detail": str(exc)},
                headers={"Retry-After": str(int(exc.retry_after_seconds or cfg.window_seconds))},
            )
        return await call_next(request)
