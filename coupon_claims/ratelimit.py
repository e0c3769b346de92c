"""
Token-bucket rate limiting for the claim endpoint.

- In-memory, keyed by client IP.
- Bucket capacity is the request allowance per window; it refills evenly over
  the window.
- Tracked clients are bounded: buckets idle for a whole window are dropped
  (they would be full again anyway), and past `max_clients` the least
  recently seen client is evicted.
"""

import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .config import Settings
from .errors import RateLimitError, app_error_handler

RATE_LIMIT_MESSAGE = "Too many requests from this IP, please try again after an hour."


@dataclass
class RateLimitConfig:
    enabled: bool = True
    max_requests: int = 5
    window_seconds: int = 3600
    max_clients: int = 10000

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimitConfig":
        return cls(
            enabled=settings.RATE_LIMIT_ENABLED,
            max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
            max_clients=settings.RATE_LIMIT_MAX_CLIENTS,
        )


class ClaimAllowance:
    """Per-client bucket of claim attempts."""

    def __init__(self, capacity: int, window_seconds: int, now: float):
        self.capacity = max(1, capacity)
        self.window_seconds = max(1, window_seconds)
        self.refill_rate = self.capacity / float(self.window_seconds)
        self.tokens = float(self.capacity)
        self.last_refill = now
        self.last_seen = now

    def _refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed <= 0:
            return
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def take(self, now: float) -> bool:
        self._refill(now)
        self.last_seen = now
        if self.tokens >= 1:
            self.tokens -= 1
            return True
        return False

    def retry_after(self) -> int:
        return max(1, math.ceil((1 - self.tokens) / self.refill_rate))

    def is_idle(self, now: float) -> bool:
        return now - self.last_seen >= self.window_seconds


class InMemoryRateLimiter:
    def __init__(self, config: RateLimitConfig, time_fn: Callable[[], float] = time.monotonic):
        self.config = config
        self.time_fn = time_fn
        # Least recently seen client first
        self.buckets: "OrderedDict[str, ClaimAllowance]" = OrderedDict()

    def _evict(self, now: float) -> None:
        while self.buckets:
            oldest = next(iter(self.buckets.values()))
            if not oldest.is_idle(now):
                break
            self.buckets.popitem(last=False)
        while len(self.buckets) >= max(1, self.config.max_clients):
            self.buckets.popitem(last=False)

    def bucket_for(self, key: str, now: Optional[float] = None) -> ClaimAllowance:
        now = self.time_fn() if now is None else now
        bucket = self.buckets.get(key)
        if bucket is None:
            self._evict(now)
            bucket = ClaimAllowance(self.config.max_requests, self.config.window_seconds, now)
            self.buckets[key] = bucket
        else:
            self.buckets.move_to_end(key)
        return bucket

    def allow(self, key: str) -> bool:
        now = self.time_fn()
        return self.bucket_for(key, now).take(now)


class ClaimRateLimitMiddleware(BaseHTTPMiddleware):
    """Limit POSTs to the claim path per client IP."""

    def __init__(
        self,
        app,
        *,
        config: RateLimitConfig,
        path: str,
        client_ip: Callable[[Request], str],
        time_fn: Optional[Callable[[], float]] = None,
    ):
        super().__init__(app)
        self.config = config
        self.path = path
        self.client_ip = client_ip
        self.limiter = InMemoryRateLimiter(config, time_fn=time_fn or time.monotonic)

    async def dispatch(self, request: Request, call_next):
        if not self.config.enabled or request.method.upper() != "POST" or request.url.path != self.path:
            return await call_next(request)

        key = f"ip:{self.client_ip(request)}"
        if self.limiter.allow(key):
            return await call_next(request)

        response = await app_error_handler(request, RateLimitError(RATE_LIMIT_MESSAGE))
        response.headers["Retry-After"] = str(self.limiter.bucket_for(key).retry_after())
        return response
