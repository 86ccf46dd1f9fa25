"""
Rate Limiting Module for the MedChronos AI Service

Every endpoint that reaches a model provider gets a per-client budget over a
sliding window. Budgets are counted in units rather than requests: a study
upload costs one unit per image, because each image is captioned by its own
model call; the other endpoints cost one unit per request.
"""

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import HTTPException, Request

from .structured_logging import StructuredLogger

logger = StructuredLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    """Budget for one endpoint: `max_units` per `window_seconds`."""

    max_units: int = 10
    window_seconds: int = 60

    @classmethod
    def parse(cls, value: str) -> "RateLimitConfig":
        """Parse a budget written as "UNITS/SECONDS", e.g. "20/60"."""
        units, _, window = value.strip().partition("/")
        try:
            config = cls(max_units=int(units), window_seconds=int(window) if window else 60)
        except ValueError:
            raise ValueError(f"Invalid rate limit {value!r}, expected UNITS/SECONDS") from None
        if config.max_units < 1 or config.window_seconds < 1:
            raise ValueError(f"Invalid rate limit {value!r}, both parts must be positive")
        return config


DEFAULT_LIMITS = {
    "studies": RateLimitConfig(max_units=40, window_seconds=60),
    "studies-refresh": RateLimitConfig(max_units=5, window_seconds=60),
    "reports-generate": RateLimitConfig(max_units=10, window_seconds=60),
    "chat": RateLimitConfig(max_units=20, window_seconds=60),
}


def limits_from_settings(settings) -> dict[str, RateLimitConfig]:
    """Endpoint budgets from the service settings."""
    return {
        "studies": RateLimitConfig.parse(settings.rate_limit_studies),
        "studies-refresh": RateLimitConfig.parse(settings.rate_limit_refresh),
        "reports-generate": RateLimitConfig.parse(settings.rate_limit_reports),
        "chat": RateLimitConfig.parse(settings.rate_limit_chat),
    }


def client_ip(request: Request) -> str:
    """Client IP, honoring X-Forwarded-For from proxies/load balancers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class SlidingWindow:
    """Weighted sliding window for a single endpoint, keyed by client."""

    def __init__(self, config: RateLimitConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._clock = clock
        # client -> deque of (timestamp, units)
        self._charges: dict[str, deque] = defaultdict(deque)

    def _expire(self, client: str, now: float) -> int:
        charges = self._charges[client]
        cutoff = now - self.config.window_seconds
        while charges and charges[0][0] <= cutoff:
            charges.popleft()
        return sum(units for _, units in charges)

    def acquire(self, client: str, units: int = 1) -> tuple[bool, int, int]:
        """Charge `units` to `client` if the budget allows it.

        A single charge larger than the whole budget is clamped to the budget,
        so an oversized study waits for an empty window instead of never
        being accepted.

        Returns:
            Tuple of (allowed, units_remaining, retry_after_seconds)
        """
        units = min(max(units, 1), self.config.max_units)
        now = self._clock()
        used = self._expire(client, now)

        if used + units > self.config.max_units:
            return False, self.config.max_units - used, self._retry_after(client, now, used + units)

        self._charges[client].append((now, units))
        return True, self.config.max_units - used - units, 0

    def _retry_after(self, client: str, now: float, needed: int) -> int:
        excess = needed - self.config.max_units
        freed = 0
        for timestamp, units in self._charges[client]:
            freed += units
            if freed >= excess:
                return int(timestamp + self.config.window_seconds - now) + 1
        return self.config.window_seconds

    def reset(self, client: str):
        self._charges.pop(client, None)


class RateLimitManager:
    """Sliding windows for every rate-limited endpoint of one app."""

    def __init__(
        self,
        limits: Optional[dict[str, RateLimitConfig]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limits = {**DEFAULT_LIMITS, **(limits or {})}
        self._clock = clock
        self.windows: dict[str, SlidingWindow] = {}

    def window(self, endpoint: str) -> SlidingWindow:
        if endpoint not in self.windows:
            config = self.limits.get(endpoint, RateLimitConfig())
            self.windows[endpoint] = SlidingWindow(config, clock=self._clock)
        return self.windows[endpoint]

    def check(self, endpoint: str, request: Request, units: int = 1) -> dict:
        """
        Charge a request against the endpoint budget.

        The rate limit headers are also stored on `request.state` so the
        HTTP middleware can copy them onto the response.

        Raises:
            HTTPException: 429 with Retry-After when the budget is spent
        """
        window = self.window(endpoint)
        ip = client_ip(request)
        allowed, remaining, retry_after = window.acquire(ip, units)

        headers = {
            "X-RateLimit-Limit": str(window.config.max_units),
            "X-RateLimit-Remaining": str(remaining),
            "X-RateLimit-Window": str(window.config.window_seconds),
        }
        request.state.rate_limit_headers = headers

        if not allowed:
            headers["Retry-After"] = str(retry_after)
            logger.warning(
                f"Rate limit exceeded for {endpoint}",
                endpoint=endpoint,
                units=units,
                remaining=remaining,
                limit=window.config.max_units,
                window_seconds=window.config.window_seconds,
                retry_after=retry_after,
            )
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Try again in {retry_after} seconds.",
                headers=headers,
            )

        return headers
