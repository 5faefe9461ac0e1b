"""Fixed-window request limiter keyed by client address."""
import math
import threading
import time
from typing import Dict, Tuple

from fastapi import Request

import settings
from errors import TooManyRequests


def client_address(request: Request, trust_forwarded: bool = False) -> str:
    """Address a request is counted against.

    ``X-Forwarded-For`` is only honoured when the app sits behind a proxy that
    sets it; otherwise any client could pick its own bucket.
    """
    if trust_forwarded:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


class RateLimiter:
    """Allow ``limit`` requests per ``window`` seconds from one address.

    Use an instance as a route dependency. Counters live in process memory;
    expired windows are swept at most once per window.
    """

    def __init__(
        self,
        limit: int,
        window: int,
        message: str,
        clock=time.monotonic,
        trust_forwarded: bool = False,
    ):
        self.limit = limit
        self.window = window
        self.message = message
        self.trust_forwarded = trust_forwarded
        self._hits: Dict[str, Tuple[float, int]] = {}
        self._clock = clock
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self.window:
            return
        expired = [k for k, (started, _) in self._hits.items() if now - started >= self.window]
        for key in expired:
            del self._hits[key]
        self._last_sweep = now

    def __call__(self, request: Request) -> None:
        key = client_address(request, self.trust_forwarded)
        now = self._clock()
        with self._lock:
            self._sweep(now)
            started, count = self._hits.get(key, (now, 0))
            if now - started >= self.window:
                started, count = now, 0
            count += 1
            self._hits[key] = (started, count)
        if count > self.limit:
            retry_after = max(1, math.ceil(self.window - (now - started)))
            raise TooManyRequests(self.message, headers={"Retry-After": str(retry_after)})

    @property
    def tracked(self) -> int:
        """Number of addresses with a counter in memory."""
        return len(self._hits)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


signup_limiter = RateLimiter(
    settings.SIGNUP_RATE_LIMIT,
    settings.SIGNUP_RATE_WINDOW,
    "Too many signups from this IP, please try again later.",
    trust_forwarded=settings.TRUST_FORWARDED_FOR,
)
login_limiter = RateLimiter(
    settings.LOGIN_RATE_LIMIT,
    settings.LOGIN_RATE_WINDOW,
    "Too many login attempts. Please try again later.",
    trust_forwarded=settings.TRUST_FORWARDED_FOR,
)
