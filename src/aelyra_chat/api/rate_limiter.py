"""Per-client request throttling using a sliding window."""

import asyncio
import math
import time
from typing import Dict, List, Optional

from fastapi import Request
from structlog import get_logger

logger = get_logger()

OWNER_HEADER = "X-Owner-Id"
THROTTLED_SUFFIXES = ("/messages", "/regenerate")


class RateLimitExceeded(Exception):
    """Exception raised when rate limit is exceeded."""

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimiter:
    """Sliding window limiter keyed by client and route."""

    def __init__(self, rate_limit: int = 100, time_window: int = 900):
        """Initialize rate limiter with configurable parameters."""
        self.rate_limit = rate_limit
        self.time_window = time_window  # in seconds
        self.requests: Dict[str, List[float]] = {}
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        logger.info(
            "rate_limiter_initialized",
            rate_limit=rate_limit,
            time_window=time_window
        )

    async def start(self):
        """Start the rate limiter cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._periodic_cleanup())

    async def stop(self):
        """Stop the rate limiter cleanup task."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    def _prune(self, key: str, now: float) -> List[float]:
        cutoff = now - self.time_window
        recent = [ts for ts in self.requests.get(key, []) if ts > cutoff]
        if recent:
            self.requests[key] = recent
        else:
            self.requests.pop(key, None)
        return recent

    async def _periodic_cleanup(self):
        """Periodically drop keys with no request inside the window."""
        while True:
            await asyncio.sleep(self.time_window)
            async with self._lock:
                now = time.time()
                for key in list(self.requests.keys()):
                    self._prune(key, now)

    async def check_rate_limit(self, key: str) -> None:
        """Record a request for ``key`` or raise ``RateLimitExceeded``."""
        now = time.time()

        async with self._lock:
            recent = self._prune(key, now)

            if len(recent) >= self.rate_limit:
                retry_after = max(1, math.ceil(recent[0] + self.time_window - now))
                logger.warning(
                    "rate_limit_exceeded",
                    key=key,
                    current_requests=len(recent),
                    rate_limit=self.rate_limit,
                    retry_after=retry_after,
                )
                raise RateLimitExceeded(
                    f"Too many requests, try again in {retry_after} seconds",
                    retry_after=retry_after,
                )

            recent.append(now)
            self.requests[key] = recent

    async def get_remaining_requests(self, key: str) -> int:
        """Get remaining requests for the key."""
        async with self._lock:
            return max(0, self.rate_limit - len(self._prune(key, time.time())))


def is_throttled(request: Request) -> bool:
    return request.method == "POST" and request.url.path.endswith(THROTTLED_SUFFIXES)


async def rate_limit_middleware(
    request: Request,
    rate_limiter: Optional[RateLimiter] = None
) -> None:
    """Throttle message-generating routes per owner (or client address)."""
    if rate_limiter is None or not is_throttled(request):
        return

    client = request.headers.get(OWNER_HEADER)
    if not client:
        client = request.client.host if request.client else "unknown"
    await rate_limiter.check_rate_limit(f"{client}:{request.url.path}")
