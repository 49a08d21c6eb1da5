"""Per-client fixed-window rate limiting.

Each client identity gets a counter that resets wholesale when its window
elapses. State is in-memory and process-local: a restart resets every quota.

Identities come from proxy headers and are not authenticated. The limiter
bounds accidental load; it is not a security control.
"""

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from prometheus_client import Counter

from services.shared.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

FALLBACK_IDENTITY = "localhost"

rate_limit_denials_total = Counter(
    "rate_limit_denials_total",
    "Requests denied by the per-client rate limiter",
)


@dataclass
class RateLimitWindow:
    """Counter for one identity.

    Attributes:
        count: Requests admitted in the current window
        reset_time: Monotonic time at which the window expires
    """

    count: int
    reset_time: float


def client_identity(headers: Mapping[str, str]) -> str:
    """Derive the rate-limit identity from request headers.

    Uses the first X-Forwarded-For hop, then X-Real-IP, then a constant.
    """
    forwarded = headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop
    real_ip = headers.get("x-real-ip", "").strip()
    return real_ip or FALLBACK_IDENTITY


class RateLimiter:
    """Fixed-window request limiter keyed by client identity.

    Attributes:
        max_requests: Requests admitted per window
        window_seconds: Window length
    """

    def __init__(
        self,
        max_requests: int,
        window_ms: int,
        clock: Callable[[], float] = time.monotonic,
        max_tracked: int = 10_000,
    ) -> None:
        """Initialize rate limiter.

        Args:
            max_requests: Ceiling per identity per window
            window_ms: Window length in milliseconds
            clock: Monotonic time source in seconds (injectable for tests)
            max_tracked: Window count above which expired windows are purged
        """
        if max_requests <= 0 or window_ms <= 0:
            raise ValueError("max_requests and window_ms must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_ms / 1000
        self._clock = clock
        self._max_tracked = max_tracked
        self._windows: dict[str, RateLimitWindow] = {}
        self._lock = threading.Lock()

    def allow(self, identity: str) -> bool:
        """Admit or deny one request from ``identity``.

        A denied request leaves the counter unchanged.
        """
        now = self._clock()
        with self._lock:
            window = self._windows.get(identity)
            if window is None or now >= window.reset_time:
                if window is None and len(self._windows) >= self._max_tracked:
                    self._purge_locked(now)
                self._windows[identity] = RateLimitWindow(
                    count=1, reset_time=now + self.window_seconds
                )
                return True
            if window.count >= self.max_requests:
                return False
            window.count += 1
            return True

    def check(self, identity: str) -> None:
        """Admit a request or raise.

        Raises:
            RateLimitExceeded: If the identity exhausted its window
        """
        if self.allow(identity):
            return
        retry_after = self.retry_after(identity)
        rate_limit_denials_total.inc()
        logger.warning(
            "Rate limit exceeded",
            extra={"client_id": identity, "retry_after_seconds": round(retry_after, 3)},
        )
        raise RateLimitExceeded(
            "Rate limit exceeded. Please try again later.", retry_after=retry_after
        )

    def retry_after(self, identity: str) -> float:
        """Seconds until the identity's window resets (0 if it has none)."""
        now = self._clock()
        with self._lock:
            window = self._windows.get(identity)
            if window is None:
                return 0.0
            return max(0.0, window.reset_time - now)

    def snapshot(self, identity: str) -> RateLimitWindow | None:
        """Copy of the current window for ``identity``."""
        with self._lock:
            window = self._windows.get(identity)
            if window is None:
                return None
            return RateLimitWindow(count=window.count, reset_time=window.reset_time)

    def purge_expired(self) -> int:
        """Drop elapsed windows and return how many were removed."""
        now = self._clock()
        with self._lock:
            return self._purge_locked(now)

    def _purge_locked(self, now: float) -> int:
        expired = [key for key, w in self._windows.items() if now >= w.reset_time]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)
