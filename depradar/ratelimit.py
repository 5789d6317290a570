"""In-memory sliding-window rate limiter.

Single-process and best effort: every process enforces its own window.
A background sweeper thread bounds memory by dropping identities whose
window has emptied.
"""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
DEFAULT_WINDOW_MS = 60_000
SWEEP_INTERVAL_S = 300.0


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a single check.

    Attributes:
        allowed: Whether the request may proceed.
        remaining: Requests left in the current window.
        reset_in_ms: Milliseconds until a slot frees up (rejections) or
            the full window length (acceptances).
    """

    allowed: bool
    remaining: int
    reset_in_ms: int


class SlidingWindowRateLimiter:
    """Per-identity sliding-window counter.

    Attributes:
        sweep_window_ms: Minimum window used by ``sweep`` to decide which
            timestamps are stale. Identities checked with a longer window
            are swept against that window instead.
    """

    def __init__(
        self,
        clock: Callable[[], float] | None = None,
        sweep_window_ms: int = DEFAULT_WINDOW_MS,
    ):
        self._clock = clock or _monotonic_ms
        self.sweep_window_ms = sweep_window_ms
        self._store: dict[str, deque[float]] = {}
        self._windows: dict[str, int] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def check(
        self,
        identity: str,
        limit: int = DEFAULT_LIMIT,
        window_ms: int = DEFAULT_WINDOW_MS,
    ) -> RateLimitResult:
        """Record a request for ``identity`` if it fits in the window.

        Args:
            identity: Client key (usually an IP address).
            limit: Requests allowed per window.
            window_ms: Window length in milliseconds.

        Returns:
            ``RateLimitResult`` describing the decision.
        """
        with self._lock:
            now = self._clock()
            cutoff = now - window_ms
            stamps = self._store.setdefault(identity, deque())
            self._windows[identity] = window_ms
            while stamps and stamps[0] <= cutoff:
                stamps.popleft()

            if len(stamps) >= limit:
                oldest = stamps[0] if stamps else now
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_in_ms=int(window_ms - (now - oldest)),
                )

            stamps.append(now)
            return RateLimitResult(
                allowed=True,
                remaining=limit - len(stamps),
                reset_in_ms=int(window_ms),
            )

    def sweep(self) -> int:
        """Prune stale timestamps everywhere and drop empty identities.

        Returns:
            Number of identities removed.
        """
        with self._lock:
            now = self._clock()
            empty = []
            for identity, stamps in self._store.items():
                cutoff = now - max(self.sweep_window_ms, self._windows.get(identity, 0))
                while stamps and stamps[0] <= cutoff:
                    stamps.popleft()
                if not stamps:
                    empty.append(identity)
            for identity in empty:
                del self._store[identity]
                self._windows.pop(identity, None)
        if empty:
            logger.debug("Rate limiter sweep removed %d idle identities", len(empty))
        return len(empty)

    def reset(self) -> None:
        """Forget every identity."""
        with self._lock:
            self._store.clear()
            self._windows.clear()

    def start_sweeper(self, interval_s: float = SWEEP_INTERVAL_S) -> None:
        """Run ``sweep`` every ``interval_s`` seconds on a daemon thread.

        Calling this while a sweeper is already running does nothing.
        """
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            args=(interval_s,),
            name="depradar-ratelimit-sweeper",
            daemon=True,
        )
        self._sweeper.start()

    def stop_sweeper(self, timeout: float | None = 5.0) -> None:
        """Stop the sweeper thread, if running, and wait for it to exit."""
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout)
            self._sweeper = None

    def _sweep_loop(self, interval_s: float) -> None:
        while not self._stop.wait(interval_s):
            self.sweep()


default_limiter = SlidingWindowRateLimiter()


def check_rate_limit(
    identity: str,
    limit: int = DEFAULT_LIMIT,
    window_ms: int = DEFAULT_WINDOW_MS,
) -> RateLimitResult:
    """Check ``identity`` against the process-wide limiter."""
    return default_limiter.check(identity, limit, window_ms)


def get_client_ip(headers: Mapping[str, str]) -> str:
    """Resolve the client identity from proxy headers.

    Prefers ``cf-connecting-ip``, then the first ``x-forwarded-for`` hop,
    then ``x-real-ip``. Header names are matched case-insensitively.

    Returns:
        The client address, or ``"unknown"``.
    """
    lowered = {str(k).lower(): v for k, v in headers.items()}
    cf = lowered.get("cf-connecting-ip")
    if cf:
        return cf.strip()
    fwd = lowered.get("x-forwarded-for")
    if fwd:
        return fwd.split(",")[0].strip() or "unknown"
    real = lowered.get("x-real-ip")
    if real:
        return real.strip()
    return "unknown"
