"""In-memory fixed-window rate limiting and IP blocking.

State is process-local and best-effort: windows and the block set live in
memory, guarded by a lock, and are lost on restart.
"""
from __future__ import annotations
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class RateWindow:
    """A single fixed window: request count and the time it resets."""

    count: int
    reset_at: float


@dataclass
class RateLimitResult:
    success: bool
    remaining: int
    reset_at: float


@dataclass
class IpLimitResult:
    allowed: bool
    remaining: int
    reset_at: float


@dataclass
class EndpointLimitResult:
    success: bool
    remaining: int
    reset_at: float
    limit: int
    window_ms: int


class RateLimiter:
    """A thread-safe fixed-window rate limiter keyed by arbitrary strings.

    A burst straddling a window boundary can admit up to ``2 * limit``
    requests. Expired windows are replaced lazily on the next access and
    evicted in bulk by a periodic background sweep.
    """

    SWEEP_BATCH = 256

    def __init__(
        self,
        sweep_interval: Optional[float] = 300,
        clock: Callable[[], float] = time.time,
    ):
        """Initializes the RateLimiter.

        Args:
            sweep_interval: Seconds between background sweeps. ``None``
                disables the sweep thread; ``sweep()`` can still be called.
            clock: Returns the current time in seconds.
        """
        self._windows: Dict[str, RateWindow] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        if sweep_interval:
            self._thread = threading.Thread(
                target=self._run_sweep,
                args=(sweep_interval,),
                name="rate-limit-sweep",
                daemon=True,
            )
            self._thread.start()

    def check(self, identifier: str, limit: int, window_ms: int) -> RateLimitResult:
        """Counts one request for ``identifier`` against its window.

        Args:
            identifier: The rate-limit key.
            limit: Maximum requests per window (> 0).
            window_ms: Window length in milliseconds (> 0).

        Returns:
            A RateLimitResult. On failure ``remaining`` is 0 and ``reset_at``
            is the unchanged end of the current window.
        """
        if limit <= 0 or window_ms <= 0:
            raise ValueError("limit and window_ms must be positive")
        with self._lock:
            now = self._clock()
            window = self._windows.get(identifier)
            if window is None or now >= window.reset_at:
                reset_at = now + window_ms / 1000.0
                self._windows[identifier] = RateWindow(count=1, reset_at=reset_at)
                return RateLimitResult(True, limit - 1, reset_at)
            if window.count >= limit:
                return RateLimitResult(False, 0, window.reset_at)
            window.count += 1
            return RateLimitResult(True, limit - window.count, window.reset_at)

    def sweep(self) -> int:
        """Evicts every window whose reset time has passed.

        Expired keys are snapshotted under the lock, then deleted in small
        batches; each batch re-checks expiry so a window refreshed in between
        survives. The lock is never held for a full table scan plus deletes.

        Returns:
            The number of windows evicted.
        """
        with self._lock:
            now = self._clock()
            expired: List[str] = [
                k for k, w in self._windows.items() if now >= w.reset_at
            ]
        removed = 0
        for start in range(0, len(expired), self.SWEEP_BATCH):
            batch = expired[start : start + self.SWEEP_BATCH]
            with self._lock:
                now = self._clock()
                for key in batch:
                    window = self._windows.get(key)
                    if window is not None and now >= window.reset_at:
                        del self._windows[key]
                        removed += 1
        if removed:
            logger.debug(f"Rate limiter sweep evicted {removed} windows")
        return removed

    def _run_sweep(self, interval: float):
        while not self._stop.wait(interval):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Rate limiter sweep failed: {e}")

    def destroy(self):
        """Stops the background sweep. Used at process shutdown."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def peek(self, identifier: str) -> Optional[RateWindow]:
        """Returns a copy of the stored window for ``identifier``, if any."""
        with self._lock:
            window = self._windows.get(identifier)
            return RateWindow(window.count, window.reset_at) if window else None


class IpGuard:
    """Coarse per-IP ceiling plus a manual block list."""

    KEY_PREFIX = "ip-"

    def __init__(self, limiter: RateLimiter, limit: int, window_ms: int):
        self.limiter = limiter
        self.limit = limit
        self.window_ms = window_ms
        self._blocked: Set[str] = set()
        self._lock = threading.Lock()

    def is_blocked(self, ip: str) -> bool:
        with self._lock:
            return ip in self._blocked

    def block(self, ip: str):
        # The identifier itself is never logged.
        with self._lock:
            self._blocked.add(ip)
            size = len(self._blocked)
        logger.info(f"IP added to block list ({size} blocked)")

    def unblock(self, ip: str):
        with self._lock:
            self._blocked.discard(ip)
            size = len(self._blocked)
        logger.info(f"IP removed from block list ({size} blocked)")

    def check_limit(self, ip: str) -> IpLimitResult:
        result = self.limiter.check(self.KEY_PREFIX + ip, self.limit, self.window_ms)
        return IpLimitResult(result.success, result.remaining, result.reset_at)


class EndpointGuard:
    """Per-endpoint, per-IP windows with limits chosen by endpoint class."""

    def __init__(
        self,
        limiter: RateLimiter,
        rate_limits: Mapping[str, Mapping[str, int]],
        endpoint_classes: Mapping[str, str],
    ):
        """Initializes the EndpointGuard.

        Args:
            limiter: The shared RateLimiter.
            rate_limits: Endpoint class -> ``{"limit", "window_ms"}``; must
                contain a ``"default"`` entry for unlisted endpoints.
            endpoint_classes: Endpoint path -> endpoint class.
        """
        self.limiter = limiter
        self.rate_limits = rate_limits
        self.endpoint_classes = endpoint_classes

    def limits_for(self, endpoint: str) -> Mapping[str, int]:
        cls = self.endpoint_classes.get(endpoint, "default")
        return self.rate_limits.get(cls, self.rate_limits["default"])

    def check(self, ip: str, endpoint: str) -> EndpointLimitResult:
        conf = self.limits_for(endpoint)
        limit, window_ms = conf["limit"], conf["window_ms"]
        result = self.limiter.check(f"{ip}-{endpoint}", limit, window_ms)
        return EndpointLimitResult(
            success=result.success,
            remaining=result.remaining,
            reset_at=result.reset_at,
            limit=limit,
            window_ms=window_ms,
        )


def get_client_ip(headers: Mapping[str, str]) -> str:
    """Derives the client identifier from proxy headers.

    Takes the first ``x-forwarded-for`` entry, then ``cf-connecting-ip``,
    then ``x-real-ip``, falling back to ``"unknown"``. None of these are
    trustworthy; the result is only stable enough for abuse throttling.
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for name in ("cf-connecting-ip", "x-real-ip"):
        value = headers.get(name)
        if value:
            return value.strip()
    return "unknown"
