"""
RateLimiter: per-key fixed-window rate limiting with per-key serialization.
"""

import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Optional

from mdviewer_edge.database.manager import StorageFailure
from mdviewer_edge.database.models import RateLimitDecision, WindowCounter
from mdviewer_edge.throttling.store import CounterStore, MemoryCounterStore
from mdviewer_edge.utils.logger import get_logger


class RateLimitExceeded(Exception):
    """Raised by ``RateLimiter.guard`` when a key has used up its window."""

    def __init__(self, key: str, reset_at: float, limit: int, retry_after: int):
        self.key = key
        self.reset_at = reset_at
        self.limit = limit
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded for {key}; retry after {retry_after}s")


class _KeyLock:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class KeyedLockTable:
    """One lock per key, created on demand and dropped when nobody holds it.

    The registry lock is only held long enough to find or create the per-key
    lock, so work on different keys never waits on each other.
    """

    def __init__(self):
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, _KeyLock] = {}

    @contextmanager
    def hold(self, key: str):
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._registry_lock:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)


class RateLimiter:
    """Fixed-window limiter: at most ``max_requests`` allowed checks per key per window.

    Example:
        >>> limiter = RateLimiter({"window_seconds": 60, "max_requests": 10})
        >>> decision = limiter.check("1.2.3.4")
        >>> decision.allowed, decision.remaining
        (True, 9)
    """

    def __init__(
        self,
        rate_limit_config: Optional[dict] = None,
        store: Optional[CounterStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        rate_limit_config example:
        {
            "window_seconds": 60,
            "max_requests": 10,
            "fail_open": False
        }
        """
        self.config = rate_limit_config or {}
        self.window_seconds = self.config.get("window_seconds", 60)
        self.max_requests = self.config.get("max_requests", 10)
        self.fail_open = self.config.get("fail_open", False)
        self.store = store if store is not None else MemoryCounterStore()
        self.clock = clock
        self.locks = KeyedLockTable()
        self.logger = get_logger("throttling.manager")

    def check(self, key: str) -> RateLimitDecision:
        """Count one request for ``key`` and say whether it may proceed.

        Storage failures never leave a half-written counter behind; they yield a
        ``degraded`` decision that denies the request unless ``fail_open`` is set.
        """
        with self.locks.hold(key):
            now = self.clock()
            try:
                return self._check_locked(key, now)
            except StorageFailure as e:
                self.logger.error(f"Counter storage unavailable for {key}: {e}")
                return RateLimitDecision(
                    allowed=self.fail_open,
                    remaining=0,
                    reset_at=now + self.window_seconds,
                    limit=self.max_requests,
                    degraded=True,
                )

    def _check_locked(self, key: str, now: float) -> RateLimitDecision:
        counter = self.store.get(key)

        if counter is None or not counter.is_live(now):
            counter = WindowCounter.fresh(key, now, self.window_seconds)
            self.store.put(counter)
            self.logger.debug(f"New window for {key} until {counter.reset_at:.3f}")
            return self._decision(True, counter)

        if counter.count >= self.max_requests:
            self.logger.info(f"Rate limit reached for {key}: {counter.count}/{self.max_requests}")
            return RateLimitDecision(allowed=False, remaining=0, reset_at=counter.reset_at, limit=self.max_requests)

        counter = counter.incremented()
        self.store.put(counter)
        return self._decision(True, counter)

    def _decision(self, allowed: bool, counter: WindowCounter) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=allowed,
            remaining=max(0, self.max_requests - counter.count),
            reset_at=counter.reset_at,
            limit=self.max_requests,
        )

    def guard(self, key: str) -> RateLimitDecision:
        """Like ``check`` but raises ``RateLimitExceeded`` on rejection."""
        decision = self.check(key)
        if not decision.allowed:
            raise RateLimitExceeded(key, decision.reset_at, decision.limit, decision.retry_after(self.clock()))
        return decision

    def reset(self, key: str) -> bool:
        """Clear the counter for ``key`` (for testing/admin). Returns whether one existed."""
        with self.locks.hold(key):
            removed = self.store.delete(key)
        self.logger.info(f"Rate limit counter reset for {key}")
        return removed

    def peek(self, key: str) -> Optional[WindowCounter]:
        """Current live counter for ``key`` without counting a request."""
        with self.locks.hold(key):
            counter = self.store.get(key)
        if counter is None or not counter.is_live(self.clock()):
            return None
        return counter

    def evict_expired(self) -> int:
        """Drop counters whose window has closed; safe to call at any time."""
        evicted = self.store.evict_expired(self.clock())
        if evicted:
            self.logger.debug(f"Evicted {evicted} expired rate limit counters")
        return evicted

    def get_stats(self) -> Dict[str, object]:
        return {
            "window_seconds": self.window_seconds,
            "max_requests": self.max_requests,
            "fail_open": self.fail_open,
            "tracked_keys": self.store.count(),
        }
