"""Durable per-key storage for fixed-window counters."""

import threading
from typing import Dict, Optional

from mdviewer_edge.database.manager import DatabaseManager
from mdviewer_edge.database.models import WindowCounter


class CounterStore:
    """Storage contract for window counters.

    Implementations must make ``put`` all-or-nothing: a reader sees either the
    previous counter or the new one, never a mix. Failures raise
    ``StorageFailure``.
    """

    def get(self, key: str) -> Optional[WindowCounter]:
        raise NotImplementedError

    def put(self, counter: WindowCounter) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError

    def evict_expired(self, now: float) -> int:
        """Drop counters whose window closed at or before ``now``."""
        raise NotImplementedError

    def count(self) -> int:
        raise NotImplementedError

    def close(self) -> None:
        pass


class MemoryCounterStore(CounterStore):
    """Process-local store; counters are replaced wholesale, never mutated."""

    def __init__(self):
        self._counters: Dict[str, WindowCounter] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[WindowCounter]:
        with self._lock:
            return self._counters.get(key)

    def put(self, counter: WindowCounter) -> None:
        with self._lock:
            self._counters[counter.key] = counter

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._counters.pop(key, None) is not None

    def evict_expired(self, now: float) -> int:
        with self._lock:
            stale = [key for key, counter in self._counters.items() if not counter.is_live(now)]
            for key in stale:
                del self._counters[key]
            return len(stale)

    def count(self) -> int:
        with self._lock:
            return len(self._counters)


class SQLiteCounterStore(CounterStore):
    """Counters persisted in the ``rate_limit_counters`` table.

    Each write is a single ``REPLACE`` statement, so it is atomic at the row level.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def get(self, key: str) -> Optional[WindowCounter]:
        rows = self.db_manager.execute_query(
            "SELECT count, reset_at FROM rate_limit_counters WHERE counter_key = ?", (key,)
        )
        if not rows:
            return None
        count, reset_at = rows[0]
        return WindowCounter(key=key, count=int(count), reset_at=float(reset_at))

    def put(self, counter: WindowCounter) -> None:
        self.db_manager.execute_update(
            "REPLACE INTO rate_limit_counters (counter_key, count, reset_at) VALUES (?, ?, ?)",
            (counter.key, counter.count, counter.reset_at),
        )

    def delete(self, key: str) -> bool:
        return self.db_manager.execute_update("DELETE FROM rate_limit_counters WHERE counter_key = ?", (key,)) > 0

    def evict_expired(self, now: float) -> int:
        return self.db_manager.execute_update("DELETE FROM rate_limit_counters WHERE reset_at <= ?", (now,))

    def count(self) -> int:
        return self.db_manager.execute_query("SELECT COUNT(*) FROM rate_limit_counters")[0][0]

    def close(self) -> None:
        self.db_manager.close()


def create_counter_store(rate_limit_config: dict) -> CounterStore:
    """Build the store named by ``rate_limit.database_path`` (":memory:" keeps counters in process)."""
    database_path = rate_limit_config.get("database_path", ":memory:")
    if database_path == ":memory:":
        return MemoryCounterStore()
    return SQLiteCounterStore(
        DatabaseManager(database_path, retries=rate_limit_config.get("storage_retries", 3), busy_timeout_ms=1000)
    )
