"""Database manager: connection pooling, schema, thread safety."""

import random
import sqlite3
import threading
import time
import uuid
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from mdviewer_edge.utils.logger import get_logger

SCHEMA = [
    # One fixed-window counter per client key
    """CREATE TABLE IF NOT EXISTS rate_limit_counters (
        counter_key TEXT PRIMARY KEY,
        count INTEGER NOT NULL,
        reset_at REAL NOT NULL
    );""",
    # Cache generations; id keeps creation order
    """CREATE TABLE IF NOT EXISTS cache_namespaces (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );""",
    # Response snapshots per generation
    """CREATE TABLE IF NOT EXISTS cache_entries (
        namespace TEXT NOT NULL,
        request_key TEXT NOT NULL,
        url TEXT NOT NULL,
        status_code INTEGER NOT NULL,
        reason TEXT NOT NULL,
        headers TEXT NOT NULL,
        body BLOB NOT NULL,
        compressed INTEGER NOT NULL DEFAULT 0,
        stored_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (namespace, request_key)
    );""",
    # Indexes
    "CREATE INDEX IF NOT EXISTS idx_counters_reset_at ON rate_limit_counters(reset_at);",
    "CREATE INDEX IF NOT EXISTS idx_cache_entries_namespace ON cache_entries(namespace);",
]


class StorageFailure(Exception):
    """Raised when the backing SQLite store cannot complete an operation."""

    def __init__(self, operation: str, original_error: Optional[Exception] = None):
        self.operation = operation
        self.original_error = original_error
        super().__init__(f"Storage operation failed ({operation}): {original_error}")


class DatabaseManager:
    """Manages SQLite database operations with thread safety and connection pooling.

    Every statement runs on a pooled connection. "database is locked" errors are
    retried with jittered exponential backoff up to ``retries`` attempts, after
    which (and on any other ``sqlite3.Error``) a ``StorageFailure`` is raised so
    callers fail fast instead of hanging.
    """

    def __init__(self, database_path: str, retries: int = 10, busy_timeout_ms: int = 5000):
        self.logger = get_logger("database.manager")
        if database_path == ":memory:":
            # Each manager gets its own shared-cache in-memory database
            self.database_path = f"file:mdviewer-edge-{uuid.uuid4().hex}?mode=memory&cache=shared"
            self._use_uri = True
        else:
            self.database_path = database_path
            self._use_uri = database_path.startswith("file:")
        self.retries = max(1, retries)
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = threading.Lock()
        self._pool: List[sqlite3.Connection] = []
        self._max_pool_size = 5
        self._closed = False
        # Keeps a shared in-memory database alive while the manager exists
        self._anchor = self._connect()
        self._initialize_connections()
        self._initialize_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.database_path, check_same_thread=False, uri=self._use_uri, timeout=self.busy_timeout_ms / 1000.0
        )
        # Enable WAL mode for better concurrency
        conn.execute("PRAGMA journal_mode=WAL")
        # Reduce I/O overhead
        conn.execute("PRAGMA synchronous=NORMAL")
        # Use memory for temp tables
        conn.execute("PRAGMA temp_store=memory")
        conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        return conn

    def _initialize_connections(self):
        for _ in range(self._max_pool_size):
            self._pool.append(self._connect())

    def _initialize_schema(self):
        self.execute_script(SCHEMA)

    def get_connection(self) -> sqlite3.Connection:
        with self._lock:
            if self._closed:
                raise StorageFailure("connect", RuntimeError("database manager is closed"))
            if self._pool:
                return self._pool.pop()
        return self._connect()

    def return_connection(self, conn: sqlite3.Connection):
        with self._lock:
            if not self._closed and len(self._pool) < self._max_pool_size:
                self._pool.append(conn)
                return
        conn.close()

    def _run(self, operation: str, work, delay: float = 0.05):
        for attempt in range(self.retries):
            try:
                conn = self.get_connection()
            except sqlite3.Error as e:
                raise StorageFailure(operation, e) from e
            try:
                return work(conn)
            except sqlite3.OperationalError as e:
                conn.rollback()
                if "locked" in str(e).lower() and attempt < self.retries - 1:
                    # Exponential backoff with jitter to avoid thundering herd
                    backoff = delay * (2**attempt) + random.uniform(0, 0.1)
                    time.sleep(min(backoff, 1.0))  # Cap at 1 second
                    continue
                self.logger.error(f"SQLite {operation} failed after {attempt + 1} attempt(s): {e}")
                raise StorageFailure(operation, e) from e
            except sqlite3.Error as e:
                conn.rollback()
                self.logger.error(f"SQLite {operation} failed: {e}")
                raise StorageFailure(operation, e) from e
            finally:
                self.return_connection(conn)
        raise StorageFailure(operation)

    def execute_query(self, query: str, params: tuple = ()) -> List[Any]:
        def work(conn):
            cur = conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

        return self._run("query", work)

    def execute_update(self, query: str, params: tuple = ()) -> int:
        def work(conn):
            cur = conn.cursor()
            cur.execute(query, params)
            conn.commit()
            return cur.rowcount

        return self._run("update", work)

    def execute_transaction(self, statements: Sequence[Tuple[str, tuple]]) -> List[int]:
        """Run several statements atomically; either all commit or none do."""

        def work(conn):
            counts = []
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            for query, params in statements:
                cur.execute(query, params)
                counts.append(cur.rowcount)
            conn.commit()
            return counts

        return self._run("transaction", work)

    def execute_script(self, statements: Iterable[str]) -> None:
        def work(conn):
            cur = conn.cursor()
            for stmt in statements:
                cur.execute(stmt)
            conn.commit()

        self._run("schema", work)

    def close(self):
        """Close all pooled database connections."""
        with self._lock:
            self._closed = True
            pool, self._pool = self._pool, []
        for conn in pool + [self._anchor]:
            try:
                conn.close()
            except sqlite3.Error as e:
                self.logger.debug(f"Error closing connection: {e}")

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass
