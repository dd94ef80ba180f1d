"""Named, versioned request->response cache backed by SQLite."""

import json
import sqlite3
import threading
import zlib
from typing import Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from mdviewer_edge.database.manager import DatabaseManager, StorageFailure
from mdviewer_edge.database.models import CacheGeneration, FetchRequest, ResponseSnapshot
from mdviewer_edge.utils.logger import get_logger


class CacheWriteFailure(Exception):
    """Raised when a response snapshot could not be persisted."""

    def __init__(self, namespace: str, request_key: str, original_error: Optional[Exception] = None):
        self.namespace = namespace
        self.request_key = request_key
        self.original_error = original_error
        super().__init__(f"Could not cache {request_key} in {namespace}: {original_error}")


class CacheHandle:
    """An opened namespace. Cheap to create; holds no connection."""

    def __init__(self, store: "CacheStore", name: str):
        self.store = store
        self.name = name

    def match(self, request) -> Optional[ResponseSnapshot]:
        return self.store.match(self, request)

    def put(self, request, response: ResponseSnapshot) -> None:
        self.store.put(self, request, response)

    def keys(self) -> List[str]:
        return self.store.keys(self)

    def __repr__(self) -> str:
        return f"CacheHandle({self.name!r})"


class CacheStore:
    """Cache namespaces and their entries.

    Only GET requests are addressable; a request key is ``GET <normalized url>``.
    Bodies above ``compression_threshold`` bytes are stored zlib-compressed.

    Example:
        >>> store = CacheStore(DatabaseManager(":memory:"))
        >>> handle = store.open("mdviewer-v3.2")
        >>> handle.put("https://app.example/", ResponseSnapshot(status=200, body=b"<html>"))
        >>> handle.match("https://app.example/").body
        b'<html>'
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        max_response_size: int = 10485760,
        compression_threshold: int = 1024,
    ) -> None:
        self.db_manager = db_manager
        self.max_response_size = max_response_size
        self.compression_threshold = compression_threshold
        self.logger = get_logger("cache.store")
        self._lock = threading.Lock()
        self._stats = {"hits": 0, "misses": 0, "puts": 0, "skipped": 0, "compressed": 0, "deleted_namespaces": 0}

    @staticmethod
    def normalize_url(url: str) -> str:
        """Normalize URL for consistent cache keys: lowercase origin, sorted query, no fragment."""
        parsed = urlsplit(url)
        query = urlencode(sorted(parse_qsl(parsed.query, keep_blank_values=True)))
        path = parsed.path or "/"
        return urlunsplit((parsed.scheme.lower(), parsed.netloc.lower(), path, query, ""))

    def request_key(self, request) -> str:
        """Canonical key for a request or URL string. Raises ``ValueError`` for non-GET requests."""
        if isinstance(request, FetchRequest):
            if request.method.upper() != "GET":
                raise ValueError(f"Only GET requests are cacheable, got {request.method}")
            url = request.url
        else:
            url = str(request)
        return f"GET {self.normalize_url(url)}"

    def open(self, name: str) -> CacheHandle:
        """Create the namespace if missing; reopening never touches existing entries."""
        self.db_manager.execute_update("INSERT OR IGNORE INTO cache_namespaces (name) VALUES (?)", (name,))
        return CacheHandle(self, name)

    def has_namespace(self, name: str) -> bool:
        return bool(self.db_manager.execute_query("SELECT 1 FROM cache_namespaces WHERE name = ?", (name,)))

    def put(self, handle: CacheHandle, request, response: ResponseSnapshot) -> None:
        """Store ``response`` under ``request``, replacing any previous entry.

        Raises ``CacheWriteFailure`` when the write cannot be completed. The
        namespace row and the entry are written in one transaction.
        """
        key = self.request_key(request)
        body = bytes(response.body)
        if len(body) > self.max_response_size:
            self.logger.debug(f"Not caching {key}: {len(body)} bytes exceeds {self.max_response_size}")
            with self._lock:
                self._stats["skipped"] += 1
            return

        compressed = False
        if len(body) > self.compression_threshold:
            try:
                body = zlib.compress(body)
                compressed = True
            except zlib.error as e:
                self.logger.debug(f"Compression failed for {key}, storing raw body: {e}")

        url = request.url if isinstance(request, FetchRequest) else str(request)
        try:
            self.db_manager.execute_transaction(
                [
                    ("INSERT OR IGNORE INTO cache_namespaces (name) VALUES (?)", (handle.name,)),
                    (
                        "REPLACE INTO cache_entries (namespace, request_key, url, status_code, reason, "
                        "headers, body, compressed, stored_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)",
                        (
                            handle.name,
                            key,
                            response.url or url,
                            response.status,
                            response.reason,
                            json.dumps([list(h) for h in response.headers], separators=(",", ":")),
                            sqlite3.Binary(body),
                            int(compressed),
                        ),
                    ),
                ]
            )
        except StorageFailure as e:
            raise CacheWriteFailure(handle.name, key, e) from e

        with self._lock:
            self._stats["puts"] += 1
            if compressed:
                self._stats["compressed"] += 1

    def match(self, handle: CacheHandle, request) -> Optional[ResponseSnapshot]:
        """Return the stored snapshot for ``request`` in ``handle``'s namespace, or None."""
        key = self.request_key(request)
        rows = self.db_manager.execute_query(
            "SELECT url, status_code, reason, headers, body, compressed FROM cache_entries "
            "WHERE namespace = ? AND request_key = ?",
            (handle.name, key),
        )
        if not rows:
            with self._lock:
                self._stats["misses"] += 1
            return None

        url, status_code, reason, headers, body, compressed = rows[0]
        body = bytes(body)
        if compressed:
            body = zlib.decompress(body)
        with self._lock:
            self._stats["hits"] += 1
        return ResponseSnapshot(
            status=status_code,
            body=body,
            headers=tuple((k, v) for k, v in json.loads(headers)),
            reason=reason,
            url=url,
            response_type="basic",
        )

    def keys(self, handle: CacheHandle) -> List[str]:
        rows = self.db_manager.execute_query(
            "SELECT request_key FROM cache_entries WHERE namespace = ? ORDER BY request_key", (handle.name,)
        )
        return [row[0] for row in rows]

    def delete_entry(self, handle: CacheHandle, request) -> bool:
        key = self.request_key(request)
        return (
            self.db_manager.execute_update(
                "DELETE FROM cache_entries WHERE namespace = ? AND request_key = ?", (handle.name, key)
            )
            > 0
        )

    def delete_namespace(self, name: str) -> bool:
        """Remove a namespace and all its entries. Returns whether it existed."""
        counts = self.db_manager.execute_transaction(
            [
                ("DELETE FROM cache_entries WHERE namespace = ?", (name,)),
                ("DELETE FROM cache_namespaces WHERE name = ?", (name,)),
            ]
        )
        existed = counts[1] > 0
        if existed:
            self.logger.info(f"Deleted cache namespace {name}")
            with self._lock:
                self._stats["deleted_namespaces"] += 1
        return existed

    def list_namespaces(self, prefix: Optional[str] = None) -> List[str]:
        """Namespace names in creation order, optionally limited to ``<prefix>-*``."""
        rows = self.db_manager.execute_query("SELECT name FROM cache_namespaces ORDER BY id")
        names = [row[0] for row in rows]
        if prefix is None:
            return names
        return [name for name in names if name.startswith(f"{prefix}-")]

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            stats = dict(self._stats)
        stats["namespaces"] = len(self.list_namespaces())
        stats["entries"] = self.db_manager.execute_query("SELECT COUNT(*) FROM cache_entries")[0][0]
        return stats


def current_cache_version(store: CacheStore, prefix: str) -> Optional[str]:
    """Version tag of the newest namespace sharing ``prefix``, or None when nothing is cached."""
    names = store.list_namespaces(prefix)
    if not names:
        return None
    return CacheGeneration.from_name(names[-1]).version
