"""Network-first and cache-first fetch policies over a cache namespace."""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import List, Optional, Set

from mdviewer_edge.cache.store import CacheHandle, CacheStore, CacheWriteFailure
from mdviewer_edge.cache.transport import NetworkFailure, Transport
from mdviewer_edge.database.manager import StorageFailure
from mdviewer_edge.database.models import OFFLINE_MARKER_HEADER, FetchRequest, ResponseSnapshot, normalize_origin
from mdviewer_edge.utils.logger import get_logger

DOCUMENT = "document"
ASSET = "asset"
PASSTHROUGH = "passthrough"

OFFLINE_BODY = b"Offline - Content not available"


def classify_request(request: FetchRequest, origin: str) -> str:
    """Return ``document``, ``asset`` or ``passthrough`` for a request.

    Non-GET and cross-origin requests pass straight through. A GET is a
    document when it accepts HTML, targets the root path, or its path has no
    file extension; everything else is an asset.
    """
    if request.method.upper() != "GET":
        return PASSTHROUGH
    if request.origin != normalize_origin(origin):
        return PASSTHROUGH

    path = request.path
    accept = request.header("Accept", "") or ""
    last_segment = path.rsplit("/", 1)[-1]
    if "text/html" in accept or path == "/" or "." not in last_segment:
        return DOCUMENT
    return ASSET


def offline_response(url: str = "") -> ResponseSnapshot:
    """The synthesized answer for "no network and nothing cached"."""
    return ResponseSnapshot(
        status=503,
        body=OFFLINE_BODY,
        headers=(("Content-Type", "text/plain; charset=utf-8"), (OFFLINE_MARKER_HEADER, "1")),
        reason="Service Unavailable",
        url=url,
        response_type="basic",
    )


def is_cacheable(response: Optional[ResponseSnapshot]) -> bool:
    return response is not None and response.status == 200 and response.response_type == "basic"


class FetchStrategy:
    """Answers requests for one cache generation.

    Documents go network-first, assets cache-first. Successful same-origin
    responses are stored in the background; ``flush()`` waits for those writes
    and ``close()`` stops the writer pool.

    Example:
        >>> strategy = FetchStrategy(store, "mdviewer-v3.2", UrllibTransport(origin), origin)
        >>> response = strategy.handle(FetchRequest(url=origin + "/editor"))
    """

    def __init__(
        self,
        cache_store: CacheStore,
        cache_name: str,
        transport: Transport,
        origin: str,
        offline_page: Optional[str] = None,
        max_workers: int = 2,
    ):
        self.cache_store = cache_store
        self.cache_name = cache_name
        self.transport = transport
        self.origin = origin.rstrip("/").lower()
        self.offline_page = offline_page
        self.logger = get_logger("cache.strategy")
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cache-writer")
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()
        self._handle: Optional[CacheHandle] = None
        self._closed = False

    @property
    def cache(self) -> CacheHandle:
        if self._handle is None:
            self._handle = self.cache_store.open(self.cache_name)
        return self._handle

    def handle(self, request: FetchRequest) -> ResponseSnapshot:
        kind = classify_request(request, self.origin)
        if kind == PASSTHROUGH:
            self.logger.debug(f"Passing through {request.method} {request.url}")
            return self.transport.fetch(request)
        if kind == DOCUMENT:
            return self.network_first(request)
        return self.cache_first(request)

    def network_first(self, request: FetchRequest) -> ResponseSnapshot:
        try:
            response = self.transport.fetch(request)
        except NetworkFailure as e:
            self.logger.info(f"Network unavailable for {request.url}, trying cache: {e.reason}")
            cached = self._match(request)
            if cached is not None:
                return cached
            return self._offline_document(request)

        if is_cacheable(response):
            self._store_in_background(request, response.clone())
        return response

    def cache_first(self, request: FetchRequest) -> ResponseSnapshot:
        cached = self._match(request)
        if cached is not None:
            self.logger.debug(f"Cache hit for {request.url}")
            return cached

        try:
            response = self.transport.fetch(request)
        except NetworkFailure as e:
            self.logger.info(f"Asset {request.url} unavailable offline: {e.reason}")
            return offline_response(request.url)

        if is_cacheable(response):
            self._store_in_background(request, response.clone())
        return response

    def _match(self, request: FetchRequest) -> Optional[ResponseSnapshot]:
        try:
            return self.cache.match(request)
        except StorageFailure as e:
            self.logger.warning(f"Cache lookup failed for {request.url}: {e}")
            return None

    def _offline_document(self, request: FetchRequest) -> ResponseSnapshot:
        if self.offline_page:
            page = self._match(FetchRequest(url=f"{self.origin}{self.offline_page}"))
            if page is not None:
                return ResponseSnapshot(
                    status=503,
                    body=page.body,
                    headers=page.headers,
                    reason="Service Unavailable",
                    url=request.url,
                    response_type="basic",
                ).with_header(OFFLINE_MARKER_HEADER, "1")
        return offline_response(request.url)

    def _store_in_background(self, request: FetchRequest, response: ResponseSnapshot) -> None:
        if self._closed:
            return
        try:
            future = self._executor.submit(self._store, request, response)
        except RuntimeError:
            # Executor already shut down
            return
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _store(self, request: FetchRequest, response: ResponseSnapshot) -> None:
        try:
            self.cache.put(request, response)
            self.logger.debug(f"Cached {request.url} in {self.cache_name}")
        except (CacheWriteFailure, StorageFailure) as e:
            self.logger.warning(f"Cache write failed for {request.url}: {e}")

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for background cache writes; returns False if some are still running."""
        with self._pending_lock:
            pending: List[Future] = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        self._closed = True
        self._executor.shutdown(wait=True)
