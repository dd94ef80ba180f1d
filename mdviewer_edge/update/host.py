"""In-process worker host: runs cache generations and reports lifecycle events."""

import threading
from typing import Callable, Dict, List, Optional

from mdviewer_edge.cache.store import CacheStore
from mdviewer_edge.cache.strategy import offline_response
from mdviewer_edge.cache.transport import NetworkFailure, Transport
from mdviewer_edge.database.models import CacheGeneration, FetchRequest, ResponseSnapshot
from mdviewer_edge.update.lifecycle import UpdateLifecycle, WorkerHost
from mdviewer_edge.update.worker import CacheWorker
from mdviewer_edge.utils.logger import get_logger


class LocalWorkerHost(WorkerHost):
    """Hosts ``CacheWorker`` generations for a single page session.

    ``version_source`` returns the version currently deployed (for example by
    reading a version endpoint). A version the host has not seen yet is
    installed; the very first one is activated and claims the page at once,
    later ones wait until the lifecycle sends ``SKIP_WAITING``.
    """

    def __init__(
        self,
        cache_store: CacheStore,
        transport: Transport,
        prefix: str,
        origin: str,
        version_source: Callable[[], str],
        static_assets: Optional[List[str]] = None,
        offline_page: Optional[str] = None,
        on_reload: Optional[Callable[[], None]] = None,
    ):
        self.cache_store = cache_store
        self.transport = transport
        self.prefix = prefix
        self.origin = origin
        self.version_source = version_source
        self.static_assets = list(static_assets or [])
        self.offline_page = offline_page
        self.on_reload = on_reload
        self.logger = get_logger("update.host")

        self.lifecycle: Optional[UpdateLifecycle] = None
        self.installing: Optional[CacheWorker] = None
        self.waiting: Optional[CacheWorker] = None
        self.active: Optional[CacheWorker] = None
        self.controller: Optional[CacheWorker] = None
        self.reload_count = 0
        self._lock = threading.RLock()

    def register_worker(self, lifecycle: UpdateLifecycle) -> None:
        with self._lock:
            self.lifecycle = lifecycle

    def unregister(self) -> bool:
        with self._lock:
            if self.lifecycle is None:
                return False
            self.lifecycle = None
            self.active = None
            self.waiting = None
            self.installing = None
        self.logger.info("Worker registration removed")
        return True

    def has_controller(self) -> bool:
        return self.controller is not None

    def _make_worker(self, version: str) -> CacheWorker:
        worker = CacheWorker(
            CacheGeneration(self.prefix, version),
            self.cache_store,
            self.transport,
            self.origin,
            static_assets=self.static_assets,
            offline_page=self.offline_page,
        )
        worker.skip_waiting = self._skip_waiting
        worker.claim = self._claim
        worker.unregister = lambda _worker: self.unregister()
        return worker

    def check_for_update(self) -> None:
        lifecycle = self.lifecycle
        if lifecycle is None:
            return
        version = self.version_source()

        with self._lock:
            known = {w.version for w in (self.installing, self.waiting, self.active) if w is not None}
            if version in known:
                return
            worker = self._make_worker(version)
            self.installing = worker

        lifecycle.on_update_found(version)
        try:
            worker.install()
        except Exception:
            with self._lock:
                if self.installing is worker:
                    self.installing = None
            worker.terminate()
            lifecycle.on_install_failed(version)
            raise

        with self._lock:
            if self.installing is not worker:
                # Superseded or unregistered while installing
                worker.terminate()
                return
            self.installing = None
            first_install = self.active is None
            if not first_install:
                previous_waiting, self.waiting = self.waiting, worker

        lifecycle.on_installed(version)
        if first_install:
            with self._lock:
                self.active = worker
            worker.activate()
        elif previous_waiting is not None:
            previous_waiting.terminate()

    def _skip_waiting(self, worker: CacheWorker) -> None:
        with self._lock:
            if self.waiting is not worker:
                return
            self.waiting = None
            self.active = worker
        worker.activate()

    def _claim(self, worker: CacheWorker) -> None:
        with self._lock:
            previous = self.controller
            if previous is worker:
                return
            self.controller = worker
            lifecycle = self.lifecycle
        if lifecycle is not None:
            lifecycle.on_controller_change(worker.version)
        if previous is not None:
            previous.terminate()

    def post_control_message(self, version: str, message: dict) -> Optional[dict]:
        with self._lock:
            candidates = [self.waiting, self.active, self.installing, self.controller]
            worker = next((w for w in candidates if w is not None and w.version == version), None)
        if worker is None:
            raise LookupError(f"No worker for version {version}")
        return worker.handle_message(message)

    def reload(self) -> None:
        self.reload_count += 1
        self.logger.info("Page reload requested")
        if self.on_reload is not None:
            self.on_reload()

    def fetch(self, request: FetchRequest) -> ResponseSnapshot:
        """Route a page request through the controlling generation, or the network."""
        controller = self.controller
        if controller is not None:
            return controller.fetch(request)
        try:
            return self.transport.fetch(request)
        except NetworkFailure:
            return offline_response(request.url)

    def flush(self, timeout: Optional[float] = None) -> bool:
        with self._lock:
            workers = {id(w): w for w in (self.controller, self.active, self.waiting) if w is not None}
        return all(w.strategy.flush(timeout) for w in workers.values())

    def status(self) -> Dict[str, Optional[str]]:
        with self._lock:
            return {
                "controller": self.controller.version if self.controller else None,
                "active": self.active.version if self.active else None,
                "waiting": self.waiting.version if self.waiting else None,
                "installing": self.installing.version if self.installing else None,
            }

    def close(self) -> None:
        with self._lock:
            workers = {id(w): w for w in (self.controller, self.active, self.waiting, self.installing) if w is not None}
            self.controller = self.active = self.waiting = self.installing = None
        for worker in workers.values():
            worker.terminate()
