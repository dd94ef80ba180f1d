"""One generation of the cached-asset worker: install, activate, fetch, messages."""

from typing import Callable, Dict, List, Optional

from mdviewer_edge.cache.store import CacheStore, CacheWriteFailure
from mdviewer_edge.cache.strategy import FetchStrategy, is_cacheable
from mdviewer_edge.cache.transport import NetworkFailure, Transport
from mdviewer_edge.database.manager import StorageFailure
from mdviewer_edge.database.models import CacheGeneration, FetchRequest, ResponseSnapshot
from mdviewer_edge.utils.logger import get_logger

SKIP_WAITING = "SKIP_WAITING"
CLIENTS_CLAIM = "CLIENTS_CLAIM"
CLEAR_CACHE = "CLEAR_CACHE"
UNREGISTER_SW = "UNREGISTER_SW"

# Worker states
PARSED = "parsed"
INSTALLING = "installing"
INSTALLED = "installed"
ACTIVATING = "activating"
ACTIVATED = "activated"
REDUNDANT = "redundant"


def prune_generations(cache_store: CacheStore, prefix: str, keep: Optional[str]) -> List[str]:
    """Delete every ``<prefix>-*`` namespace except ``keep``; returns the deleted names."""
    logger = get_logger("update.worker")
    deleted = []
    for name in cache_store.list_namespaces(prefix):
        if name == keep:
            continue
        logger.info(f"Deleting old cache: {name}")
        if cache_store.delete_namespace(name):
            deleted.append(name)
    return deleted


class CacheWorker:
    """The code of one deployed generation, identified by its cache version.

    The host drives it through ``install()`` and ``activate()`` and forwards
    page requests to ``fetch()``. Control messages arrive through
    ``handle_message()``; the host supplies ``skip_waiting``/``claim``/
    ``unregister`` hooks for the messages that act on the registration.
    """

    def __init__(
        self,
        generation: CacheGeneration,
        cache_store: CacheStore,
        transport: Transport,
        origin: str,
        static_assets: Optional[List[str]] = None,
        offline_page: Optional[str] = None,
    ):
        self.generation = generation
        self.cache_store = cache_store
        self.transport = transport
        self.origin = origin.rstrip("/")
        self.static_assets = list(static_assets or [])
        self.state = PARSED
        self.logger = get_logger("update.worker")
        self.strategy = FetchStrategy(cache_store, generation.name, transport, origin, offline_page=offline_page)
        self.skip_waiting: Callable[["CacheWorker"], None] = lambda worker: None
        self.claim: Callable[["CacheWorker"], None] = lambda worker: None
        self.unregister: Callable[["CacheWorker"], bool] = lambda worker: False

    @property
    def version(self) -> str:
        return self.generation.version

    @property
    def cache_name(self) -> str:
        return self.generation.name

    def install(self) -> List[str]:
        """Open this generation's namespace and pre-populate the static manifest.

        Individual asset failures are logged and skipped; returns the paths that
        could not be cached.
        """
        self.state = INSTALLING
        self.logger.info(f"Installing worker, cache version: {self.version}")
        handle = self.cache_store.open(self.cache_name)
        failed = []
        for path in self.static_assets:
            request = FetchRequest(url=f"{self.origin}{path}")
            try:
                response = self.transport.fetch(request)
                if not is_cacheable(response):
                    failed.append(path)
                    continue
                handle.put(request, response)
            except (NetworkFailure, CacheWriteFailure, StorageFailure) as e:
                self.logger.debug(f"Could not pre-cache {path}: {e}")
                failed.append(path)
        if failed:
            self.logger.warning(f"Some assets failed to cache: {failed}")
        self.state = INSTALLED
        return failed

    def activate(self) -> List[str]:
        """Prune superseded generations and take control of open pages."""
        self.state = ACTIVATING
        self.logger.info(f"Activating worker {self.version}, cleaning old caches")
        deleted = prune_generations(self.cache_store, self.generation.prefix, keep=self.cache_name)
        self.state = ACTIVATED
        self.claim(self)
        return deleted

    def fetch(self, request: FetchRequest) -> ResponseSnapshot:
        return self.strategy.handle(request)

    def handle_message(self, message: Dict[str, object]) -> Optional[Dict[str, object]]:
        """Process a control message; returns the reply for messages that send one."""
        if not isinstance(message, dict):
            return None
        kind = message.get("type")
        if kind == SKIP_WAITING:
            self.logger.info("Received SKIP_WAITING message, activating immediately")
            self.skip_waiting(self)
        elif kind == CLIENTS_CLAIM:
            self.logger.info("Claiming clients")
            self.claim(self)
        elif kind == CLEAR_CACHE:
            self.logger.info("Received CLEAR_CACHE message")
            for name in self.cache_store.list_namespaces():
                self.cache_store.delete_namespace(name)
            return {"success": True, "message": "All caches cleared"}
        elif kind == UNREGISTER_SW:
            self.logger.info("Received UNREGISTER_SW message")
            for name in self.cache_store.list_namespaces():
                self.cache_store.delete_namespace(name)
            success = bool(self.unregister(self))
            return {
                "success": success,
                "message": "Service worker unregistered" if success else "Failed to unregister",
            }
        else:
            self.logger.debug(f"Ignoring unknown control message: {message!r}")
        return None

    def terminate(self) -> None:
        self.state = REDUNDANT
        self.strategy.close()
