"""Client-side offline runtime: cache generations, update lifecycle and connection status."""

from typing import Any, Callable, Dict, Optional, Union

from mdviewer_edge.cache.store import CacheStore, current_cache_version
from mdviewer_edge.cache.transport import Transport, UrllibTransport
from mdviewer_edge.core.config import ConfigurationManager
from mdviewer_edge.database.manager import DatabaseManager
from mdviewer_edge.database.models import FetchRequest, ResponseSnapshot
from mdviewer_edge.monitoring.connection import ConnectionMonitor, ConnectionState
from mdviewer_edge.update.host import LocalWorkerHost
from mdviewer_edge.update.lifecycle import UpdateLifecycle, UpdateNotice
from mdviewer_edge.utils.logger import configure_logging, get_logger


class OfflineRuntime:
    """Wires the offline components of one page session from configuration.

    Example:
        >>> runtime = OfflineRuntime({"cache": {"origin": "http://localhost:3000"}})
        >>> runtime.start()
        >>> response = runtime.fetch("http://localhost:3000/editor")
        >>> runtime.stop()
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        transport: Optional[Transport] = None,
        version_source: Optional[Callable[[], str]] = None,
        probe: Optional[Callable[[str, float], bool]] = None,
        online: bool = True,
        on_reload: Optional[Callable[[], None]] = None,
    ) -> None:
        self.config = ConfigurationManager(config or {}).config
        configure_logging(self.config.get("logging", {}))
        self.logger = get_logger("core.runtime")

        cache_cfg = self.config["cache"]
        update_cfg = self.config["update"]
        connection_cfg = self.config["connection"]

        self.prefix = cache_cfg["prefix"]
        self.origin = cache_cfg["origin"].rstrip("/")
        self.db_manager = DatabaseManager(cache_cfg["database_path"])
        self.cache_store = CacheStore(
            self.db_manager,
            max_response_size=cache_cfg["max_cache_response_size"],
            compression_threshold=cache_cfg["compression_threshold"],
        )
        self.transport = transport or UrllibTransport(self.origin, timeout=cache_cfg["fetch_timeout"])
        deployed_version = cache_cfg["version"]
        self.host = LocalWorkerHost(
            self.cache_store,
            self.transport,
            self.prefix,
            self.origin,
            version_source or (lambda: deployed_version),
            static_assets=cache_cfg["static_assets"],
            offline_page=cache_cfg["offline_page"],
            on_reload=on_reload,
        )
        self.lifecycle = UpdateLifecycle(
            self.host,
            self.cache_store,
            self.prefix,
            check_interval=update_cfg["check_interval_seconds"],
            reload_fallback=update_cfg["reload_fallback_seconds"],
        )
        self.monitor = ConnectionMonitor(
            api_url=connection_cfg["api_url"],
            probe=probe,
            probe_timeout=connection_cfg["probe_timeout"],
            check_interval=connection_cfg["check_interval_seconds"],
            online=online,
        )

    def start(self) -> bool:
        """Register the worker and start connection monitoring; False if registration failed."""
        registered = self.lifecycle.start()
        self.monitor.start()
        self.logger.info(f"Offline runtime started for {self.origin} (registered={registered})")
        return registered

    def stop(self) -> None:
        self.lifecycle.stop()
        self.monitor.stop()
        self.host.close()
        self.db_manager.close()
        self.logger.info("Offline runtime stopped.")

    def fetch(self, request: Union[str, FetchRequest]) -> ResponseSnapshot:
        if isinstance(request, str):
            request = FetchRequest(url=request)
        return self.host.fetch(request)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for background cache writes of the live generations."""
        return self.host.flush(timeout)

    # Environment events

    def set_online(self, online: bool) -> ConnectionState:
        state = self.monitor.set_online(online)
        if online:
            self.lifecycle.on_online()
        return state

    def set_visible(self, visible: bool) -> None:
        self.lifecycle.on_visibility_change(visible)

    # Update actions

    def apply_update(self) -> bool:
        return self.lifecycle.apply_update()

    def force_update(self) -> bool:
        return self.lifecycle.force_update()

    def check_for_update(self) -> dict:
        return self.lifecycle.check_for_update()

    def dismiss_update(self) -> None:
        self.lifecycle.dismiss_update()

    def on_update_available(self, listener: Callable[[UpdateNotice], None]) -> Callable[[], None]:
        return self.lifecycle.subscribe(listener)

    def on_connection_change(self, listener: Callable[[ConnectionState], None]) -> Callable[[], None]:
        return self.monitor.subscribe(listener)

    @property
    def connection(self) -> ConnectionState:
        return self.monitor.state

    @property
    def cache_version(self) -> Optional[str]:
        return current_cache_version(self.cache_store, self.prefix)

    def __enter__(self) -> "OfflineRuntime":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()
