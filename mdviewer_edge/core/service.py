import threading
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple

from mdviewer_edge.core.config import ConfigurationManager
from mdviewer_edge.database.models import RateLimitDecision
from mdviewer_edge.security.manager import SecurityError, SecurityManager
from mdviewer_edge.throttling.manager import RateLimiter
from mdviewer_edge.throttling.store import CounterStore, create_counter_store
from mdviewer_edge.utils.logger import configure_logging, get_logger
from mdviewer_edge.utils.scheduler import RepeatingTimer


class RateLimitService:
    """Main entry point for the server-side rate limiter.

    A threaded HTTP service exposing ``POST /check`` and ``POST /reset`` over a
    per-key fixed-window ``RateLimiter``, plus ``GET /health``, an optional
    rate-limited ``POST /upload`` gate and ``GET /admin/status``.

    Example:
        Basic usage:

        >>> service = RateLimitService({"server": {"port": 0}})
        >>> service.start(blocking=False)
        >>> print(f"Listening on port {service.port}")
        >>> service.stop()

        Using as context manager:

        >>> with RateLimitService(config) as service:
        ...     # service is automatically started and stopped
        ...     pass
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, store: Optional[CounterStore] = None) -> None:
        """Initialize the service with configuration and all components.

        Args:
            config: Configuration dictionary, merged over the defaults
            store: Counter storage to use instead of the one built from
                   ``rate_limit.database_path``

        Raises:
            ValueError: If configuration is invalid
        """
        self.config = ConfigurationManager(config or {}).config
        configure_logging(self.config.get("logging", {}))
        self.logger = get_logger("core.service")
        self.security_manager = SecurityManager(self.config.get("security", {}))
        self._owns_store = store is None
        self.store = store if store is not None else create_counter_store(self.config["rate_limit"])
        self.rate_limiter = RateLimiter(self.config["rate_limit"], store=self.store)
        self.metrics_collector = MetricsCollector()
        self.callbacks = self.config.get("callbacks", {})
        self.server: Optional[Any] = None
        self.eviction_timer: Optional[RepeatingTimer] = None
        self.running = False
        self.start_time: Optional[float] = None

    def start(self, blocking: bool = False) -> None:
        """Start the HTTP server.

        Raises:
            RuntimeError: If server is already running
            OSError: If unable to bind to specified host/port
        """
        from mdviewer_edge.core.handler import RateLimitRequestHandler
        from mdviewer_edge.core.server import ThreadedHTTPServer

        if self.running:
            raise RuntimeError("Server is already running")

        host = self.config["server"]["host"]
        port = self.config["server"]["port"]
        if self.server is None:
            self.server = ThreadedHTTPServer((host, port), RateLimitRequestHandler, self)
        self.running = True
        self.start_time = time.time()
        self.eviction_timer = RepeatingTimer(
            self.config["rate_limit"]["eviction_interval_seconds"], self.rate_limiter.evict_expired, name="counter-eviction"
        )
        self.eviction_timer.start()
        self.logger.info(f"Rate limit service starting on {host}:{self.port} (blocking={blocking})")
        self.server.start(blocking=blocking)

    def stop(self) -> None:
        """Stop the server and release storage. Safe to call multiple times."""
        if self.eviction_timer is not None:
            self.eviction_timer.cancel()
            self.eviction_timer = None
        if self.server:
            self.server.stop()
            self.server = None
        was_running = self.running
        self.running = False

        if self._owns_store:
            try:
                self.store.close()
            except Exception as e:
                self.logger.error(f"Error closing counter storage: {e}")

        if not was_running:
            return
        self.logger.info("Rate limit service stopped.")
        if "on_shutdown" in self.callbacks:
            try:
                self.callbacks["on_shutdown"](self)
            except Exception as e:
                self.logger.error(f"Error in shutdown callback: {e}")

    @property
    def port(self) -> Optional[int]:
        """Bound port; differs from the configured one when that was 0."""
        if self.server is not None:
            return self.server.port
        return self.config["server"]["port"]

    def is_running(self) -> bool:
        return self.running

    def get_secure_key(self) -> Optional[str]:
        """Return the admin key when one is required, None otherwise."""
        if not self.security_manager.security_enabled:
            return None
        return self.security_manager.secure_key

    def client_identity(self, headers: Mapping[str, str], client_address: Optional[Tuple[str, int]] = None) -> str:
        return self.security_manager.client_identity(
            headers, client_address, self.config["rate_limit"].get("trust_proxy_headers", True)
        )

    def authorize(self, headers: Mapping[str, str], query_params: Mapping[str, Any], client_address=None) -> None:
        """Raise ``SecurityError`` unless the request carries the admin key."""
        try:
            self.security_manager.require(headers, query_params)
        except SecurityError:
            self._log_security_event("invalid_key", {"client": client_address[0] if client_address else None})
            raise

    def _log_security_event(self, event_type: str, details: Dict[str, Any]) -> None:
        if self.config.get("security", {}).get("log_security_events", True):
            self.logger.info(f"[SECURITY] {event_type}: {details}")

    def record_decision(self, key: str, decision: RateLimitDecision) -> None:
        if decision.degraded:
            self.metrics_collector.record_event("storage_error", {"key": key, "allowed": decision.allowed})
        elif decision.allowed:
            self.metrics_collector.record_event("allowed", {"key": key, "remaining": decision.remaining})
        else:
            self.logger.info(f"Rate limited {key} until {decision.reset_at_ms}")
            self.metrics_collector.record_event("limited", {"key": key, "reset_at": decision.reset_at_ms})

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics_collector.get_metrics()

    def get_status(self) -> Dict[str, Any]:
        """Metrics plus limiter settings, as served by ``GET /admin/status``."""
        try:
            limiter_stats: Dict[str, Any] = self.rate_limiter.get_stats()
        except Exception as e:
            limiter_stats = {"error": str(e)}
        metrics = self.metrics_collector.get_metrics(include_events=False)
        return {
            "timestamp": time.time(),
            "status": "running" if self.running else "stopped",
            "uptime_seconds": time.time() - self.start_time if self.start_time else 0,
            "metrics": metrics,
            "rate_limit": limiter_stats,
        }

    def __enter__(self) -> "RateLimitService":
        """Enter context manager and start the server."""
        self.start(blocking=False)
        return self

    def __exit__(self, exc_type: Optional[type], exc_val: Optional[Exception], exc_tb: Optional[Any]) -> None:
        """Exit context manager and stop the server."""
        self.stop()


class MetricsCollector:
    """Counts limiter outcomes and keeps a bounded list of recent events.

    Thread-safe for concurrent request handling.
    """

    def __init__(self, max_events: int = 1000) -> None:
        self._lock = threading.Lock()
        self._metrics = {
            "total_requests": 0,
            "allowed": 0,
            "limited": 0,
            "storage_errors": 0,
            "errors": 0,
            "start_time": time.time(),
        }
        self._events: List[Tuple[str, Dict[str, Any]]] = []
        self.max_events = max_events

    def record_event(self, event_type: str, details: Optional[Dict[str, Any]] = None) -> None:
        """Record an event: ``allowed``, ``limited``, ``storage_error`` or ``error``."""
        with self._lock:
            self._metrics["total_requests"] += 1
            if event_type == "allowed":
                self._metrics["allowed"] += 1
            elif event_type == "limited":
                self._metrics["limited"] += 1
            elif event_type == "storage_error":
                self._metrics["storage_errors"] += 1
            elif event_type == "error":
                self._metrics["errors"] += 1
            self._events.append((event_type, details or {}))
            if len(self._events) > self.max_events:
                del self._events[: len(self._events) - self.max_events]

    def get_metrics(self, include_events: bool = True) -> Dict[str, Any]:
        with self._lock:
            m = dict(self._metrics)
            events = list(self._events)
        m["uptime_seconds"] = time.time() - m["start_time"]
        if include_events:
            m["events"] = [{"event_type": event_type, "details": details} for event_type, details in events]
        return m
