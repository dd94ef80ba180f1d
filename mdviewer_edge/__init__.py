"""MD Viewer Edge - resilience and rate control for the MD Viewer web app.

A server-side fixed-window rate limiter exposed over HTTP, and a client-side
offline layer: versioned response caching, network-first/cache-first fetch
policies, cache generation updates and connection status classification.
"""

__version__ = "0.1.0"
__author__ = "MD Viewer Team"

from mdviewer_edge.cache.store import CacheStore, CacheWriteFailure  # noqa: E402
from mdviewer_edge.cache.strategy import FetchStrategy  # noqa: E402
from mdviewer_edge.cache.transport import NetworkFailure  # noqa: E402
from mdviewer_edge.core.runtime import OfflineRuntime  # noqa: E402
from mdviewer_edge.core.service import RateLimitService  # noqa: E402
from mdviewer_edge.database.manager import StorageFailure  # noqa: E402
from mdviewer_edge.monitoring.connection import ConnectionMonitor, ConnectionStatus  # noqa: E402
from mdviewer_edge.security.manager import SecurityError, SecurityManager  # noqa: E402
from mdviewer_edge.throttling.manager import RateLimiter, RateLimitExceeded  # noqa: E402
from mdviewer_edge.update.lifecycle import UpdateDetectionFailure, UpdateLifecycle, UpdateState  # noqa: E402

__all__ = [
    "RateLimitService",
    "RateLimiter",
    "RateLimitExceeded",
    "StorageFailure",
    "SecurityError",
    "SecurityManager",
    "CacheStore",
    "CacheWriteFailure",
    "FetchStrategy",
    "NetworkFailure",
    "UpdateLifecycle",
    "UpdateState",
    "UpdateDetectionFailure",
    "ConnectionMonitor",
    "ConnectionStatus",
    "OfflineRuntime",
]
