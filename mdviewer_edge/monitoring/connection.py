"""
ConnectionMonitor: classifies reachability as online, offline or server-down.

The connectivity signal comes from the embedding application through
``set_online()``; the health probe only runs while that signal is up.
"""

import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from mdviewer_edge.utils.logger import get_logger
from mdviewer_edge.utils.scheduler import RepeatingTimer


class ConnectionStatus(Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    SERVER_DOWN = "server-down"


@dataclass(frozen=True)
class ConnectionState:
    status: ConnectionStatus
    is_online: bool
    is_server_reachable: bool
    last_checked: Optional[float] = None

    def to_dict(self):
        return {
            "status": self.status.value,
            "isOnline": self.is_online,
            "isServerReachable": self.is_server_reachable,
            "lastChecked": self.last_checked,
        }


def http_health_probe(api_url: str, timeout: float) -> bool:
    """GET ``<api_url>/health``; any 2xx within ``timeout`` counts as reachable."""
    url = f"{api_url.rstrip('/')}/health"
    try:
        with urllib.request.urlopen(urllib.request.Request(url, method="GET"), timeout=timeout) as response:
            return 200 <= response.getcode() < 300
    except (urllib.error.URLError, OSError, ValueError):
        return False


class ConnectionMonitor:
    def __init__(
        self,
        api_url: Optional[str] = None,
        probe: Optional[Callable[[str, float], bool]] = None,
        probe_timeout: float = 3,
        check_interval: float = 30,
        online: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.api_url = api_url
        self.probe = probe or http_health_probe
        self.probe_timeout = probe_timeout
        self.check_interval = check_interval
        self.clock = clock
        self.logger = get_logger("monitoring.connection")

        self._online = online
        self._lock = threading.Lock()
        self._listeners: List[Callable[[ConnectionState], None]] = []
        self._timer: Optional[RepeatingTimer] = None
        self._state = ConnectionState(
            status=ConnectionStatus.ONLINE if online else ConnectionStatus.OFFLINE,
            is_online=online,
            is_server_reachable=online,
        )

    @property
    def state(self) -> ConnectionState:
        return self._state

    def _server_reachable(self) -> bool:
        if not self.api_url:
            return True
        try:
            return bool(self.probe(self.api_url, self.probe_timeout))
        except Exception as e:
            self.logger.debug(f"Health probe raised: {e}")
            return False

    def evaluate(self) -> ConnectionState:
        """Re-classify now and notify listeners if the status changed."""
        online = self._online
        if not online:
            state = ConnectionState(ConnectionStatus.OFFLINE, False, False, self.clock())
        else:
            reachable = self._server_reachable()
            status = ConnectionStatus.ONLINE if reachable else ConnectionStatus.SERVER_DOWN
            state = ConnectionState(status, True, reachable, self.clock())

        with self._lock:
            previous = self._state
            self._state = state
            listeners = list(self._listeners)

        if previous.status != state.status:
            self.logger.info(f"Connection status changed: {previous.status.value} -> {state.status.value}")
            for listener in listeners:
                try:
                    listener(state)
                except Exception as e:
                    self.logger.error(f"Connection listener failed: {e}")
        return state

    def set_online(self, online: bool) -> ConnectionState:
        """Feed a connectivity-change event."""
        self._online = online
        return self.evaluate()

    def _tick(self) -> None:
        if self._online:
            self.evaluate()

    def start(self) -> ConnectionState:
        state = self.evaluate()
        with self._lock:
            if self._timer is None:
                self._timer = RepeatingTimer(self.check_interval, self._tick, name="connection-check")
                self._timer.start()
        return state

    def stop(self) -> None:
        with self._lock:
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def subscribe(self, listener: Callable[[ConnectionState], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe
