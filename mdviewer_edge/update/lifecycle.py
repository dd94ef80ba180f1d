"""Update lifecycle: detect, install, wait for, and activate new cache generations."""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Set

from mdviewer_edge.cache.store import CacheStore
from mdviewer_edge.database.manager import StorageFailure
from mdviewer_edge.database.models import CacheGeneration
from mdviewer_edge.update.worker import SKIP_WAITING, prune_generations
from mdviewer_edge.utils.logger import get_logger
from mdviewer_edge.utils.scheduler import RepeatingTimer


class UpdateState(Enum):
    NO_UPDATE = "no-update"
    INSTALLING = "installing"
    WAITING = "waiting"
    ACTIVATING = "activating"
    ACTIVATED = "activated"


class UpdateDetectionFailure(Exception):
    """Registration or update check failed; the active generation keeps serving."""

    def __init__(self, operation: str, original_error: Optional[Exception] = None):
        self.operation = operation
        self.original_error = original_error
        super().__init__(f"Service worker {operation} failed: {original_error}")


@dataclass(frozen=True)
class UpdateNotice:
    """Payload handed to update-available listeners."""

    version: str
    cache_name: str


class WorkerHost:
    """Capabilities the lifecycle needs from the environment that runs workers.

    ``check_for_update`` reports progress back by calling the lifecycle's
    ``on_update_found``, ``on_installed`` and ``on_controller_change``.
    """

    def register_worker(self, lifecycle: "UpdateLifecycle") -> None:
        raise NotImplementedError

    def check_for_update(self) -> None:
        raise NotImplementedError

    def has_controller(self) -> bool:
        raise NotImplementedError

    def post_control_message(self, version: str, message: dict) -> Optional[dict]:
        raise NotImplementedError

    def reload(self) -> None:
        raise NotImplementedError


class UpdateLifecycle:
    """Per-session state machine ``NoUpdate -> Installing -> Waiting -> Activating -> Activated``.

    Re-checks run right after registration, whenever the page becomes visible
    or comes back online, and every ``check_interval`` seconds. An update that
    finishes installing while an older generation controls the page moves to
    ``Waiting`` and notifies listeners once per version. ``apply_update()``
    asks the waiting generation to take over; the controller change prunes
    older namespaces and reloads the page, with a timer-based reload as backup.
    """

    def __init__(
        self,
        host: WorkerHost,
        cache_store: CacheStore,
        prefix: str,
        check_interval: float = 300,
        reload_fallback: float = 0.5,
    ):
        self.host = host
        self.cache_store = cache_store
        self.prefix = prefix
        self.check_interval = check_interval
        self.reload_fallback = reload_fallback
        self.logger = get_logger("update.lifecycle")

        self.state = UpdateState.NO_UPDATE
        self.pending_version: Optional[str] = None
        self.current_version: Optional[str] = None
        self.last_error: Optional[UpdateDetectionFailure] = None
        self._before_install = (UpdateState.NO_UPDATE, None)

        self._lock = threading.RLock()
        self._listeners: List[Callable[[UpdateNotice], None]] = []
        self._notified: Set[str] = set()
        self._dismissed = False
        self._registered = False
        self._reloaded_for: Optional[str] = None
        self._timer: Optional[RepeatingTimer] = None
        self._fallback_timer: Optional[threading.Timer] = None

    # Registration and periodic checks

    def start(self) -> bool:
        """Register the worker and begin periodic re-checks. A second call is a no-op."""
        with self._lock:
            if self._registered:
                return True
            try:
                self.host.register_worker(self)
            except Exception as e:
                self._record_failure("registration", e)
                return False
            self._registered = True
            self._timer = RepeatingTimer(self.check_interval, self.recheck, name="update-check")
        self.logger.info("Service worker registered")
        self.recheck()
        self._timer.start()
        return True

    def stop(self) -> None:
        with self._lock:
            timer, self._timer = self._timer, None
            fallback, self._fallback_timer = self._fallback_timer, None
            self._registered = False
        if timer is not None:
            timer.cancel()
        if fallback is not None:
            fallback.cancel()

    @property
    def registered(self) -> bool:
        return self._registered

    def recheck(self) -> None:
        """Ask the host whether a newer generation is deployed. Never raises."""
        if not self._registered:
            return
        try:
            self.host.check_for_update()
        except Exception as e:
            self._record_failure("update check", e)

    def on_visibility_change(self, visible: bool) -> None:
        if visible:
            self.recheck()

    def on_online(self) -> None:
        self.recheck()

    def _record_failure(self, operation: str, error: Exception) -> None:
        failure = UpdateDetectionFailure(operation, error)
        self.last_error = failure
        self.logger.warning(str(failure))

    # Host callbacks

    def on_update_found(self, version: str) -> None:
        with self._lock:
            if version == self.current_version:
                return
            if version == self.pending_version and self.state in (
                UpdateState.INSTALLING,
                UpdateState.WAITING,
                UpdateState.ACTIVATING,
            ):
                return
            self._before_install = (self.state, self.pending_version)
            self.pending_version = version
            self.state = UpdateState.INSTALLING
        self.logger.info(f"New generation {version} installing")

    def on_install_failed(self, version: str) -> None:
        """Undo ``on_update_found`` so the next check retries the same version."""
        with self._lock:
            if version != self.pending_version or self.state != UpdateState.INSTALLING:
                return
            self.state, self.pending_version = self._before_install
        self.logger.warning(f"Generation {version} failed to install, back to {self.state.value}")

    def on_installed(self, version: str) -> None:
        notice = None
        with self._lock:
            if version != self.pending_version or self.state != UpdateState.INSTALLING:
                return
            if not self.host.has_controller():
                # First install: nothing to replace, nothing to announce
                self.logger.info(f"Service worker {version} installed for the first time")
                return
            self.state = UpdateState.WAITING
            if version not in self._notified:
                self._notified.add(version)
                if not self._dismissed:
                    notice = UpdateNotice(version=version, cache_name=CacheGeneration(self.prefix, version).name)
        self.logger.info(f"Generation {version} installed and waiting")
        if notice is not None:
            self._emit(notice)

    def on_controller_change(self, version: str) -> None:
        with self._lock:
            previous = self.current_version
            self.current_version = version
            is_update = previous is not None or self.state in (UpdateState.WAITING, UpdateState.ACTIVATING)
            if self.state in (UpdateState.WAITING, UpdateState.ACTIVATING):
                self.state = UpdateState.ACTIVATED
            elif self.state == UpdateState.INSTALLING and version == self.pending_version:
                self.state = UpdateState.NO_UPDATE
            if version == self.pending_version:
                self.pending_version = None

        self.logger.info(f"Generation {version} now controls the page (previous: {previous})")
        self.prune()
        if is_update:
            self._reload(version)

    # User actions

    def apply_update(self) -> bool:
        """Tell the waiting generation to take control. Returns False if nothing is waiting."""
        with self._lock:
            if self.state != UpdateState.WAITING or self.pending_version is None:
                return False
            version = self.pending_version
            self.state = UpdateState.ACTIVATING
            self._fallback_timer = threading.Timer(self.reload_fallback, self._reload, args=(version,))
            self._fallback_timer.daemon = True
        self.logger.info(f"Activating generation {version}")
        self._fallback_timer.start()
        try:
            self.host.post_control_message(version, {"type": SKIP_WAITING})
        except Exception as e:
            self._record_failure("activation", e)
        return True

    def force_update(self) -> bool:
        """Activate a waiting generation if there is one, otherwise run an update check."""
        if self.apply_update():
            return True
        if not self._registered:
            return False
        self.recheck()
        return self.last_error is None

    def check_for_update(self) -> dict:
        self.recheck()
        with self._lock:
            return {
                "has_update": self.state in (UpdateState.INSTALLING, UpdateState.WAITING),
                "waiting": self.state == UpdateState.WAITING,
                "installing": self.state == UpdateState.INSTALLING,
            }

    def dismiss_update(self) -> None:
        """Stop announcing updates for the rest of this session."""
        self._dismissed = True

    def subscribe(self, listener: Callable[[UpdateNotice], None]) -> Callable[[], None]:
        """Register an update-available listener; returns a function that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # Internals

    def _emit(self, notice: UpdateNotice) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(notice)
            except Exception as e:
                self.logger.error(f"Update listener failed: {e}")

    def prune(self) -> List[str]:
        """Delete every generation sharing the prefix except the current one."""
        if self.current_version is None:
            return []
        keep = CacheGeneration(self.prefix, self.current_version).name
        try:
            return prune_generations(self.cache_store, self.prefix, keep=keep)
        except StorageFailure as e:
            self.logger.warning(f"Could not prune old caches: {e}")
            return []

    def _reload(self, version: str) -> None:
        with self._lock:
            if self._reloaded_for == version:
                return
            self._reloaded_for = version
            fallback, self._fallback_timer = self._fallback_timer, None
        if fallback is not None and fallback is not threading.current_thread():
            fallback.cancel()
        self.logger.info(f"Reloading page for generation {version}")
        self.host.reload()
