"""Background timers for periodic checks."""

import threading
from typing import Callable, Optional

from mdviewer_edge.utils.logger import get_logger

logger = get_logger("utils.scheduler")


class RepeatingTimer:
    """Calls ``function`` every ``interval`` seconds on a daemon thread until cancelled.

    The first call happens one interval after ``start()``. Exceptions raised by
    ``function`` are logged and do not stop the timer.
    """

    def __init__(self, interval: float, function: Callable[[], None], name: str = "repeating-timer"):
        self.interval = interval
        self.function = function
        self.name = name
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stopped.wait(self.interval):
            try:
                self.function()
            except Exception as e:
                logger.warning(f"Timer {self.name} callback failed: {e}")

    def cancel(self) -> None:
        self._stopped.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval + 1)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stopped.is_set()
