"""Unit tests for RepeatingTimer."""

import os
import sys

# Add the project root to the path to import modules
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent.parent.absolute()
sys.path.append(str(PROJECT_ROOT))

import threading
import time

from mdviewer_edge.utils.scheduler import RepeatingTimer


def test_runs_repeatedly_until_cancelled():
    calls = []
    timer = RepeatingTimer(0.02, lambda: calls.append(1))
    timer.start()
    time.sleep(0.2)
    assert timer.running
    timer.cancel()
    count = len(calls)
    assert count >= 3
    time.sleep(0.1)
    assert len(calls) == count
    assert not timer.running


def test_first_call_waits_one_interval():
    calls = []
    timer = RepeatingTimer(0.5, lambda: calls.append(1))
    timer.start()
    try:
        time.sleep(0.1)
        assert calls == []
    finally:
        timer.cancel()


def test_exceptions_do_not_stop_timer():
    calls = []

    def flaky():
        calls.append(1)
        raise RuntimeError("boom")

    timer = RepeatingTimer(0.02, flaky)
    timer.start()
    time.sleep(0.2)
    timer.cancel()
    assert len(calls) >= 2


def test_cancel_from_callback_thread():
    done = threading.Event()
    timer = None

    def stop_self():
        timer.cancel()
        done.set()

    timer = RepeatingTimer(0.02, stop_self, name="self-cancel")
    timer.start()
    assert done.wait(2)
    assert not timer.running


def test_start_twice_uses_one_thread():
    timer = RepeatingTimer(10, lambda: None)
    timer.start()
    first = timer._thread
    timer.start()
    assert timer._thread is first
    timer.cancel()
