"""Unit tests for UpdateLifecycle and LocalWorkerHost."""

import os
import sys

# Add the project root to the path to import modules
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent.parent.absolute()
sys.path.append(str(PROJECT_ROOT))

import sqlite3
import threading
import time

import pytest

from mdviewer_edge.cache.store import CacheStore
from mdviewer_edge.cache.transport import Transport
from mdviewer_edge.database.manager import DatabaseManager, StorageFailure
from mdviewer_edge.database.models import FetchRequest, ResponseSnapshot
from mdviewer_edge.update.host import LocalWorkerHost
from mdviewer_edge.update.lifecycle import UpdateLifecycle, UpdateState, WorkerHost
from mdviewer_edge.update.worker import SKIP_WAITING

ORIGIN = "http://localhost:3000"


class VersionedTransport(Transport):
    """Origin whose pages embed the deployed version."""

    def __init__(self):
        self.version = "v1"

    def fetch(self, request):
        return ResponseSnapshot(status=200, body=f"{self.version}:{request.path}".encode(), url=request.url)


class Deployment:
    def __init__(self, version="v1"):
        self.version = version
        self.failing = False

    def __call__(self):
        if self.failing:
            raise ConnectionError("version endpoint unreachable")
        return self.version


@pytest.fixture
def store():
    db = DatabaseManager(":memory:")
    yield CacheStore(db)
    db.close()


@pytest.fixture
def env(store):
    deployment = Deployment("v1")
    transport = VersionedTransport()
    host = LocalWorkerHost(store, transport, "mdviewer", ORIGIN, deployment, static_assets=["/", "/editor"])
    lifecycle = UpdateLifecycle(host, store, "mdviewer", check_interval=3600, reload_fallback=0.05)
    notices = []
    lifecycle.subscribe(notices.append)
    yield {
        "deployment": deployment,
        "transport": transport,
        "host": host,
        "lifecycle": lifecycle,
        "notices": notices,
        "store": store,
    }
    lifecycle.stop()
    host.close()


def deploy(env, version):
    env["deployment"].version = version
    env["transport"].version = version


def test_first_install_activates_without_notification_or_reload(env):
    assert env["lifecycle"].start() is True
    assert env["host"].status()["controller"] == "v1"
    assert env["lifecycle"].state == UpdateState.NO_UPDATE
    assert env["lifecycle"].current_version == "v1"
    assert env["notices"] == []
    assert env["host"].reload_count == 0
    assert env["store"].list_namespaces() == ["mdviewer-v1"]


def test_start_is_idempotent(env):
    env["lifecycle"].start()
    env["lifecycle"].start()
    assert env["host"].status()["controller"] == "v1"
    assert env["store"].list_namespaces() == ["mdviewer-v1"]


def test_new_deployment_installs_alongside_and_waits(env):
    env["lifecycle"].start()
    deploy(env, "v2")
    env["lifecycle"].recheck()

    assert env["lifecycle"].state == UpdateState.WAITING
    assert env["lifecycle"].pending_version == "v2"
    assert env["store"].list_namespaces() == ["mdviewer-v1", "mdviewer-v2"]
    assert [n.version for n in env["notices"]] == ["v2"]
    assert env["notices"][0].cache_name == "mdviewer-v2"
    # Pages are still controlled by v1, so responses land in the v1 namespace
    assert env["host"].fetch(FetchRequest(url=f"{ORIGIN}/editor")).body == b"v2:/editor"
    assert env["host"].flush(timeout=5)
    assert env["store"].open("mdviewer-v1").match(f"{ORIGIN}/editor").body == b"v2:/editor"
    assert env["host"].status() == {"controller": "v1", "active": "v1", "waiting": "v2", "installing": None}


def test_repeated_checks_notify_once(env):
    env["lifecycle"].start()
    deploy(env, "v2")
    for _ in range(3):
        env["lifecycle"].recheck()
    env["lifecycle"].on_visibility_change(True)
    env["lifecycle"].on_online()
    assert len(env["notices"]) == 1


def test_concurrent_checks_notify_once(env):
    env["lifecycle"].start()
    deploy(env, "v2")
    barrier = threading.Barrier(8)

    def check():
        barrier.wait()
        env["lifecycle"].recheck()

    threads = [threading.Thread(target=check) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(env["notices"]) == 1
    assert env["lifecycle"].state == UpdateState.WAITING


def test_apply_update_activates_prunes_and_reloads_once(env):
    env["lifecycle"].start()
    deploy(env, "v2")
    env["lifecycle"].recheck()

    assert env["lifecycle"].apply_update() is True
    assert env["lifecycle"].state == UpdateState.ACTIVATED
    assert env["lifecycle"].current_version == "v2"
    assert env["store"].list_namespaces() == ["mdviewer-v2"]
    assert env["host"].status()["controller"] == "v2"
    assert env["host"].reload_count == 1

    # Fallback timer must not reload a second time
    time.sleep(0.2)
    assert env["host"].reload_count == 1


def test_apply_update_without_waiting_generation(env):
    env["lifecycle"].start()
    assert env["lifecycle"].apply_update() is False
    assert env["host"].reload_count == 0


def test_successive_updates(env):
    env["lifecycle"].start()
    for version in ["v2", "v3"]:
        deploy(env, version)
        env["lifecycle"].recheck()
        env["lifecycle"].apply_update()
    assert env["store"].list_namespaces() == ["mdviewer-v3"]
    assert env["host"].reload_count == 2
    assert [n.version for n in env["notices"]] == ["v2", "v3"]


def test_check_for_update_reports_status(env):
    env["lifecycle"].start()
    assert env["lifecycle"].check_for_update() == {"has_update": False, "waiting": False, "installing": False}
    deploy(env, "v2")
    assert env["lifecycle"].check_for_update() == {"has_update": True, "waiting": True, "installing": False}


def test_force_update_activates_waiting_generation(env):
    env["lifecycle"].start()
    deploy(env, "v2")
    env["lifecycle"].recheck()
    assert env["lifecycle"].force_update() is True
    assert env["lifecycle"].current_version == "v2"


def test_force_update_without_waiting_runs_check(env):
    env["lifecycle"].start()
    deploy(env, "v2")
    assert env["lifecycle"].force_update() is True
    assert env["lifecycle"].state == UpdateState.WAITING


def test_dismissed_updates_are_not_announced(env):
    env["lifecycle"].start()
    env["lifecycle"].dismiss_update()
    deploy(env, "v2")
    env["lifecycle"].recheck()
    assert env["notices"] == []
    assert env["lifecycle"].state == UpdateState.WAITING


def test_unsubscribe(env):
    received = []
    unsubscribe = env["lifecycle"].subscribe(received.append)
    unsubscribe()
    env["lifecycle"].start()
    deploy(env, "v2")
    env["lifecycle"].recheck()
    assert received == []


def test_update_check_failure_is_logged_not_raised(env):
    env["lifecycle"].start()
    env["deployment"].failing = True
    env["lifecycle"].recheck()
    assert env["lifecycle"].last_error is not None
    assert env["lifecycle"].last_error.operation == "update check"
    assert env["lifecycle"].state == UpdateState.NO_UPDATE
    assert env["host"].fetch(FetchRequest(url=f"{ORIGIN}/")).status == 200


def test_hidden_tab_does_not_check(env):
    env["lifecycle"].start()
    deploy(env, "v2")
    env["lifecycle"].on_visibility_change(False)
    assert env["lifecycle"].state == UpdateState.NO_UPDATE


def test_skip_waiting_message_via_host(env):
    env["lifecycle"].start()
    deploy(env, "v2")
    env["lifecycle"].recheck()
    env["host"].post_control_message("v2", {"type": SKIP_WAITING})
    # Activated by the worker itself: still a generation change
    assert env["lifecycle"].current_version == "v2"
    assert env["host"].reload_count == 1


class RecordingHost(WorkerHost):
    def __init__(self, fail_register=False):
        self.fail_register = fail_register
        self.registrations = 0
        self.checks = 0
        self.controller = True
        self.messages = []
        self.reloads = 0

    def register_worker(self, lifecycle):
        if self.fail_register:
            raise PermissionError("service workers disabled")
        self.registrations += 1

    def check_for_update(self):
        self.checks += 1

    def has_controller(self):
        return self.controller

    def post_control_message(self, version, message):
        # Never activates, so only the fallback timer can reload
        self.messages.append((version, message))

    def reload(self):
        self.reloads += 1


def test_registration_failure_is_reported(store):
    host = RecordingHost(fail_register=True)
    lifecycle = UpdateLifecycle(host, store, "mdviewer")
    assert lifecycle.start() is False
    assert lifecycle.last_error.operation == "registration"
    assert not lifecycle.registered


def test_start_registers_and_checks_immediately(store):
    host = RecordingHost()
    lifecycle = UpdateLifecycle(host, store, "mdviewer", check_interval=3600)
    lifecycle.start()
    lifecycle.start()
    try:
        assert host.registrations == 1
        assert host.checks == 1
    finally:
        lifecycle.stop()


def test_periodic_checks(store):
    host = RecordingHost()
    lifecycle = UpdateLifecycle(host, store, "mdviewer", check_interval=0.05)
    lifecycle.start()
    try:
        time.sleep(0.3)
    finally:
        lifecycle.stop()
    assert host.checks >= 3
    checks = host.checks
    time.sleep(0.15)
    assert host.checks == checks


def test_fallback_reload_when_controller_change_never_arrives(store):
    host = RecordingHost()
    lifecycle = UpdateLifecycle(host, store, "mdviewer", check_interval=3600, reload_fallback=0.05)
    lifecycle.start()
    try:
        lifecycle.on_controller_change("v1")
        lifecycle.on_update_found("v2")
        lifecycle.on_installed("v2")
        assert lifecycle.apply_update() is True
        assert host.messages == [("v2", {"type": SKIP_WAITING})]
        assert lifecycle.state == UpdateState.ACTIVATING
        time.sleep(0.3)
        assert host.reloads == 1
    finally:
        lifecycle.stop()


def test_no_waiting_state_without_controller(store):
    host = RecordingHost()
    host.controller = False
    lifecycle = UpdateLifecycle(host, store, "mdviewer")
    notices = []
    lifecycle.subscribe(notices.append)
    lifecycle.on_update_found("v1")
    lifecycle.on_installed("v1")
    assert lifecycle.state == UpdateState.INSTALLING
    assert notices == []


class FlakyCacheStore(CacheStore):
    """Cache store whose first ``failures`` opens raise StorageFailure."""

    def __init__(self, db, failures=1):
        super().__init__(db)
        self.failures = failures

    def open(self, name):
        if self.failures > 0:
            self.failures -= 1
            raise StorageFailure("open", sqlite3.OperationalError("disk I/O error"))
        return super().open(name)


def test_failed_first_install_is_retried_on_recheck():
    db = DatabaseManager(":memory:")
    store = FlakyCacheStore(db, failures=1)
    host = LocalWorkerHost(store, VersionedTransport(), "mdviewer", ORIGIN, Deployment("v1"), static_assets=["/"])
    lifecycle = UpdateLifecycle(host, store, "mdviewer", check_interval=3600)
    try:
        lifecycle.start()
        assert lifecycle.last_error.operation == "update check"
        assert host.status()["installing"] is None
        assert lifecycle.state == UpdateState.NO_UPDATE
        assert lifecycle.pending_version is None

        lifecycle.recheck()
        assert host.controller is not None
        assert host.status()["controller"] == "v1"
        assert lifecycle.current_version == "v1"
        assert store.list_namespaces("mdviewer") == ["mdviewer-v1"]
    finally:
        lifecycle.stop()
        host.close()
        db.close()


def test_failed_update_install_keeps_serving_and_retries(env, monkeypatch):
    env["lifecycle"].start()
    state_before = env["lifecycle"].state
    deploy(env, "v2")

    real_open = env["store"].open
    calls = []

    def open_failing_once(name):
        calls.append(name)
        if len(calls) == 1:
            raise StorageFailure("open", sqlite3.OperationalError("database is locked"))
        return real_open(name)

    monkeypatch.setattr(env["store"], "open", open_failing_once)
    env["lifecycle"].recheck()
    assert env["lifecycle"].state == state_before
    assert env["lifecycle"].pending_version is None
    assert env["host"].status() == {"controller": "v1", "active": "v1", "waiting": None, "installing": None}
    assert env["notices"] == []

    env["lifecycle"].recheck()
    assert env["lifecycle"].state == UpdateState.WAITING
    assert env["lifecycle"].pending_version == "v2"
    assert [n.version for n in env["notices"]] == ["v2"]
