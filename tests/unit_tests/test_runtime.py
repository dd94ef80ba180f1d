"""Unit tests for OfflineRuntime wiring."""

import os
import sys

# Add the project root to the path to import modules
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent.parent.absolute()
sys.path.append(str(PROJECT_ROOT))

import pytest

from mdviewer_edge.cache.transport import NetworkFailure, Transport
from mdviewer_edge.core.runtime import OfflineRuntime
from mdviewer_edge.database.models import FetchRequest, ResponseSnapshot
from mdviewer_edge.monitoring.connection import ConnectionStatus
from mdviewer_edge.update.lifecycle import UpdateState

ORIGIN = "http://localhost:3000"


class SiteTransport(Transport):
    def __init__(self):
        self.version = "v3.2"
        self.down = False

    def fetch(self, request):
        if self.down:
            raise NetworkFailure(request.url, "connection refused")
        return ResponseSnapshot(
            status=200,
            body=f"{self.version}{request.path}".encode(),
            headers=(("Content-Type", "text/html"),),
            url=request.url,
        )


@pytest.fixture
def site():
    return SiteTransport()


@pytest.fixture
def runtime(site):
    reloads = []
    rt = OfflineRuntime(
        {
            "cache": {"origin": ORIGIN, "static_assets": ["/", "/editor"]},
            "update": {"check_interval_seconds": 3600, "reload_fallback_seconds": 0.05},
            "connection": {"api_url": "http://localhost:8787", "check_interval_seconds": 3600},
            "logging": {"level": "WARNING"},
        },
        transport=site,
        version_source=lambda: site.version,
        probe=lambda url, timeout: not site.down,
        on_reload=lambda: reloads.append(site.version),
    )
    rt.reloads = reloads
    yield rt
    rt.stop()


def test_start_installs_configured_generation(runtime):
    assert runtime.start() is True
    assert runtime.cache_version == "v3.2"
    assert runtime.connection.status == ConnectionStatus.ONLINE
    assert runtime.check_for_update()["has_update"] is False


def test_precached_pages_survive_outage(runtime, site):
    runtime.start()
    site.down = True
    response = runtime.fetch(f"{ORIGIN}/editor")
    assert response.status == 200
    assert response.body == b"v3.2/editor"


def test_uncached_page_during_outage_is_offline_fallback(runtime, site):
    runtime.start()
    site.down = True
    response = runtime.fetch(FetchRequest(url=f"{ORIGIN}/search"))
    assert response.status == 503
    assert response.is_offline_fallback


def test_connection_events(runtime, site):
    runtime.start()
    seen = []
    runtime.on_connection_change(lambda state: seen.append(state.status))
    runtime.set_online(False)
    site.down = True
    runtime.set_online(True)
    assert seen == [ConnectionStatus.OFFLINE, ConnectionStatus.SERVER_DOWN]


def test_update_flow_through_runtime(runtime, site):
    notices = []
    runtime.on_update_available(notices.append)
    runtime.start()

    site.version = "v3.3"
    runtime.set_visible(True)
    assert [n.version for n in notices] == ["v3.3"]
    assert runtime.lifecycle.state == UpdateState.WAITING

    assert runtime.apply_update() is True
    assert runtime.cache_version == "v3.3"
    assert runtime.cache_store.list_namespaces() == ["mdviewer-v3.3"]
    assert runtime.reloads == ["v3.3"]


def test_coming_back_online_checks_for_updates(runtime, site):
    runtime.start()
    runtime.set_online(False)
    site.version = "v3.3"
    runtime.set_online(True)
    assert runtime.lifecycle.state == UpdateState.WAITING


def test_dismiss_then_force(runtime, site):
    notices = []
    runtime.on_update_available(notices.append)
    runtime.start()
    runtime.dismiss_update()
    site.version = "v3.3"
    assert runtime.force_update() is True
    assert notices == []
    assert runtime.force_update() is True
    assert runtime.cache_version == "v3.3"


def test_flush_after_fetch(runtime):
    runtime.start()
    runtime.fetch(f"{ORIGIN}/files")
    assert runtime.flush(timeout=5)
    handle = runtime.cache_store.open("mdviewer-v3.2")
    assert handle.match(f"{ORIGIN}/files").body == b"v3.2/files"


def test_context_manager(site):
    with OfflineRuntime(
        {"cache": {"origin": ORIGIN, "static_assets": []}, "logging": {"level": "WARNING"}},
        transport=site,
    ) as rt:
        assert rt.cache_version == "v3.2"
        assert rt.connection.is_server_reachable
