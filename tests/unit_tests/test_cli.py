"""Tests for the CLI module."""

import json
import os

# Add the project root to the path to import modules
import sys
import tempfile
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

sys.path.append(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from mdviewer_edge.cache.store import CacheStore
from mdviewer_edge.cli import check_connection, create_default_config, list_generations, load_config, main
from mdviewer_edge.core.config import ConfigurationValidator
from mdviewer_edge.database.manager import DatabaseManager
from mdviewer_edge.utils.logger import configure_logging


@pytest.fixture(autouse=True)
def quiet_logging():
    # Keep log records out of captured stdout
    configure_logging({"level": "CRITICAL"})
    yield
    configure_logging({"level": "INFO"})


class TestLoadConfig:
    """Test configuration loading functionality."""

    def test_load_valid_config(self):
        config_data = {"server": {"host": "0.0.0.0", "port": 9090}, "rate_limit": {"max_requests": 5}}

        with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
            json.dump(config_data, f)
            config_path = Path(f.name)

        try:
            assert load_config(config_path) == config_data
        finally:
            config_path.unlink()

    def test_load_config_file_not_found(self):
        with pytest.raises(SystemExit) as exc_info:
            load_config(Path("/non/existent/config.json"))
        assert exc_info.value.code == 1

    def test_load_config_invalid_json(self):
        with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
            f.write("{ invalid json content")
            config_path = Path(f.name)

        try:
            with pytest.raises(SystemExit) as exc_info:
                load_config(config_path)
            assert exc_info.value.code == 1
        finally:
            config_path.unlink()


class TestCreateDefaultConfig:
    def test_default_config_is_valid(self):
        merged = ConfigurationValidator.merge_with_defaults(create_default_config())
        valid, errors = ConfigurationValidator.validate_config(merged)
        assert valid, errors

    def test_default_config_values(self):
        config = create_default_config()
        assert config["server"]["port"] == 8787
        assert config["security"]["require_secure_key"] is True
        assert config["rate_limit"]["max_requests"] == 10
        assert config["rate_limit"]["window_seconds"] == 60

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("MDVIEWER_EDGE_DB_PATH", "/tmp/ci.db")
        monkeypatch.setenv("MDVIEWER_EDGE_LOG_LEVEL", "DEBUG")
        config = create_default_config()
        assert config["rate_limit"]["database_path"] == "/tmp/ci.db"
        assert config["cache"]["database_path"] == "/tmp/ci.db"
        assert config["logging"]["level"] == "DEBUG"


class TestCheckConnection:
    def test_reachable(self, capsys):
        with patch("mdviewer_edge.monitoring.connection.http_health_probe", return_value=True):
            assert check_connection("https://api.example.com", timeout=3) == 0
        output = json.loads(capsys.readouterr().out)
        assert output["status"] == "online"

    def test_unreachable(self, capsys):
        with patch("urllib.request.urlopen", side_effect=OSError("connection refused")):
            assert check_connection("http://127.0.0.1:9", timeout=0.5) == 1
        output = json.loads(capsys.readouterr().out)
        assert output["status"] == "server-down"
        assert output["isOnline"] is True


class TestListGenerations:
    def test_lists_and_marks_current(self, tmp_path, capsys):
        db_path = str(tmp_path / "cache.db")
        db = DatabaseManager(db_path)
        store = CacheStore(db)
        store.open("mdviewer-v3.1")
        store.open("mdviewer-v3.2")
        db.close()

        assert list_generations({"cache": {"database_path": db_path}}) == 0
        lines = capsys.readouterr().out.splitlines()
        assert "  mdviewer-v3.1" in lines
        assert "* mdviewer-v3.2" in lines

    def test_empty(self, tmp_path, capsys):
        assert list_generations({"cache": {"database_path": str(tmp_path / "empty.db")}}) == 0
        assert "No cache generations found." in capsys.readouterr().out


class TestMain:
    def test_security_key_only(self, capsys):
        with patch.object(sys, "argv", ["mdviewer-edge", "--security-key-only"]):
            main()
        output = capsys.readouterr().out
        assert output.startswith("Generated security key: ")
        assert len(output.strip().split(": ")[1]) == 43

    def test_generate_config(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        with patch.object(sys, "argv", ["mdviewer-edge", "--generate-config"]):
            main()
        config_file = tmp_path / "mdviewer_edge_config.json"
        assert config_file.exists()
        assert json.loads(config_file.read_text())["server"]["port"] == 8787
        assert "Generated default configuration" in capsys.readouterr().out

    def test_version(self, capsys):
        with patch.object(sys, "argv", ["mdviewer-edge", "--version"]):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 0
        assert "0.1.0" in capsys.readouterr().out

    def test_start_with_overrides(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("MDVIEWER_EDGE_DB_PATH", str(tmp_path / "edge.db"))
        service = Mock()
        service.get_secure_key.return_value = "abc"
        with patch("mdviewer_edge.cli.RateLimitService", return_value=service) as service_cls:
            with patch.object(sys, "argv", ["mdviewer-edge", "--host", "0.0.0.0", "--port", "9090"]):
                main()
        config = service_cls.call_args[0][0]
        assert config["server"] == {"host": "0.0.0.0", "port": 9090}
        service.start.assert_called_once_with(blocking=True)
        output = capsys.readouterr().out
        assert "Starting MD Viewer Edge rate limiter on 0.0.0.0:9090" in output
        assert "X-Edge-Key: abc" in output

    def test_keyboard_interrupt_stops_service(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("MDVIEWER_EDGE_DB_PATH", str(tmp_path / "edge.db"))
        service = Mock()
        service.get_secure_key.return_value = None
        service.start.side_effect = KeyboardInterrupt
        with patch("mdviewer_edge.cli.RateLimitService", return_value=service):
            with patch.object(sys, "argv", ["mdviewer-edge"]):
                main()
        service.stop.assert_called_once()
        assert "Shutting down..." in capsys.readouterr().out

    def test_invalid_config_exits(self, tmp_path, capsys):
        config_path = tmp_path / "bad.json"
        config_path.write_text(json.dumps({"rate_limit": {"max_requests": 0}}))
        with patch.object(sys, "argv", ["mdviewer-edge", "--config", str(config_path)]):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 1
        assert "Error:" in capsys.readouterr().out

    def test_port_in_use(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("MDVIEWER_EDGE_DB_PATH", str(tmp_path / "edge.db"))
        service = Mock()
        service.get_secure_key.return_value = None
        service.start.side_effect = OSError("[Errno 98] Address already in use")
        with patch("mdviewer_edge.cli.RateLimitService", return_value=service):
            with patch.object(sys, "argv", ["mdviewer-edge", "--port", "9191"]):
                with pytest.raises(SystemExit):
                    main()
        assert "Port 9191 is already in use" in capsys.readouterr().out
