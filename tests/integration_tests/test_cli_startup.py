#!/usr/bin/env python3
"""Integration tests for CLI startup and termination."""

import os
import socket
import subprocess
import sys
import time
from pathlib import Path

import pytest
import requests

PROJECT_ROOT = Path(__file__).parent.parent.parent.absolute()
sys.path.insert(0, str(PROJECT_ROOT))


def _free_port():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


def _start_cli(port, *extra):
    env = {
        **os.environ,
        "PYTHONPATH": str(PROJECT_ROOT),
        "MDVIEWER_EDGE_DB_PATH": ":memory:",
        "MDVIEWER_EDGE_LOG_LEVEL": "DEBUG",
    }
    return subprocess.Popen(
        [sys.executable, "-m", "mdviewer_edge.cli", "--host", "127.0.0.1", "--port", str(port), *extra],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        cwd=str(PROJECT_ROOT),
        env=env,
    )


def _stop(process):
    process.terminate()
    try:
        return process.communicate(timeout=10)
    except subprocess.TimeoutExpired:
        process.kill()
        return process.communicate()


def test_cli_startup():
    """Test CLI startup with proper process management."""
    port = _free_port()
    process = _start_cli(port)

    try:
        time.sleep(3)
        assert process.poll() is None, f"Process terminated early with code: {process.returncode}"

        response = requests.get(f"http://127.0.0.1:{port}/health", timeout=5)
        assert response.status_code == 200

        stdout, stderr = _stop(process)
        expected_msg = f"Starting MD Viewer Edge rate limiter on 127.0.0.1:{port}"
        combined_output = stdout + stderr
        assert expected_msg in combined_output, f"Expected startup message not found. STDOUT: {stdout}, STDERR: {stderr}"
        assert "Security key:" in combined_output

    finally:
        if process.poll() is None:
            process.kill()


def test_cli_startup_serves_check():
    """A started CLI process rate limits requests."""
    port = _free_port()
    process = _start_cli(port)

    try:
        time.sleep(2)
        assert process.poll() is None, "Process should still be running"
        statuses = [
            requests.post(f"http://127.0.0.1:{port}/check", json={"key": "cli"}, timeout=5).status_code
            for _ in range(11)
        ]
        assert statuses == [200] * 10 + [429]
    finally:
        _stop(process)
