"""Unit tests for SecurityManager."""

import os
import sys

# Add the project root to the path to import modules
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent.parent.absolute()
sys.path.append(str(PROJECT_ROOT))

import base64

import pytest

from mdviewer_edge.security.manager import KEY_HEADER, UNKNOWN_CLIENT, SecurityError, SecurityManager


def test_generate_secure_key_length_and_format():
    sm = SecurityManager({})
    key = sm.generate_secure_key()
    # Should be base64-url, 43 chars for 32 bytes without padding
    assert len(key) == 43
    key_bytes = base64.urlsafe_b64decode(key + "=")
    assert len(key_bytes) == 32


def test_configured_key_is_used():
    sm = SecurityManager({"require_secure_key": True, "secure_key": "fixed-key"})
    assert sm.secure_key == "fixed-key"


def test_validate_when_disabled_accepts_anything():
    sm = SecurityManager({"require_secure_key": False})
    assert sm.validate_request(None)
    assert sm.validate_request("whatever")


def test_validate_secure_key_success_and_failure():
    sm = SecurityManager({"require_secure_key": True})
    key = sm.secure_key
    assert sm.validate_request(key)
    assert not sm.validate_request("wrongkey")
    assert not sm.validate_request("")
    assert not sm.validate_request(None)


def test_extract_from_header():
    sm = SecurityManager({"require_secure_key": True})
    assert sm.extract_secure_key({KEY_HEADER: "abc"}, {}) == "abc"


def test_extract_from_bearer():
    sm = SecurityManager({"require_secure_key": True})
    assert sm.extract_secure_key({"Authorization": "Bearer abc "}, {}) == "abc"
    assert sm.extract_secure_key({"Authorization": "Basic abc"}, {}) is None


def test_extract_from_query():
    sm = SecurityManager({"require_secure_key": True})
    assert sm.extract_secure_key({}, {"key": ["abc"]}) == "abc"
    assert sm.extract_secure_key({}, {"key": "abc"}) == "abc"
    assert sm.extract_secure_key({}, {"key": []}) is None
    assert sm.extract_secure_key({}, {}) is None


def test_header_takes_precedence():
    sm = SecurityManager({"require_secure_key": True})
    headers = {KEY_HEADER: "from-header", "Authorization": "Bearer from-bearer"}
    assert sm.extract_secure_key(headers, {"key": ["from-query"]}) == "from-header"


def test_require_raises_on_invalid_key():
    sm = SecurityManager({"require_secure_key": True})
    with pytest.raises(SecurityError):
        sm.require({}, {})
    assert sm.require({KEY_HEADER: sm.secure_key}, {}) == sm.secure_key


@pytest.mark.parametrize(
    "headers,address,trust,expected",
    [
        ({"CF-Connecting-IP": "1.2.3.4", "X-Forwarded-For": "5.6.7.8"}, ("10.0.0.1", 1), True, "1.2.3.4"),
        ({"X-Forwarded-For": "1.2.3.4, 10.0.0.2"}, ("10.0.0.1", 1), True, "1.2.3.4"),
        ({"X-Forwarded-For": " "}, ("10.0.0.1", 1), True, "10.0.0.1"),
        ({"CF-Connecting-IP": "1.2.3.4"}, ("10.0.0.1", 1), False, "10.0.0.1"),
        ({}, None, True, UNKNOWN_CLIENT),
        ({}, ("", 0), True, UNKNOWN_CLIENT),
    ],
)
def test_client_identity(headers, address, trust, expected):
    assert SecurityManager.client_identity(headers, address, trust) == expected
