"""Security manager: admin key handling and client identity resolution."""

import base64
import hmac
import secrets
from typing import Any, Dict, Mapping, Optional, Tuple

KEY_HEADER = "X-Edge-Key"
UNKNOWN_CLIENT = "unknown"


class SecurityError(Exception):
    """Security-related errors raised during request validation.

    This exception is raised when:
    - Required secure key is missing
    - Provided secure key is invalid
    """

    pass


def _first(values: Any) -> Optional[str]:
    # parse_qs yields lists, plain dicts hold strings
    if isinstance(values, (list, tuple)):
        return values[0] if values else None
    return values


class SecurityManager:
    """Handles key generation, extraction, and validation for protected endpoints.

    Only ``/reset`` and ``/admin/*`` are protected; ``/check`` must stay usable
    by the upload path without credentials.

    Example:
        >>> manager = SecurityManager({"require_secure_key": True})
        >>> key = manager.generate_secure_key()
        >>> manager.validate_request(key)
        False
    """

    def __init__(self, security_config: Dict[str, Any]) -> None:
        """Initialize SecurityManager with security configuration.

        Args:
            security_config: The ``security`` section of the configuration
        """
        self.config = security_config or {}
        self.security_enabled = self.config.get("require_secure_key", False)
        self.secure_key = self.config.get("secure_key") or self.generate_secure_key()

    def generate_secure_key(self) -> str:
        """Generate a URL-safe base64-encoded 256-bit random key."""
        key_bytes = secrets.token_bytes(32)
        return base64.urlsafe_b64encode(key_bytes).decode("ascii").rstrip("=")

    def validate_request(self, provided_key: Optional[str]) -> bool:
        """Validate the provided key with constant-time comparison.

        Returns:
            True if key is valid or security is disabled, False otherwise
        """
        if not self.security_enabled:
            return True
        if not self.secure_key or not provided_key:
            return False

        return hmac.compare_digest(self.secure_key.encode("utf-8"), provided_key.encode("utf-8"))

    def extract_secure_key(self, headers: Mapping[str, str], query_params: Mapping[str, Any]) -> Optional[str]:
        """Extract the key from ``X-Edge-Key``, ``Authorization: Bearer`` or ``?key=``."""
        key = headers.get(KEY_HEADER)
        if key:
            return key
        auth = headers.get("Authorization")
        if auth and auth.lower().startswith("bearer "):
            return auth[7:].strip()
        return _first(query_params.get("key"))

    def require(self, headers: Mapping[str, str], query_params: Mapping[str, Any]) -> Optional[str]:
        """Return the validated key, or raise ``SecurityError``."""
        key = self.extract_secure_key(headers, query_params)
        if not self.validate_request(key):
            raise SecurityError("Invalid or missing secure key")
        return key

    @staticmethod
    def client_identity(
        headers: Mapping[str, str], client_address: Optional[Tuple[str, int]] = None, trust_proxy_headers: bool = True
    ) -> str:
        """Resolve the rate-limit key for a request.

        With proxy headers trusted: ``CF-Connecting-IP``, then the first
        ``X-Forwarded-For`` hop. Otherwise the socket peer address, or
        ``unknown`` when none is available.
        """
        if trust_proxy_headers:
            cf_ip = (headers.get("CF-Connecting-IP") or "").strip()
            if cf_ip:
                return cf_ip
            forwarded = headers.get("X-Forwarded-For") or ""
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
        if client_address and client_address[0]:
            return client_address[0]
        return UNKNOWN_CLIENT
