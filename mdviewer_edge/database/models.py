"""Data models for MD Viewer Edge."""

import math
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Tuple
from urllib.parse import urlsplit

DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_origin(url: str) -> str:
    """Return ``scheme://host[:port]`` for ``url``, dropping the scheme's default port."""
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    try:
        port = parts.port
    except ValueError:
        return f"{scheme}://{parts.netloc.lower()}"
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    if port is None or DEFAULT_PORTS.get(scheme) == port:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


@dataclass(frozen=True)
class WindowCounter:
    """Fixed-window request counter for one client key.

    ``reset_at`` is an absolute epoch timestamp in seconds. A counter is live
    only while ``now < reset_at``; afterwards it must be replaced, never reused.
    """

    key: str
    count: int
    reset_at: float

    def is_live(self, now: float) -> bool:
        return now < self.reset_at

    def incremented(self) -> "WindowCounter":
        return replace(self, count=self.count + 1)

    @classmethod
    def fresh(cls, key: str, now: float, window_seconds: float) -> "WindowCounter":
        return cls(key=key, count=1, reset_at=now + window_seconds)


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one rate limit check."""

    allowed: bool
    remaining: int
    reset_at: float
    limit: int
    degraded: bool = False

    @property
    def reset_at_ms(self) -> int:
        return int(self.reset_at * 1000)

    def retry_after(self, now: float) -> int:
        """Whole seconds until the window closes, at least 1."""
        return max(1, math.ceil(self.reset_at - now))

    def to_dict(self) -> Dict[str, object]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "resetAt": self.reset_at_ms,
            "limit": self.limit,
        }


@dataclass(frozen=True)
class FetchRequest:
    """A request as seen by the fetch strategy."""

    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"

    @property
    def origin(self) -> str:
        return normalize_origin(self.url)


@dataclass(frozen=True)
class ResponseSnapshot:
    """Immutable capture of a response: status, headers and the full body.

    ``response_type`` follows the fetch vocabulary: ``basic`` for same-origin,
    ``cors`` for readable cross-origin and ``opaque`` for unreadable ones. Only
    ``basic`` 200 responses are ever cached.
    """

    status: int
    body: bytes = b""
    headers: Tuple[Tuple[str, str], ...] = ()
    reason: str = ""
    url: str = ""
    response_type: str = "basic"

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return default

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_offline_fallback(self) -> bool:
        return self.header(OFFLINE_MARKER_HEADER) == "1"

    def text(self, encoding: str = "utf-8") -> str:
        return self.body.decode(encoding, errors="replace")

    def clone(self) -> "ResponseSnapshot":
        """Independent copy, so the caller and the cache never share one body."""
        return replace(self, body=bytes(self.body), headers=tuple(self.headers))

    def with_header(self, name: str, value: str) -> "ResponseSnapshot":
        merged = [(k, v) for k, v in self.headers if k.lower() != name.lower()]
        merged.append((name, value))
        return replace(self, headers=tuple(merged))


OFFLINE_MARKER_HEADER = "X-Offline-Fallback"


@dataclass(frozen=True)
class CacheGeneration:
    """One versioned set of cached assets; ``name`` is ``<prefix>-<version>``."""

    prefix: str
    version: str

    @property
    def name(self) -> str:
        return f"{self.prefix}-{self.version}"

    @classmethod
    def from_name(cls, name: str) -> "CacheGeneration":
        prefix, _, version = name.partition("-")
        return cls(prefix=prefix, version=version)
