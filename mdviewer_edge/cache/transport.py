"""Network transport used by the fetch strategy and the worker install step."""

import gzip
import http.client
import urllib.error
import urllib.request
import zlib
from typing import Optional

from mdviewer_edge.database.models import FetchRequest, ResponseSnapshot, normalize_origin
from mdviewer_edge.utils.logger import get_logger


class NetworkFailure(Exception):
    """The request never produced an HTTP response (DNS, refused, timeout...)."""

    def __init__(self, url: str, reason: object):
        self.url = url
        self.reason = reason
        super().__init__(f"Network failure for {url}: {reason}")


class Transport:
    """Anything with ``fetch(request) -> ResponseSnapshot`` that raises ``NetworkFailure``."""

    def fetch(self, request: FetchRequest) -> ResponseSnapshot:
        raise NotImplementedError


class UrllibTransport(Transport):
    """Fetches with ``urllib.request`` and captures the whole body up front.

    Upstream error statuses (4xx/5xx) come back as snapshots; only failures to
    get any response at all raise ``NetworkFailure``.
    """

    def __init__(self, origin: Optional[str] = None, timeout: float = 30):
        self.origin = normalize_origin(origin) if origin else None
        self.timeout = timeout
        self.logger = get_logger("cache.transport")

    def _response_type(self, url: str) -> str:
        if self.origin is None:
            return "basic"
        request_origin = FetchRequest(url=url).origin
        return "basic" if request_origin == self.origin else "cors"

    def fetch(self, request: FetchRequest) -> ResponseSnapshot:
        req = urllib.request.Request(request.url, method=request.method.upper())
        for key, value in request.headers.items():
            if key.lower() not in ["host", "connection", "content-length"]:
                req.add_header(key, value)
        req.add_header("Accept-Encoding", "gzip, deflate")

        self.logger.debug(f"Fetching {request.method} {request.url} (timeout={self.timeout})")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                body = response.read()
                return self._snapshot(response.geturl(), response.getcode(), response.reason, response.headers, body)
        except urllib.error.HTTPError as e:
            self.logger.debug(f"Upstream answered {e.code} for {request.url}")
            return self._snapshot(e.geturl() or request.url, e.code, e.reason, e.headers, e.read())
        except urllib.error.URLError as e:
            self.logger.debug(f"Network error for {request.url}: {e.reason}")
            raise NetworkFailure(request.url, e.reason) from e
        except OSError as e:
            # socket.timeout and connection resets surface here
            self.logger.debug(f"Connection error for {request.url}: {e}")
            raise NetworkFailure(request.url, e) from e
        except http.client.HTTPException as e:
            # Truncated bodies (IncompleteRead) and malformed status lines
            self.logger.debug(f"Broken response for {request.url}: {e!r}")
            raise NetworkFailure(request.url, e) from e

    def _snapshot(self, url, status, reason, headers, body: bytes) -> ResponseSnapshot:
        header_items = [(k, v) for k, v in (headers.items() if headers is not None else [])]
        encoding = (headers.get("Content-Encoding", "") if headers is not None else "").lower()

        decompressed = False
        if body[:2] == b"\x1f\x8b" or encoding == "gzip":
            try:
                body = gzip.decompress(body)
                decompressed = True
            except (gzip.BadGzipFile, zlib.error, OSError) as e:
                self.logger.warning(f"Failed to decompress gzipped body for {url}: {e}")
        elif encoding == "deflate":
            try:
                body = zlib.decompress(body)
                decompressed = True
            except zlib.error as e:
                self.logger.warning(f"Failed to decompress deflate body for {url}: {e}")

        drop = {"transfer-encoding"}
        if decompressed:
            drop |= {"content-encoding", "content-length"}
        header_items = [(k, v) for k, v in header_items if k.lower() not in drop]
        if decompressed:
            header_items.append(("Content-Length", str(len(body))))

        return ResponseSnapshot(
            status=int(status),
            body=body,
            headers=tuple(header_items),
            reason=str(reason or ""),
            url=url,
            response_type=self._response_type(url),
        )
