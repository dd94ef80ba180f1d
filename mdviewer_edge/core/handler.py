"""Request processing pipeline for RateLimitRequestHandler."""

import datetime
import json
import time
from http.server import BaseHTTPRequestHandler
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlparse

from mdviewer_edge.database.models import RateLimitDecision
from mdviewer_edge.security.manager import SecurityError
from mdviewer_edge.utils.logger import get_logger


def _utc_timestamp() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


class RequestProcessingMixin:
    """Mixin holding the routing and response helpers for the rate limit service."""

    @property
    def logger(self):
        # Use the service's logger if available, else get a default handler logger
        if hasattr(self, "service") and hasattr(self.service, "logger"):
            return self.service.logger
        return get_logger("core.handler")

    # Response helpers

    def _cors_headers(self) -> Dict[str, str]:
        return {
            "Access-Control-Allow-Origin": self.service.config["server"].get("cors_origin", "*"),
            "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type",
        }

    def _send_json(self, status_code: int, data: Dict[str, Any], headers: Optional[Dict[str, str]] = None):
        """Send a JSON body with CORS headers and any extra headers."""
        response_data = json.dumps(data).encode("utf-8")
        self.send_response(status_code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(response_data)))
        for k, v in {**self._cors_headers(), **(headers or {})}.items():
            self.send_header(k, v)
        self.end_headers()
        self.wfile.write(response_data)

    def _send_error_json(self, status_code: int, error_code: str, message: str):
        error_response = {
            "timestamp": _utc_timestamp(),
            "success": False,
            "error": message,
            "error_code": error_code,
        }
        self._send_json(status_code, error_response)

    def _rate_limit_headers(self, decision: RateLimitDecision) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(decision.limit),
            "X-RateLimit-Remaining": str(decision.remaining),
            "X-RateLimit-Reset": str(decision.reset_at_ms),
        }
        if not decision.allowed:
            headers["Retry-After"] = str(decision.retry_after(time.time()))
        return headers

    # Request parsing

    def _read_body(self) -> bytes:
        length = int(self.headers.get("Content-Length", 0) or 0)
        return self.rfile.read(length) if length > 0 else b""

    def _json_body(self, body: bytes) -> Dict[str, Any]:
        if not body:
            return {}
        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValueError("Invalid JSON in request body")
        if not isinstance(data, dict):
            raise ValueError("Request body must be a JSON object")
        return data

    def _client_key(self, data: Dict[str, Any]) -> str:
        key = data.get("key")
        if isinstance(key, str) and key:
            return key
        return self.service.client_identity(self.headers, self.client_address)

    # Pipeline

    def _handle_request(self, method: str):
        try:
            parsed = urlparse(self.path)
            path = parsed.path.rstrip("/") or "/"
            query = parse_qs(parsed.query)
            self.logger.debug(f"Handling {method} request for path: {path}")

            if method == "OPTIONS":
                self.send_response(204)
                for k, v in self._cors_headers().items():
                    self.send_header(k, v)
                self.send_header("Content-Length", "0")
                self.end_headers()
                return

            route = (method, path)
            if route == ("POST", "/check"):
                self._handle_check()
            elif route == ("POST", "/reset"):
                self.service.authorize(self.headers, query, self.client_address)
                self._handle_reset()
            elif route == ("GET", "/health"):
                self._send_json(200, {"status": "healthy", "timestamp": _utc_timestamp()})
            elif route == ("POST", "/upload") and "on_upload" in self.service.callbacks:
                self._handle_upload()
            elif route == ("GET", "/admin/status"):
                self.service.authorize(self.headers, query, self.client_address)
                self._send_json(200, self.service.get_status())
            elif path in ("/check", "/reset", "/health", "/admin/status"):
                self._send_error_json(405, "METHOD_NOT_ALLOWED", f"Method {method} not allowed")
            else:
                self._send_error_json(404, "ENDPOINT_NOT_FOUND", f"Endpoint not found: {path}")
        except SecurityError:
            self.logger.warning("Unauthorized request: Invalid or missing secure key.")
            self._send_error_json(401, "UNAUTHORIZED", "Invalid or missing secure key")
        except ValueError as e:
            self._send_error_json(400, "BAD_REQUEST", str(e))
        except Exception as e:
            self.logger.error(f"Exception while handling request: {e}")
            self.service.metrics_collector.record_event("error", {"path": self.path, "error": str(e)})
            self._send_error_json(500, "INTERNAL_ERROR", "Internal server error")

    def _handle_check(self):
        data = self._json_body(self._read_body())
        key = self._client_key(data)
        decision = self.service.rate_limiter.check(key)
        self.service.record_decision(key, decision)

        headers = self._rate_limit_headers(decision)
        if decision.degraded and not decision.allowed:
            body = decision.to_dict()
            body["error"] = "storage_unavailable"
            self._send_json(503, body, headers)
        elif decision.allowed:
            self._send_json(200, decision.to_dict(), headers)
        else:
            self._send_json(429, decision.to_dict(), headers)

    def _handle_reset(self):
        data = self._json_body(self._read_body())
        key = self._client_key(data)
        self.service.rate_limiter.reset(key)
        self._send_json(200, {"success": True})

    def _handle_upload(self):
        body = self._read_body()
        key = self.service.client_identity(self.headers, self.client_address)
        decision = self.service.rate_limiter.check(key)
        self.service.record_decision(key, decision)
        headers = self._rate_limit_headers(decision)

        if not decision.allowed:
            if decision.degraded:
                self._send_json(
                    503,
                    {"error": "storage_unavailable", "message": "Rate limit storage unavailable", "resetAt": decision.reset_at_ms},
                    headers,
                )
                return
            seconds = decision.retry_after(time.time())
            self._send_json(
                429,
                {
                    "error": "Rate limit exceeded",
                    "message": f"Too many uploads. Please try again after {seconds} seconds.",
                    "resetAt": decision.reset_at_ms,
                },
                headers,
            )
            return

        status_code, payload = self.service.callbacks["on_upload"](body, dict(self.headers.items()))
        self._send_json(status_code, payload, headers)


class RateLimitRequestHandler(RequestProcessingMixin, BaseHTTPRequestHandler):
    """HTTP request handler for the rate limit service."""

    server_version = "MDViewerEdge/1.0"

    def __init__(self, *args, service_instance=None, **kwargs):
        self.service = service_instance
        if service_instance is not None:
            # Applied to the client socket by StreamRequestHandler.setup()
            self.timeout = service_instance.config["server"]["request_timeout"]
        super().__init__(*args, **kwargs)

    def log_message(self, format, *args):
        self.logger.debug(f"{self.address_string()} - {format % args}")

    def do_GET(self):
        self._handle_request("GET")

    def do_POST(self):
        self._handle_request("POST")

    def do_PUT(self):
        self._handle_request("PUT")

    def do_DELETE(self):
        self._handle_request("DELETE")

    def do_OPTIONS(self):
        self._handle_request("OPTIONS")
