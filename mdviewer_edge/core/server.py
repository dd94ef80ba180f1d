"""Threaded HTTP server for the MD Viewer Edge rate limit service."""

import threading
from http.server import ThreadingHTTPServer

from mdviewer_edge.utils.logger import get_logger

logger = get_logger("core.server")


class ThreadedHTTPServer(ThreadingHTTPServer):
    """One thread per connection; the service instance is handed to every handler."""

    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, RequestHandlerClass, service_instance):
        self.service_instance = service_instance

        def handler(*args, **kwargs):
            return RequestHandlerClass(*args, service_instance=service_instance, **kwargs)

        super().__init__(server_address, handler)
        self._run_thread = None

    @property
    def port(self) -> int:
        return self.server_address[1]

    def start(self, blocking=True):
        if blocking:
            logger.info("Starting server in blocking mode...")
            self.serve_forever()
        else:
            logger.info("Starting server in non-blocking mode...")
            self._run_thread = threading.Thread(target=self.serve_forever, name="mdviewer-edge-http", daemon=True)
            self._run_thread.start()
        logger.info("Server started.")

    def stop(self):
        logger.info("Stopping server...")
        self.shutdown()
        self.server_close()
        if self._run_thread:
            self._run_thread.join()
        logger.info("Server stopped.")
