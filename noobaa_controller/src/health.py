from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, generate_latest

from noobaa_controller.src.state import StateSnapshot


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, metrics and controller state."""

    ready_event: threading.Event
    state_provider: Callable[[], StateSnapshot] | None
    registry: CollectorRegistry

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        """Send an HTTP response with optional body and content type."""
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            if self.ready_event.is_set():
                self._respond(200, b"ready=true")
            else:
                self._respond(503, b"ready=false")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(self.registry), CONTENT_TYPE_LATEST)
        elif self.path == "/state":
            if self.state_provider is None:
                self._respond(404)
                return
            body = json.dumps(self.state_provider().to_dict()).encode()
            self._respond(200, body, "application/json")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("noobaa_controller.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event,
    state_provider: Callable[[], StateSnapshot] | None = None,
    registry: CollectorRegistry | None = None,
) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness event and state accessor.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    provider = state_provider
    bound_registry = registry

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready
        state_provider = staticmethod(provider) if provider else None
        registry = REGISTRY if bound_registry is None else bound_registry

    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event,
    port: int,
    state_provider: Callable[[], StateSnapshot] | None = None,
    registry: CollectorRegistry | None = None,
) -> ThreadingHTTPServer:
    """Start the health/metrics/state HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, state_provider=state_provider, registry=registry)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
