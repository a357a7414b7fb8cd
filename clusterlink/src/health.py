from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

import prometheus_client

LOGGER = logging.getLogger(__name__)


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves liveness, readiness, leadership and Prometheus metrics endpoints.

    ``/readyz`` only succeeds once the cluster topology has been bootstrapped
    and the dispatcher is running (and, with leader election on, while this
    replica leads).
    """

    ready_event: threading.Event
    leader_event: threading.Event | None

    def _is_leader(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _respond(self, status: int, body: bytes = b"", content_type: str | None = None) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _healthz(self) -> None:
        self._respond(200, b"ok")

    def _leadz(self) -> None:
        if self._is_leader():
            self._respond(200, b"ok")
        else:
            self._respond(503, b"not leader")

    def _readyz(self) -> None:
        ready = self.ready_event.is_set()
        leader = self._is_leader()
        body = f"ready={str(ready).lower()} leader={str(leader).lower()}".encode()
        self._respond(200 if ready and leader else 503, body)

    def _metrics(self) -> None:
        self._respond(
            200,
            prometheus_client.generate_latest(),
            prometheus_client.CONTENT_TYPE_LATEST,
        )

    def do_GET(self) -> None:
        routes = {
            "/healthz": self._healthz,
            "/leadz": self._leadz,
            "/readyz": self._readyz,
            "/metrics": self._metrics,
        }
        route = routes.get(self.path)
        if route is None:
            self._respond(404)
            return
        route()

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, leader: threading.Event | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness and leadership events."""

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready
        leader_event = leader

    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, port: int, leader: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, leader=leader)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
