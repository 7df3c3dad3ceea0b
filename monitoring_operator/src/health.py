from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

ReadinessCheck = Callable[[], bool]


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves liveness, readiness, leadership and Prometheus metrics."""

    checks: Mapping[str, ReadinessCheck]
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

    def _readiness(self) -> tuple[bool, str]:
        results = {name: bool(check()) for name, check in self.checks.items()}
        # Followers serve the webhook but do not run controllers, so only the
        # leader waits for its controllers to sync.
        if not self._is_leader():
            results = {name: ok for name, ok in results.items() if not name.startswith("controller:")}
        body = " ".join(f"{name}={'true' if ok else 'false'}" for name, ok in sorted(results.items()))
        return all(results.values()), body

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/leadz":
            if self._is_leader():
                self._respond(200, b"ok")
            else:
                self._respond(503, b"not leader")
        elif self.path == "/readyz":
            ready, body = self._readiness()
            self._respond(200 if ready else 503, body.encode() or b"ok")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("monitoring_operator.health").debug(fmt, *args)


def make_health_handler(
    checks: Mapping[str, ReadinessCheck], leader: threading.Event | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness checks.

    ``checks`` is read on every request, so callers may keep adding to a
    dict they passed in.
    """

    class _BoundHealthHandler(_HealthHandler):
        pass

    _BoundHealthHandler.checks = checks
    _BoundHealthHandler.leader_event = leader
    return _BoundHealthHandler


def start_health_server(
    checks: Mapping[str, ReadinessCheck], port: int, leader: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(checks, leader=leader))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
