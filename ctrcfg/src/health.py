from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


def _flag(value: bool) -> str:
    return "true" if value else "false"


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/leadz``, ``/readyz`` and ``/metrics``.

    ``/readyz`` only reports ready while this replica leads and its
    informer caches have synced, so a standby replica never receives
    traffic meant for the active controller.
    """

    synced_event: threading.Event
    leader_event: threading.Event | None

    def _is_leader(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _respond(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _readyz(self) -> None:
        synced = self.synced_event.is_set()
        leader = self._is_leader()
        body = f"synced={_flag(synced)} leader={_flag(leader)}".encode()
        self._respond(200 if synced and leader else 503, body)

    def _leadz(self) -> None:
        if self._is_leader():
            self._respond(200, b"ok")
        else:
            self._respond(503, b"not leader")

    def do_GET(self) -> None:
        path = self.path.split("?", 1)[0]
        if path == "/healthz":
            self._respond(200, b"ok")
        elif path == "/leadz":
            self._leadz()
        elif path == "/readyz":
            self._readyz()
        elif path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_health_handler(
    synced: threading.Event, leader: threading.Event | None = None
) -> type[_HealthHandler]:
    """Bind the readiness events to a handler class ``ThreadingHTTPServer`` can instantiate."""

    class _BoundHealthHandler(_HealthHandler):
        synced_event = synced
        leader_event = leader

    return _BoundHealthHandler


def start_health_server(
    synced: threading.Event, port: int, leader: threading.Event | None = None
) -> ThreadingHTTPServer:
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(synced, leader))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", port)
    return server
