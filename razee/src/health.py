from __future__ import annotations

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from razee.src.watch import WatchManager


def watch_report(manager: WatchManager | None) -> dict[str, Any]:
    """Summarize every watch held by *manager*.

    A watch counts as stalled once its loop has exited (access denied or
    stopped) or while it has not completed its initial list.
    """
    watches = manager.get_all_watches() if manager is not None else {}
    entries = [
        {"selfLink": self_link, "running": handle.running, "ready": handle.ready.is_set()}
        for self_link, handle in sorted(watches.items())
    ]
    stalled = sum(1 for entry in entries if not (entry["running"] and entry["ready"]))
    return {"watches": entries, "total": len(entries), "stalled": stalled}


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, watch status and Prometheus metrics."""

    ready_event: threading.Event
    watch_manager: WatchManager | None

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
            ready = self.ready_event.is_set()
            report = watch_report(self.watch_manager)
            body = f"ready={str(ready).lower()} watches={report['total']} stalled={report['stalled']}".encode()
            self._respond(200 if ready else 503, body)
        elif self.path == "/watchz":
            report = watch_report(self.watch_manager)
            status = 503 if report["stalled"] else 200
            self._respond(status, json.dumps(report).encode(), "application/json")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("razee.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, watches: WatchManager | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the parent watch's readiness and the watch registry.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready
        watch_manager = watches

    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, port: int, watches: WatchManager | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(ready, watches))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
