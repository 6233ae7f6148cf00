"""
Read-only HTTP view of the engine for operators and load balancers.

Routes:
    /, /health, /healthz   liveness; 503 while the health payload has ok=false
    /status                full engine snapshot (tasks, accounts, clock, matching, ...)
    /status/<section>      one top-level key of the snapshot, 404 if absent

Both GET and HEAD are served. Nothing here mutates engine state.
"""

from __future__ import annotations

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

StatusProvider = Callable[[], Dict[str, Any]]

HEALTH_PATHS = ("/", "/health", "/healthz")
STATUS_PATH = "/status"


class _EngineHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address, health_provider: StatusProvider, status_provider: StatusProvider):
        self.health_provider = health_provider
        self.status_provider = status_provider
        super().__init__(address, _EngineRequestHandler)


class _EngineRequestHandler(BaseHTTPRequestHandler):
    server: _EngineHTTPServer

    def do_GET(self) -> None:  # noqa: N802
        self._respond(include_body=True)

    def do_HEAD(self) -> None:  # noqa: N802
        self._respond(include_body=False)

    def _respond(self, include_body: bool) -> None:
        code, payload = self._resolve(self.path.split("?", 1)[0].rstrip("/") or "/")
        body = b"" if payload is None else json.dumps(payload, default=str, ensure_ascii=False).encode("utf-8")
        self.send_response(code)
        if payload is not None:
            self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if include_body and body:
            self.wfile.write(body)

    def _resolve(self, path: str) -> Tuple[int, Optional[Dict[str, Any]]]:
        if path in HEALTH_PATHS:
            payload = self._collect(self.server.health_provider, path)
            return (200 if payload.get("ok", True) else 503), payload

        if path == STATUS_PATH:
            return 200, self._collect(self.server.status_provider, path)

        if path.startswith(STATUS_PATH + "/"):
            section = path[len(STATUS_PATH) + 1:]
            snapshot = self._collect(self.server.status_provider, path)
            if "error" in snapshot and section not in snapshot:
                return 503, snapshot
            if section not in snapshot:
                return 404, {"error": f"unknown status section '{section}'", "sections": sorted(snapshot)}
            return 200, {section: snapshot[section]}

        return 404, None

    @staticmethod
    def _collect(provider: StatusProvider, path: str) -> Dict[str, Any]:
        try:
            return provider() or {}
        except Exception as exc:
            logger.error("Status provider for %s failed: %s", path, exc, exc_info=True)
            return {"ok": False, "error": str(exc)}

    def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - health checks poll constantly
        return


class HealthServer:
    """Background thread serving the engine's health and status providers."""

    def __init__(self, port: int, health_provider: StatusProvider,
                 status_provider: Optional[StatusProvider] = None, host: str = "0.0.0.0"):
        self._address = (host, int(port))
        self._health_provider = health_provider
        self._status_provider = status_provider or health_provider
        self._server: Optional[_EngineHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        return self._server.server_port if self._server is not None else None

    def start(self) -> None:
        if self._server is not None:
            return
        self._server = _EngineHTTPServer(self._address, self._health_provider, self._status_provider)
        self._thread = threading.Thread(target=self._server.serve_forever, name="HealthServer", daemon=True)
        self._thread.start()
        logger.info("Health server listening on %s:%s", self._address[0], self._server.server_port)

    def stop(self) -> None:
        server, thread = self._server, self._thread
        self._server, self._thread = None, None
        if server is None:
            return
        try:
            server.shutdown()
            server.server_close()
        except OSError as exc:  # pragma: no cover - best-effort shutdown
            logger.warning("Failed shutting down health server: %s", exc)
        if thread is not None:
            thread.join(timeout=3)


__all__ = ["HealthServer"]
