"""
Tests for the health HTTP server
"""
import pytest
import requests

from infra.healthcheck import HealthServer


@pytest.fixture
def serve():
    servers = []

    def _serve(health, status=None):
        server = HealthServer(0, health, status, host="127.0.0.1")
        server.start()
        servers.append(server)
        return f"http://127.0.0.1:{server.port}"

    yield _serve
    for server in servers:
        server.stop()


class TestHealthServer:
    def test_healthy(self, serve):
        base = serve(lambda: {"ok": True, "issues": []})

        response = requests.get(f"{base}/health", timeout=5)

        assert response.status_code == 200
        assert response.json() == {"ok": True, "issues": []}

    def test_unhealthy_returns_503(self, serve):
        base = serve(lambda: {"ok": False, "issues": ["no active accounts"]})

        response = requests.get(f"{base}/healthz", timeout=5)

        assert response.status_code == 503
        assert response.json()["issues"] == ["no active accounts"]

    def test_status_always_200(self, serve):
        base = serve(lambda: {"ok": False}, lambda: {"ok": False, "running": False})

        response = requests.get(f"{base}/status", timeout=5)

        assert response.status_code == 200
        assert response.json()["running"] is False

    def test_provider_error(self, serve):
        def broken():
            raise RuntimeError("store unavailable")

        base = serve(broken)

        response = requests.get(f"{base}/", timeout=5)

        assert response.status_code == 503
        assert response.json()["error"] == "store unavailable"

    def test_unknown_path(self, serve):
        base = serve(lambda: {"ok": True})

        assert requests.get(f"{base}/metrics", timeout=5).status_code == 404

    def test_stop_is_idempotent(self):
        server = HealthServer(0, lambda: {"ok": True}, host="127.0.0.1")
        server.start()
        server.stop()
        server.stop()
        assert server.port is None

    def test_status_section(self, serve):
        base = serve(lambda: {"ok": True}, lambda: {"ok": True, "matching": {"retry_queue": 2}})

        response = requests.get(f"{base}/status/matching", timeout=5)

        assert response.status_code == 200
        assert response.json() == {"matching": {"retry_queue": 2}}

    def test_unknown_status_section_lists_sections(self, serve):
        base = serve(lambda: {"ok": True}, lambda: {"ok": True, "tasks": {}})

        response = requests.get(f"{base}/status/nope", timeout=5)

        assert response.status_code == 404
        assert response.json()["sections"] == ["ok", "tasks"]

    def test_head_has_no_body(self, serve):
        base = serve(lambda: {"ok": False})

        response = requests.head(f"{base}/health", timeout=5)

        assert response.status_code == 503
        assert response.content == b""
