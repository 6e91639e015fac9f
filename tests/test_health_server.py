from __future__ import annotations

import asyncio
import socket
from unittest.mock import patch

import pytest
from aiohttp.test_utils import TestClient, TestServer

from fakes import FakeControlPort, RecordingNotifier, getinfo_lines, make_link
from tor_health_sidecar.config_manager import DEFAULT_WEBHOOK_EVENTS, SidecarSettings
from tor_health_sidecar.exit_verifier import VerificationResult
from tor_health_sidecar.health_server import HealthServer
from tor_health_sidecar.main import main
from tor_health_sidecar.webhook_notifier import EventKind, NotificationDispatcher


class ScriptedVerifier:
    def __init__(self, result: VerificationResult) -> None:
        self.result = result
        self.calls = 0

    async def check(self) -> VerificationResult:
        self.calls += 1
        return self.result


VERIFIED = VerificationResult(
    success=True,
    is_tor=True,
    ip="185.220.101.1",
    endpoint="https://check.torproject.org/api/ip",
    checked_at="2024-05-01T12:00:00Z",
)


def _server(port: FakeControlPort, verifier=None):
    notifier = RecordingNotifier()
    dispatcher = NotificationDispatcher(notifier, DEFAULT_WEBHOOK_EVENTS, timeout_seconds=1)
    server = HealthServer(
        SidecarSettings(),
        link=make_link(port),
        verifier=verifier or ScriptedVerifier(VERIFIED),
        dispatcher=dispatcher,
    )
    return server, notifier


async def _drain(server: HealthServer) -> None:
    await asyncio.gather(*list(server.dispatcher._tasks))


@pytest.mark.asyncio
async def test_ping_never_touches_tor():
    port = FakeControlPort()
    port.refuse = True
    server, _ = _server(port)

    async with TestClient(TestServer(server.app)) as client:
        response = await client.get("/ping")
        assert response.status == 200
        assert await response.json() == {"status": "OK"}

    assert port.connections == 0


@pytest.mark.asyncio
async def test_health_reports_readiness_and_transitions():
    port = FakeControlPort()
    server, notifier = _server(port)

    async with TestClient(TestServer(server.app)) as client:
        response = await client.get("/health")
        assert response.status == 200
        assert await response.json() == {"status": "READY"}

        port.replies["GETINFO"] = getinfo_lines(bootstrap=45)
        response = await client.get("/health")
        assert response.status == 503
        assert await response.json() == {"status": "NOT_READY", "error": "tor not ready"}

        response = await client.get("/health")
        assert response.status == 503
        await _drain(server)

    assert [event.kind for event in notifier.sent] == [
        EventKind.HEALTH_CHANGED,
        EventKind.BOOTSTRAP_FAILED,
    ]


@pytest.mark.asyncio
async def test_health_is_not_ready_when_control_port_is_down():
    port = FakeControlPort()
    port.refuse = True
    server, notifier = _server(port)

    async with TestClient(TestServer(server.app)) as client:
        response = await client.get("/health")
        assert response.status == 503
        await _drain(server)

    assert notifier.sent[0].kind is EventKind.BOOTSTRAP_FAILED
    assert notifier.sent[0].details.error


@pytest.mark.asyncio
async def test_ready_maps_verification_result():
    verifier = ScriptedVerifier(VERIFIED)
    server, _ = _server(FakeControlPort(), verifier=verifier)

    async with TestClient(TestServer(server.app)) as client:
        response = await client.get("/ready")
        assert response.status == 200
        body = await response.json()
        assert body["is_tor"] is True
        assert body["ip"] == "185.220.101.1"

        verifier.result = VerificationResult(success=False, checked_at="now", error="all endpoints failed: x")
        response = await client.get("/ready")
        assert response.status == 503
        body = await response.json()
        assert body["success"] is False
        assert "ip" not in body


@pytest.mark.asyncio
async def test_status_returns_diagnostics():
    server, _ = _server(FakeControlPort({"GETINFO": getinfo_lines(bootstrap=100, circuits=3)}))

    async with TestClient(TestServer(server.app)) as client:
        response = await client.get("/status")
        assert response.status == 200
        body = await response.json()

    assert body == {
        "status": "OK",
        "version": "0.4.8.10",
        "bootstrap_phase": 100,
        "circuit_established": True,
        "num_circuits": 3,
        "traffic": {"bytes_read": 1024, "bytes_written": 2048},
    }


@pytest.mark.asyncio
async def test_status_unavailable_when_link_fails():
    port = FakeControlPort()
    port.refuse = True
    server, _ = _server(port)

    async with TestClient(TestServer(server.app)) as client:
        response = await client.get("/status")
        assert response.status == 503
        body = await response.json()

    assert body["status"] == "ERROR"
    assert "127.0.0.1:9051" in body["error"]


@pytest.mark.asyncio
async def test_renew_sends_newnym_and_notifies_once():
    port = FakeControlPort({"GETINFO": getinfo_lines(circuits=5)})
    server, notifier = _server(port)

    async with TestClient(TestServer(server.app)) as client:
        response = await client.post("/renew")
        assert response.status == 200
        assert await response.json() == {"status": "OK", "message": "Signal NEWNYM sent"}
        await _drain(server)

    assert port.commands[0] == "SIGNAL NEWNYM"
    assert len(notifier.sent) == 1
    event = notifier.sent[0]
    assert event.kind is EventKind.CIRCUIT_RENEWED
    assert event.details.circuits == 5
    assert event.details.healthy is True


@pytest.mark.asyncio
async def test_renew_succeeds_without_notification_when_status_fails():
    port = FakeControlPort({"GETINFO": None})
    server, notifier = _server(port)

    async with TestClient(TestServer(server.app)) as client:
        response = await client.post("/renew")
        assert response.status == 200
        await _drain(server)

    assert notifier.sent == []


@pytest.mark.asyncio
async def test_renew_failure_returns_500():
    port = FakeControlPort({"SIGNAL": ["552 Unrecognized signal code"]})
    server, notifier = _server(port)

    async with TestClient(TestServer(server.app)) as client:
        response = await client.post("/renew")
        assert response.status == 500
        body = await response.json()
        assert "552" in body["error"]

        response = await client.get("/renew")
        assert response.status == 405

    assert notifier.sent == []


@pytest.mark.asyncio
async def test_metrics_exposes_request_counters():
    server, _ = _server(FakeControlPort())

    async with TestClient(TestServer(server.app)) as client:
        await client.get("/ping")
        await client.get("/status")
        response = await client.get("/metrics")
        assert response.status == 200
        assert response.content_type == "text/plain"
        text = await response.text()

    assert 'torarr_http_requests_total{path="/ping",method="GET",code="200"} 1' in text
    assert "torarr_tor_bootstrap_percent 100" in text
    assert "# TYPE torarr_webhook_duration_seconds histogram" in text


@pytest.mark.asyncio
async def test_shutdown_closes_link_and_notifier():
    port = FakeControlPort()
    server, notifier = _server(port)

    async with TestClient(TestServer(server.app)) as client:
        await client.get("/status")
        assert server.link.is_connected

    assert not server.link.is_connected
    assert notifier.closed


@pytest.mark.asyncio
async def test_main_returns_error_when_port_is_taken():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        blocker.bind(("0.0.0.0", 0))
        blocker.listen(1)
        taken = blocker.getsockname()[1]

        with patch("tor_health_sidecar.main.signal.signal") as install_handler:
            assert await main(["--port", str(taken)]) == 1

    assert install_handler.call_count == 2


@pytest.mark.asyncio
async def test_unrouted_requests_share_one_metrics_series():
    server, _ = _server(FakeControlPort())

    async with TestClient(TestServer(server.app)) as client:
        for index in range(50):
            response = await client.get(f"/scan-{index}")
            assert response.status == 404
        response = await client.get("/renew")
        assert response.status == 405

    assert server.metrics.get_value("torarr_http_requests_total", "unmatched", "GET", "404") == 50
    assert server.metrics.get_value("torarr_http_requests_total", "unmatched", "GET", "405") == 1
    assert server.metrics.get_histogram_count("torarr_http_request_duration_seconds", "unmatched", "GET", "404") == 50
    assert "/scan-7" not in server.metrics.render_prometheus()
