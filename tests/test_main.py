"""Tests for the station HTTP and UI WebSocket surface."""

import time

import pytest
from conftest import JPEG_BYTES, FakeEngine, FakeRegistry, FakeRelay, abc_grant, make_settings
from fastapi.testclient import TestClient

from booth.main import create_app
from booth.pairing import REGISTRY_ERROR_MESSAGE, PairingCoordinator
from booth.sensors.camera import CapturedImage


def wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "condition not met in time"
        time.sleep(0.01)


@pytest.fixture
def station_parts():
    relay = FakeRelay()
    registry = FakeRegistry(grants=[abc_grant()])
    coordinator = PairingCoordinator(
        settings=make_settings(),
        registry=registry,
        relay=relay,
        engine=FakeEngine(),
        render_qr=True,
    )
    return coordinator, relay, registry


@pytest.fixture
def client(station_parts):
    coordinator, _, _ = station_parts
    with TestClient(create_app(coordinator=coordinator)) as test_client:
        yield test_client


def test_healthz_and_session_state(client) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "connection": "no_remote"}

    state = client.get("/session").json()
    assert state["session"]["session_id"] == "abc123"
    assert state["sequence"] == "idle"
    assert state["error"] is None


def test_debug_performance(client) -> None:
    body = client.get("/debug/performance").json()
    assert "cpu_percent" in body
    assert "memory_total_mb" in body


def test_pairing_qr_is_served(client) -> None:
    response = client.get("/pairing/qr.svg")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("image/svg+xml")
    assert "<svg" in response.text


def test_multi_capture_needs_remote(client) -> None:
    response = client.post("/capture/multi", json={"count": 2})
    assert response.status_code == 409


def test_multi_capture_rejects_bad_count(client) -> None:
    assert client.post("/capture/multi", json={"count": 0}).status_code == 422


def test_multi_capture_runs_in_background(client, station_parts) -> None:
    coordinator, relay, _ = station_parts
    client.portal.call(relay.deliver, "mobile_connected")

    response = client.post("/capture/multi", json={"count": 2})
    assert response.status_code == 202
    assert response.json() == {"status": "started", "count": 2}

    wait_for(lambda: coordinator.session.capture_count == 2 and not coordinator.multi_capture_active)
    latest = client.get("/capture/latest")
    assert latest.status_code == 200
    assert latest.headers["content-disposition"] == 'attachment; filename="photo-abc123-2.jpg"'


def test_latest_capture(client, station_parts) -> None:
    coordinator, _, _ = station_parts
    assert client.get("/capture/latest").status_code == 404

    coordinator.session.record_capture(CapturedImage(data=JPEG_BYTES, mime_type="image/jpeg", width=4, height=3))
    response = client.get("/capture/latest")
    assert response.status_code == 200
    assert response.content == JPEG_BYTES
    assert response.headers["content-type"] == "image/jpeg"


def test_new_session_failure_is_reported(client, station_parts) -> None:
    coordinator, _, registry = station_parts
    registry.grants.append(None)

    response = client.post("/session/new")
    assert response.status_code == 502
    body = response.json()
    assert body["message"] == REGISTRY_ERROR_MESSAGE
    assert body["state"]["session"] is None
    assert client.get("/pairing/qr.svg").status_code == 404

    response = client.post("/session/new")
    assert response.status_code == 200
    assert response.json()["state"]["error"] is None


def test_end_session_renews(client, station_parts) -> None:
    coordinator, _, _ = station_parts
    response = client.post("/session/end")
    assert response.status_code == 200
    assert response.json()["status"] == "ended"

    wait_for(lambda: coordinator.session is not None)
    assert coordinator.session.session_id != "abc123"


def test_ui_socket_streams_state(client, station_parts) -> None:
    _, relay, _ = station_parts
    with client.websocket_connect("/ws/ui") as ws:
        initial = ws.receive_json()
        assert initial["type"] == "state"
        assert initial["data"]["session"]["session_id"] == "abc123"

        client.portal.call(relay.deliver, "mobile_connected")
        update = ws.receive_json()
        assert update["type"] == "state"
        assert update["connection"] == "connected"


def test_multi_capture_reports_clamped_count(client, station_parts) -> None:
    coordinator, relay, _ = station_parts
    client.portal.call(relay.deliver, "mobile_connected")
    limit = coordinator.settings.capture.multi_capture_max_count

    response = client.post("/capture/multi", json={"count": limit + 40})
    assert response.status_code == 202
    assert response.json() == {"status": "started", "count": limit}

    wait_for(lambda: not coordinator.multi_capture_active, timeout=5.0)
    assert coordinator.session.capture_count == limit
