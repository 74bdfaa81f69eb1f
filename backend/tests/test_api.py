import pytest
from fastapi.testclient import TestClient

from conftest import DEVICE
from main import app

PORT_URL = f"/api/ports/{DEVICE}/1"


@pytest.fixture
def client(api_env):
    # No context manager: lifespan (background loops, real seed path) stays off
    return TestClient(app)


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_port_listing(client):
    response = client.get("/api/ports/", params={"user_id": "alice", "station_id": 1})
    assert response.status_code == 200
    ports = response.json()
    assert [(p["device_id"], p["port_number"]) for p in ports] == [(DEVICE, 1), (DEVICE, 2)]
    assert {p["state"] for p in ports} == {"available"}
    assert ports[1]["is_premium"] is True


def test_unknown_port_view(client):
    assert client.get("/api/ports/NOPE/9").status_code == 404


def test_charging_round_trip(client):
    acquired = client.post(f"{PORT_URL}/acquire", json={"user_id": "alice"})
    assert acquired.status_code == 200
    session_id = acquired.json()["id"]

    taken = client.post(f"{PORT_URL}/acquire", json={"user_id": "bob"})
    assert taken.status_code == 409
    assert taken.json()["detail"]["code"] == "port_unavailable"

    view = client.get(PORT_URL, params={"user_id": "alice"}).json()
    assert view["state"] == "owned_by_caller"
    assert view["session_id"] == session_id

    ingest = client.post("/api/telemetry/consumption", json={
        "device_id": DEVICE, "port_number": 1, "watts": 12, "interval_s": 1800,
    })
    assert ingest.status_code == 200
    assert ingest.json()["delta_mah"] == pytest.approx(500)

    quota = client.get("/api/quota/alice").json()
    assert quota["remaining_mah"] == pytest.approx(1500)

    active = client.get("/api/sessions/active", params={"user_id": "alice"}).json()
    assert [s["session_id"] for s in active] == [session_id]

    not_owner = client.post(f"{PORT_URL}/release", json={"user_id": "bob"})
    assert not_owner.status_code == 403

    released = client.post(f"{PORT_URL}/release", json={"user_id": "alice"})
    assert released.status_code == 200
    body = released.json()
    assert body["forced"] is False
    assert body["session"]["cost"] == pytest.approx(125.0)

    detail = client.get(f"/api/sessions/{session_id}").json()
    assert detail["close_reason"] == "released"
    assert client.get("/api/sessions/active", params={"user_id": "alice"}).json() == []

    usage = client.get("/api/sessions/usage/alice").json()
    assert usage["session_count"] == 1
    assert usage["total_energy_mah"] == pytest.approx(500)


def test_quota_exhausted_response_carries_guidance(client):
    client.post(f"{PORT_URL}/acquire", json={"user_id": "alice"})
    client.post("/api/telemetry/consumption", json={
        "device_id": DEVICE, "port_number": 1, "watts": 12, "interval_s": 7200,
    })

    response = client.post(f"/api/ports/{DEVICE}/2/acquire", json={"user_id": "alice"})
    assert response.status_code == 402
    detail = response.json()["detail"]
    assert detail["code"] == "quota_exhausted"
    assert detail["remaining"] == 0
    assert detail["suggestion"]


def test_extensions(client):
    pricing = client.get("/api/quota/pricing").json()
    assert pricing["direct_purchase"]["extension_amount_mah"] == 1000
    assert pricing["borrow_next_day"]["penalty_percentage"] == 20

    too_small = client.post("/api/quota/extensions", json={
        "user_id": "alice", "type": "borrow_next_day", "amount_mah": 50,
    })
    assert too_small.status_code == 400
    assert too_small.json()["detail"]["min"] == 100
    assert too_small.json()["detail"]["max"] == 5000

    borrowed = client.post("/api/quota/extensions", json={
        "user_id": "alice", "type": "borrow_next_day", "amount_mah": 500,
    })
    assert borrowed.status_code == 200
    assert borrowed.json()["transaction"]["penalty_mah"] == pytest.approx(100)

    history = client.get("/api/quota/alice/extensions").json()
    assert len(history) == 1
    assert client.get("/api/quota/alice").json()["borrowed_pending_mah"] == pytest.approx(600)


def test_unknown_user(client):
    assert client.get("/api/quota/mallory").status_code == 404
    response = client.post(f"{PORT_URL}/acquire", json={"user_id": "mallory"})
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "subscription_not_found"


def test_status_reports_monitor_sources(client):
    body = client.get("/api/status").json()
    assert set(body["monitor"]["sources"]) == {"status", "consumption", "sessions"}
