from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from backend.main import app, get_db, get_session_factory
from shared.models import Journey
from shared.timeutils import utcnow


@pytest.fixture
def client(session_factory):
    def override_db():
        with session_factory() as s:
            yield s

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_healthz(client):
    assert client.get("/healthz").json() == {"ok": True}


def test_dbping(client):
    assert client.get("/dbping").json() == {"db": "ok"}


def test_onboarding_records_initial_mileage(client):
    r = client.post("/vehicles", json={"plate": "xyz9a87", "model": "Van", "initial_km": 12000})
    assert r.status_code == 201
    vehicle = r.json()
    assert vehicle["plate"] == "XYZ9A87"

    mileage = client.get(f"/vehicles/{vehicle['id']}/mileage").json()
    assert mileage["current_km"] == 12000
    assert mileage["entries"][0]["source"] == "manual"

    dup = client.post("/vehicles", json={"plate": "XYZ9A87"})
    assert dup.status_code == 409


def test_odometer_readings_from_other_flows(client, fleet):
    r = client.post(f"/vehicles/{fleet.vehicle_id}/odometer", json={"km": 2500, "source": "fuel_up", "origin_id": "F-1"})
    assert r.status_code == 201
    assert r.json() == {"recorded": True, "current_km": 2500}

    r = client.post(f"/vehicles/{fleet.vehicle_id}/odometer", json={"km": 2400, "source": "maintenance"})
    assert r.json()["current_km"] == 2500

    assert client.post(f"/vehicles/{fleet.vehicle_id}/odometer", json={"km": 10, "source": "journey"}).status_code == 422
    assert client.post("/vehicles/9999/odometer", json={"km": 10, "source": "manual"}).status_code == 404


def test_start_and_finish_journey(client, fleet):
    body = {"vehicle_id": fleet.vehicle_id, "operator_id": fleet.driver_id, "supervisor_id": fleet.supervisor_id, "start_km": 1000}
    r = client.post("/journeys", json=body)
    assert r.status_code == 201
    journey = r.json()
    assert journey["end_time"] is None

    assert client.post("/journeys", json=body).status_code == 409
    assert [j["id"] for j in client.get("/journeys", params={"open": True}).json()] == [journey["id"]]

    r = client.post(f"/journeys/{journey['id']}/finish", json={"actor_id": fleet.driver2_id, "end_km": 1100})
    assert r.status_code == 403

    r = client.post(f"/journeys/{journey['id']}/finish", json={"actor_id": fleet.driver_id, "end_km": 990})
    assert r.status_code == 400

    r = client.post(f"/journeys/{journey['id']}/finish", json={"actor_id": fleet.driver_id, "end_km": 1100})
    assert r.status_code == 200
    assert r.json()["distance"] == 100
    assert client.get(f"/vehicles/{fleet.vehicle_id}/mileage").json()["current_km"] == 1100


def test_reconcile_trigger_acknowledges_and_closes(client, fleet, make_journey, session_factory):
    jid = make_journey(fleet.vehicle_id, fleet.driver_id, utcnow() - timedelta(hours=20), 1000)

    r = client.post("/journeys/reconcile")

    assert r.status_code == 202
    assert set(r.json()) == {"message", "timestamp"}
    with session_factory() as s:
        j = s.get(Journey, jid)
        assert not j.is_open
        assert j.end_mileage == 1000


def test_stuck_journeys_listed(client, fleet, make_journey):
    jid = make_journey(
        fleet.vehicle_id, fleet.driver_id, utcnow() - timedelta(days=3), 1000,
        auto_close_attempt_count=3, auto_close_last_error="boom",
    )

    stuck = client.get("/journeys/stuck").json()

    assert [j["id"] for j in stuck] == [jid]
    assert stuck[0]["auto_close_last_error"] == "boom"
