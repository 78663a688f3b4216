import time

import pytest
from fastapi.testclient import TestClient

import main
from bluegreen import db
from bluegreen.events import DbEventSink
from bluegreen.orchestrator import DeploymentOrchestrator
from bluegreen.registry import ImageRegistry
from bluegreen.runtime import RuntimeState
from bluegreen.settings import Settings
from bluegreen.slots import HealthVerdict, Slot
from tests.fakes import FakeControlPlane, ScriptedProbe

AUTH = ("ops", "s3cret")


@pytest.fixture
def api(monkeypatch, state_db):
    cfg = Settings(
        db_path=state_db,
        health_timeout_s=0.2,
        health_interval_s=0.01,
        admin_user=AUTH[0],
        admin_password=AUTH[1],
        image_repository="registry.example.com/shop/payments",
    )
    monkeypatch.setattr(main, "settings", cfg)
    monkeypatch.setattr(main, "runtime", RuntimeState())
    cp = FakeControlPlane({"payments": Slot.A})
    probe = ScriptedProbe(HealthVerdict.healthy())
    orch = DeploymentOrchestrator(cp, cfg, probe=probe, events=DbEventSink(listener=main._on_event))
    main.app.dependency_overrides[main.get_orchestrator] = lambda: orch
    with TestClient(main.app) as client:
        yield client, cp, probe
    main.app.dependency_overrides.clear()


def _wait_for_state(client, release_id, states, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        body = client.get(f"/releases/{release_id}", auth=AUTH).json()
        # Final status (with error details) lands after the last transition event.
        if body["state"] in states and (body["state"] == "done" or body.get("error")):
            return body
        time.sleep(0.02)
    raise AssertionError(f"release {release_id} never reached {states}")


def test_health_needs_no_auth(api):
    client, _, _ = api
    assert client.get("/health").json() == {"status": "healthy"}


def test_endpoints_require_basic_auth(api):
    client, _, _ = api
    assert client.get("/events").status_code == 401
    assert client.get("/events", auth=("ops", "wrong")).status_code == 401
    assert client.get("/events", auth=AUTH).status_code == 200


def test_route_bootstrap_and_lookup(api):
    client, cp, _ = api

    r = client.post("/routes", json={"route": "mail", "initial_slot": "b"}, auth=AUTH)
    assert r.status_code == 200
    assert r.json() == {"route": "mail", "active_slot": "b"}

    r = client.get("/routes/mail", auth=AUTH)
    body = r.json()
    assert body["active_slot"] == "b"
    assert body["idle_slot"] == "a"
    assert body["endpoints"]["a"] == "http://mail-a.test/health"
    assert body["lease_holder"] is None

    assert client.get("/routes/unknown", auth=AUTH).status_code == 404
    assert client.post("/routes", json={"route": "mail", "initial_slot": "green"}, auth=AUTH).status_code == 422


def test_release_wait_runs_to_completion(api):
    client, cp, _ = api

    r = client.post(
        "/releases",
        json={"route": "payments", "build_id": "build-42", "wait": True},
        auth=AUTH,
    )

    assert r.status_code == 200
    body = r.json()
    assert body["state"] == "done"
    assert body["active_slot"] == "b"
    assert body["artifact_ref"] == "registry.example.com/shop/payments:build-42"
    assert [e["to_state"] for e in body["trace"]][-1] == "done"
    assert cp.routes["payments"] is Slot.B

    rel = client.get(f"/releases/{body['release_id']}", auth=AUTH).json()
    assert rel["state"] == "done"
    assert rel["active_slot"] == "b"


def test_release_wait_reports_abort(api):
    client, cp, probe = api
    probe.verdicts = [HealthVerdict.unhealthy("HTTP 500")]

    body = client.post(
        "/releases", json={"route": "payments", "build_id": "build-43", "wait": True}, auth=AUTH
    ).json()

    assert body["state"] == "reverted"
    assert body["error"]["code"] == "health_check_failed"
    assert cp.routes["payments"] is Slot.A


def test_background_release(api):
    client, cp, _ = api

    r = client.post("/releases", json={"route": "payments", "build_id": "build-44"}, auth=AUTH)
    assert r.status_code == 202
    release_id = r.json()["id"]

    body = _wait_for_state(client, release_id, {"done"})
    assert body["target_slot"] == "b"
    assert cp.routes["payments"] is Slot.B

    listing = client.get("/releases", auth=AUTH).json()
    assert [x["id"] for x in listing["releases"]] == [release_id]

    events = client.get("/events", params={"release_id": release_id}, auth=AUTH).json()
    assert events[0]["to_state"] == "done"


def test_invalid_release_is_422(api):
    client, cp, _ = api
    r = client.post(
        "/releases",
        json={"route": "payments", "build_id": "b1", "artifact_ref": "<repo>/svc:latest"},
        auth=AUTH,
    )
    assert r.status_code == 422
    assert r.json()["detail"]["code"] == "invalid_release"
    assert cp.calls == []


def test_busy_route_is_409(api):
    client, _, _ = api
    assert db.acquire_lease("payments", "someone-else", ttl_s=60)

    r = client.post("/releases", json={"route": "payments", "build_id": "b1"}, auth=AUTH)
    assert r.status_code == 409

    r = client.post("/releases", json={"route": "payments", "build_id": "b1", "wait": True}, auth=AUTH)
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "release_in_progress"


def test_cancel_running_release(api):
    client, cp, _ = api
    slow = Settings(db_path=main.settings.db_path, health_timeout_s=30.0, health_interval_s=0.05)
    orch = DeploymentOrchestrator(
        cp, slow, probe=ScriptedProbe(HealthVerdict.unknown("starting")), events=DbEventSink(listener=main._on_event)
    )
    main.app.dependency_overrides[main.get_orchestrator] = lambda: orch

    r = client.post(
        "/releases",
        json={"route": "payments", "build_id": "b2", "artifact_ref": "shop/payments:b2"},
        auth=AUTH,
    )
    release_id = r.json()["id"]

    assert client.post(f"/releases/{release_id}/cancel", auth=AUTH).status_code == 200
    body = _wait_for_state(client, release_id, {"reverted", "failed"})
    assert body["state"] == "reverted"
    assert body["error"]["code"] == "release_cancelled"
    assert cp.routes["payments"] is Slot.A

    assert client.post("/releases/nope/cancel", auth=AUTH).status_code == 404
    assert client.get("/releases/nope", auth=AUTH).status_code == 404


def test_wait_path_forgets_cancel_switch_when_run_crashes(api):
    client, cp, _ = api

    class Crashing(DeploymentOrchestrator):
        def run(self, release, cancel=None, prepared=False):
            raise RuntimeError("boom")

    main.app.dependency_overrides[main.get_orchestrator] = lambda: Crashing(cp, main.settings, probe=ScriptedProbe())

    with pytest.raises(RuntimeError):
        client.post("/releases", json={"route": "payments", "build_id": "b1", "wait": True}, auth=AUTH)
    assert main.runtime.cancel_events == {}


def test_background_release_verifies_artifact_once(api):
    client, cp, _ = api
    verified = []

    class CountingRegistry(ImageRegistry):
        def verify(self, artifact_ref):
            verified.append(artifact_ref)

    orch = DeploymentOrchestrator(
        cp,
        main.settings,
        probe=ScriptedProbe(HealthVerdict.healthy()),
        registry=CountingRegistry(main.settings.image_repository),
        events=DbEventSink(listener=main._on_event),
    )
    main.app.dependency_overrides[main.get_orchestrator] = lambda: orch

    release_id = client.post("/releases", json={"route": "payments", "build_id": "b7"}, auth=AUTH).json()["id"]

    _wait_for_state(client, release_id, {"done"})
    assert verified == ["registry.example.com/shop/payments:b7"]
