import base64

import pytest
from fastapi.testclient import TestClient

from fto.api import create_app

STACK = """
services:
  web:
    image: web:1
    deploy:
      replicas: 2
      resources:
        limits:
          memory: 512M
    labels:
      traefik.http.routers.web.rule: "Host(`web.example.com`)"
      traefik.http.services.web.loadbalancer.server.port: "8080"
      fto.route.transport: http
"""


def _basic_auth(user: str, password: str) -> dict:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


@pytest.fixture
def client(fleet):
    with TestClient(create_app(fleet, start_loops=False)) as c:
        yield c


def _apply(client, fleet, text=STACK):
    r = client.post("/descriptors", json={"text": text})
    assert r.status_code == 200, r.text
    for row in r.json():
        fleet.rollouts.wait(row["service"], 10)
    return r.json()


def test_submit_descriptor_and_inspect(client, fleet):
    assert _apply(client, fleet) == [{"service": "web", "version": 1, "changed": True, "rollout": True}]

    (svc,) = client.get("/services").json()
    assert (svc["name"], svc["version"], svc["healthy"], svc["rollout_state"]) == ("web", 1, 2, "stable")

    (ver,) = client.get("/services/web/versions").json()
    assert ver["state"] == "active"
    assert ver["image"] == "web:1"

    replicas = client.get("/replicas", params={"service": "web"}).json()
    assert [r["state"] for r in replicas] == ["healthy", "healthy"]

    hosts = client.get("/hosts").json()
    assert [h["hostname"] for h in hosts] == ["node-1", "node-2", "node-3"]
    assert sum(h["memory_used"] for h in hosts) == 2 * 512 * 1024 * 1024

    (route,) = client.get("/routes").json()
    assert route["host"] == "web.example.com"
    assert len(route["backends"]) == 2

    assert client.get("/rollouts/web").json()["to_version"] == 1
    assert [r["service"] for r in client.get("/rollouts").json()] == ["web"]


def test_resubmitting_the_same_descriptor_is_a_no_op(client, fleet):
    _apply(client, fleet)

    (row,) = _apply(client, fleet)

    assert (row["version"], row["changed"], row["rollout"]) == (1, False, False)


def test_operator_actions_report_conflicts(client, fleet):
    _apply(client, fleet)

    assert client.post("/rollouts/web/resume").status_code == 409
    # Only one version exists, so there is nothing to go back to.
    assert client.post("/rollouts/web/rollback").status_code == 404
    assert client.get("/rollouts/nope").status_code == 404
    assert client.get("/services/nope/versions").status_code == 404


def test_invalid_descriptor_is_rejected(client):
    r = client.post("/descriptors", json={"text": "services:\n  web:\n    deploy: {replicas: 1}\n"})

    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "DescriptorError"


def test_ensure_certificate_without_authority(client):
    r = client.post("/certificates/web.example.com/ensure")

    assert r.status_code == 409
    assert client.get("/certificates").json() == []


def test_remove_service_stops_its_replicas(client, fleet, runtime):
    _apply(client, fleet)

    r = client.delete("/services/web")

    assert r.json() == {"service": "web", "stopped": 2}
    assert client.get("/services").json() == []
    assert runtime.running("web:1") == []
    assert client.delete("/services/web").status_code == 404


def test_events_endpoint(client, fleet):
    _apply(client, fleet)

    events = client.get("/events", params={"limit": 500}).json()

    assert any(e["message"].startswith("Descriptor submitted") for e in events)
    assert all(e["level"] == "WARN" for e in client.get("/events", params={"level": "WARN"}).json())


def test_mutations_require_basic_auth_when_configured(fleet, configure):
    configure(admin_user="admin", admin_password="pw")

    with TestClient(create_app(fleet, start_loops=False)) as client:
        assert client.post("/descriptors", json={"text": STACK}).status_code == 401
        assert client.post("/descriptors", json={"text": STACK}, headers=_basic_auth("admin", "nope")).status_code == 401
        r = client.post("/descriptors", json={"text": STACK}, headers=_basic_auth("admin", "pw"))
        assert r.status_code == 200
        fleet.rollouts.wait("web", 10)
        # Reads stay open.
        assert client.get("/services").status_code == 200
        assert client.get("/health").json() == {"status": "ok"}
