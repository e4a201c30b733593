import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import event_messages

from fto.certs import ChallengeResponder
from fto.descriptor import RouteRule
from fto.edge import build_edge_app
from fto.gateway import EdgeRouter
from fto.placement import Placement, ReplicaSet, ReplicaState
from fto.runtime import RuntimeState


@pytest.fixture
def replicas():
    return ReplicaSet()


@pytest.fixture
def router(replicas):
    r = EdgeRouter(replicas, RuntimeState())
    r.set_rules(
        [
            RouteRule(hosts=("app.example.com",), service="app", port=8080, transport="http", force_https=False),
            RouteRule(hosts=("secure.example.com",), service="secure", port=443),
        ]
    )
    return r


@pytest.fixture
def responder():
    return ChallengeResponder()


def _backend(replicas, service="app"):
    inst = replicas.create(Placement(service, 1, 0, "node-1"))
    replicas.bind_container(inst.id, "c1", "10.9.0.5")
    return replicas.transition(inst.id, ReplicaState.HEALTHY)


def _client(router, responder, handler, scheme="http"):
    upstream = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TestClient(build_edge_app(router, responder, scheme, client=upstream), follow_redirects=False)


def _never(request):
    raise AssertionError(f"unexpected upstream call to {request.url}")


def test_proxies_to_a_healthy_backend(router, replicas, responder):
    inst = _backend(replicas)
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201, json={"ok": True}, headers={"x-app": "1"})

    client = _client(router, responder, handler)
    r = client.post(
        "http://app.example.com/items?q=1", content=b'{"name":"x"}', headers={"content-type": "application/json"}
    )

    assert r.status_code == 201
    assert r.json() == {"ok": True}
    assert r.headers["x-app"] == "1"
    assert r.headers["x-fto-backend"] == inst.id
    (upstream,) = seen
    assert str(upstream.url) == "http://10.9.0.5:8080/items?q=1"
    assert upstream.headers["x-forwarded-proto"] == "http"
    assert upstream.headers["x-forwarded-host"] == "app.example.com"
    assert upstream.content == b'{"name":"x"}'


def test_challenge_is_served_on_plaintext(router, responder):
    responder.publish("tok", "tok.thumb")
    client = _client(router, responder, _never)

    r = client.get("http://kibana-labs.example.com/.well-known/acme-challenge/tok")
    assert r.status_code == 200
    assert r.text == "tok.thumb"

    assert client.get("http://kibana-labs.example.com/.well-known/acme-challenge/other").status_code == 404


def test_redirects_plaintext_for_tls_routes(router, responder):
    client = _client(router, responder, _never)

    r = client.get("http://secure.example.com/login")

    assert r.status_code == 308
    assert r.headers["location"] == "https://secure.example.com/login"


def test_no_backends_is_503_with_retry_after(router, responder):
    client = _client(router, responder, _never)

    r = client.get("http://app.example.com/")

    assert r.status_code == 503
    assert r.headers["retry-after"] == "5"


def test_unknown_host_is_404(router, responder):
    assert _client(router, responder, _never).get("http://nope.example.com/").status_code == 404


def test_tls_listener_refuses_route_without_certificate(router, replicas, responder):
    _backend(replicas, "secure")
    client = _client(router, responder, _never, scheme="https")

    r = client.get("http://secure.example.com/")

    assert r.status_code == 421


def test_upstream_failures_map_to_gateway_errors(router, replicas, responder):
    _backend(replicas)

    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    def stall(request):
        raise httpx.ReadTimeout("timed out", request=request)

    assert _client(router, responder, refuse).get("http://app.example.com/").status_code == 502
    assert _client(router, responder, stall).get("http://app.example.com/").status_code == 504


def test_every_proxied_request_leaves_an_access_record(router, replicas, responder):
    inst = _backend(replicas)
    statuses = iter([200, 404])

    def handler(request):
        return httpx.Response(next(statuses))

    client = _client(router, responder, handler)
    client.get("http://app.example.com/a")
    client.get("http://app.example.com/b?x=1")

    records = [m for m in event_messages("INFO") if m.startswith("GET app.example.com")]
    assert len(records) == 2
    second, first = records  # newest first
    assert first.startswith(f"GET app.example.com/a -> {inst.id} at 10.9.0.5:8080 200 ")
    assert second.startswith(f"GET app.example.com/b?x=1 -> {inst.id} at 10.9.0.5:8080 404 ")
    assert first.endswith("ms")


def test_access_records_can_be_switched_off(router, replicas, responder, configure):
    configure(edge_access_log=False)
    _backend(replicas)

    _client(router, responder, lambda request: httpx.Response(200)).get("http://app.example.com/")

    assert not [m for m in event_messages() if m.startswith("GET app.example.com")]
