import pytest

from fto.descriptor import RouteRule
from fto.gateway import EdgeRouter, normalize_host
from fto.placement import Placement, ReplicaSet, ReplicaState
from fto.runtime import RuntimeState

PLAIN = RouteRule(hosts=("app.example.com",), service="app", port=8080, transport="http", force_https=False)


@pytest.fixture
def replicas():
    return ReplicaSet()


@pytest.fixture
def router(replicas):
    r = EdgeRouter(replicas, RuntimeState())
    r.set_rules([PLAIN])
    return r


def _healthy_replica(replicas, service, ordinal, host="node-1"):
    inst = replicas.create(Placement(service, 1, ordinal, host))
    replicas.bind_container(inst.id, f"c-{inst.id}", f"10.9.0.{ordinal + 1}")
    return replicas.transition(inst.id, ReplicaState.HEALTHY)


def test_round_robin_across_healthy_backends(router, replicas):
    a = _healthy_replica(replicas, "app", 0)
    b = _healthy_replica(replicas, "app", 1)

    picks = [router.resolve("app.example.com", "http").backend.replica_id for _ in range(4)]

    assert sorted(picks[:2]) == sorted([a.id, b.id])
    assert picks[:2] == picks[2:]
    assert router.resolve("app.example.com", "http").backend.url.startswith("http://10.9.0.")


def test_unhealthy_replicas_leave_the_table(router, replicas):
    a = _healthy_replica(replicas, "app", 0)
    b = _healthy_replica(replicas, "app", 1)

    replicas.transition(a.id, ReplicaState.UNHEALTHY)

    assert [x.replica_id for x in router.table.lookup("app.example.com").backends] == [b.id]
    replicas.terminate(b.id)
    decision = router.resolve("app.example.com", "http")
    assert (decision.kind, decision.status_code) == ("unavailable", 503)


def test_tables_are_replaced_not_mutated(router, replicas):
    before = router.table
    _healthy_replica(replicas, "app", 0)

    assert router.table is not before
    assert router.table.generation > before.generation
    assert before.lookup("app.example.com").backends == ()


def test_unknown_host_and_plain_http_over_tls(router):
    assert router.resolve("nope.example.com", "http").status_code == 404
    refused = router.resolve("app.example.com", "https")
    assert (refused.kind, refused.status_code) == ("refused", 421)


def test_forced_https_redirects_plaintext(replicas):
    router = EdgeRouter(replicas, RuntimeState())
    router.set_rules([RouteRule(hosts=("secure.example.com",), service="web", port=80)])

    decision = router.resolve("Secure.Example.com:80", "http", "/login?next=/")

    assert (decision.kind, decision.status_code) == ("redirect", 308)
    assert decision.location == "https://secure.example.com/login?next=/"


def test_challenge_path_is_answered_before_routing(router):
    decision = router.resolve("unrouted.example.com", "http", "/.well-known/acme-challenge/abc123")

    assert decision.kind == "challenge"
    assert decision.token == "abc123"


def test_wildcard_routes(replicas):
    router = EdgeRouter(replicas, RuntimeState())
    router.set_rules(
        [
            RouteRule(hosts=("*.apps.example.com",), service="apps", port=80, transport="http", force_https=False),
            RouteRule(hosts=("api.apps.example.com",), service="api", port=80, transport="http", force_https=False),
        ]
    )

    assert router.table.lookup("api.apps.example.com").rule.service == "api"
    assert router.table.lookup("web.apps.example.com").rule.service == "apps"
    assert router.table.lookup("a.b.apps.example.com") is None


def test_duplicate_host_keeps_first_service(replicas):
    router = EdgeRouter(replicas, RuntimeState())
    router.set_rules(
        [
            RouteRule(hosts=("x.example.com",), service="beta", port=80, transport="http"),
            RouteRule(hosts=("x.example.com",), service="alpha", port=80, transport="http"),
        ]
    )

    assert router.table.lookup("x.example.com").rule.service == "alpha"


def test_describe(router, replicas):
    _healthy_replica(replicas, "app", 0)

    (row,) = router.describe()

    assert row["host"] == "app.example.com"
    assert row["tls_ready"] is False
    assert row["backends"] == ["http://10.9.0.1:8080"]


def test_normalize_host():
    assert normalize_host("Example.COM:8443") == "example.com"
    assert normalize_host("example.com.") == "example.com"
    assert normalize_host("[::1]:80") == "[::1]"
    assert normalize_host("") == ""


def test_backend_address_comes_from_the_route_network(replicas):
    router = EdgeRouter(replicas, RuntimeState())
    router.set_rules([RouteRule(hosts=("kibana.example.com",), service="kibana", port=5601, transport="http", force_https=False, network="proxy")])
    inst = replicas.create(Placement("kibana", 1, 0, "node-1"))
    replicas.bind_container(inst.id, "c1", "fto-kibana-0", networks=(("esnet", "172.20.0.7"), ("proxy", "172.21.0.7")))
    replicas.transition(inst.id, ReplicaState.HEALTHY)

    assert router.resolve("kibana.example.com", "http").backend.url == "http://172.21.0.7:5601"

    # A route naming a network the replica never joined falls back to its name.
    router.set_rules([RouteRule(hosts=("kibana.example.com",), service="kibana", port=5601, transport="http", force_https=False, network="other")])
    assert router.resolve("kibana.example.com", "http").backend.url == "http://fto-kibana-0:5601"
