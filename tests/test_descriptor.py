import os

import pytest

from fto.constraints import PlacementConstraint, parse_constraint
from fto.descriptor import (
    HealthCheck,
    RestartPolicy,
    ServiceSpec,
    load_descriptor,
    load_inventory,
    parse_descriptor,
    parse_duration,
    parse_inventory,
    parse_memory,
)
from fto.errors import DescriptorError
from fto.placement import PlacementEngine, ReplicaSet

EXAMPLES = os.path.join(os.path.dirname(os.path.dirname(__file__)), "examples")


def test_elastic_stack_example_parses():
    d = load_descriptor(os.path.join(EXAMPLES, "stack-elastic.yml"))

    assert {s.name for s in d.services} == {"coordination", "master1", "master2", "master3", "data1", "data2", "kibana"}
    assert d.networks == ("esnet", "proxy")

    master = d.service("master1")
    assert master.role == "master"
    assert master.quorum == 2
    assert master.group == "es-masters"
    assert master.pinned_host == "node-1"
    assert master.memory_limit == 4 * 1024**3
    assert master.update_config.failure_action == "rollback"
    assert [(u.name, u.soft, u.hard) for u in master.ulimits] == [("memlock", -1, -1)]
    config = next(m for m in master.mounts if m.kind == "config" and m.target.endswith("elasticsearch.yml"))
    assert b"node.name: master1" in config.data
    assert master.healthcheck.argv[:2] == ["/bin/sh", "-c"]
    assert master.healthcheck.start_period == 45.0

    coord = d.service("coordination")
    assert coord.role == "coordinator"
    assert coord.replicas == 2
    assert coord.host_ports() == {(9200, "tcp")}
    assert not coord.quorum_bearing

    kibana = d.service("kibana")
    assert kibana.role == "edge-facing"
    assert kibana.restart_policy == RestartPolicy(condition="on-failure", delay=10.0, max_attempts=3)
    assert kibana.healthcheck.http_path == "/api/status"
    (rule,) = kibana.route_rules()
    assert rule.hosts == ("kibana-labs.example.com",)
    assert rule.port == 5601
    assert rule.requires_tls and rule.force_https
    assert rule.network == "proxy"
    assert kibana.networks == ("esnet", "proxy")


def test_inventory_example_loads():
    hosts = load_inventory(os.path.join(EXAMPLES, "inventory.yml"))
    assert [h.hostname for h in hosts] == ["node-1", "node-2", "node-3", "node-4", "node-5"]
    assert hosts[0].role == "manager"
    assert hosts[3].memory == 8 * 1024**3
    assert hosts[3].attributes()["node.labels.tier"] == "edge"


def test_elastic_stack_fits_the_example_inventory():
    d = load_descriptor(os.path.join(EXAMPLES, "stack-elastic.yml"))
    engine = PlacementEngine(ReplicaSet(), load_inventory(os.path.join(EXAMPLES, "inventory.yml")))

    result = engine.reconcile(d.services)

    by_service: dict[str, list[str]] = {}
    for p in result.placements:
        by_service.setdefault(p.service, []).append(p.host)
    assert by_service["master1"] == ["node-1"]
    assert by_service["data2"] == ["node-2"]
    # Pinned hosts carry only their pinned replicas.
    assert sorted(by_service["coordination"]) == ["node-4", "node-5"]
    assert by_service["kibana"][0] in ("node-4", "node-5")


def test_inventory_rejects_duplicate_hosts():
    with pytest.raises(DescriptorError, match="Duplicate host"):
        parse_inventory("hosts:\n  - hostname: a\n  - hostname: a\n")


def test_inline_config_and_short_port_syntax():
    d = parse_descriptor(
        """
services:
  api:
    image: api:1
    ports: ["8081:8080", "9000/udp"]
    configs: [app-conf]
configs:
  app-conf:
    content: "debug: true"
"""
    )
    api = d.service("api")
    assert [(p.published, p.target, p.protocol) for p in api.ports] == [(8081, 8080, "tcp"), (None, 9000, "udp")]
    assert api.mounts[0].target == "/app-conf"
    assert api.mounts[0].data == b"debug: true"
    assert api.role == "data"


def test_traefik_v2_router_labels():
    d = parse_descriptor(
        """
services:
  web:
    image: web:1
    labels:
      traefik.http.routers.web.rule: "Host(`a.example.com`, `B.example.com`)"
      traefik.http.services.web.loadbalancer.server.port: "3000"
      fto.route.transport: http
"""
    )
    (rule,) = d.service("web").route_rules()
    assert rule.hosts == ("a.example.com", "b.example.com")
    assert rule.port == 3000
    assert rule.transport == "http"
    assert rule.force_https is False


@pytest.mark.parametrize(
    "text,match",
    [
        ("services:\n  a:\n    deploy: {replicas: 1}\n", "no image"),
        ("services:\n  a:\n    image: x\n    labels: ['fto.role=leader']\n", "Unknown role"),
        ("services:\n  Bad_Name:\n    image: x\n", "Invalid service name"),
        ("services:\n  a:\n    image: x\n    configs: [missing]\n", "Unknown config"),
        ("services: [1, 2]\n", "services"),
        ("services:\n  a: {image: x\n", "Invalid YAML"),
        (
            "services:\n  a:\n    image: x\n    deploy:\n      placement:\n        constraints: ['node.color == red']\n",
            "Unknown constraint attribute",
        ),
    ],
)
def test_invalid_descriptors(text, match):
    with pytest.raises(DescriptorError, match=match):
        parse_descriptor(text)


def test_quorum_larger_than_group_is_rejected():
    text = """
services:
  m1:
    image: es
    labels: ["fto.quorum=3", "fto.quorum.group=masters"]
  m2:
    image: es
    labels: ["fto.quorum=3", "fto.quorum.group=masters"]
"""
    with pytest.raises(DescriptorError, match="needs 3 members but only declares 2") as exc:
        parse_descriptor(text)
    assert exc.value.context()["service"] == "m1"


def test_conflicting_quorum_sizes_are_rejected():
    text = """
services:
  m1:
    image: es
    labels: ["fto.quorum=1", "fto.quorum.group=masters"]
  m2:
    image: es
    labels: ["fto.quorum=2", "fto.quorum.group=masters"]
"""
    with pytest.raises(DescriptorError, match="conflicting quorum sizes"):
        parse_descriptor(text)


def test_continue_is_not_allowed_for_quorum_services():
    text = """
services:
  m:
    image: es
    deploy:
      replicas: 3
      labels: ["fto.quorum=2"]
      update_config: {failure_action: continue}
"""
    with pytest.raises(DescriptorError, match="continue"):
        parse_descriptor(text)


def test_durations_and_sizes():
    assert parse_duration("1m30s") == 90.0
    assert parse_duration("500ms") == 0.5
    assert parse_duration(12) == 12.0
    with pytest.raises(ValueError):
        parse_duration("soon")
    assert parse_memory("512m") == 512 * 1024**2
    assert parse_memory("1.5G") == int(1.5 * 1024**3)
    assert parse_memory(None) == 0


def test_restart_attempts_are_capped():
    assert RestartPolicy(max_attempts=0).effective_attempts(3) == 3
    assert RestartPolicy(max_attempts=5).effective_attempts(3) == 5
    assert RestartPolicy(condition="none", max_attempts=5).effective_attempts(3) == 0


def test_rollout_plan_uses_rollback_config_and_health_window():
    d = parse_descriptor(
        """
services:
  a:
    image: x
    healthcheck:
      test: ["CMD", "true"]
      interval: 10s
      timeout: 2s
      retries: 2
      start_period: 20s
    deploy:
      replicas: 4
      update_config: {parallelism: 0, order: start-first}
      rollback_config: {parallelism: 2, failure_action: pause}
"""
    )
    spec = d.service("a")
    plan = spec.rollout_plan()
    assert plan.batch_size() == 4
    assert plan.order == "start-first"
    assert plan.monitor == 20 + 3 * 12
    assert spec.healthcheck.argv == ["true"]
    assert spec.rollout_plan(rollback=True).batch_size() == 2


def test_fingerprint_ignores_version_and_survives_serialization():
    spec = parse_descriptor(
        "services:\n  a:\n    image: x\n    configs: [c]\nconfigs:\n  c:\n    content: hello\n"
    ).service("a")
    v3 = ServiceSpec.from_dict({**spec.to_dict(), "version": 3})
    assert v3.version == 3
    assert v3.fingerprint() == spec.fingerprint()
    assert v3.mounts[0].data == b"hello"


def test_constraints():
    c = parse_constraint("node.labels.zone != 'b'")
    assert c == PlacementConstraint("node.labels.zone", "!=", "b")
    assert c.matches({"node.labels.zone": "a"})
    assert c.matches({})
    assert not c.matches({"node.labels.zone": "b"})
    assert not c.pins_hostname
    assert parse_constraint("node.hostname==node-2").pins_hostname
    with pytest.raises(ValueError):
        parse_constraint("node.hostname ~ x")


def test_disabled_healthcheck():
    assert HealthCheck(test=("NONE",)).disabled
    assert not HealthCheck(http_path="/health").disabled
