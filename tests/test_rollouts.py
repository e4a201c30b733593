import pytest

from conftest import deploy, event_messages, make_spec

from fto.descriptor import Descriptor, RestartPolicy, UpdateConfig, parse_descriptor
from fto.errors import InvalidRolloutTransition, QuorumViolation
from fto.placement import ReplicaState
from fto.rollouts import RolloutState, check_quorum

MASTERS = """
services:
  master:
    image: es:{version}
    deploy:
      replicas: 3
      placement:
        max_replicas_per_node: 1
      labels:
        - "fto.role=master"
        - "fto.quorum={quorum}"
      update_config:
        parallelism: 3
"""


def _masters(version, quorum=2):
    return parse_descriptor(MASTERS.format(version=version, quorum=quorum)).service("master")


def _healthy(fleet, service):
    return [r for r in fleet.replicas.snapshot(service) if r.state == ReplicaState.HEALTHY]


def _watch_healthy(fleet, service):
    """Record the healthy count of ``service`` after every replica change."""
    counts = []
    fleet.replicas.add_listener(lambda _inst: counts.append(len(_healthy(fleet, service))))
    return counts


def test_check_quorum():
    check_quorum("m", "m", healthy=3, quorum=2, take_down=1)
    check_quorum("m", "m", healthy=1, quorum=2, take_down=0)
    with pytest.raises(QuorumViolation) as exc:
        check_quorum("m", "masters", healthy=3, quorum=2, take_down=2)
    assert (exc.value.group, exc.value.healthy, exc.value.requested) == ("masters", 3, 2)


def test_first_rollout_becomes_stable(fleet, runtime):
    spec = deploy(fleet, make_spec("web", replicas=3))

    st = fleet.rollouts.status("web")
    assert st.state == RolloutState.STABLE.value
    assert (st.from_version, st.to_version) == (None, 1)
    assert len(_healthy(fleet, "web")) == 3
    assert len(runtime.running("web:1")) == 3
    assert fleet.registry.state("web", spec.version) == "active"


def test_quorum_role_refuses_batches_larger_than_one(fleet, runtime):
    deploy(fleet, _masters(1))
    assert len(_healthy(fleet, "master")) == 3

    counts = _watch_healthy(fleet, "master")
    deploy(fleet, _masters(2))

    st = fleet.rollouts.status("master")
    assert st.state == RolloutState.STABLE.value
    assert st.batch == 3
    assert min(counts) >= 2
    assert {r.version for r in fleet.replicas.snapshot("master")} == {2}
    assert any(m.startswith("Refused batch") for m in event_messages("WARN"))


def test_dead_member_is_replaced_first_without_breaking_quorum(fleet, runtime):
    deploy(fleet, _masters(1))
    victim = fleet.replicas.snapshot("master")[1]
    runtime.kill(victim.container_id)
    fleet.health.observe(fleet.replicas.get(victim.id))

    # The two survivors keep serving.
    assert len(_healthy(fleet, "master")) == 2
    assert fleet.replicas.get(victim.id).state == ReplicaState.UNHEALTHY

    counts = _watch_healthy(fleet, "master")
    deploy(fleet, _masters(2))

    assert min(counts) >= 2
    assert fleet.rollouts.status("master").state == RolloutState.STABLE.value
    assert len(_healthy(fleet, "master")) == 3
    assert victim.container_id in runtime.stopped


def test_quorum_that_cannot_be_kept_pauses_without_touching_replicas(fleet, runtime):
    deploy(fleet, _masters(1, quorum=3))

    deploy(fleet, _masters(2, quorum=3))

    st = fleet.rollouts.status("master")
    assert st.state == RolloutState.PAUSED.value
    assert st.error["cause"]["error"] == "QuorumViolation"
    assert {r.version for r in _healthy(fleet, "master")} == {1}
    assert len(_healthy(fleet, "master")) == 3
    assert runtime.stopped == []


def _app(image, failure_action):
    return make_spec(
        "app",
        image=image,
        replicas=3,
        update_config=UpdateConfig(parallelism=1, failure_action=failure_action),
        restart_policy=RestartPolicy(delay=1.0, max_attempts=2),
    )


def test_failed_batch_rolls_every_replica_back(fleet, runtime):
    deploy(fleet, _app("app:1", "rollback"))
    # Batch 2 of 3 never becomes healthy.
    runtime.crashing.add(("app:2", 1))

    v2 = deploy(fleet, _app("app:2", "rollback"))

    st = fleet.rollouts.status("app")
    assert st.state == RolloutState.STABLE.value
    assert st.to_version == 1
    assert st.error["cause"]["error"] == "HealthCheckFailed"
    live = fleet.replicas.snapshot("app")
    assert len(live) == 3
    assert {r.version for r in live} == {1}
    assert all(r.state == ReplicaState.HEALTHY for r in live)
    assert runtime.running("app:2") == []
    assert fleet.registry.state("app", v2.version) == "failed"
    assert fleet.registry.active("app").version == 1
    assert any("Rolling back to v1" in m for m in event_messages())


def test_reapplying_the_rolled_back_spec_changes_nothing(fleet, runtime):
    deploy(fleet, _app("app:1", "rollback"))
    runtime.crashing.add(("app:2", 1))
    deploy(fleet, _app("app:2", "rollback"))
    assert fleet.rollouts.status("app").to_version == 1
    before = sorted(r.id for r in fleet.replicas.snapshot("app"))
    stopped = list(runtime.stopped)

    (row,) = fleet.submit_descriptor(Descriptor(services=(_app("app:1", "rollback"),)), background=False)

    assert (row["version"], row["changed"], row["rollout"]) == (1, False, False)
    assert fleet.placement.reconcile(fleet.current_specs(), strict=False).diff.for_service("app").removals == []
    assert sorted(r.id for r in fleet.replicas.snapshot("app")) == before
    assert runtime.stopped == stopped


def test_reapplying_the_old_spec_while_paused_rolls_back_to_it(fleet, runtime):
    deploy(fleet, _app("app:1", "pause"))
    runtime.crashing.add(("app:2", 1))
    deploy(fleet, _app("app:2", "pause"))
    assert fleet.rollouts.status("app").state == RolloutState.PAUSED.value

    (row,) = fleet.submit_descriptor(Descriptor(services=(_app("app:1", "pause"),)), background=False)

    assert (row["version"], row["changed"], row["rollout"]) == (1, False, True)
    assert fleet.rollouts.status("app").state == RolloutState.STABLE.value
    assert {r.version for r in fleet.replicas.snapshot("app")} == {1}


def test_pause_then_resume(fleet, runtime):
    deploy(fleet, _app("app:1", "pause"))
    runtime.crashing.add(("app:2", 1))

    deploy(fleet, _app("app:2", "pause"))

    st = fleet.rollouts.status("app")
    assert st.state == RolloutState.PAUSED.value
    assert st.error["cause"]["attempts"] == 2
    assert sorted(r.version for r in fleet.replicas.snapshot("app")) == [1, 2, 2]

    runtime.crashing.clear()
    fleet.rollouts.resume("app", background=False)

    assert fleet.rollouts.status("app").state == RolloutState.STABLE.value
    assert {r.version for r in _healthy(fleet, "app")} == {2}
    assert len(_healthy(fleet, "app")) == 3


def test_continue_keeps_going_past_a_failed_batch(fleet, runtime):
    deploy(fleet, _app("app:1", "continue"))
    runtime.crashing.add(("app:2", 0))

    deploy(fleet, _app("app:2", "continue"))

    assert fleet.rollouts.status("app").state == RolloutState.STABLE.value
    assert sorted((r.ordinal, r.state) for r in fleet.replicas.snapshot("app")) == [
        (0, ReplicaState.UNHEALTHY),
        (1, ReplicaState.HEALTHY),
        (2, ReplicaState.HEALTHY),
    ]


def test_start_failure_counts_as_unhealthy(fleet, runtime):
    runtime.broken_images.add("app:1")

    deploy(fleet, _app("app:1", "pause"))

    st = fleet.rollouts.status("app")
    assert st.state == RolloutState.PAUSED.value
    assert "pull access denied" in " ".join(event_messages("ERROR"))


def test_newer_submission_preempts_running_rollout(fleet, runtime, clock):
    deploy(fleet, make_spec("web", replicas=3))
    older = fleet.registry.submit(make_spec("web", image="web:2", replicas=3))[0]
    newer = fleet.registry.submit(make_spec("web", image="web:3", replicas=3))[0]

    def newer_arrives():
        if fleet.rollouts.desired("web") == older:
            fleet.rollouts._desired["web"] = (newer, False)

    clock.on_sleep(newer_arrives)
    fleet.rollouts.submit(older, background=False)

    assert any("preempted" in m for m in event_messages())
    assert fleet.registry.state("web", older.version) == "candidate"
    # The preempted rollout stopped after its first batch.
    assert sorted(r.version for r in fleet.replicas.snapshot("web")) == [1, 1, 2]

    fleet.rollouts.submit(newer, background=False)
    assert {r.version for r in fleet.replicas.snapshot("web")} == {newer.version}
    assert fleet.rollouts.status("web").state == RolloutState.STABLE.value


def test_operator_rollback_and_invalid_transitions(fleet):
    with pytest.raises(InvalidRolloutTransition):
        fleet.rollouts.force_rollback("web")

    deploy(fleet, make_spec("web", replicas=2))
    with pytest.raises(KeyError):
        fleet.rollouts.force_rollback("web")
    with pytest.raises(InvalidRolloutTransition):
        fleet.rollouts.resume("web")

    deploy(fleet, make_spec("web", image="web:2", replicas=2))
    fleet.rollouts.force_rollback("web", background=False)

    st = fleet.rollouts.status("web")
    assert st.state == RolloutState.STABLE.value
    assert st.to_version == 1
    assert fleet.registry.active("web").version == 1
    assert {r.version for r in fleet.replicas.snapshot("web")} == {1}


def test_scale_down_stops_extra_replicas(fleet, runtime):
    deploy(fleet, make_spec("web", replicas=3))

    deploy(fleet, make_spec("web", replicas=1))

    assert [r.ordinal for r in fleet.replicas.snapshot("web")] == [0]
    assert len(runtime.stopped) == 3


def test_self_heal_restarts_within_policy(fleet, runtime, clock):
    spec = deploy(fleet, make_spec("web", replicas=1, restart_policy=RestartPolicy(delay=5.0, max_attempts=1)))
    inst = fleet.replicas.snapshot("web")[0]
    runtime.kill(inst.container_id)
    fleet.health.observe(fleet.replicas.get(inst.id))

    assert fleet.rollouts.heal(spec) == 0  # restart delay not elapsed
    clock.advance(5)
    assert fleet.rollouts.heal(spec) == 1
    assert fleet.replicas.get(inst.id).restarts == 1

    runtime.kill(fleet.replicas.get(inst.id).container_id)
    fleet.health.observe(fleet.replicas.get(inst.id))
    clock.advance(5)
    assert fleet.rollouts.heal(spec) == 0
    assert any("giving up" in m for m in event_messages("ERROR"))
