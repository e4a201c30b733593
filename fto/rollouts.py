"""Rollout controller.

Drives one service's replica set from its current version to a target
ServiceSpec in batches, using the ReplicaSet health published by the health
supervisor as the oracle. On failure it applies the service's failure_action
(rollback, pause or continue).
"""
from __future__ import annotations

import math
import time
from contextlib import nullcontext
from dataclasses import dataclass
from enum import Enum
from threading import Lock, Thread
from typing import Callable

from . import db
from .alerts import report
from .descriptor import Host, RolloutPlan, ServiceSpec
from .docker_ops import ContainerRuntime
from .errors import FleetError, HealthCheckFailed, InvalidRolloutTransition, QuorumViolation, RolloutFailed, Unschedulable
from .placement import Placement, PlacementEngine, ReplicaInstance, ReplicaSet, ReplicaState
from .registry import SpecRegistry
from .runtime import RolloutStatus, RuntimeState, utc_now
from .settings import settings


class RolloutState(str, Enum):
    IDLE = "idle"
    ROLLING_OUT = "rolling_out"
    STABLE = "stable"
    ROLLING_BACK = "rolling_back"
    PAUSED = "paused"


ALLOWED_TRANSITIONS = {
    RolloutState.IDLE: {RolloutState.ROLLING_OUT},
    RolloutState.ROLLING_OUT: {RolloutState.ROLLING_OUT, RolloutState.STABLE, RolloutState.ROLLING_BACK, RolloutState.PAUSED},
    RolloutState.ROLLING_BACK: {RolloutState.ROLLING_BACK, RolloutState.STABLE, RolloutState.PAUSED},
    RolloutState.STABLE: {RolloutState.ROLLING_OUT, RolloutState.ROLLING_BACK},
    RolloutState.PAUSED: {RolloutState.ROLLING_OUT, RolloutState.ROLLING_BACK},
}


def check_quorum(service: str, group: str, healthy: int, quorum: int, take_down: int) -> None:
    """Raise QuorumViolation if taking ``take_down`` healthy members leaves fewer than ``quorum``."""
    if take_down > 0 and healthy - take_down < quorum:
        raise QuorumViolation(
            f"Taking down {take_down} of {healthy} healthy '{group}' members would break quorum {quorum}",
            service=service,
            group=group,
            healthy=healthy,
            quorum=quorum,
            requested=take_down,
        )


@dataclass
class Step:
    """One replica slot to converge: stop ``old`` and/or start ``new``."""

    new: Placement | None
    old: ReplicaInstance | None


class _Preempted(Exception):
    pass


class RolloutController:
    def __init__(
        self,
        replicas: ReplicaSet,
        placement: PlacementEngine,
        runtime: ContainerRuntime,
        registry: SpecRegistry,
        state: RuntimeState,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.replicas = replicas
        self.placement = placement
        self.runtime = runtime
        self.registry = registry
        self.state = state
        self.clock = clock
        self.sleep = sleep
        self._lock = Lock()
        self._desired: dict[str, tuple[ServiceSpec, bool]] = {}  # service -> (spec, is_rollback)
        self._workers: dict[str, Thread] = {}
        self._heal_reported: set[str] = set()
        self._group_locks: dict[str, Lock] = {}

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def submit(self, spec: ServiceSpec, background: bool = True, rollback: bool = False) -> RolloutStatus:
        """Make ``spec`` the target of its service.

        A rollout already in flight for the service is preempted at its next
        safe checkpoint and continues toward the newest target.
        """
        with self._lock:
            self._desired[spec.name] = (spec, rollback)
            running = self._workers.get(spec.name)
            if background and (running is None or not running.is_alive()):
                thr = Thread(target=self._worker, args=(spec.name,), name=f"fto-rollout-{spec.name}", daemon=True)
                self._workers[spec.name] = thr
                thr.start()
        if not background:
            self._run_pending(spec.name)
        return self.status(spec.name)

    def force_rollback(self, service: str, background: bool = True) -> RolloutStatus:
        """Operator-requested revert to the previous stable version."""
        st = self.status(service)
        if RolloutState.ROLLING_BACK not in ALLOWED_TRANSITIONS[RolloutState(st.state)]:
            raise InvalidRolloutTransition(f"Rollout of '{service}' is {st.state}; nothing to roll back", service=service)
        target = self._rollback_target(service)
        if target is None:
            raise KeyError(f"No previous version of '{service}' to roll back to")
        db.log_event("WARN", f"Operator forced rollback to v{target.version}", service_name=service, version=target.version)
        return self.submit(target, background=background, rollback=True)

    def resume(self, service: str, background: bool = True) -> RolloutStatus:
        st = self.status(service)
        if st.state != RolloutState.PAUSED.value:
            raise InvalidRolloutTransition(f"Rollout of '{service}' is {st.state}, not paused", service=service)
        with self._lock:
            target = self._desired.get(service)
        if target is None:
            raise KeyError(service)
        db.log_event("INFO", "Operator resumed rollout", service_name=service, version=target[0].version)
        return self.submit(target[0], background=background, rollback=target[1])

    def status(self, service: str) -> RolloutStatus:
        return self.state.get_rollout(service) or RolloutStatus(
            service=service, state=RolloutState.IDLE.value, from_version=None, to_version=None
        )

    def desired(self, service: str) -> ServiceSpec | None:
        with self._lock:
            item = self._desired.get(service)
        return item[0] if item else None

    def forget(self, service: str) -> None:
        """Drop a removed service; a running worker stops at its next checkpoint."""
        with self._lock:
            self._desired.pop(service, None)
        with self.state.lock:
            self.state.rollouts.pop(service, None)

    def busy(self, service: str) -> bool:
        with self._lock:
            thr = self._workers.get(service)
        return thr is not None and thr.is_alive()

    def wait(self, service: str, timeout: float | None = None) -> RolloutStatus:
        with self._lock:
            thr = self._workers.get(service)
        if thr is not None:
            thr.join(timeout)
        return self.status(service)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, service: str, new: RolloutState, **fields) -> RolloutStatus:
        st = self.status(service)
        cur = RolloutState(st.state)
        if new not in ALLOWED_TRANSITIONS[cur]:
            raise InvalidRolloutTransition(f"Cannot transition rollout of '{service}' from {cur.value} to {new.value}", service=service)
        st.state = new.value
        for k, v in fields.items():
            setattr(st, k, v)
        self.state.upsert_rollout(st)
        return st

    def _update(self, service: str, **fields) -> None:
        st = self.status(service)
        for k, v in fields.items():
            setattr(st, k, v)
        self.state.upsert_rollout(st)

    def _worker(self, service: str) -> None:
        while True:
            try:
                self._run_pending(service)
            except Exception as e:
                db.log_event("ERROR", f"Rollout worker crashed: {type(e).__name__}: {e}", service_name=service)
                target = self.desired(service)
                # Park it for the operator instead of spinning on the same error.
                self._update(
                    service,
                    state=RolloutState.PAUSED.value,
                    to_version=target.version if target else None,
                    message=f"Rollout crashed: {type(e).__name__}: {e}",
                )
            with self._lock:
                if not self._pending_newer(service):
                    self._workers.pop(service, None)
                    return

    def _pending_newer(self, service: str) -> bool:
        # Caller holds the lock.
        item = self._desired.get(service)
        st = self.state.get_rollout(service)
        if item is None or st is None:
            return False
        spec, rollback = item
        if st.state == RolloutState.PAUSED.value and st.to_version == spec.version:
            return False
        return st.to_version != spec.version or st.state in (RolloutState.ROLLING_OUT.value, RolloutState.ROLLING_BACK.value)

    def _run_pending(self, service: str) -> None:
        with self._lock:
            item = self._desired.get(service)
        if item is None:
            return
        spec, rollback = item
        if rollback:
            self._run_rollback(spec, reason="operator request")
        else:
            self._run_rollout(spec)

    def _run_rollout(self, target: ServiceSpec) -> None:
        service = target.name
        previous = self.registry.active(service)
        if previous is not None and previous.version == target.version:
            previous = self._rollback_target(service)
        plan = target.rollout_plan(restart_cap=settings.max_restart_attempts)
        self._transition(
            service,
            RolloutState.ROLLING_OUT,
            from_version=previous.version if previous else None,
            started_at=utc_now(),
            to_version=target.version,
            message=f"Rolling out v{target.version}",
            error=None,
            batch=0,
            batches=0,
        )
        db.log_event("INFO", f"Rollout to v{target.version} started", service_name=service, version=target.version)
        try:
            self._converge(target, plan)
        except _Preempted:
            db.log_event("INFO", f"Rollout to v{target.version} preempted by a newer submission", service_name=service, version=target.version)
            return
        except RolloutFailed as e:
            report(e)
            self.registry.mark(service, target.version, "failed")
            self._handle_failure(target, previous, plan, e)
            return

        self.registry.mark(service, target.version, "active")
        self._transition(service, RolloutState.STABLE, message=f"Stable on v{target.version}")
        db.log_event("INFO", f"Rollout to v{target.version} completed", service_name=service, version=target.version)

    def _handle_failure(self, target: ServiceSpec, previous: ServiceSpec | None, plan: RolloutPlan, err: RolloutFailed) -> None:
        service = target.name
        if plan.failure_action == "rollback" and previous is not None:
            self._run_rollback(previous, reason=str(err), error=err)
            return
        message = f"Paused: {err}"
        if plan.failure_action == "rollback":
            message = f"Paused: {err} (no previous version to roll back to)"
        self._transition(service, RolloutState.PAUSED, message=message, error=err.context())

    def _run_rollback(self, previous: ServiceSpec, reason: str, error: FleetError | None = None) -> None:
        service = previous.name
        with self._lock:
            # Rolling back makes the old spec the target again.
            self._desired[service] = (previous, True)
        self._transition(
            service,
            RolloutState.ROLLING_BACK,
            started_at=utc_now(),
            to_version=previous.version,
            message=f"Rolling back to v{previous.version}: {reason}",
            error=error.context() if error else None,
        )
        db.log_event("WARN", f"Rolling back to v{previous.version}: {reason}", service_name=service, version=previous.version)
        plan = previous.rollout_plan(rollback=True, restart_cap=settings.max_restart_attempts)
        try:
            self._converge(previous, plan)
        except _Preempted:
            return
        except RolloutFailed as e:
            report(e)
            self._transition(service, RolloutState.PAUSED, message=f"Rollback failed: {e}", error=e.context())
            return
        self.registry.mark(service, previous.version, "active")
        with self._lock:
            if self._desired.get(service) == (previous, True):
                self._desired[service] = (previous, False)
        self._transition(service, RolloutState.STABLE, message=f"Stable on v{previous.version} after rollback")

    def _rollback_target(self, service: str) -> ServiceSpec | None:
        desired = self.desired(service)
        active = self.registry.active(service)
        if active is not None and (desired is None or desired.version != active.version):
            return active
        for spec in reversed(self.registry.history(service)):
            if desired is not None and spec.version >= desired.version:
                continue
            if self.registry.state(service, spec.version) in ("active", "retired"):
                return spec
        return None

    # ------------------------------------------------------------------
    # Convergence
    # ------------------------------------------------------------------

    def plan_steps(self, target: ServiceSpec) -> list[Step]:
        """Pair the placement diff for ``target`` into replacement steps."""
        desired = [target] + [
            s for s in (self.desired(n) or self.registry.active(n) for n in self.registry.services() if n != target.name) if s
        ]
        result = self.placement.reconcile(desired, strict=False)
        failures = [f for f in result.failures if f.service == target.name]
        if failures:
            for f in failures:
                report(f)
            raise RolloutFailed(f"Cannot place v{target.version}: {failures[0]}", service=target.name, version=target.version, cause=failures[0])

        diff = result.diff.for_service(target.name)
        # Unhealthy replicas already on the target version are replaced in place.
        stepped = {r.id for r in diff.removals}
        for r in self.replicas.snapshot(target.name):
            if r.live and r.version == target.version and r.state == ReplicaState.UNHEALTHY and r.id not in stepped:
                diff.additions.append(Placement(r.service, r.version, r.ordinal, r.host))
                diff.removals.append(r)
        olds: dict[int, list[ReplicaInstance]] = {}
        for r in diff.removals:
            olds.setdefault(r.ordinal, []).append(r)
        steps: list[Step] = []
        for p in sorted(diff.additions, key=lambda p: p.ordinal):
            bucket = olds.get(p.ordinal)
            steps.append(Step(new=p, old=bucket.pop(0) if bucket else None))
        leftovers = [r for bucket in olds.values() for r in bucket]
        steps.extend(Step(new=None, old=r) for r in sorted(leftovers, key=lambda r: r.ordinal))

        def priority(step: Step) -> tuple[int, int]:
            if step.new is None:
                return (2, step.old.ordinal)
            if step.old is None or step.old.state != ReplicaState.HEALTHY:
                return (0, step.new.ordinal)
            return (1, step.new.ordinal)

        return sorted(steps, key=priority)

    def _group_lock(self, spec: ServiceSpec):
        if not spec.quorum_bearing:
            return nullcontext()
        with self._lock:
            return self._group_locks.setdefault(spec.group, Lock())

    def _converge(self, target: ServiceSpec, plan: RolloutPlan) -> None:
        service = target.name
        pending = self.plan_steps(target)
        size = max(1, plan.batch_size())
        self._update(service, batch=0, batches=math.ceil(len(pending) / size) if pending else 0)
        batch_no = 0
        while pending:
            self._checkpoint(target)
            # One batch at a time per quorum group, across all services in it.
            with self._group_lock(target):
                batch = self._admit_batch(target, pending, plan)
                for step in batch:
                    pending.remove(step)
                batch_no += 1
                self._update(service, batch=batch_no, message=f"Batch {batch_no}: {len(batch)} replica(s) to v{target.version}")

                started: list[str] = []
                deferred: list[tuple[str, ReplicaInstance]] = []
                for step in batch:
                    new_id = self._apply_step(target, step, plan)
                    if new_id:
                        started.append(new_id)
                        if step.old is not None and plan.order == "start-first":
                            deferred.append((new_id, step.old))

                if plan.delay:
                    self.sleep(plan.delay)
                failures = self._await_batch(target, started, plan)
                for new_id, old in deferred:
                    new = self.replicas.get(new_id)
                    if new is not None and new.state == ReplicaState.HEALTHY:
                        self._stop_replica(old)
            if failures:
                if plan.failure_action == "continue":
                    for f in failures:
                        report(f, level="WARN")
                    continue
                raise RolloutFailed(
                    f"Batch {batch_no} of v{target.version} failed: {failures[0]}",
                    service=service,
                    version=target.version,
                    cause=failures[0],
                )

    def _checkpoint(self, target: ServiceSpec) -> None:
        with self._lock:
            item = self._desired.get(target.name)
        if item is None or item[0].version != target.version:
            raise _Preempted()

    def _group_members(self, spec: ServiceSpec) -> list[ReplicaInstance]:
        members = []
        for r in self.replicas.snapshot():
            rs = spec if (r.service == spec.name and r.version == spec.version) else self.registry.get(r.service, r.version)
            if rs is not None and rs.quorum_bearing and rs.group == spec.group:
                members.append(r)
        return members

    def _admit_batch(self, target: ServiceSpec, pending: list[Step], plan: RolloutPlan) -> list[Step]:
        size = max(1, plan.batch_size())
        candidates = pending[:size]
        if not target.quorum_bearing:
            return candidates

        def cost(step: Step) -> int:
            if step.old is None or (step.new is not None and plan.order == "start-first"):
                return 0
            cur = self.replicas.get(step.old.id)
            return 1 if cur is not None and cur.state == ReplicaState.HEALTHY else 0

        deadline = self.clock() + settings.quorum_wait_s
        refused: QuorumViolation | None = None
        while True:
            healthy = sum(1 for r in self._group_members(target) if r.state == ReplicaState.HEALTHY)
            try:
                check_quorum(target.name, target.group, healthy, target.quorum, sum(cost(s) for s in candidates))
                return candidates
            except QuorumViolation as e:
                if refused is None:
                    db.log_event("WARN", f"Refused batch: {e}", service_name=target.name, version=target.version)
                refused = e
            budget = healthy - target.quorum
            batch: list[Step] = []
            for step in pending:
                if len(batch) >= size:
                    break
                c = cost(step)
                if c <= budget:
                    batch.append(step)
                    budget -= c
            if batch:
                return batch
            if self.clock() >= deadline:
                raise RolloutFailed(
                    f"Quorum of '{target.group}' did not recover within {settings.quorum_wait_s:g}s",
                    service=target.name,
                    version=target.version,
                    cause=refused,
                )
            self.sleep(settings.rollout_poll_s)

    def _host(self, name: str) -> Host | None:
        for h in self.placement.hosts:
            if h.hostname == name:
                return h
        return None

    def _stop_replica(self, inst: ReplicaInstance) -> None:
        host = self._host(inst.host)
        if host is not None and inst.container_id:
            try:
                self.runtime.stop(host, inst.container_id)
            except Exception as e:
                db.log_event("ERROR", f"Failed to stop {inst.id}: {type(e).__name__}: {e}", service_name=inst.service, version=inst.version, host=inst.host)
        self.replicas.terminate(inst.id)

    def _start_container(self, spec: ServiceSpec, inst: ReplicaInstance) -> bool:
        host = self._host(inst.host)
        if host is None:
            return False
        try:
            ref = self.runtime.start(spec, host, inst.ordinal, inst.id)
        except Exception as e:
            db.log_event("ERROR", f"Failed to start {inst.id}: {type(e).__name__}: {e}", service_name=spec.name, version=spec.version, host=inst.host)
            return False
        self.replicas.bind_container(inst.id, ref.id, ref.address, ref.networks)
        return True

    def _apply_step(self, target: ServiceSpec, step: Step, plan: RolloutPlan) -> str | None:
        if step.old is not None and (step.new is None or plan.order == "stop-first"):
            self._stop_replica(step.old)
        if step.new is None:
            return None
        exclude = step.old.id if step.old is not None and plan.order == "stop-first" else None
        try:
            placement = self.placement.place_one(target, step.new.ordinal, prefer=step.new.host, exclude_id=exclude)
        except Unschedulable as e:
            report(e)
            raise RolloutFailed(f"Cannot place replacement: {e}", service=target.name, version=target.version, cause=e) from e
        inst = self.replicas.create(placement)
        if not self._start_container(target, inst):
            self.replicas.transition(inst.id, ReplicaState.STARTING)
            self.replicas.transition(inst.id, ReplicaState.UNHEALTHY)
        return inst.id

    def _restart(self, spec: ServiceSpec, inst: ReplicaInstance) -> bool:
        host = self._host(inst.host)
        if host is not None and inst.container_id:
            try:
                self.runtime.stop(host, inst.container_id)
            except Exception as e:
                db.log_event("WARN", f"Stop before restart failed: {type(e).__name__}: {e}", service_name=spec.name, host=inst.host)
        return self._start_container(spec, inst)

    def _await_batch(self, target: ServiceSpec, ids: list[str], plan: RolloutPlan) -> list[HealthCheckFailed]:
        """Bounded wait for every started replica to become healthy, restarting per policy."""
        failures: list[HealthCheckFailed] = []
        attempts = {rid: 0 for rid in ids}
        deadlines = {rid: self.clock() + plan.monitor for rid in ids}
        waiting = list(ids)
        while waiting:
            for rid in list(waiting):
                inst = self.replicas.get(rid)
                if inst is None:
                    waiting.remove(rid)
                    continue
                if inst.state == ReplicaState.HEALTHY:
                    waiting.remove(rid)
                    continue
                timed_out = self.clock() >= deadlines[rid]
                if inst.state != ReplicaState.UNHEALTHY and not timed_out:
                    continue
                if attempts[rid] < plan.restart.max_attempts:
                    attempts[rid] += 1
                    db.log_event(
                        "WARN",
                        f"Restarting {rid} (attempt {attempts[rid]}/{plan.restart.max_attempts})",
                        service_name=target.name,
                        version=target.version,
                        host=inst.host,
                    )
                    if plan.restart.delay:
                        self.sleep(plan.restart.delay)
                    self._restart(target, inst)
                    deadlines[rid] = self.clock() + plan.monitor
                    continue
                waiting.remove(rid)
                detail = "did not become healthy in time" if timed_out and inst.state != ReplicaState.UNHEALTHY else "is unhealthy"
                failures.append(
                    HealthCheckFailed(
                        f"Replica {rid} {detail} after {attempts[rid]} restart attempt(s)",
                        service=target.name,
                        version=target.version,
                        host=inst.host,
                        attempts=attempts[rid],
                    )
                )
            if waiting:
                self.sleep(settings.rollout_poll_s)
        return failures

    # ------------------------------------------------------------------
    # Self-healing outside rollouts
    # ------------------------------------------------------------------

    def heal(self, spec: ServiceSpec) -> int:
        """Restart unhealthy replicas of a settled service; returns restarts issued."""
        if self.busy(spec.name):
            return 0
        policy = spec.rollout_plan(restart_cap=settings.max_restart_attempts).restart
        issued = 0
        for inst in self.replicas.snapshot(spec.name):
            if inst.state != ReplicaState.UNHEALTHY or inst.version != spec.version:
                continue
            if inst.restarts >= policy.max_attempts:
                if inst.id not in self._heal_reported:
                    self._heal_reported.add(inst.id)
                    report(
                        HealthCheckFailed(
                            f"Replica {inst.id} stays unhealthy after {inst.restarts} restart(s); giving up",
                            service=spec.name,
                            version=spec.version,
                            host=inst.host,
                            attempts=inst.restarts,
                        )
                    )
                continue
            if self.clock() - inst.updated_at < policy.delay:
                continue
            db.log_event("WARN", f"Self-healing: restarting {inst.id}", service_name=spec.name, version=spec.version, host=inst.host)
            if self._restart(spec, inst):
                issued += 1
        return issued
