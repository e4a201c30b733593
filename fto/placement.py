"""Placement engine.

``PlacementEngine.reconcile`` decides which host each replica of each desired
ServiceSpec lives on, and emits the diff against the current replica set. It
never starts or stops processes; the rollout controller consumes the diff.

``ReplicaSet`` is the single writer of ReplicaInstance records. Everyone else
reads snapshots or submits transitions through it.
"""
from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from threading import Lock
from typing import Callable, Iterable

from .constraints import first_violation
from .descriptor import Host, ServiceSpec
from .errors import Unschedulable


class ReplicaState(str, Enum):
    PENDING = "pending"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TERMINATED = "terminated"


ALLOWED_TRANSITIONS = {
    ReplicaState.PENDING: {ReplicaState.STARTING, ReplicaState.TERMINATED},
    ReplicaState.STARTING: {ReplicaState.HEALTHY, ReplicaState.UNHEALTHY, ReplicaState.TERMINATED},
    ReplicaState.HEALTHY: {ReplicaState.UNHEALTHY, ReplicaState.TERMINATED},
    ReplicaState.UNHEALTHY: {ReplicaState.TERMINATED},
    ReplicaState.TERMINATED: set(),
}


class InvalidReplicaTransition(ValueError):
    pass


@dataclass(frozen=True)
class ReplicaInstance:
    id: str
    service: str
    version: int
    host: str
    ordinal: int
    state: ReplicaState = ReplicaState.PENDING
    container_id: str | None = None
    address: str | None = None
    networks: tuple[tuple[str, str], ...] = ()
    restarts: int = 0
    created_at: float = field(default_factory=time.monotonic)
    updated_at: float = field(default_factory=time.monotonic)

    @property
    def live(self) -> bool:
        return self.state != ReplicaState.TERMINATED

    def address_on(self, network: str) -> str | None:
        for name, address in self.networks:
            if name == network:
                return address
        return None


@dataclass(frozen=True)
class Placement:
    service: str
    version: int
    ordinal: int
    host: str


@dataclass
class PlacementDiff:
    additions: list[Placement] = field(default_factory=list)
    removals: list[ReplicaInstance] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.additions and not self.removals

    def for_service(self, service: str) -> "PlacementDiff":
        return PlacementDiff(
            additions=[p for p in self.additions if p.service == service],
            removals=[r for r in self.removals if r.service == service],
        )


@dataclass
class ReconcileResult:
    placements: list[Placement]
    diff: PlacementDiff
    failures: list[Unschedulable] = field(default_factory=list)


Listener = Callable[[ReplicaInstance], None]


class ReplicaSet:
    """Owner of every ReplicaInstance; listeners run after each change, outside the lock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = Lock()
        self._replicas: dict[str, ReplicaInstance] = {}
        self._listeners: list[Listener] = []

    def add_listener(self, fn: Listener) -> None:
        self._listeners.append(fn)

    def _notify(self, inst: ReplicaInstance) -> None:
        for fn in list(self._listeners):
            fn(inst)

    def create(self, placement: Placement) -> ReplicaInstance:
        now = self._clock()
        inst = ReplicaInstance(
            id=f"{placement.service}.{placement.ordinal}.{secrets.token_hex(3)}",
            service=placement.service,
            version=placement.version,
            host=placement.host,
            ordinal=placement.ordinal,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._replicas[inst.id] = inst
        self._notify(inst)
        return inst

    def adopt(self, inst: ReplicaInstance) -> ReplicaInstance:
        """Insert a replica discovered on a host (already running)."""
        with self._lock:
            self._replicas[inst.id] = inst
        self._notify(inst)
        return inst

    def bind_container(
        self, replica_id: str, container_id: str, address: str | None, networks: tuple[tuple[str, str], ...] = ()
    ) -> ReplicaInstance:
        """Record the started container; the replica (re-)enters ``starting``."""
        with self._lock:
            cur = self._replicas[replica_id]
            if cur.state == ReplicaState.TERMINATED:
                raise InvalidReplicaTransition(f"Replica {replica_id} is terminated")
            restarts = cur.restarts + (1 if cur.container_id else 0)
            inst = replace(
                cur,
                container_id=container_id,
                address=address,
                networks=tuple(networks),
                state=ReplicaState.STARTING,
                restarts=restarts,
                updated_at=self._clock(),
            )
            self._replicas[replica_id] = inst
        self._notify(inst)
        return inst

    def transition(self, replica_id: str, state: ReplicaState) -> ReplicaInstance | None:
        """Apply a lifecycle transition. Returns None if the replica is gone or terminated."""
        with self._lock:
            cur = self._replicas.get(replica_id)
            if cur is None or cur.state == ReplicaState.TERMINATED:
                return None
            if cur.state == state:
                return cur
            if state not in ALLOWED_TRANSITIONS[cur.state]:
                raise InvalidReplicaTransition(f"Cannot transition {replica_id} from {cur.state.value} to {state.value}")
            inst = replace(cur, state=state, updated_at=self._clock())
            self._replicas[replica_id] = inst
        self._notify(inst)
        return inst

    def terminate(self, replica_id: str) -> ReplicaInstance | None:
        inst = self.transition(replica_id, ReplicaState.TERMINATED)
        with self._lock:
            self._replicas.pop(replica_id, None)
        return inst

    def get(self, replica_id: str) -> ReplicaInstance | None:
        with self._lock:
            return self._replicas.get(replica_id)

    def snapshot(self, service: str | None = None) -> list[ReplicaInstance]:
        with self._lock:
            items = [r for r in self._replicas.values() if service is None or r.service == service]
        return sorted(items, key=lambda r: (r.service, r.ordinal, r.id))


class _HostUsage:
    def __init__(self) -> None:
        self.memory = 0
        self.count = 0
        self.ports: set[tuple[int, str]] = set()
        self.per_service: dict[str, int] = {}

    def add(self, spec: ServiceSpec) -> None:
        self.memory += spec.memory_limit
        self.count += 1
        self.ports |= spec.host_ports()
        self.per_service[spec.name] = self.per_service.get(spec.name, 0) + 1


def pinned_hosts(specs: Iterable[ServiceSpec]) -> frozenset[str]:
    """Hostnames named by an exact-hostname constraint of any spec."""
    return frozenset(s.pinned_host for s in specs if s.pinned_host)


def _eligibility_problem(spec: ServiceSpec, host: Host, reserved: frozenset[str] = frozenset()) -> str | None:
    violated = first_violation(spec.constraints, host.attributes())
    if violated is not None:
        return f"constraint {violated}"
    # A pinned host runs only the replicas pinned to it.
    if spec.pinned_host is None and host.hostname in reserved:
        return "reserved for pinned replicas"
    for ul in spec.ulimits:
        if not host.allows_ulimit(ul):
            return f"ulimit {ul.name}={ul.hard} exceeds host limit"
    return None


def _capacity_problem(spec: ServiceSpec, host: Host, usage: _HostUsage) -> str | None:
    clash = spec.host_ports() & usage.ports
    if clash:
        port, proto = sorted(clash)[0]
        return f"host port {port}/{proto} in use"
    if spec.max_replicas_per_node and usage.per_service.get(spec.name, 0) >= spec.max_replicas_per_node:
        return f"max_replicas_per_node={spec.max_replicas_per_node} reached"
    if host.memory and usage.memory + spec.memory_limit > host.memory:
        return "insufficient memory"
    return None


class PlacementEngine:
    """Assign replicas to hosts honouring constraints, capacity and anti-affinity."""

    def __init__(
        self,
        replicas: ReplicaSet,
        hosts: Iterable[Host] = (),
        spec_resolver: Callable[[str, int], ServiceSpec | None] | None = None,
    ):
        self.replicas = replicas
        # Resolves (service, version) of live replicas so capacity checks see their limits.
        self.spec_resolver = spec_resolver
        self._hosts_lock = Lock()
        self._hosts = list(hosts)
        # Pinned hosts seen by the last full reconcile; place_one honours them too.
        self._reserved: frozenset[str] = frozenset()

    @property
    def hosts(self) -> list[Host]:
        with self._hosts_lock:
            return list(self._hosts)

    def set_hosts(self, hosts: Iterable[Host]) -> None:
        with self._hosts_lock:
            self._hosts = list(hosts)

    def reconcile(
        self,
        desired: Iterable[ServiceSpec],
        hosts: Iterable[Host] | None = None,
        current: Iterable[ReplicaInstance] | None = None,
        strict: bool = True,
    ) -> ReconcileResult:
        """Compute placements for ``desired`` and the diff against ``current``.

        Raises Unschedulable for the first replica that fits nowhere when
        ``strict``; otherwise failures are returned in the result.
        """
        specs = {s.name: s for s in desired}
        reserved = pinned_hosts(specs.values())
        if current is None:
            self._reserved = reserved
        host_list = sorted(self.hosts if hosts is None else hosts, key=lambda h: h.hostname)
        by_name = {h.hostname: h for h in host_list}
        live = [r for r in (self.replicas.snapshot() if current is None else current) if r.live]

        usage = {h.hostname: _HostUsage() for h in host_list}
        placements: list[Placement] = []
        diff = PlacementDiff()
        failures: list[Unschedulable] = []
        taken: dict[str, set[int]] = {name: set() for name in specs}

        # Keep what already matches; replicas are stable across reconciles.
        for r in sorted(live, key=lambda r: (r.service, r.ordinal, r.id)):
            spec = specs.get(r.service)
            host = by_name.get(r.host)
            keep = (
                spec is not None
                and host is not None
                and r.version == spec.version
                and r.ordinal not in taken[spec.name]
                and _eligibility_problem(spec, host, reserved) is None
            )
            if keep and spec.mode == "replicated":
                keep = r.ordinal < spec.replicas
            if keep and spec.mode == "global":
                keep = usage[r.host].per_service.get(spec.name, 0) == 0
            if not keep:
                diff.removals.append(r)
                continue
            taken[spec.name].add(r.ordinal)
            usage[r.host].add(spec)
            placements.append(Placement(r.service, r.version, r.ordinal, r.host))

        ordered = sorted(specs.values(), key=lambda s: (-len(s.constraints), s.name))
        for spec in ordered:
            if spec.mode == "global":
                new, errs = self._place_global(spec, host_list, usage, taken[spec.name], reserved)
            else:
                new, errs = self._place_replicated(spec, host_list, usage, taken[spec.name], reserved)
            placements.extend(new)
            diff.additions.extend(new)
            failures.extend(errs)

        if failures and strict:
            raise failures[0]
        placements.sort(key=lambda p: (p.service, p.ordinal))
        return ReconcileResult(placements=placements, diff=diff, failures=failures)

    def _place_replicated(
        self, spec: ServiceSpec, hosts: list[Host], usage: dict[str, _HostUsage], taken: set[int], reserved: frozenset[str]
    ) -> tuple[list[Placement], list[Unschedulable]]:
        placed: list[Placement] = []
        failures: list[Unschedulable] = []
        for ordinal in range(spec.replicas):
            if ordinal in taken:
                continue
            candidates: list[Host] = []
            reasons: list[str] = []
            for h in hosts:
                problem = _eligibility_problem(spec, h, reserved) or _capacity_problem(spec, h, usage[h.hostname])
                if problem:
                    reasons.append(f"{h.hostname}: {problem}")
                else:
                    candidates.append(h)
            if not candidates:
                reason = "; ".join(reasons) or "no hosts in inventory"
                failures.append(
                    Unschedulable(
                        f"No eligible host for {spec.name} replica {ordinal} (v{spec.version}): {reason}",
                        service=spec.name,
                        version=spec.version,
                        ordinal=ordinal,
                        reason=reason,
                    )
                )
                continue
            best = min(candidates, key=lambda h: (usage[h.hostname].count, h.hostname))
            usage[best.hostname].add(spec)
            taken.add(ordinal)
            placed.append(Placement(spec.name, spec.version, ordinal, best.hostname))
        return placed, failures

    def _place_global(
        self, spec: ServiceSpec, hosts: list[Host], usage: dict[str, _HostUsage], taken: set[int], reserved: frozenset[str]
    ) -> tuple[list[Placement], list[Unschedulable]]:
        placed: list[Placement] = []
        failures: list[Unschedulable] = []
        next_ordinal = 0
        for h in hosts:
            if _eligibility_problem(spec, h, reserved) is not None:
                continue
            if usage[h.hostname].per_service.get(spec.name, 0):
                continue
            while next_ordinal in taken:
                next_ordinal += 1
            problem = _capacity_problem(spec, h, usage[h.hostname])
            if problem:
                failures.append(
                    Unschedulable(
                        f"Global service {spec.name} (v{spec.version}) cannot run on {h.hostname}: {problem}",
                        service=spec.name,
                        version=spec.version,
                        ordinal=next_ordinal,
                        reason=f"{h.hostname}: {problem}",
                    )
                )
                continue
            usage[h.hostname].add(spec)
            taken.add(next_ordinal)
            placed.append(Placement(spec.name, spec.version, next_ordinal, h.hostname))
        return placed, failures

    def place_one(self, spec: ServiceSpec, ordinal: int, prefer: str | None = None, exclude_id: str | None = None) -> Placement:
        """Place a single replacement replica given everything else currently live.

        The replica identified by ``exclude_id`` (the one being replaced) does not
        count against capacity. ``prefer`` keeps the replacement on its old host
        when that host still fits.
        """
        hosts = sorted(self.hosts, key=lambda h: h.hostname)
        usage = {h.hostname: _HostUsage() for h in hosts}
        specs_by_name: dict[str, ServiceSpec] = {}
        for r in self.replicas.snapshot():
            if not r.live or r.id == exclude_id or r.host not in usage:
                continue
            specs_by_name.setdefault(f"{r.service}:{r.version}", self._spec_lookup(r, spec))
            usage[r.host].add(specs_by_name[f"{r.service}:{r.version}"])
        reserved = self._reserved | pinned_hosts(specs_by_name.values())

        reasons: list[str] = []
        candidates: list[Host] = []
        for h in hosts:
            problem = _eligibility_problem(spec, h, reserved) or _capacity_problem(spec, h, usage[h.hostname])
            if problem:
                reasons.append(f"{h.hostname}: {problem}")
            else:
                candidates.append(h)
        if not candidates:
            reason = "; ".join(reasons) or "no hosts in inventory"
            raise Unschedulable(
                f"No eligible host for {spec.name} replica {ordinal} (v{spec.version}): {reason}",
                service=spec.name,
                version=spec.version,
                ordinal=ordinal,
                reason=reason,
            )
        for h in candidates:
            if h.hostname == prefer:
                return Placement(spec.name, spec.version, ordinal, h.hostname)
        best = min(candidates, key=lambda h: (usage[h.hostname].count, h.hostname))
        return Placement(spec.name, spec.version, ordinal, best.hostname)

    def _spec_lookup(self, r: ReplicaInstance, fallback: ServiceSpec) -> ServiceSpec:
        if self.spec_resolver is not None:
            found = self.spec_resolver(r.service, r.version)
            if found is not None:
                return found
        if r.service == fallback.name:
            return fallback
        return ServiceSpec(name=r.service, image="", version=r.version)
