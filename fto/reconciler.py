from __future__ import annotations

import os
import time
from threading import Thread
from typing import Callable

from . import db
from .alerts import report
from .acme import AcmeAuthority
from .certs import CertificateAuthority, CertificateManager, CertificateStore, ChallengeResponder, LocalAuthority
from .descriptor import Descriptor, Host, ServiceSpec, load_inventory, parse_descriptor
from .docker_ops import ContainerRuntime, DockerRuntime
from .gateway import EdgeRouter
from .health import HealthSupervisor
from .placement import PlacementEngine, ReplicaInstance, ReplicaSet, ReplicaState
from .registry import SpecRegistry
from .rollouts import RolloutController, RolloutState
from .runtime import RuntimeState
from .settings import settings


class Reconciler:
    """Owns every component and continuously reconciles desired with actual state.

    The loop self-heals settled services under their restart policy, re-converges
    services whose placement drifted (lost host, inventory change), reports
    unschedulable replicas, and republishes the routing table.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        hosts: list[Host] | None = None,
        authority: CertificateAuthority | None = None,
        persist: bool = True,
        cert_dir: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runtime = runtime
        self.state = RuntimeState()
        self.registry = SpecRegistry(persist=persist)
        self.replicas = ReplicaSet(clock)
        self.placement = PlacementEngine(self.replicas, hosts or [], spec_resolver=self.registry.get)
        self.health = HealthSupervisor(self.replicas, runtime, self.host, self.registry.get, clock)
        self.rollouts = RolloutController(self.replicas, self.placement, runtime, self.registry, self.state, clock, sleep)
        self.responder = ChallengeResponder()
        self.certs = CertificateStore(cert_dir, persist=persist)
        self.cert_manager = CertificateManager(self.certs, authority, self.responder) if authority is not None else None
        self.router = EdgeRouter(self.replicas, self.state, self.certs, self.cert_manager, host_address=self._host_address)
        self._unschedulable: dict[str, str] = {}
        self._inventory_mtime: float | None = None
        self._stop = False
        self._thr: Thread | None = None

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    def host(self, name: str) -> Host | None:
        for h in self.placement.hosts:
            if h.hostname == name:
                return h
        return None

    def _host_address(self, name: str) -> str | None:
        h = self.host(name)
        return h.address if h else None

    def set_hosts(self, hosts: list[Host]) -> None:
        self.placement.set_hosts(hosts)
        db.log_event("INFO", f"Inventory has {len(hosts)} host(s): {', '.join(h.hostname for h in hosts)}")

    def reload_inventory(self, path: str | None = None) -> bool:
        """Re-read the inventory file when it changed; returns True if hosts were updated."""
        path = path or settings.inventory_path
        if not os.path.exists(path):
            return False
        mtime = os.path.getmtime(path)
        if mtime == self._inventory_mtime:
            return False
        self.set_hosts(load_inventory(path))
        self._inventory_mtime = mtime
        return True

    # ------------------------------------------------------------------
    # Desired state
    # ------------------------------------------------------------------

    def current_specs(self) -> list[ServiceSpec]:
        specs = []
        for name in self.registry.services():
            spec = self.rollouts.desired(name) or self.registry.active(name) or self.registry.latest(name)
            if spec is not None:
                specs.append(spec)
        return specs

    def submit_descriptor(self, descriptor: Descriptor, prune: bool = True, background: bool = True) -> list[dict[str, object]]:
        """Register every service of a descriptor and roll out the ones that changed.

        With ``prune``, services no longer in the descriptor are removed.
        """
        results: list[dict[str, object]] = []
        wanted = {s.name for s in descriptor.services}
        if prune:
            for name in self.registry.services():
                if name not in wanted:
                    self.remove_service(name)

        # Quorum groups and pinned masters first, so their placement is settled early.
        ordered = sorted(descriptor.services, key=lambda s: (not s.quorum_bearing, -len(s.constraints), s.name))
        for spec in ordered:
            versioned, changed = self.registry.submit(spec)
            status = self.rollouts.status(versioned.name)
            target = self.rollouts.desired(versioned.name)
            rollout = (
                changed
                or status.state == RolloutState.IDLE.value
                or target is None
                or target.version != versioned.version
            )
            if changed:
                db.log_event("INFO", f"Registered version {versioned.version} ({versioned.fingerprint()})", service_name=versioned.name, version=versioned.version)
            if rollout:
                self.rollouts.submit(versioned, background=background)
            results.append({"service": versioned.name, "version": versioned.version, "changed": changed, "rollout": rollout})
        self.refresh_routes()
        return results

    def submit_text(self, text: str, base_dir: str = ".", prune: bool = True, background: bool = True) -> list[dict[str, object]]:
        return self.submit_descriptor(parse_descriptor(text, base_dir, settings.force_https), prune=prune, background=background)

    def remove_service(self, name: str) -> int:
        """Stop every replica of ``name`` and forget it; returns replicas stopped."""
        self.registry.remove(name)
        self.rollouts.forget(name)
        stopped = 0
        for inst in self.replicas.snapshot(name):
            host = self.host(inst.host)
            if host is not None and inst.container_id:
                try:
                    self.runtime.stop(host, inst.container_id)
                except Exception as e:
                    db.log_event("ERROR", f"Failed to stop {inst.id}: {type(e).__name__}: {e}", service_name=name, host=inst.host)
            self.replicas.terminate(inst.id)
            stopped += 1
        db.log_event("WARN", f"Service removed; {stopped} replica(s) stopped", service_name=name)
        self.refresh_routes()
        return stopped

    def refresh_routes(self) -> None:
        rules = []
        for spec in self.current_specs():
            rules.extend(spec.route_rules(settings.force_https))
        self.router.set_rules(rules)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def adopt_existing(self) -> int:
        """Adopt containers left running by a previous controller process."""
        adopted = 0
        for found in self.runtime.discover(self.placement.hosts):
            if self.registry.get(found.service, found.version) is None or self.registry.is_removed(found.service):
                db.log_event("WARN", f"Ignoring container {found.ref.name}: unknown service version", service_name=found.service, host=found.host)
                continue
            if self.replicas.get(found.replica_id) is not None:
                continue
            self.replicas.adopt(
                ReplicaInstance(
                    id=found.replica_id,
                    service=found.service,
                    version=found.version,
                    host=found.host,
                    ordinal=found.ordinal,
                )
            )
            self.replicas.bind_container(found.replica_id, found.ref.id, found.ref.address, found.ref.networks)
            adopted += 1
        if adopted:
            db.log_event("INFO", f"Adopted {adopted} running replica(s)")
        return adopted

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self.registry.load()
        self.certs.load()
        self.reload_inventory()
        self.adopt_existing()
        self.health.start()
        if self.cert_manager is not None:
            self.cert_manager.start()
        self.refresh_routes()
        self._stop = False
        self._thr = Thread(target=self._loop, name="fto-reconciler", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop = True
        self.health.stop()
        if self.cert_manager is not None:
            self.cert_manager.stop()

    def _loop(self) -> None:
        db.log_event("INFO", "Reconciler started")
        while not self._stop:
            try:
                self.tick()
            except Exception as e:
                db.log_event("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}")
            time.sleep(max(1, settings.poll_interval_s))

    def tick(self) -> None:
        if self.reload_inventory():
            self.refresh_routes()

        specs = self.current_specs()
        settled = []
        for spec in specs:
            if self.rollouts.busy(spec.name):
                continue
            state = self.rollouts.status(spec.name).state
            if state in (RolloutState.STABLE.value, RolloutState.IDLE.value):
                settled.append(spec)
                self.rollouts.heal(spec)

        result = self.placement.reconcile(specs, strict=False)
        self._report_unschedulable(result.failures)
        for spec in settled:
            drift = result.diff.for_service(spec.name)
            # Unhealthy replicas are the restart policy's business, not drift.
            if drift.additions or any(r.state != ReplicaState.UNHEALTHY for r in drift.removals):
                db.log_event("INFO", f"Placement drifted ({len(drift.additions)} to add, {len(drift.removals)} to remove); re-converging", service_name=spec.name, version=spec.version)
                self.rollouts.submit(spec)

        self.router.rebuild()

    def _report_unschedulable(self, failures) -> None:
        seen: dict[str, str] = {}
        for f in failures:
            key = f"{f.service}:{f.ordinal}"
            seen[key] = f.reason
            if self._unschedulable.get(key) != f.reason:
                report(f)
        for key in set(self._unschedulable) - set(seen):
            service = key.split(":")[0]
            db.log_event("INFO", f"Replica {key} is schedulable again", service_name=service)
        self._unschedulable = seen


def build_authority() -> CertificateAuthority | None:
    kind = settings.cert_authority.strip().lower()
    if kind == "acme":
        return AcmeAuthority()
    if kind == "local":
        return LocalAuthority()
    if kind in ("", "none", "off"):
        return None
    raise ValueError(f"Unknown FTO_CERT_AUTHORITY '{settings.cert_authority}' (expected acme, local or none)")


def build_reconciler() -> Reconciler:
    """Production wiring: Docker runtime, inventory from FTO_INVENTORY_PATH."""
    return Reconciler(DockerRuntime(), authority=build_authority())
