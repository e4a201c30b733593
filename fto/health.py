from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from enum import Enum
from threading import Event, Lock, Thread
from typing import Callable

import httpx

from . import db
from .descriptor import HealthCheck, Host, ServiceSpec
from .docker_ops import ContainerRuntime, container_http_base
from .placement import ReplicaInstance, ReplicaSet, ReplicaState
from .settings import settings


def check_health(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Call a service health endpoint.

    Any 2xx is healthy; a JSON body with a ``status`` other than healthy/ok/green
    is not. Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if not 200 <= resp.status_code < 300:
            return False, f"HTTP {resp.status_code}", latency_ms
        try:
            data = resp.json()
        except ValueError:
            return True, "Healthy", latency_ms
        status = data.get("status") if isinstance(data, dict) else None
        if status is None or str(status).lower() in {"healthy", "ok", "green", "yellow"}:
            return True, "Healthy", latency_ms
        return False, f"Unhealthy payload: {data!r}", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


class HealthStatus(str, Enum):
    STARTING = "starting"  # unverified
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class HealthTracker:
    """Counts probe results for one replica incarnation.

    Failures during ``start_period`` do not count while the replica is still
    unverified; after that, ``retries`` consecutive failures mark it unhealthy.
    Unhealthy is final for the incarnation.
    """

    def __init__(self, check: HealthCheck | None, started_at: float, container_id: str | None = None):
        self.check = check
        self.started_at = started_at
        self.container_id = container_id
        self.status = HealthStatus.STARTING
        self.failures = 0
        self.last_message = ""
        self.next_due = started_at + (check.interval if check and not check.disabled else 0.0)

    def in_grace(self, now: float) -> bool:
        return self.check is not None and now - self.started_at < self.check.start_period

    def record(self, ok: bool, now: float, message: str = "") -> HealthStatus:
        interval = self.check.interval if self.check else settings.health_tick_s
        self.next_due = now + interval
        if self.status == HealthStatus.UNHEALTHY:
            return self.status
        self.last_message = message
        if ok:
            self.failures = 0
            self.status = HealthStatus.HEALTHY
            return self.status
        if self.status == HealthStatus.STARTING and self.in_grace(now):
            return self.status
        self.failures += 1
        if self.check is None or self.failures >= self.check.retries:
            self.status = HealthStatus.UNHEALTHY
        return self.status

    def mark_exited(self, code: int, now: float) -> HealthStatus:
        self.last_message = f"process exited with code {code}"
        self.next_due = now
        self.status = HealthStatus.UNHEALTHY
        return self.status


class HealthSupervisor:
    """Polls replica health and publishes it into the ReplicaSet.

    Purely an oracle: it never starts or stops replicas.
    """

    def __init__(
        self,
        replicas: ReplicaSet,
        runtime: ContainerRuntime,
        host_lookup: Callable[[str], Host | None],
        spec_lookup: Callable[[str, int], ServiceSpec | None],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.replicas = replicas
        self.runtime = runtime
        self.host_lookup = host_lookup
        self.spec_lookup = spec_lookup
        self.clock = clock
        self._lock = Lock()
        self._trackers: dict[str, HealthTracker] = {}
        self._pool: ThreadPoolExecutor | None = None
        self._stop = Event()
        self._thr: Thread | None = None
        replicas.add_listener(self._on_replica_change)

    def _on_replica_change(self, inst: ReplicaInstance) -> None:
        with self._lock:
            if inst.state == ReplicaState.TERMINATED:
                self._trackers.pop(inst.id, None)
                return
            if inst.state != ReplicaState.STARTING or not inst.container_id:
                return
            cur = self._trackers.get(inst.id)
            if cur is not None and cur.container_id == inst.container_id:
                return
        spec = self.spec_lookup(inst.service, inst.version)
        check = spec.healthcheck if spec else None
        with self._lock:
            self._trackers[inst.id] = HealthTracker(check, self.clock(), inst.container_id)

    def tracker(self, replica_id: str) -> HealthTracker | None:
        with self._lock:
            return self._trackers.get(replica_id)

    def status(self, replica_id: str) -> HealthStatus | None:
        t = self.tracker(replica_id)
        return t.status if t else None

    def _probe(self, inst: ReplicaInstance, host: Host, check: HealthCheck) -> tuple[bool, str]:
        if check.argv is not None:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=max(1, settings.health_workers), thread_name_prefix="fto-probe")
            fut = self._pool.submit(self.runtime.exec, host, inst.container_id, check.argv)
            try:
                res = fut.result(timeout=check.timeout)
            except FutureTimeout:
                return False, f"probe timed out after {check.timeout:g}s"
            return res.exit_code == 0, res.output.strip()[-200:] or f"exit {res.exit_code}"
        url = container_http_base(inst.address or host.address or host.hostname, check.http_port) + (check.http_path or "/")
        ok, msg, _latency = check_health(url, timeout_s=check.timeout)
        return ok, msg

    def observe(self, inst: ReplicaInstance, now: float | None = None) -> HealthStatus:
        """Run one probe for the replica now and publish the resulting status."""
        now = self.clock() if now is None else now
        tracker = self.tracker(inst.id)
        if tracker is None or inst.container_id is None:
            return HealthStatus.STARTING
        host = self.host_lookup(inst.host)
        if host is None:
            return self._publish(inst, tracker, tracker.mark_exited(-1, now))

        code = self.runtime.exit_code(host, inst.container_id)
        if code is not None:
            return self._publish(inst, tracker, tracker.mark_exited(code, now))

        check = tracker.check
        if check is None or check.disabled:
            return self._publish(inst, tracker, tracker.record(True, now, "running"))
        ok, msg = self._probe(inst, host, check)
        return self._publish(inst, tracker, tracker.record(ok, now, msg))

    def _publish(self, inst: ReplicaInstance, tracker: HealthTracker, status: HealthStatus) -> HealthStatus:
        if status == HealthStatus.STARTING:
            return status
        target = ReplicaState.HEALTHY if status == HealthStatus.HEALTHY else ReplicaState.UNHEALTHY
        current = self.replicas.get(inst.id)
        if current is None or current.state == target or current.container_id != tracker.container_id:
            return status
        if current.state == ReplicaState.UNHEALTHY:
            return status
        self.replicas.transition(inst.id, target)
        if target == ReplicaState.UNHEALTHY:
            db.log_event(
                "WARN",
                f"Replica {inst.id} became unhealthy: {tracker.last_message}",
                service_name=inst.service,
                version=inst.version,
                host=inst.host,
            )
        elif current.state == ReplicaState.STARTING:
            db.log_event("INFO", f"Replica {inst.id} is healthy", service_name=inst.service, version=inst.version, host=inst.host)
        return status

    def poll_once(self, now: float | None = None) -> int:
        """Probe every replica whose interval has elapsed; returns how many were probed."""
        now = self.clock() if now is None else now
        probed = 0
        for inst in self.replicas.snapshot():
            if inst.state not in (ReplicaState.STARTING, ReplicaState.HEALTHY):
                continue
            tracker = self.tracker(inst.id)
            if tracker is None or tracker.next_due > now:
                continue
            self.observe(inst, now)
            probed += 1
        return probed

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="fto-health", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()
        if self._pool is not None:
            self._pool.shutdown(wait=False)
            self._pool = None

    def _loop(self) -> None:
        db.log_event("INFO", "Health supervisor started")
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception as e:
                db.log_event("ERROR", f"Health poll failed: {type(e).__name__}: {e}")
            self._stop.wait(max(0.1, settings.health_tick_s))
