import importlib
import itertools
from dataclasses import replace

import pytest

from fto import db
from fto import settings as settings_module
from fto.descriptor import Host, ServiceSpec, parse_memory
from fto.docker_ops import ContainerRef, DiscoveredContainer, ExecResult
from fto.reconciler import Reconciler

# Every module that reads settings through its own module-level name.
SETTINGS_USERS = (
    "fto.settings",
    "fto.db",
    "fto.alerts",
    "fto.docker_ops",
    "fto.health",
    "fto.rollouts",
    "fto.certs",
    "fto.acme",
    "fto.reconciler",
    "fto.edge",
    "fto.api",
)


class FakeClock:
    """Monotonic clock whose sleep() advances time and runs hooks instead of blocking."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self._hooks = []

    def __call__(self) -> float:
        return self.now

    def on_sleep(self, fn) -> None:
        self._hooks.append(fn)

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.now += max(seconds, 0.001)
        for fn in list(self._hooks):
            fn()


class FakeRuntime:
    """In-memory ContainerRuntime.

    ``crashing`` holds (image, ordinal) pairs whose containers exit right away;
    ``failing_probes`` holds pairs whose exec health probes return non-zero.
    """

    def __init__(self):
        self._ids = itertools.count(1)
        self.containers = {}
        self.stopped = []
        self.crashing = set()
        self.failing_probes = set()
        self.broken_images = set()
        self.killed = set()
        self.discovered = []

    def start(self, spec, host, ordinal, replica_id):
        if spec.image in self.broken_images:
            raise RuntimeError(f"pull access denied for {spec.image}")
        n = next(self._ids)
        cid = f"c{n:04d}"
        self.containers[cid] = {
            "image": spec.image,
            "service": spec.name,
            "version": spec.version,
            "host": host.hostname,
            "ordinal": ordinal,
            "replica_id": replica_id,
            "running": True,
        }
        networks = tuple((net, f"172.{20 + i}.0.{n}") for i, net in enumerate(spec.networks))
        return ContainerRef(id=cid, name=f"fto-{spec.name}-{ordinal}-{n}", address=f"10.9.0.{n}", networks=networks)

    def stop(self, host, container_id):
        c = self.containers.get(container_id)
        if c is not None:
            c["running"] = False
        self.stopped.append(container_id)

    def exec(self, host, container_id, argv):
        c = self.containers[container_id]
        if (c["image"], c["ordinal"]) in self.failing_probes:
            return ExecResult(exit_code=1, output="probe failed")
        return ExecResult(exit_code=0, output="ok")

    def exit_code(self, host, container_id):
        c = self.containers.get(container_id)
        if c is None or not c["running"]:
            return -1
        if container_id in self.killed or (c["image"], c["ordinal"]) in self.crashing:
            return 137
        return None

    def discover(self, hosts):
        names = {h.hostname for h in hosts}
        return [d for d in self.discovered if d.host in names]

    def kill(self, container_id):
        self.killed.add(container_id)

    def running(self, image=None):
        return [c for c in self.containers.values() if c["running"] and (image is None or c["image"] == image)]

    def add_discovered(self, service, version, ordinal, host):
        n = next(self._ids)
        cid = f"c{n:04d}"
        self.containers[cid] = {
            "image": f"{service}:{version}",
            "service": service,
            "version": version,
            "host": host,
            "ordinal": ordinal,
            "replica_id": f"{service}.{ordinal}.old{n}",
            "running": True,
        }
        self.discovered.append(
            DiscoveredContainer(
                ref=ContainerRef(id=cid, name=f"fto-{service}-{ordinal}-{n}", address=f"10.9.0.{n}"),
                replica_id=f"{service}.{ordinal}.old{n}",
                service=service,
                version=version,
                ordinal=ordinal,
                host=host,
                running=True,
            )
        )
        return cid


@pytest.fixture
def configure(monkeypatch, tmp_path):
    """Swap in test settings everywhere; returns the applied Settings."""

    def apply(**overrides):
        base = {
            "db_path": str(tmp_path / "fto.db"),
            "cert_dir": str(tmp_path / "certs"),
            "inventory_path": str(tmp_path / "inventory.yml"),
            "descriptor_path": None,
            "rollout_poll_s": 1.0,
            "quorum_wait_s": 5.0,
            "max_restart_attempts": 3,
            "challenge_timeout_s": 10.0,
            "challenge_poll_s": 1.0,
            "max_challenge_attempts": 3,
            "renew_before_days": 30,
            "enable_email": False,
            "admin_user": None,
            "admin_password": None,
        }
        base.update(overrides)
        new = replace(settings_module.settings, **base)
        for name in SETTINGS_USERS:
            monkeypatch.setattr(importlib.import_module(name), "settings", new)
        return new

    return apply


@pytest.fixture(autouse=True)
def test_settings(configure):
    s = configure()
    db.init_db()
    return s


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def hosts():
    return [
        Host(hostname=f"node-{i}", memory=parse_memory("16G"), address=f"10.0.0.{10 + i}", ulimits={"memlock": -1})
        for i in (1, 2, 3)
    ]


@pytest.fixture
def fleet(runtime, hosts, clock, tmp_path):
    """Reconciler over FakeRuntime; every fake sleep runs one health poll."""
    rec = Reconciler(runtime, hosts=hosts, cert_dir=str(tmp_path / "certs"), clock=clock, sleep=clock.sleep)
    clock.on_sleep(rec.health.poll_once)
    return rec


def make_spec(name="web", image=None, replicas=2, **kw) -> ServiceSpec:
    return ServiceSpec(name=name, image=image or f"{name}:1", replicas=replicas, **kw)


def deploy(fleet, spec):
    """Register ``spec`` and run its rollout to completion on the calling thread."""
    versioned, _ = fleet.registry.submit(spec)
    fleet.rollouts.submit(versioned, background=False)
    return versioned


def event_messages(level=None):
    return [e["message"] for e in db.latest_events(limit=1000, level=level)]
