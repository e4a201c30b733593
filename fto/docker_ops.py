from __future__ import annotations

import io
import secrets
import tarfile
from dataclasses import dataclass
from threading import Lock
from typing import Protocol

import docker
from docker.errors import APIError, DockerException, NotFound
from docker.types import Mount as DockerMount
from docker.types import Ulimit as DockerUlimit

from .db import log_event
from .descriptor import Host, Mount, ServiceSpec
from .settings import settings

LABEL_SERVICE = "fto.service"
LABEL_VERSION = "fto.version"
LABEL_ORDINAL = "fto.ordinal"
LABEL_HOST = "fto.host"
LABEL_REPLICA = "fto.replica"


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str
    address: str | None = None
    # (network, address) for every network the container joined.
    networks: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class DiscoveredContainer:
    ref: ContainerRef
    replica_id: str
    service: str
    version: int
    ordinal: int
    host: str
    running: bool


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    output: str = ""


class ContainerRuntime(Protocol):
    """What the orchestrator needs from a container runtime."""

    def start(self, spec: ServiceSpec, host: Host, ordinal: int, replica_id: str) -> ContainerRef: ...

    def stop(self, host: Host, container_id: str) -> None: ...

    def exec(self, host: Host, container_id: str, argv: list[str]) -> ExecResult: ...

    def exit_code(self, host: Host, container_id: str) -> int | None:
        """None while running; the exit code once the process has exited."""
        ...

    def discover(self, hosts: list[Host]) -> list[DiscoveredContainer]: ...


def _config_archive(mounts: tuple[Mount, ...]) -> bytes:
    """Tar of config blobs, rooted at '/', files read-only."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for m in mounts:
            if m.kind != "config" or m.data is None:
                continue
            info = tarfile.TarInfo(name=m.target.lstrip("/"))
            info.size = len(m.data)
            info.mode = 0o444
            tar.addfile(info, io.BytesIO(m.data))
    return buf.getvalue()


def network_addresses(container) -> tuple[tuple[str, str], ...]:
    nets = (container.attrs.get("NetworkSettings") or {}).get("Networks") or {}
    return tuple(sorted((name, cfg["IPAddress"]) for name, cfg in nets.items() if cfg and cfg.get("IPAddress")))


def container_http_base(address: str, port: int) -> str:
    """HTTP base URL reachable from the edge (overlay network or host address)."""
    return f"http://{address}:{int(port)}"


class DockerRuntime:
    """ContainerRuntime backed by the Docker Engine API, one client per host."""

    def __init__(self, network: str | None = None):
        self.network = network or settings.docker_network
        self._clients: dict[str, docker.DockerClient] = {}
        self._lock = Lock()

    def _client(self, host: Host) -> docker.DockerClient:
        with self._lock:
            c = self._clients.get(host.hostname)
            if c is None:
                c = docker.DockerClient(base_url=host.docker_url) if host.docker_url else docker.from_env()
                self._clients[host.hostname] = c
            return c

    def available(self, host: Host) -> bool:
        try:
            self._client(host).ping()
            return True
        except DockerException:
            return False

    def ensure_network(self, host: Host, name: str | None = None) -> None:
        name = name or self.network
        c = self._client(host)
        try:
            c.networks.get(name)
        except NotFound:
            c.networks.create(name, driver="bridge", attachable=True)
            log_event("INFO", f"Created docker network '{name}'.", host=host.hostname)

    def start(self, spec: ServiceSpec, host: Host, ordinal: int, replica_id: str) -> ContainerRef:
        """Create, seed configs into, and start one replica container.

        Containers are labeled so they can be re-discovered after restarts.
        """
        c = self._client(host)
        networks = spec.networks or (self.network,)
        for n in networks:
            self.ensure_network(host, n)

        name = f"fto-{spec.name}-{ordinal}-{secrets.token_hex(3)}"
        labels = {
            LABEL_SERVICE: spec.name,
            LABEL_VERSION: str(spec.version),
            LABEL_ORDINAL: str(ordinal),
            LABEL_HOST: host.hostname,
            LABEL_REPLICA: replica_id,
        }
        mounts = [
            DockerMount(target=m.target, source=m.source, type=m.kind, read_only=m.read_only)
            for m in spec.mounts
            if m.kind in ("volume", "bind")
        ]
        ulimits = [DockerUlimit(name=u.name, soft=u.soft, hard=u.hard) for u in spec.ulimits]
        ports = {f"{p.target}/{p.protocol}": p.published for p in spec.ports if p.published}
        hostname_env = {"FTO_REPLICA": replica_id, "FTO_ORDINAL": str(ordinal), "FTO_HOST": host.hostname}

        try:
            container = c.containers.create(
                spec.image,
                command=list(spec.command) or None,
                name=name,
                hostname=name,
                environment={**spec.environment, **hostname_env},
                network=networks[0],
                labels=labels,
                mounts=mounts,
                ulimits=ulimits,
                ports=ports,
                mem_limit=spec.memory_limit or None,
                # Restarts are driven by the rollout controller; keep Docker's policy off.
                restart_policy={"Name": "no"},
            )
            for n in networks[1:]:
                c.networks.get(n).connect(container)
            if any(m.kind == "config" for m in spec.mounts):
                container.put_archive("/", _config_archive(spec.mounts))
            container.start()
            container.reload()
        except APIError as e:
            log_event("ERROR", f"Failed to start {name}: {e}", service_name=spec.name, version=spec.version, host=host.hostname)
            raise

        log_event("INFO", f"Started container {name} from image {spec.image}", service_name=spec.name, version=spec.version, host=host.hostname)
        return ContainerRef(id=container.id, name=name, address=name, networks=network_addresses(container))

    def stop(self, host: Host, container_id: str) -> None:
        c = self._client(host)
        try:
            cont = c.containers.get(container_id)
            cont.stop(timeout=10)
            cont.remove(force=True)
        except NotFound:
            return

    def exec(self, host: Host, container_id: str, argv: list[str]) -> ExecResult:
        c = self._client(host)
        try:
            cont = c.containers.get(container_id)
            code, output = cont.exec_run(argv, demux=False)
        except NotFound:
            return ExecResult(exit_code=-1, output="container not found")
        text = output.decode(errors="replace") if isinstance(output, bytes) else str(output or "")
        return ExecResult(exit_code=int(code if code is not None else -1), output=text[-4096:])

    def exit_code(self, host: Host, container_id: str) -> int | None:
        c = self._client(host)
        try:
            cont = c.containers.get(container_id)
            cont.reload()
        except NotFound:
            return -1
        if cont.status in ("running", "created", "restarting"):
            return None
        return int(cont.attrs.get("State", {}).get("ExitCode", -1))

    def discover(self, hosts: list[Host]) -> list[DiscoveredContainer]:
        found: list[DiscoveredContainer] = []
        for host in hosts:
            if not self.available(host):
                log_event("WARN", "Docker not reachable during discovery", host=host.hostname)
                continue
            for cont in self._client(host).containers.list(all=True, filters={"label": [LABEL_SERVICE]}):
                lbl = cont.labels
                if lbl.get(LABEL_HOST, host.hostname) != host.hostname:
                    continue
                try:
                    found.append(
                        DiscoveredContainer(
                            ref=ContainerRef(id=cont.id, name=cont.name, address=cont.name, networks=network_addresses(cont)),
                            replica_id=lbl.get(LABEL_REPLICA) or f"{lbl[LABEL_SERVICE]}.{lbl[LABEL_ORDINAL]}.{cont.id[:6]}",
                            service=lbl[LABEL_SERVICE],
                            version=int(lbl[LABEL_VERSION]),
                            ordinal=int(lbl[LABEL_ORDINAL]),
                            host=host.hostname,
                            running=cont.status == "running",
                        )
                    )
                except (KeyError, ValueError):
                    log_event("WARN", f"Ignoring container {cont.name} with malformed fto labels", host=host.hostname)
        return found
