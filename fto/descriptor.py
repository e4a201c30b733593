"""Descriptor model: parsed, validated stack and inventory definitions.

The stack descriptor is a compose-v3 file (the format ``docker stack deploy``
consumes). Routing comes from traefik-style deploy labels, role and quorum from
``fto.*`` labels.
"""
from __future__ import annotations

import base64
import hashlib
import json
import os
import re
from dataclasses import asdict, dataclass, field, replace
from typing import Any

import yaml

from .constraints import PlacementConstraint, parse_constraint, pinned_hostname
from .errors import DescriptorError

ROLES = ("coordinator", "master", "data", "edge-facing")
FAILURE_ACTIONS = ("rollback", "pause", "continue")
RESTART_CONDITIONS = ("none", "on-failure", "any")

SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9\-_]{0,62}$")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|ms|h|m|s)")
_MEMORY_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgt]?)b?\s*$", re.IGNORECASE)
_HOST_V2_RE = re.compile(r"Host\(([^)]*)\)")

_DURATION_UNITS = {"ns": 1e-9, "us": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}
_MEMORY_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4}


def validate_service_name(name: str) -> None:
    if not SERVICE_NAME_RE.match(name):
        raise DescriptorError(
            f"Invalid service name {name!r}. Use lowercase letters/numbers, hyphen or underscore, starting with a letter.",
            service=name,
        )


def parse_duration(raw: Any) -> float:
    """Compose duration (``1m30s``, ``500ms``) or a plain number of seconds."""
    if raw is None:
        return 0.0
    if isinstance(raw, (int, float)):
        return float(raw)
    text = str(raw).strip()
    parts = _DURATION_PART_RE.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise ValueError(f"Invalid duration {raw!r}")
    return sum(float(n) * _DURATION_UNITS[u] for n, u in parts)


def parse_memory(raw: Any) -> int:
    """Byte size such as ``4G`` or ``512m``; plain integers are bytes."""
    if raw is None:
        return 0
    if isinstance(raw, int):
        return raw
    m = _MEMORY_RE.match(str(raw))
    if not m:
        raise ValueError(f"Invalid memory size {raw!r}")
    num, unit = m.groups()
    return int(float(num) * _MEMORY_UNITS[unit.lower()])


def _labels(raw: Any) -> dict[str, str]:
    if not raw:
        return {}
    if isinstance(raw, dict):
        return {str(k): "" if v is None else str(v) for k, v in raw.items()}
    out: dict[str, str] = {}
    for item in raw:
        key, _, value = str(item).partition("=")
        out[key.strip()] = value.strip()
    return out


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Ulimit:
    name: str
    soft: int
    hard: int


@dataclass(frozen=True)
class HealthCheck:
    test: tuple[str, ...] = ()
    http_path: str | None = None
    http_port: int = 80
    interval: float = 30.0
    timeout: float = 30.0
    retries: int = 3
    start_period: float = 0.0

    @property
    def argv(self) -> list[str] | None:
        """Command to execute inside the replica, or None for HTTP/no probe."""
        if not self.test or self.test[0] == "NONE":
            return None
        kind, rest = self.test[0], list(self.test[1:])
        if kind == "CMD-SHELL":
            return ["/bin/sh", "-c", " ".join(rest)]
        if kind == "CMD":
            return rest
        return list(self.test)

    @property
    def disabled(self) -> bool:
        return self.argv is None and not self.http_path

    def monitor_window(self) -> float:
        """Longest a fresh replica can legitimately take to become healthy."""
        return self.start_period + (self.retries + 1) * (self.interval + self.timeout)


@dataclass(frozen=True)
class Mount:
    kind: str  # config|volume|bind
    source: str
    target: str
    read_only: bool = False
    data: bytes | None = None  # config blobs only


@dataclass(frozen=True)
class Port:
    target: int
    published: int | None = None
    protocol: str = "tcp"
    mode: str = "ingress"  # ingress|host


@dataclass(frozen=True)
class RestartPolicy:
    condition: str = "any"
    delay: float = 5.0
    max_attempts: int = 0  # 0 means "unbounded" in compose; capped by effective_attempts()

    def effective_attempts(self, cap: int) -> int:
        if self.condition == "none":
            return 0
        if self.max_attempts <= 0:
            return cap
        return self.max_attempts


@dataclass(frozen=True)
class UpdateConfig:
    parallelism: int = 1  # 0 = all at once
    delay: float = 0.0
    failure_action: str = "pause"
    monitor: float | None = None
    order: str = "stop-first"


@dataclass(frozen=True)
class RolloutPlan:
    replicas: int
    parallelism: int
    delay: float
    failure_action: str
    order: str
    monitor: float
    restart: RestartPolicy

    def batch_size(self) -> int:
        return self.replicas if self.parallelism <= 0 else self.parallelism


@dataclass(frozen=True)
class RouteRule:
    hosts: tuple[str, ...]
    service: str
    port: int
    transport: str = "https"  # http|https
    force_https: bool = True
    network: str | None = None

    @property
    def requires_tls(self) -> bool:
        return self.transport == "https"


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    image: str
    role: str = "data"
    replicas: int = 1
    mode: str = "replicated"  # replicated|global
    memory_limit: int = 0
    ulimits: tuple[Ulimit, ...] = ()
    healthcheck: HealthCheck | None = None
    mounts: tuple[Mount, ...] = ()
    constraints: tuple[PlacementConstraint, ...] = ()
    max_replicas_per_node: int = 0
    ports: tuple[Port, ...] = ()
    update_config: UpdateConfig = field(default_factory=UpdateConfig)
    rollback_config: UpdateConfig | None = None
    restart_policy: RestartPolicy = field(default_factory=RestartPolicy)
    labels: dict[str, str] = field(default_factory=dict)
    environment: dict[str, str] = field(default_factory=dict)
    networks: tuple[str, ...] = ()
    command: tuple[str, ...] = ()
    endpoint_mode: str = "vip"
    quorum: int | None = None
    quorum_group: str | None = None
    version: int = 0

    @property
    def quorum_bearing(self) -> bool:
        return self.quorum is not None

    @property
    def group(self) -> str:
        return self.quorum_group or self.name

    @property
    def pinned_host(self) -> str | None:
        return pinned_hostname(self.constraints)

    def host_ports(self) -> set[tuple[int, str]]:
        return {(p.published, p.protocol) for p in self.ports if p.mode == "host" and p.published}

    def fingerprint(self) -> str:
        payload = self.to_dict()
        payload.pop("version", None)
        raw = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(raw.encode()).hexdigest()[:16]

    def rollout_plan(self, rollback: bool = False, restart_cap: int = 3) -> RolloutPlan:
        cfg = self.rollback_config if (rollback and self.rollback_config) else self.update_config
        hc = self.healthcheck
        monitor = cfg.monitor if cfg.monitor else (hc.monitor_window() if hc and not hc.disabled else 30.0)
        restart = replace(self.restart_policy, max_attempts=self.restart_policy.effective_attempts(restart_cap))
        return RolloutPlan(
            replicas=self.replicas,
            parallelism=cfg.parallelism,
            delay=cfg.delay,
            failure_action=cfg.failure_action,
            order=cfg.order,
            monitor=monitor,
            restart=restart,
        )

    def route_rules(self, default_force_https: bool = True) -> list[RouteRule]:
        return route_rules_from_labels(self.name, self.labels, default_force_https)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        for m in d["mounts"]:
            if m["data"] is not None:
                m["data"] = base64.b64encode(m["data"]).decode()
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ServiceSpec":
        d = dict(d)
        hc = d.get("healthcheck")
        d["healthcheck"] = HealthCheck(**{**hc, "test": tuple(hc["test"])}) if hc else None
        d["ulimits"] = tuple(Ulimit(**u) for u in d.get("ulimits", ()))
        d["mounts"] = tuple(
            Mount(**{**m, "data": base64.b64decode(m["data"]) if m.get("data") is not None else None})
            for m in d.get("mounts", ())
        )
        d["constraints"] = tuple(PlacementConstraint(**c) for c in d.get("constraints", ()))
        d["ports"] = tuple(Port(**p) for p in d.get("ports", ()))
        d["update_config"] = UpdateConfig(**d["update_config"])
        d["rollback_config"] = UpdateConfig(**d["rollback_config"]) if d.get("rollback_config") else None
        d["restart_policy"] = RestartPolicy(**d["restart_policy"])
        d["networks"] = tuple(d.get("networks", ()))
        d["command"] = tuple(d.get("command", ()))
        return cls(**d)


@dataclass(frozen=True)
class Host:
    hostname: str
    memory: int
    id: str = ""
    role: str = "worker"  # manager|worker
    ulimits: dict[str, int] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    engine_labels: dict[str, str] = field(default_factory=dict)
    address: str | None = None
    docker_url: str | None = None
    os: str = "linux"
    arch: str = "x86_64"

    def attributes(self) -> dict[str, str]:
        attrs = {
            "node.id": self.id or self.hostname,
            "node.hostname": self.hostname,
            "node.role": self.role,
            "node.platform.os": self.os,
            "node.platform.arch": self.arch,
        }
        attrs.update({f"node.labels.{k}": v for k, v in self.labels.items()})
        attrs.update({f"engine.labels.{k}": v for k, v in self.engine_labels.items()})
        return attrs

    def allows_ulimit(self, ulimit: Ulimit) -> bool:
        cap = self.ulimits.get(ulimit.name)
        if cap is None or cap == -1:
            return True
        return ulimit.hard != -1 and ulimit.hard <= cap


@dataclass(frozen=True)
class Descriptor:
    services: tuple[ServiceSpec, ...]
    networks: tuple[str, ...] = ()
    volumes: tuple[str, ...] = ()

    def service(self, name: str) -> ServiceSpec:
        for s in self.services:
            if s.name == name:
                return s
        raise KeyError(name)


# ---------------------------------------------------------------------------
# Routing labels
# ---------------------------------------------------------------------------


def _hosts_from_v1_rule(rule: str) -> list[str]:
    hosts: list[str] = []
    for part in rule.split(";"):
        kind, _, value = part.partition(":")
        if kind.strip() == "Host":
            hosts.extend(h.strip() for h in value.split(",") if h.strip())
    return hosts


def _hosts_from_v2_rule(rule: str) -> list[str]:
    hosts: list[str] = []
    for group in _HOST_V2_RE.findall(rule):
        hosts.extend(h.strip().strip("`\"' ") for h in group.split(",") if h.strip())
    return hosts


def route_rules_from_labels(service: str, labels: dict[str, str], default_force_https: bool = True) -> list[RouteRule]:
    if labels.get("traefik.enable", "true").lower() == "false":
        return []

    hosts: list[str] = []
    if "traefik.frontend.rule" in labels:
        hosts.extend(_hosts_from_v1_rule(labels["traefik.frontend.rule"]))
    port_raw = labels.get("traefik.port")
    for key, value in sorted(labels.items()):
        if key.startswith("traefik.http.routers.") and key.endswith(".rule"):
            hosts.extend(_hosts_from_v2_rule(value))
        if key.startswith("traefik.http.services.") and key.endswith(".loadbalancer.server.port"):
            port_raw = port_raw or value
    if not hosts:
        return []

    transport = labels.get("fto.route.transport", "https")
    redirect = labels.get("traefik.frontend.redirect.entryPoint")
    force_https = (redirect == "https") if redirect is not None else default_force_https
    try:
        port = int(port_raw) if port_raw else 80
    except ValueError as e:
        raise DescriptorError(f"Invalid traefik.port {port_raw!r}", service=service) from e

    return [
        RouteRule(
            hosts=tuple(dict.fromkeys(h.lower() for h in hosts)),
            service=service,
            port=port,
            transport=transport,
            force_https=transport == "https" and force_https,
            network=labels.get("traefik.docker.network"),
        )
    ]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _parse_healthcheck(raw: dict[str, Any] | None) -> HealthCheck | None:
    if not raw or raw.get("disable"):
        return None
    test = raw.get("test")
    if isinstance(test, str):
        argv: tuple[str, ...] = ("CMD-SHELL", test)
    elif isinstance(test, list):
        argv = tuple(str(x) for x in test)
    else:
        argv = ()
    hc = HealthCheck(
        test=argv,
        http_path=raw.get("http_path"),
        http_port=int(raw.get("http_port", 80)),
        interval=parse_duration(raw.get("interval", "30s")),
        timeout=parse_duration(raw.get("timeout", "30s")),
        retries=int(raw.get("retries", 3)),
        start_period=parse_duration(raw.get("start_period", 0)),
    )
    if hc.retries < 1:
        raise ValueError("healthcheck.retries must be >= 1")
    return hc


def _parse_update_config(raw: dict[str, Any] | None) -> UpdateConfig:
    raw = raw or {}
    cfg = UpdateConfig(
        parallelism=int(raw.get("parallelism", 1)),
        delay=parse_duration(raw.get("delay", 0)),
        failure_action=str(raw.get("failure_action", "pause")),
        monitor=parse_duration(raw["monitor"]) if raw.get("monitor") else None,
        order=str(raw.get("order", "stop-first")),
    )
    if cfg.failure_action not in FAILURE_ACTIONS:
        raise ValueError(f"failure_action must be one of {FAILURE_ACTIONS}")
    if cfg.order not in ("stop-first", "start-first"):
        raise ValueError("order must be stop-first or start-first")
    if cfg.parallelism < 0:
        raise ValueError("parallelism must be >= 0")
    return cfg


def _parse_restart_policy(raw: dict[str, Any] | None) -> RestartPolicy:
    raw = raw or {}
    policy = RestartPolicy(
        condition=str(raw.get("condition", "any")),
        delay=parse_duration(raw.get("delay", "5s")),
        max_attempts=int(raw.get("max_attempts", 0)),
    )
    if policy.condition not in RESTART_CONDITIONS:
        raise ValueError(f"restart_policy.condition must be one of {RESTART_CONDITIONS}")
    return policy


def _parse_ulimits(raw: dict[str, Any] | None) -> tuple[Ulimit, ...]:
    out: list[Ulimit] = []
    for name, value in (raw or {}).items():
        if isinstance(value, dict):
            out.append(Ulimit(name=name, soft=int(value["soft"]), hard=int(value["hard"])))
        else:
            out.append(Ulimit(name=name, soft=int(value), hard=int(value)))
    return tuple(out)


def _parse_ports(raw: list[Any] | None) -> tuple[Port, ...]:
    out: list[Port] = []
    for item in raw or []:
        if isinstance(item, dict):
            out.append(
                Port(
                    target=int(item["target"]),
                    published=int(item["published"]) if item.get("published") else None,
                    protocol=str(item.get("protocol", "tcp")),
                    mode=str(item.get("mode", "ingress")),
                )
            )
            continue
        spec, _, proto = str(item).partition("/")
        published, _, target = spec.rpartition(":")
        out.append(Port(target=int(target), published=int(published) if published else None, protocol=proto or "tcp"))
    return tuple(out)


def _parse_mounts(
    svc: dict[str, Any], configs: dict[str, bytes], service: str
) -> tuple[Mount, ...]:
    mounts: list[Mount] = []
    for item in svc.get("configs") or []:
        if isinstance(item, str):
            source, target = item, f"/{item}"
        else:
            source, target = item["source"], item.get("target", f"/{item['source']}")
        if source not in configs:
            raise DescriptorError(f"Unknown config {source!r}", service=service)
        mounts.append(Mount(kind="config", source=source, target=target, read_only=True, data=configs[source]))
    for item in svc.get("volumes") or []:
        if isinstance(item, dict):
            mounts.append(
                Mount(
                    kind="bind" if item.get("type") == "bind" else "volume",
                    source=str(item["source"]),
                    target=str(item["target"]),
                    read_only=bool(item.get("read_only", False)),
                )
            )
            continue
        parts = str(item).split(":")
        source, target = parts[0], parts[1] if len(parts) > 1 else parts[0]
        read_only = len(parts) > 2 and "ro" in parts[2].split(",")
        kind = "bind" if source.startswith(("/", ".", "~")) else "volume"
        mounts.append(Mount(kind=kind, source=source, target=target, read_only=read_only))
    return tuple(mounts)


def _parse_service(name: str, svc: dict[str, Any], configs: dict[str, bytes], force_https: bool) -> ServiceSpec:
    validate_service_name(name)
    if not svc.get("image"):
        raise DescriptorError("Service has no image", service=name)

    deploy = svc.get("deploy") or {}
    placement = deploy.get("placement") or {}
    labels = {**_labels(svc.get("labels")), **_labels(deploy.get("labels"))}
    limits = (deploy.get("resources") or {}).get("limits") or {}
    environment = _labels(svc.get("environment"))
    command = svc.get("command") or ()
    if isinstance(command, str):
        command = tuple(command.split())

    try:
        constraints = tuple(parse_constraint(c) for c in placement.get("constraints") or [])
        spec = ServiceSpec(
            name=name,
            image=str(svc["image"]),
            replicas=int(deploy.get("replicas", 1)),
            mode=str(deploy.get("mode", "replicated")),
            memory_limit=parse_memory(limits.get("memory")),
            ulimits=_parse_ulimits(svc.get("ulimits")),
            healthcheck=_parse_healthcheck(svc.get("healthcheck")),
            mounts=_parse_mounts(svc, configs, name),
            constraints=constraints,
            max_replicas_per_node=int(placement.get("max_replicas_per_node", 0)),
            ports=_parse_ports(svc.get("ports")),
            update_config=_parse_update_config(deploy.get("update_config")),
            rollback_config=_parse_update_config(deploy["rollback_config"]) if deploy.get("rollback_config") else None,
            restart_policy=_parse_restart_policy(deploy.get("restart_policy")),
            labels=labels,
            environment=environment,
            networks=tuple(svc.get("networks") or ()),
            command=tuple(str(c) for c in command),
            endpoint_mode=str(deploy.get("endpoint_mode", "vip")),
            quorum=int(labels["fto.quorum"]) if labels.get("fto.quorum") else None,
            quorum_group=labels.get("fto.quorum.group"),
        )
    except DescriptorError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        raise DescriptorError(f"{type(e).__name__}: {e}", service=name) from e

    routed = bool(spec.route_rules(force_https))
    role = labels.get("fto.role") or ("edge-facing" if routed else "data")
    if role not in ROLES:
        raise DescriptorError(f"Unknown role {role!r}; expected one of {ROLES}", service=name)
    if spec.mode not in ("replicated", "global"):
        raise DescriptorError(f"Unknown deploy mode {spec.mode!r}", service=name)
    if spec.replicas < 0:
        raise DescriptorError("replicas must be >= 0", service=name)
    if spec.quorum is not None:
        if spec.quorum < 1:
            raise DescriptorError("fto.quorum must be >= 1", service=name)
        for cfg in (spec.update_config, spec.rollback_config):
            if cfg and cfg.failure_action == "continue":
                raise DescriptorError("failure_action 'continue' is not allowed for quorum-bearing services", service=name)
    return replace(spec, role=role)


def _validate_quorum_groups(services: list[ServiceSpec]) -> None:
    groups: dict[str, list[ServiceSpec]] = {}
    for s in services:
        if s.quorum_bearing:
            groups.setdefault(s.group, []).append(s)
    for group, members in groups.items():
        quorums = {m.quorum for m in members}
        if len(quorums) > 1:
            raise DescriptorError(f"Quorum group {group!r} declares conflicting quorum sizes {sorted(quorums)}")
        size = sum(m.replicas for m in members if m.mode == "replicated")
        quorum = quorums.pop()
        if all(m.mode == "replicated" for m in members) and quorum > size:
            raise DescriptorError(
                f"Quorum group {group!r} needs {quorum} members but only declares {size}", service=members[0].name
            )


def parse_descriptor(text: str, base_dir: str = ".", default_force_https: bool = True) -> Descriptor:
    try:
        doc = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise DescriptorError(f"Invalid YAML: {e}") from e
    if not isinstance(doc, dict) or not isinstance(doc.get("services"), dict):
        raise DescriptorError("Descriptor must contain a 'services' mapping")

    configs: dict[str, bytes] = {}
    for name, cfg in (doc.get("configs") or {}).items():
        cfg = cfg or {}
        if "content" in cfg:
            configs[name] = str(cfg["content"]).encode()
            continue
        path = os.path.join(base_dir, cfg.get("file", ""))
        try:
            with open(path, "rb") as fh:
                configs[name] = fh.read()
        except OSError as e:
            raise DescriptorError(f"Config {name!r}: cannot read {path}: {e}") from e

    services = [
        _parse_service(str(name), svc or {}, configs, default_force_https) for name, svc in doc["services"].items()
    ]
    _validate_quorum_groups(services)

    return Descriptor(
        services=tuple(services),
        networks=tuple((doc.get("networks") or {}).keys()),
        volumes=tuple((doc.get("volumes") or {}).keys()),
    )


def load_descriptor(path: str, default_force_https: bool = True) -> Descriptor:
    with open(path, encoding="utf-8") as fh:
        return parse_descriptor(fh.read(), os.path.dirname(os.path.abspath(path)), default_force_https)


def parse_inventory(text: str) -> list[Host]:
    doc = yaml.safe_load(text) or {}
    hosts: list[Host] = []
    seen: set[str] = set()
    for item in doc.get("hosts") or []:
        try:
            host = Host(
                hostname=str(item["hostname"]),
                id=str(item.get("id", "")),
                role=str(item.get("role", "worker")),
                memory=parse_memory(item.get("memory", 0)),
                ulimits={str(k): int(v) for k, v in (item.get("ulimits") or {}).items()},
                labels=_labels(item.get("labels")),
                engine_labels=_labels(item.get("engine_labels")),
                address=item.get("address"),
                docker_url=item.get("docker_url"),
                os=str(item.get("os", "linux")),
                arch=str(item.get("arch", "x86_64")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DescriptorError(f"Invalid inventory entry {item!r}: {e}") from e
        if host.hostname in seen:
            raise DescriptorError(f"Duplicate host {host.hostname!r} in inventory")
        seen.add(host.hostname)
        hosts.append(host)
    return hosts


def load_inventory(path: str) -> list[Host]:
    with open(path, encoding="utf-8") as fh:
        return parse_inventory(fh.read())
