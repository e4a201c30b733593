"""Edge routing table.

``EdgeRouter`` is the only writer of the routing table. Each rebuild produces
a new immutable ``RoutingTable`` that replaces the old one with a single
reference assignment, so request handlers never see a half-built table and
never wait on placement or rollouts.
"""
from __future__ import annotations

import ssl
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Iterable, Mapping

from . import db
from .certs import CHALLENGE_PREFIX, Certificate, CertificateManager, CertificateStore
from .descriptor import RouteRule
from .docker_ops import container_http_base
from .placement import ReplicaInstance, ReplicaSet, ReplicaState
from .runtime import RuntimeState


class NoHealthyBackends(Exception):
    pass


@dataclass(frozen=True)
class Backend:
    replica_id: str
    host: str
    address: str
    port: int

    @property
    def url(self) -> str:
        return container_http_base(self.address, self.port)


@dataclass(frozen=True)
class Route:
    host: str
    rule: RouteRule
    backends: tuple[Backend, ...] = ()
    certificate: Certificate | None = None

    def tls_ready(self, now=None) -> bool:
        return self.certificate is not None and self.certificate.valid(now)


@dataclass(frozen=True)
class RoutingTable:
    exact: Mapping[str, Route] = field(default_factory=dict)
    wildcards: tuple[Route, ...] = ()  # longest suffix first
    generation: int = 0
    built_at: float = 0.0

    def lookup(self, host: str) -> Route | None:
        route = self.exact.get(host)
        if route is not None:
            return route
        for r in self.wildcards:
            suffix = r.host[1:]
            if host.endswith(suffix) and "." not in host[: -len(suffix)]:
                return r
        return None

    def routes(self) -> list[Route]:
        return sorted(self.exact.values(), key=lambda r: r.host) + list(self.wildcards)


@dataclass(frozen=True)
class RouteDecision:
    kind: str  # proxy|redirect|unavailable|refused|not_found|challenge
    status_code: int
    route: Route | None = None
    backend: Backend | None = None
    location: str | None = None
    token: str | None = None
    reason: str = ""


def normalize_host(host: str) -> str:
    host = (host or "").strip().lower()
    if host.startswith("["):
        return host.split("]")[0] + "]"
    return host.split(":")[0].rstrip(".")


def select_backend(route: Route, runtime: RuntimeState) -> Backend:
    """Round-robin across the route's healthy backends."""
    if not route.backends:
        raise NoHealthyBackends(f"No healthy backends for service '{route.rule.service}'.")
    idx = runtime.next_index(f"route:{route.host}", len(route.backends))
    return route.backends[idx]


class EdgeRouter:
    def __init__(
        self,
        replicas: ReplicaSet,
        runtime: RuntimeState,
        certs: CertificateStore | None = None,
        manager: CertificateManager | None = None,
        host_address: Callable[[str], str | None] | None = None,
    ):
        self.replicas = replicas
        self.runtime = runtime
        self.certs = certs
        self.manager = manager
        self.host_address = host_address
        self._rules: tuple[RouteRule, ...] = ()
        self._write_lock = Lock()
        self._table = RoutingTable()
        self._contexts: dict[tuple[str, str], ssl.SSLContext] = {}
        replicas.add_listener(self._on_replica_change)
        if certs is not None:
            certs.add_listener(lambda _cert: self.rebuild())

    @property
    def table(self) -> RoutingTable:
        return self._table

    @property
    def rules(self) -> tuple[RouteRule, ...]:
        return self._rules

    def _on_replica_change(self, inst: ReplicaInstance) -> None:
        if any(r.service == inst.service for r in self._rules):
            self.rebuild()

    def set_rules(self, rules: Iterable[RouteRule]) -> RoutingTable:
        with self._write_lock:
            self._rules = tuple(rules)
        return self.rebuild()

    def _backends(self, rule: RouteRule, healthy: list[ReplicaInstance]) -> tuple[Backend, ...]:
        out = []
        for inst in healthy:
            if inst.service != rule.service:
                continue
            # The edge reaches the backend on the network the route names, when it joined it.
            address = (
                (inst.address_on(rule.network) if rule.network else None)
                or inst.address
                or (self.host_address(inst.host) if self.host_address else None)
                or inst.host
            )
            out.append(Backend(replica_id=inst.id, host=inst.host, address=address, port=rule.port))
        return tuple(sorted(out, key=lambda b: b.replica_id))

    def rebuild(self) -> RoutingTable:
        """Recompute the table from rules, healthy replicas and certificates, then publish it."""
        with self._write_lock:
            healthy = [r for r in self.replicas.snapshot() if r.state == ReplicaState.HEALTHY]
            exact: dict[str, Route] = {}
            wildcards: dict[str, Route] = {}
            missing: list[str] = []
            for rule in sorted(self._rules, key=lambda r: r.service):
                backends = self._backends(rule, healthy)
                for host in rule.hosts:
                    host = normalize_host(host)
                    cert = self.certs.find(host) if self.certs is not None and rule.requires_tls else None
                    route = Route(host=host, rule=rule, backends=backends, certificate=cert)
                    bucket = wildcards if host.startswith("*.") else exact
                    if host in bucket:
                        db.log_event("WARN", f"Host {host} routed by both {bucket[host].rule.service} and {rule.service}; keeping the first")
                        continue
                    bucket[host] = route
                    if rule.requires_tls and cert is None and not host.startswith("*."):
                        missing.append(host)
            table = RoutingTable(
                exact=exact,
                wildcards=tuple(sorted(wildcards.values(), key=lambda r: -len(r.host))),
                generation=self._table.generation + 1,
                built_at=time.time(),
            )
            self._table = table
        if self.manager is not None:
            for host in missing:
                self.manager.request(host)
        return table

    def resolve(self, host: str, scheme: str, path: str = "/") -> RouteDecision:
        """Decide what to do with one request; never blocks."""
        table = self._table
        host = normalize_host(host)
        if scheme == "http" and path.startswith(CHALLENGE_PREFIX):
            return RouteDecision("challenge", 200, token=path[len(CHALLENGE_PREFIX):])
        route = table.lookup(host)
        if route is None:
            return RouteDecision("not_found", 404, reason=f"No route for host '{host}'")
        if scheme == "http" and route.rule.requires_tls and route.rule.force_https:
            return RouteDecision("redirect", 308, route=route, location=f"https://{host}{path or '/'}")
        if scheme == "https":
            if not route.rule.requires_tls:
                return RouteDecision("refused", 421, route=route, reason=f"'{host}' is served over plain HTTP only")
            if not route.tls_ready():
                return RouteDecision("refused", 421, route=route, reason=f"No valid certificate for '{host}' yet")
        try:
            backend = select_backend(route, self.runtime)
        except NoHealthyBackends as e:
            return RouteDecision("unavailable", 503, route=route, reason=str(e))
        return RouteDecision("proxy", 200, route=route, backend=backend)

    # ------------------------------------------------------------------
    # TLS
    # ------------------------------------------------------------------

    def _context_for(self, cert: Certificate) -> ssl.SSLContext:
        key = (cert.domain, cert.not_after.isoformat())
        ctx = self._contexts.get(key)
        if ctx is None:
            ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            ctx.load_cert_chain(cert.path)
            self._contexts = {k: v for k, v in self._contexts.items() if k[0] != cert.domain}
            self._contexts[key] = ctx
        return ctx

    def sni_callback(self, sock: ssl.SSLObject, server_name: str | None, _ctx: ssl.SSLContext) -> int | None:
        """Swap in the certificate for the requested name, or abort the handshake."""
        if not server_name:
            return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
        route = self._table.lookup(normalize_host(server_name))
        if route is None or not route.tls_ready() or route.certificate.path is None:
            return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
        try:
            sock.context = self._context_for(route.certificate)
        except (OSError, ssl.SSLError) as e:
            db.log_event("ERROR", f"Cannot load certificate for {server_name}: {e}")
            return ssl.ALERT_DESCRIPTION_INTERNAL_ERROR
        return None

    def describe(self) -> list[dict[str, object]]:
        out = []
        for r in self._table.routes():
            out.append(
                {
                    "host": r.host,
                    "service": r.rule.service,
                    "port": r.rule.port,
                    "transport": r.rule.transport,
                    "force_https": r.rule.force_https,
                    "tls_ready": r.tls_ready(),
                    "backends": [b.url for b in r.backends],
                }
            )
        return out
