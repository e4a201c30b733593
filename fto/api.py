"""Management API: submit descriptors, inspect state, operator actions."""
from __future__ import annotations

import os
import secrets
from dataclasses import asdict

from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from . import db
from .api_models import (
    CertificateOut,
    DescriptorRequest,
    HostOut,
    ReplicaOut,
    RolloutOut,
    RouteOut,
    ServiceOut,
    SubmitResult,
    VersionOut,
)
from .errors import ChallengeFailed, DescriptorError, InvalidRolloutTransition
from .placement import ReplicaState
from .reconciler import Reconciler, build_reconciler
from .settings import settings

security = HTTPBasic(auto_error=False)


def require_admin(credentials: HTTPBasicCredentials | None = Depends(security)) -> str | None:
    """Basic auth, enabled only when FTO_ADMIN_USER and FTO_ADMIN_PASSWORD are set."""
    if not (settings.admin_user and settings.admin_password):
        return None
    if credentials is None or not (
        secrets.compare_digest(credentials.username, settings.admin_user)
        and secrets.compare_digest(credentials.password, settings.admin_password)
    ):
        raise HTTPException(status_code=401, detail="Invalid credentials", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


def create_app(reconciler: Reconciler | None = None, start_loops: bool = True) -> FastAPI:
    app = FastAPI(title="Fleet Topology Orchestrator", version="1.0.0")
    rec = reconciler or build_reconciler()
    app.state.reconciler = rec

    @app.on_event("startup")
    def startup() -> None:
        db.init_db()
        if start_loops:
            rec.start()
            if settings.descriptor_path:
                with open(settings.descriptor_path, encoding="utf-8") as fh:
                    rec.submit_text(fh.read(), base_dir=os.path.dirname(os.path.abspath(settings.descriptor_path)))

    @app.on_event("shutdown")
    def shutdown() -> None:
        if start_loops:
            rec.stop()

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/descriptors", response_model=list[SubmitResult], dependencies=[Depends(require_admin)])
    def submit_descriptor(req: DescriptorRequest):
        try:
            results = rec.submit_text(req.text, base_dir=req.base_dir, prune=req.prune)
        except DescriptorError as e:
            raise HTTPException(status_code=400, detail=e.context())
        db.log_event("INFO", f"Descriptor submitted ({len(results)} service(s))")
        return results

    @app.get("/services", response_model=list[ServiceOut])
    def list_services():
        out = []
        for spec in rec.current_specs():
            replicas = rec.replicas.snapshot(spec.name)
            out.append(
                ServiceOut(
                    name=spec.name,
                    version=spec.version,
                    role=spec.role,
                    replicas=spec.replicas,
                    healthy=sum(1 for r in replicas if r.state == ReplicaState.HEALTHY),
                    quorum=spec.quorum,
                    quorum_group=spec.group if spec.quorum_bearing else None,
                    pinned_host=spec.pinned_host,
                    rollout_state=rec.rollouts.status(spec.name).state,
                )
            )
        return out

    @app.get("/services/{name}/versions", response_model=list[VersionOut])
    def list_versions(name: str):
        history = rec.registry.history(name)
        if not history:
            raise HTTPException(status_code=404, detail=f"Unknown service '{name}'")
        return [
            VersionOut(
                service=name,
                version=s.version,
                fingerprint=s.fingerprint(),
                state=rec.registry.state(name, s.version),
                image=s.image,
            )
            for s in history
        ]

    @app.delete("/services/{name}", dependencies=[Depends(require_admin)])
    def remove_service(name: str):
        if name not in rec.registry.services():
            raise HTTPException(status_code=404, detail=f"Unknown service '{name}'")
        return {"service": name, "stopped": rec.remove_service(name)}

    @app.get("/rollouts", response_model=list[RolloutOut])
    def list_rollouts():
        return [asdict(st) for st in rec.state.list_rollouts()]

    @app.get("/rollouts/{service}", response_model=RolloutOut)
    def get_rollout(service: str):
        if service not in rec.registry.services():
            raise HTTPException(status_code=404, detail=f"Unknown service '{service}'")
        return asdict(rec.rollouts.status(service))

    @app.post("/rollouts/{service}/rollback", response_model=RolloutOut, dependencies=[Depends(require_admin)])
    def force_rollback(service: str):
        try:
            return asdict(rec.rollouts.force_rollback(service))
        except InvalidRolloutTransition as e:
            raise HTTPException(status_code=409, detail=str(e))
        except KeyError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.post("/rollouts/{service}/resume", response_model=RolloutOut, dependencies=[Depends(require_admin)])
    def resume(service: str):
        try:
            return asdict(rec.rollouts.resume(service))
        except InvalidRolloutTransition as e:
            raise HTTPException(status_code=409, detail=str(e))
        except KeyError as e:
            raise HTTPException(status_code=404, detail=f"Unknown service {e}")

    @app.get("/replicas", response_model=list[ReplicaOut])
    def list_replicas(service: str | None = None):
        out = []
        for r in rec.replicas.snapshot(service):
            health = rec.health.status(r.id)
            out.append(
                ReplicaOut(
                    id=r.id,
                    service=r.service,
                    version=r.version,
                    host=r.host,
                    ordinal=r.ordinal,
                    state=r.state.value,
                    container_id=r.container_id,
                    address=r.address,
                    restarts=r.restarts,
                    health=health.value if health else None,
                )
            )
        return out

    @app.get("/hosts", response_model=list[HostOut])
    def list_hosts():
        live = [r for r in rec.replicas.snapshot() if r.live]
        out = []
        for h in sorted(rec.placement.hosts, key=lambda h: h.hostname):
            mine = [r for r in live if r.host == h.hostname]
            used = 0
            for r in mine:
                spec = rec.registry.get(r.service, r.version)
                used += spec.memory_limit if spec else 0
            out.append(HostOut(hostname=h.hostname, role=h.role, memory=h.memory, memory_used=used, replicas=len(mine), labels=h.labels))
        return out

    @app.get("/routes", response_model=list[RouteOut])
    def list_routes():
        return rec.router.describe()

    @app.get("/certificates", response_model=list[CertificateOut])
    def list_certificates():
        if rec.cert_manager is not None:
            return rec.cert_manager.status()
        now_certs = rec.certs.snapshot()
        return [
            CertificateOut(
                domain=d,
                issuer=c.issuer,
                not_after=c.not_after.strftime("%Y-%m-%dT%H:%M:%SZ"),
                days_remaining=round(c.remaining().total_seconds() / 86400, 1),
                valid=c.valid(),
            )
            for d, c in sorted(now_certs.items())
        ]

    @app.post("/certificates/{domain}/ensure", response_model=CertificateOut, dependencies=[Depends(require_admin)])
    def ensure_certificate(domain: str):
        if rec.cert_manager is None:
            raise HTTPException(status_code=409, detail="No certificate authority configured (FTO_CERT_AUTHORITY)")
        rec.cert_manager.request(domain, operator=True)
        try:
            rec.cert_manager.ensure(domain)
        except ChallengeFailed as e:
            raise HTTPException(status_code=502, detail=e.context())
        for row in rec.cert_manager.status():
            if row["domain"] == domain.lower():
                return row
        raise HTTPException(status_code=404, detail=f"Unknown domain '{domain}'")

    @app.get("/events")
    def events(limit: int = 100, level: str | None = None):
        return db.latest_events(limit=min(max(1, limit), 1000), level=level)

    return app
