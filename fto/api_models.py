from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class DescriptorRequest(BaseModel):
    text: str = Field(..., description="Compose v3 stack descriptor (YAML)")
    base_dir: str = Field(".", description="Directory config files are resolved against")
    prune: bool = Field(True, description="Remove services missing from the descriptor")


class SubmitResult(BaseModel):
    service: str
    version: int
    changed: bool
    rollout: bool


class ServiceOut(BaseModel):
    name: str
    version: int | None
    role: str | None
    replicas: int
    healthy: int
    quorum: int | None = None
    quorum_group: str | None = None
    pinned_host: str | None = None
    rollout_state: str


class VersionOut(BaseModel):
    service: str
    version: int
    fingerprint: str
    state: str | None
    image: str


class RolloutOut(BaseModel):
    service: str
    state: str
    from_version: int | None = None
    to_version: int | None = None
    message: str = ""
    batch: int = 0
    batches: int = 0
    error: dict[str, Any] | None = None
    started_at: str
    updated_at: str


class ReplicaOut(BaseModel):
    id: str
    service: str
    version: int
    host: str
    ordinal: int
    state: str
    container_id: str | None = None
    address: str | None = None
    restarts: int = 0
    health: str | None = None


class HostOut(BaseModel):
    hostname: str
    role: str
    memory: int
    memory_used: int
    replicas: int
    labels: dict[str, str] = Field(default_factory=dict)


class RouteOut(BaseModel):
    host: str
    service: str
    port: int
    transport: str
    force_https: bool
    tls_ready: bool
    backends: list[str] = Field(default_factory=list)


class CertificateOut(BaseModel):
    domain: str
    issuer: str | None = None
    not_after: str | None = None
    days_remaining: float | None = None
    valid: bool = False
    failures: int = 0
    given_up: bool = False
    last_error: str | None = None
