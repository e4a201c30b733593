from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("FTO_DB_PATH", "fto.db")
    inventory_path: str = os.getenv("FTO_INVENTORY_PATH", "inventory.yml")
    descriptor_path: str | None = os.getenv("FTO_DESCRIPTOR_PATH")
    poll_interval_s: int = _env_int("FTO_POLL_INTERVAL_S", 5)
    health_tick_s: float = _env_float("FTO_HEALTH_TICK_S", 1.0)
    rollout_poll_s: float = _env_float("FTO_ROLLOUT_POLL_S", 1.0)
    health_workers: int = _env_int("FTO_HEALTH_WORKERS", 8)
    docker_network: str = os.getenv("FTO_DOCKER_NETWORK", "fto")

    # Rollouts
    # Compose treats max_attempts=0 as "unlimited"; we never retry forever.
    max_restart_attempts: int = _env_int("FTO_MAX_RESTART_ATTEMPTS", 3)
    quorum_wait_s: float = _env_float("FTO_QUORUM_WAIT_S", 300.0)

    # Edge
    api_port: int = _env_int("FTO_API_PORT", 8000)
    http_port: int = _env_int("FTO_HTTP_PORT", 80)
    https_port: int = _env_int("FTO_HTTPS_PORT", 443)
    gateway_timeout_s: int = _env_int("FTO_GATEWAY_TIMEOUT_S", 10)
    # One INFO event per proxied request.
    edge_access_log: bool = _env_bool("FTO_EDGE_ACCESS_LOG", True)
    force_https: bool = _env_bool("FTO_FORCE_HTTPS", True)

    # Certificates
    cert_dir: str = os.getenv("FTO_CERT_DIR", "certs")
    cert_authority: str = os.getenv("FTO_CERT_AUTHORITY", "acme")  # acme|local
    acme_directory_url: str = os.getenv(
        "FTO_ACME_DIRECTORY_URL", "https://acme-v02.api.letsencrypt.org/directory"
    )
    acme_email: str | None = os.getenv("FTO_ACME_EMAIL")
    renew_before_days: int = _env_int("FTO_RENEW_BEFORE_DAYS", 30)
    challenge_timeout_s: float = _env_float("FTO_CHALLENGE_TIMEOUT_S", 120.0)
    challenge_poll_s: float = _env_float("FTO_CHALLENGE_POLL_S", 2.0)
    max_challenge_attempts: int = _env_int("FTO_MAX_CHALLENGE_ATTEMPTS", 3)
    renewal_check_interval_s: int = _env_int("FTO_RENEWAL_CHECK_INTERVAL_S", 3600)

    # Email alerting (optional)
    enable_email: bool = _env_bool("FTO_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("FTO_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("FTO_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("FTO_SMTP_USER")
    smtp_password: str | None = os.getenv("FTO_SMTP_PASSWORD")
    email_from: str | None = os.getenv("FTO_EMAIL_FROM")
    email_to: str | None = os.getenv("FTO_EMAIL_TO")

    # Management API basic auth; disabled unless both are set.
    admin_user: str | None = os.getenv("FTO_ADMIN_USER")
    admin_password: str | None = os.getenv("FTO_ADMIN_PASSWORD")


settings = Settings()
