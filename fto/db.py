from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one for a missing
    bind-mounted file), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "fto.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS services (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              name TEXT NOT NULL UNIQUE,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS versions (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              service_id INTEGER NOT NULL,
              version INTEGER NOT NULL,
              fingerprint TEXT NOT NULL,
              spec_json TEXT NOT NULL,
              state TEXT NOT NULL, -- active|candidate|failed|retired
              created_at TEXT NOT NULL,
              UNIQUE(service_id, version),
              FOREIGN KEY(service_id) REFERENCES services(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              service_name TEXT,
              version TEXT,
              host TEXT,
              message TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS certificates (
              domain TEXT PRIMARY KEY,
              not_after TEXT NOT NULL,
              issuer TEXT NOT NULL,
              challenge_type TEXT NOT NULL,
              pem_path TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_versions_service_id ON versions(service_id);
            """
        )


def log_event(
    level: str,
    message: str,
    service_name: str | None = None,
    version: int | str | None = None,
    host: str | None = None,
) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, service_name, version, host, message) VALUES (?, ?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), service_name, None if version is None else str(version), host, message),
        )


@dataclass(frozen=True)
class ServiceRow:
    id: int
    name: str
    created_at: str


@dataclass(frozen=True)
class VersionRow:
    id: int
    service_id: int
    version: int
    fingerprint: str
    spec_json: str
    state: str
    created_at: str


@dataclass(frozen=True)
class CertificateRow:
    domain: str
    not_after: str
    issuer: str
    challenge_type: str
    pem_path: str
    updated_at: str


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


def get_or_create_service(name: str) -> ServiceRow:
    with connect() as conn:
        cur = conn.execute("SELECT * FROM services WHERE name=?", (name,))
        row = cur.fetchone()
        if row:
            return ServiceRow(**dict(row))
        conn.execute("INSERT INTO services (name, created_at) VALUES (?, ?)", (name, utc_now()))
        cur = conn.execute("SELECT * FROM services WHERE name=?", (name,))
        return ServiceRow(**dict(cur.fetchone()))


def insert_version(service_name: str, version: int, fingerprint: str, spec_json: str, state: str) -> VersionRow:
    svc = get_or_create_service(service_name)
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO versions (service_id, version, fingerprint, spec_json, state, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(service_id, version) DO UPDATE SET
              fingerprint=excluded.fingerprint,
              spec_json=excluded.spec_json,
              state=excluded.state
            """,
            (svc.id, version, fingerprint, spec_json, state, utc_now()),
        )
        cur = conn.execute("SELECT * FROM versions WHERE service_id=? AND version=?", (svc.id, version))
        return VersionRow(**dict(cur.fetchone()))


def list_versions(service_name: str | None = None) -> list[VersionRow]:
    with connect() as conn:
        if service_name:
            cur = conn.execute(
                """
                SELECT v.* FROM versions v
                JOIN services s ON s.id = v.service_id
                WHERE s.name=?
                ORDER BY v.version DESC
                """,
                (service_name,),
            )
        else:
            cur = conn.execute(
                """
                SELECT v.* FROM versions v
                JOIN services s ON s.id = v.service_id
                ORDER BY s.name, v.version DESC
                """
            )
        return _rows_to_dataclass(cur.fetchall(), VersionRow)


def get_version(service_name: str, version: int) -> VersionRow | None:
    with connect() as conn:
        row = conn.execute(
            """
            SELECT v.* FROM versions v
            JOIN services s ON s.id = v.service_id
            WHERE s.name=? AND v.version=?
            """,
            (service_name, version),
        ).fetchone()
        return VersionRow(**dict(row)) if row else None


def set_version_state(service_name: str, version: int, state: str) -> None:
    with connect() as conn:
        conn.execute(
            """
            UPDATE versions SET state=?
            WHERE version=? AND service_id=(SELECT id FROM services WHERE name=?)
            """,
            (state, version, service_name),
        )


def upsert_certificate(domain: str, not_after: str, issuer: str, challenge_type: str, pem_path: str) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO certificates (domain, not_after, issuer, challenge_type, pem_path, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(domain) DO UPDATE SET
              not_after=excluded.not_after,
              issuer=excluded.issuer,
              challenge_type=excluded.challenge_type,
              pem_path=excluded.pem_path,
              updated_at=excluded.updated_at
            """,
            (domain, not_after, issuer, challenge_type, pem_path, utc_now()),
        )


def list_certificates() -> list[CertificateRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM certificates ORDER BY domain").fetchall()
        return _rows_to_dataclass(rows, CertificateRow)


def latest_events(limit: int = 100, level: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if level:
            rows = conn.execute(
                "SELECT * FROM events WHERE level=? ORDER BY id DESC LIMIT ?", (level.upper(), limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
