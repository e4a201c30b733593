"""Certificate manager.

Owns every Certificate: issues them through a CertificateAuthority using the
HTTP-01 challenge, installs them atomically, and renews them before expiry.
The edge router only reads the store.
"""
from __future__ import annotations

import datetime as dt
import os
import secrets
import tempfile
import time
from dataclasses import dataclass, replace
from threading import Event, Lock, Thread
from typing import Callable, Protocol

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from . import db
from .alerts import report
from .errors import ChallengeFailed
from .settings import settings

CHALLENGE_PREFIX = "/.well-known/acme-challenge/"


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass(frozen=True)
class Certificate:
    domain: str
    private_key_pem: bytes
    chain_pem: bytes
    not_before: dt.datetime
    not_after: dt.datetime
    challenge_type: str = "http-01"
    issuer: str = ""
    path: str | None = None

    def valid(self, now: dt.datetime | None = None) -> bool:
        now = now or utc_now()
        return self.not_before <= now < self.not_after

    def remaining(self, now: dt.datetime | None = None) -> dt.timedelta:
        return self.not_after - (now or utc_now())

    def needs_renewal(self, now: dt.datetime | None = None, before_days: int | None = None) -> bool:
        days = settings.renew_before_days if before_days is None else before_days
        return not self.valid(now) or self.remaining(now) <= dt.timedelta(days=days)

    @classmethod
    def from_pem(cls, domain: str, key_pem: bytes, chain_pem: bytes, challenge_type: str = "http-01") -> "Certificate":
        leaf = x509.load_pem_x509_certificate(chain_pem)
        issuer = leaf.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)
        return cls(
            domain=domain,
            private_key_pem=key_pem,
            chain_pem=chain_pem,
            not_before=leaf.not_valid_before_utc,
            not_after=leaf.not_valid_after_utc,
            challenge_type=challenge_type,
            issuer=str(issuer[0].value) if issuer else leaf.issuer.rfc4514_string(),
        )


def generate_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def key_to_pem(key: ec.EllipticCurvePrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def build_csr(domain: str, key: ec.EllipticCurvePrivateKey) -> bytes:
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.PEM)


def domain_matches(pattern: str, host: str) -> bool:
    """Exact match, or ``*.suffix`` covering exactly one extra label."""
    pattern, host = pattern.lower(), host.lower()
    if pattern == host:
        return True
    if pattern.startswith("*."):
        suffix = pattern[1:]
        return host.endswith(suffix) and "." not in host[: -len(suffix)]
    return False


class ChallengeResponder:
    """Token -> key authorization map served on the plaintext listener."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._tokens: dict[str, str] = {}

    def publish(self, token: str, key_authorization: str) -> None:
        with self._lock:
            self._tokens[token] = key_authorization

    def withdraw(self, token: str) -> None:
        with self._lock:
            self._tokens.pop(token, None)

    def lookup(self, token: str) -> str | None:
        with self._lock:
            return self._tokens.get(token)

    def pending(self) -> list[str]:
        with self._lock:
            return sorted(self._tokens)


class CertificateAuthority(Protocol):
    name: str

    def issue(self, domain: str, csr_pem: bytes, responder: ChallengeResponder, deadline: float) -> bytes:
        """Run the challenge for ``domain`` and return the PEM chain (leaf first).

        ``deadline`` is on the manager's monotonic clock; raise ChallengeFailed past it.
        """
        ...


class LocalAuthority:
    """In-process CA for lab fleets.

    Still runs the HTTP-01 exchange: a token is published on the responder and
    ``validator(domain, token)`` must return the expected key authorization
    before the certificate is signed. The default validator fetches the token
    over plain HTTP from the domain, like a real CA would.
    """

    name = "fto-local-ca"

    def __init__(
        self,
        validator: Callable[[str, str], str | None] | None = None,
        validity_days: int = 90,
        poll_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.validator = validator or self._fetch_over_http
        self.clock = clock
        self.validity_days = validity_days
        self.poll_s = settings.challenge_poll_s if poll_s is None else poll_s
        self.sleep = sleep
        self._key = generate_key()
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, self.name)])
        now = utc_now()
        self._ca = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(self._key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - dt.timedelta(minutes=5))
            .not_valid_after(now + dt.timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .sign(self._key, hashes.SHA256())
        )

    @property
    def ca_pem(self) -> bytes:
        return self._ca.public_bytes(serialization.Encoding.PEM)

    @staticmethod
    def _fetch_over_http(domain: str, token: str) -> str | None:
        try:
            resp = httpx.get(f"http://{domain}{CHALLENGE_PREFIX}{token}", timeout=5.0)
        except httpx.HTTPError:
            return None
        return resp.text.strip() if resp.status_code == 200 else None

    def issue(self, domain: str, csr_pem: bytes, responder: ChallengeResponder, deadline: float) -> bytes:
        csr = x509.load_pem_x509_csr(csr_pem)
        token = secrets.token_urlsafe(32)
        expected = f"{token}.{secrets.token_urlsafe(16)}"
        responder.publish(token, expected)
        try:
            while self.validator(domain, token) != expected:
                if self.clock() >= deadline:
                    raise ChallengeFailed(f"HTTP-01 validation for {domain} did not complete in time", domain=domain)
                self.sleep(self.poll_s)
        finally:
            responder.withdraw(token)

        now = utc_now()
        leaf = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(self._ca.subject)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - dt.timedelta(minutes=5))
            .not_valid_after(now + dt.timedelta(days=self.validity_days))
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
            .sign(self._key, hashes.SHA256())
        )
        return leaf.public_bytes(serialization.Encoding.PEM) + self.ca_pem


def _file_name(domain: str) -> str:
    return domain.replace("*", "_wildcard_") + ".pem"


class CertificateStore:
    """Current certificate per domain. Single writer: the CertificateManager."""

    def __init__(self, cert_dir: str | None = None, persist: bool = True):
        self.cert_dir = cert_dir or settings.cert_dir
        self.persist = persist
        self._lock = Lock()
        self._certs: dict[str, Certificate] = {}
        self._listeners: list[Callable[[Certificate], None]] = []

    def add_listener(self, fn: Callable[[Certificate], None]) -> None:
        self._listeners.append(fn)

    def get(self, domain: str) -> Certificate | None:
        with self._lock:
            return self._certs.get(domain.lower())

    def snapshot(self) -> dict[str, Certificate]:
        with self._lock:
            return dict(self._certs)

    def find(self, host: str, now: dt.datetime | None = None) -> Certificate | None:
        """Valid certificate covering ``host``, exact domain preferred."""
        snap = self.snapshot()
        cert = snap.get(host.lower())
        if cert is not None and cert.valid(now):
            return cert
        for domain, cert in sorted(snap.items()):
            if domain_matches(domain, host) and cert.valid(now):
                return cert
        return None

    def install(self, cert: Certificate) -> Certificate:
        """Write the PEM (key + chain) atomically, record it, then swap it in."""
        os.makedirs(self.cert_dir, exist_ok=True)
        path = os.path.join(self.cert_dir, _file_name(cert.domain))
        fd, tmp = tempfile.mkstemp(dir=self.cert_dir, prefix=".tmp-", suffix=".pem")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(cert.private_key_pem)
                fh.write(cert.chain_pem)
            os.chmod(tmp, 0o600)
            os.replace(tmp, path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        installed = replace(cert, path=path)
        if self.persist:
            db.upsert_certificate(
                installed.domain,
                installed.not_after.strftime("%Y-%m-%dT%H:%M:%SZ"),
                installed.issuer,
                installed.challenge_type,
                path,
            )
        with self._lock:
            self._certs[installed.domain.lower()] = installed
        for fn in list(self._listeners):
            fn(installed)
        return installed

    def load(self) -> int:
        """Pick up certificates left in ``cert_dir`` by a previous run."""
        if not os.path.isdir(self.cert_dir):
            return 0
        loaded = 0
        for name in sorted(os.listdir(self.cert_dir)):
            if not name.endswith(".pem") or name.startswith("."):
                continue
            path = os.path.join(self.cert_dir, name)
            domain = name[: -len(".pem")].replace("_wildcard_", "*")
            try:
                with open(path, "rb") as fh:
                    blob = fh.read()
                key_end = blob.index(b"-----END PRIVATE KEY-----") + len(b"-----END PRIVATE KEY-----\n")
                cert = Certificate.from_pem(domain, blob[:key_end], blob[key_end:])
            except (OSError, ValueError) as e:
                db.log_event("WARN", f"Skipping unreadable certificate {name}: {e}")
                continue
            with self._lock:
                self._certs[domain.lower()] = replace(cert, path=path)
            loaded += 1
        return loaded


class CertificateManager:
    """Ensures, renews and reports on certificates for routed domains."""

    def __init__(
        self,
        store: CertificateStore,
        authority: CertificateAuthority,
        responder: ChallengeResponder | None = None,
        now: Callable[[], dt.datetime] = utc_now,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.clock = clock
        self.authority = authority
        self.responder = responder or ChallengeResponder()
        self.now = now
        self._lock = Lock()
        self._domain_locks: dict[str, Lock] = {}
        self._domains: set[str] = set()
        self._pending: list[str] = []
        self._failures: dict[str, int] = {}
        self._given_up: set[str] = set()
        self._last_error: dict[str, str] = {}
        self._wake = Event()
        self._stop = Event()
        self._thr: Thread | None = None

    def _domain_lock(self, domain: str) -> Lock:
        with self._lock:
            return self._domain_locks.setdefault(domain, Lock())

    def ensure(self, domain: str, force: bool = False) -> Certificate:
        """Return a certificate for ``domain`` with more than the renewal window left.

        Issues one when needed. On failure raises ChallengeFailed and leaves the
        store untouched, so the last-known-good certificate keeps serving.
        """
        domain = domain.lower()
        with self._lock:
            self._domains.add(domain)
        with self._domain_lock(domain):
            current = self.store.get(domain)
            if current is not None and not force and not current.needs_renewal(self.now()):
                return current
            if domain.startswith("*."):
                raise ChallengeFailed(f"HTTP-01 cannot validate wildcard domain {domain}", domain=domain, last_known_good=current)

            db.log_event("INFO", f"Requesting certificate for {domain} from {self.authority.name}")
            key = generate_key()
            deadline = self.clock() + settings.challenge_timeout_s
            try:
                chain = self.authority.issue(domain, build_csr(domain, key), self.responder, deadline)
                cert = Certificate.from_pem(domain, key_to_pem(key), chain)
            except ChallengeFailed as e:
                raise self._failed(domain, str(e), current) from e
            except Exception as e:
                # Whatever the authority raised, the domain counts as failed.
                raise self._failed(domain, f"{type(e).__name__}: {e}", current) from e

            installed = self.store.install(cert)
            with self._lock:
                self._failures.pop(domain, None)
                self._given_up.discard(domain)
                self._last_error.pop(domain, None)
            db.log_event("INFO", f"Installed certificate for {domain}, valid until {installed.not_after:%Y-%m-%d}")
            return installed

    def _failed(self, domain: str, message: str, current: Certificate | None) -> ChallengeFailed:
        err = ChallengeFailed(f"Certificate for {domain} not issued: {message}", domain=domain, last_known_good=current)
        with self._lock:
            count = self._failures.get(domain, 0) + 1
            self._failures[domain] = count
            self._last_error[domain] = message
            persistent = count >= settings.max_challenge_attempts and domain not in self._given_up
            if persistent:
                self._given_up.add(domain)
        if persistent:
            report(
                ChallengeFailed(
                    f"Certificate for {domain} failed {count} times in a row; automatic retries stopped",
                    domain=domain,
                    last_known_good=current,
                )
            )
        else:
            db.log_event("WARN", str(err))
        return err

    def request(self, domain: str, operator: bool = False) -> bool:
        """Queue an asynchronous ensure. Returns False for domains given up on.

        An operator request clears the persistent-failure state.
        """
        domain = domain.lower()
        with self._lock:
            self._domains.add(domain)
            if operator:
                self._given_up.discard(domain)
                self._failures.pop(domain, None)
            elif domain in self._given_up:
                return False
            if domain not in self._pending:
                self._pending.append(domain)
        self._wake.set()
        return True

    def process_pending(self) -> int:
        """Ensure every queued domain; returns how many are now valid."""
        ok = 0
        while True:
            with self._lock:
                if not self._pending:
                    return ok
                domain = self._pending.pop(0)
            try:
                self.ensure(domain)
                ok += 1
            except ChallengeFailed:
                continue

    def check_renewals(self) -> list[str]:
        """Queue every known domain that is missing or inside its renewal window."""
        now = self.now()
        with self._lock:
            domains = sorted(self._domains | set(self.store.snapshot()))
        due = []
        for domain in domains:
            if domain.startswith("*."):
                continue
            cert = self.store.get(domain)
            if cert is None or cert.needs_renewal(now):
                if self.request(domain):
                    due.append(domain)
        return due

    def status(self) -> list[dict[str, object]]:
        now = self.now()
        snap = self.store.snapshot()
        with self._lock:
            domains = sorted(self._domains | set(snap))
            failures = dict(self._failures)
            given_up = set(self._given_up)
            errors = dict(self._last_error)
        out = []
        for domain in domains:
            cert = snap.get(domain)
            out.append(
                {
                    "domain": domain,
                    "issuer": cert.issuer if cert else None,
                    "not_after": cert.not_after.strftime("%Y-%m-%dT%H:%M:%SZ") if cert else None,
                    "days_remaining": round(cert.remaining(now).total_seconds() / 86400, 1) if cert else None,
                    "valid": bool(cert and cert.valid(now)),
                    "failures": failures.get(domain, 0),
                    "given_up": domain in given_up,
                    "last_error": errors.get(domain),
                }
            )
        return out

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="fto-certs", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()

    def _loop(self) -> None:
        db.log_event("INFO", "Certificate renewal loop started")
        next_check = 0.0
        while not self._stop.is_set():
            self._wake.clear()
            try:
                if time.monotonic() >= next_check:
                    self.check_renewals()
                    next_check = time.monotonic() + settings.renewal_check_interval_s
                self.process_pending()
            except Exception as e:
                db.log_event("ERROR", f"Certificate loop failed: {type(e).__name__}: {e}")
            self._wake.wait(max(1.0, min(settings.renewal_check_interval_s, 60)))
