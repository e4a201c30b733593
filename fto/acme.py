"""ACME (RFC 8555) certificate authority client using the HTTP-01 challenge."""
from __future__ import annotations

import base64
import hashlib
import json
import os
import time
from threading import RLock
from typing import Any, Callable

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from . import db
from .certs import ChallengeResponder, generate_key, key_to_pem
from .errors import ChallengeFailed
from .settings import settings

BAD_NONCE = "urn:ietf:params:acme:error:badNonce"


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _problem(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}"
    if not isinstance(body, dict):
        return f"HTTP {resp.status_code}"
    return f"{body.get('type', 'error')}: {body.get('detail', '')}".strip()


def load_or_create_account_key(path: str) -> ec.EllipticCurvePrivateKey:
    if os.path.exists(path):
        with open(path, "rb") as fh:
            key = serialization.load_pem_private_key(fh.read(), password=None)
        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise ValueError(f"ACME account key at {path} is not an EC key")
        return key
    key = generate_key()
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as fh:
        fh.write(key_to_pem(key))
    os.chmod(path, 0o600)
    return key


class AcmeAuthority:
    """Talks to an ACME directory (Let's Encrypt by default) over httpx.

    Requests are JWS-signed with an ES256 account key. Authorization and
    order status are polled until valid, invalid, or the caller's deadline.
    """

    name = "acme"

    def __init__(
        self,
        directory_url: str | None = None,
        email: str | None = None,
        account_key: ec.EllipticCurvePrivateKey | None = None,
        client: httpx.Client | None = None,
        poll_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.directory_url = directory_url or settings.acme_directory_url
        self.email = email if email is not None else settings.acme_email
        self.key = account_key or load_or_create_account_key(os.path.join(settings.cert_dir, "acme-account.key"))
        self.client = client or httpx.Client(timeout=settings.gateway_timeout_s)
        self.poll_s = settings.challenge_poll_s if poll_s is None else poll_s
        self.clock = clock
        self.sleep = sleep
        self._directory: dict[str, Any] | None = None
        # Nonces are single-use and the account URL is set once; both are shared by every caller.
        self._lock = RLock()
        self._nonce: str | None = None
        self._kid: str | None = None

    # ------------------------------------------------------------------
    # JWS
    # ------------------------------------------------------------------

    def jwk(self) -> dict[str, str]:
        nums = self.key.public_key().public_numbers()
        return {
            "crv": "P-256",
            "kty": "EC",
            "x": b64url(nums.x.to_bytes(32, "big")),
            "y": b64url(nums.y.to_bytes(32, "big")),
        }

    def thumbprint(self) -> str:
        canonical = json.dumps(self.jwk(), sort_keys=True, separators=(",", ":")).encode()
        return b64url(hashlib.sha256(canonical).digest())

    def key_authorization(self, token: str) -> str:
        return f"{token}.{self.thumbprint()}"

    def _sign(self, data: bytes) -> bytes:
        der = self.key.sign(data, ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)
        return r.to_bytes(32, "big") + s.to_bytes(32, "big")

    def directory(self) -> dict[str, Any]:
        if self._directory is None:
            resp = self.client.get(self.directory_url)
            resp.raise_for_status()
            self._directory = resp.json()
        return self._directory

    def _new_nonce(self) -> str:
        resp = self.client.head(self.directory()["newNonce"])
        nonce = resp.headers.get("Replay-Nonce")
        if not nonce:
            raise httpx.HTTPStatusError("ACME server returned no nonce", request=resp.request, response=resp)
        return nonce

    def _post(self, url: str, payload: dict[str, Any] | None, use_jwk: bool = False) -> httpx.Response:
        """Signed POST; ``payload=None`` is a POST-as-GET."""
        with self._lock:
            return self._post_locked(url, payload, use_jwk)

    def _post_locked(self, url: str, payload: dict[str, Any] | None, use_jwk: bool) -> httpx.Response:
        for attempt in range(2):
            nonce = self._nonce or self._new_nonce()
            self._nonce = None
            protected: dict[str, Any] = {"alg": "ES256", "nonce": nonce, "url": url}
            if use_jwk:
                protected["jwk"] = self.jwk()
            else:
                protected["kid"] = self._kid
            protected_b64 = b64url(json.dumps(protected).encode())
            payload_b64 = "" if payload is None else b64url(json.dumps(payload).encode())
            body = {
                "protected": protected_b64,
                "payload": payload_b64,
                "signature": b64url(self._sign(f"{protected_b64}.{payload_b64}".encode("ascii"))),
            }
            resp = self.client.post(url, content=json.dumps(body), headers={"Content-Type": "application/jose+json"})
            self._nonce = resp.headers.get("Replay-Nonce")
            if resp.status_code < 400:
                return resp
            problem = _problem(resp)
            if attempt == 0 and problem.startswith(BAD_NONCE):
                continue
            raise httpx.HTTPStatusError(f"ACME request to {url} failed: {problem}", request=resp.request, response=resp)
        return resp

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------

    def register(self) -> str:
        with self._lock:
            if self._kid:
                return self._kid
            payload: dict[str, Any] = {"termsOfServiceAgreed": True}
            if self.email:
                payload["contact"] = [f"mailto:{self.email}"]
            resp = self._post(self.directory()["newAccount"], payload, use_jwk=True)
            self._kid = resp.headers["Location"]
        db.log_event("INFO", f"ACME account ready at {self._kid}")
        return self._kid

    def _poll(self, url: str, domain: str, deadline: float, done: set[str], failed: set[str]) -> dict[str, Any]:
        while True:
            body = self._post(url, None).json()
            status = body.get("status")
            if status in done:
                return body
            if status in failed:
                detail = body.get("error") or next(
                    (c.get("error") for c in body.get("challenges", []) if c.get("error")), None
                )
                raise ChallengeFailed(f"ACME resource {url} is {status}: {detail}", domain=domain)
            if self.clock() >= deadline:
                raise ChallengeFailed(f"ACME resource {url} still {status} at deadline", domain=domain)
            self.sleep(self.poll_s)

    def issue(self, domain: str, csr_pem: bytes, responder: ChallengeResponder, deadline: float) -> bytes:
        self.register()
        resp = self._post(self.directory()["newOrder"], {"identifiers": [{"type": "dns", "value": domain}]})
        order_url = resp.headers["Location"]
        order = resp.json()

        for authz_url in order.get("authorizations", []):
            authz = self._post(authz_url, None).json()
            if authz.get("status") == "valid":
                continue
            challenge = next((c for c in authz.get("challenges", []) if c.get("type") == "http-01"), None)
            if challenge is None:
                raise ChallengeFailed(f"ACME server offered no http-01 challenge for {domain}", domain=domain)
            token = challenge["token"]
            responder.publish(token, self.key_authorization(token))
            try:
                self._post(challenge["url"], {})
                self._poll(authz_url, domain, deadline, done={"valid"}, failed={"invalid", "deactivated", "expired", "revoked"})
            finally:
                responder.withdraw(token)

        csr_der = x509.load_pem_x509_csr(csr_pem).public_bytes(serialization.Encoding.DER)
        self._post(order["finalize"], {"csr": b64url(csr_der)})
        order = self._poll(order_url, domain, deadline, done={"valid"}, failed={"invalid"})
        return self._post(order["certificate"], None).content
