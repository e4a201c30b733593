"""Edge listeners: plaintext (challenges, redirects) and TLS (SNI) reverse proxies."""
from __future__ import annotations

import datetime as dt
import os
import time
from threading import Thread

import httpx
import uvicorn
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import NameOID
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response

from . import db
from .certs import ChallengeResponder, generate_key, key_to_pem
from .gateway import Backend, EdgeRouter
from .settings import settings

HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
}

METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def _forward_headers(request: Request, scheme: str) -> dict[str, str]:
    headers = {k: v for k, v in request.headers.items() if k.lower() not in HOP_BY_HOP}
    client = request.client.host if request.client else ""
    prior = request.headers.get("x-forwarded-for")
    headers["x-forwarded-for"] = f"{prior}, {client}" if prior else client
    headers["x-forwarded-proto"] = scheme
    headers["x-forwarded-host"] = request.headers.get("host", "")
    return headers


def _access_record(method: str, host: str, path: str, service: str, backend: Backend, status: int, started: float) -> None:
    if not settings.edge_access_log:
        return
    elapsed_ms = (time.monotonic() - started) * 1000
    db.log_event(
        "INFO",
        f"{method} {host}{path} -> {backend.replica_id} at {backend.address}:{backend.port} {status} {elapsed_ms:.1f}ms",
        service_name=service,
        host=backend.host,
    )


def build_edge_app(
    router: EdgeRouter,
    responder: ChallengeResponder,
    scheme: str,
    client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """One listener. ``scheme`` is what clients used to reach it (http or https)."""
    app = FastAPI(title=f"FTO edge ({scheme})", docs_url=None, redoc_url=None, openapi_url=None)
    upstream = client or httpx.AsyncClient(timeout=settings.gateway_timeout_s, follow_redirects=False)

    @app.api_route("/{path:path}", methods=METHODS)
    async def edge(path: str, request: Request):
        full_path = request.url.path + (f"?{request.url.query}" if request.url.query else "")
        host = request.headers.get("host", "")
        decision = router.resolve(host, scheme, full_path)

        if decision.kind == "challenge":
            key_auth = responder.lookup(decision.token or "")
            if key_auth is None:
                return PlainTextResponse("unknown challenge token", status_code=404)
            return PlainTextResponse(key_auth)
        if decision.kind == "redirect":
            return RedirectResponse(decision.location, status_code=308)
        if decision.kind == "unavailable":
            return JSONResponse({"detail": decision.reason}, status_code=503, headers={"Retry-After": "5"})
        if decision.kind != "proxy":
            return JSONResponse({"detail": decision.reason}, status_code=decision.status_code)

        backend = decision.backend
        service = decision.route.rule.service
        url = backend.url + full_path
        started = time.monotonic()
        try:
            upstream_resp = await upstream.request(
                request.method,
                url,
                headers=_forward_headers(request, scheme),
                content=await request.body(),
            )
        except httpx.TimeoutException:
            db.log_event("WARN", f"Upstream timeout for {url}", service_name=service, host=backend.host)
            _access_record(request.method, host, full_path, service, backend, 504, started)
            return JSONResponse({"detail": "Upstream timed out"}, status_code=504)
        except httpx.HTTPError as e:
            db.log_event("WARN", f"Upstream error for {url}: {type(e).__name__}", service_name=service, host=backend.host)
            _access_record(request.method, host, full_path, service, backend, 502, started)
            return JSONResponse({"detail": "Bad gateway"}, status_code=502)

        _access_record(request.method, host, full_path, service, backend, upstream_resp.status_code, started)
        headers = {k: v for k, v in upstream_resp.headers.items() if k.lower() not in HOP_BY_HOP and k.lower() != "content-encoding"}
        headers["x-fto-backend"] = backend.replica_id
        return Response(content=upstream_resp.content, status_code=upstream_resp.status_code, headers=headers)

    @app.on_event("shutdown")
    async def _close_upstream() -> None:
        await upstream.aclose()

    return app


def default_certificate_file(cert_dir: str | None = None) -> str:
    """Self-signed certificate used only until SNI picks the real one."""
    cert_dir = cert_dir or settings.cert_dir
    path = os.path.join(cert_dir, ".edge-default.pem")
    if os.path.exists(path):
        return path
    key = generate_key()
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "fto-edge")])
    now = dt.datetime.now(dt.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - dt.timedelta(minutes=5))
        .not_valid_after(now + dt.timedelta(days=3650))
        .sign(key, hashes.SHA256())
    )
    os.makedirs(cert_dir, exist_ok=True)
    with open(path, "wb") as fh:
        fh.write(key_to_pem(key))
        fh.write(cert.public_bytes(serialization.Encoding.PEM))
    os.chmod(path, 0o600)
    return path


def serve_edge(router: EdgeRouter, responder: ChallengeResponder, bind: str = "0.0.0.0") -> list[uvicorn.Server]:
    """Start the plaintext and TLS listeners on background threads."""
    plain = uvicorn.Config(build_edge_app(router, responder, "http"), host=bind, port=settings.http_port, log_level="warning")
    tls = uvicorn.Config(
        build_edge_app(router, responder, "https"),
        host=bind,
        port=settings.https_port,
        log_level="warning",
        ssl_certfile=default_certificate_file(),
    )
    tls.load()
    tls.ssl.sni_callback = router.sni_callback

    servers = [uvicorn.Server(plain), uvicorn.Server(tls)]
    for server, name in zip(servers, ("fto-edge-http", "fto-edge-https")):
        Thread(target=server.run, name=name, daemon=True).start()
    db.log_event("INFO", f"Edge listening on :{settings.http_port} (http) and :{settings.https_port} (https)")
    return servers
