from __future__ import annotations

import argparse
import json
import os
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _auth() -> tuple[str, str] | None:
    user, password = os.getenv("FTO_ADMIN_USER"), os.getenv("FTO_ADMIN_PASSWORD")
    return (user, password) if user and password else None


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Fleet Topology Orchestrator CLI")
    p.add_argument("--api", default=os.getenv("FTO_API", "http://localhost:8000"), help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_apply = sub.add_parser("apply", help="Submit a stack descriptor")
    s_apply.add_argument("file", help="Compose v3 stack file")
    s_apply.add_argument("--no-prune", action="store_true", help="Keep services missing from the file")

    sub.add_parser("services", help="List services")

    s_ver = sub.add_parser("versions", help="List versions of a service")
    s_ver.add_argument("service")

    s_rm = sub.add_parser("remove", help="Remove a service and stop its replicas")
    s_rm.add_argument("service")

    s_roll = sub.add_parser("rollouts", help="Show rollout state")
    s_roll.add_argument("service", nargs="?")

    s_rb = sub.add_parser("rollback", help="Force a rollback to the previous stable version")
    s_rb.add_argument("service")

    s_res = sub.add_parser("resume", help="Resume a paused rollout")
    s_res.add_argument("service")

    s_rep = sub.add_parser("replicas", help="List replicas")
    s_rep.add_argument("--service")

    sub.add_parser("hosts", help="List inventory hosts and their usage")
    sub.add_parser("routes", help="Show the published routing table")
    sub.add_parser("certs", help="List certificates and expiries")

    s_ens = sub.add_parser("ensure-cert", help="Issue or renew a certificate now")
    s_ens.add_argument("domain")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--level", choices=["INFO", "WARN", "ERROR"])

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    auth = _auth()

    if args.cmd == "apply":
        with open(args.file, encoding="utf-8") as fh:
            text = fh.read()
        payload = {"text": text, "base_dir": os.path.dirname(os.path.abspath(args.file)), "prune": not args.no_prune}
        r = requests.post(f"{base}/descriptors", json=payload, auth=auth, timeout=60)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd in ("services", "hosts", "routes"):
        _print(requests.get(f"{base}/{args.cmd}", timeout=10).json())
        return 0

    if args.cmd == "certs":
        _print(requests.get(f"{base}/certificates", timeout=10).json())
        return 0

    if args.cmd == "versions":
        r = requests.get(f"{base}/services/{args.service}/versions", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "remove":
        r = requests.delete(f"{base}/services/{args.service}", auth=auth, timeout=60)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "rollouts":
        url = f"{base}/rollouts/{args.service}" if args.service else f"{base}/rollouts"
        r = requests.get(url, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd in ("rollback", "resume"):
        r = requests.post(f"{base}/rollouts/{args.service}/{args.cmd}", auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "replicas":
        params = {"service": args.service} if args.service else {}
        _print(requests.get(f"{base}/replicas", params=params, timeout=10).json())
        return 0

    if args.cmd == "ensure-cert":
        # Issuance waits for the challenge; allow for the full validation window.
        r = requests.post(f"{base}/certificates/{args.domain}/ensure", auth=auth, timeout=300)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.level:
            params["level"] = args.level
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
