from __future__ import annotations

import argparse
import json
import os
import sys
import time

import requests


TERMINAL = {"SUCCEEDED", "ROLLED_BACK", "FAILED"}


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _auth(args) -> tuple[str, str]:
    return (args.user, args.password)


def _wait_terminal(base: str, attempt_id: str, interval_s: float, timeout_s: float) -> dict:
    deadline = time.time() + timeout_s
    while True:
        body = requests.get(f"{base}/deployments/{attempt_id}", timeout=10).json()
        if body.get("state") in TERMINAL or time.time() >= deadline:
            return body
        time.sleep(interval_s)


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Health-Gated Deployer CLI")
    p.add_argument("--api", default=os.getenv("HGD_API", "http://localhost:8000"), help="API base URL")
    p.add_argument("--user", default=os.getenv("HGD_ADMIN_USER", "admin"))
    p.add_argument("--password", default=os.getenv("HGD_ADMIN_PASSWORD", "admin"))
    sub = p.add_subparsers(dest="cmd", required=True)

    s_dep = sub.add_parser("deploy", help="Deploy an image to an environment")
    s_dep.add_argument("image", help="Image reference (name:tag)")
    s_dep.add_argument("--environment", "-e", required=True)
    s_dep.add_argument("--strategy", choices=["direct", "blue-green"], default="direct")
    s_dep.add_argument("--replicas", type=int, default=1)
    s_dep.add_argument("--port", type=int, default=3000)
    s_dep.add_argument("--health-path", default="/health")
    s_dep.add_argument("--env", action="append", default=[], metavar="KEY=VALUE", help="Environment variable for new instances")
    s_dep.add_argument("--check", action="append", dest="checks", metavar="SPEC", help="docker | tcp:host:port | path:<file> | env:<NAME>")
    s_dep.add_argument("--health-timeout-s", type=float)
    s_dep.add_argument("--health-retries", type=int)
    s_dep.add_argument("--health-delay-s", type=float)
    s_dep.add_argument("--initial-delay-s", type=float)
    s_dep.add_argument("--backoff-factor", type=float)
    s_dep.add_argument("--grace-period-s", type=float)
    s_dep.add_argument("--wait", action="store_true", help="Poll until the deployment finishes")
    s_dep.add_argument("--wait-timeout-s", type=float, default=3600)

    s_status = sub.add_parser("status", help="Show one deployment")
    s_status.add_argument("attempt_id")

    s_cancel = sub.add_parser("cancel", help="Cancel a running deployment")
    s_cancel.add_argument("attempt_id")

    s_list = sub.add_parser("deployments", help="List deployments")
    s_list.add_argument("--environment", "-e")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--environment", "-e")
    s_ev.add_argument("--attempt")

    s_bk = sub.add_parser("backup", help="Show the last backup recorded for an environment")
    s_bk.add_argument("environment")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "deploy":
        env_vars = {}
        for item in args.env:
            k, sep, v = item.partition("=")
            if not sep:
                p.error(f"--env expects KEY=VALUE, got {item!r}")
            env_vars[k] = v
        payload = {
            "artifact_ref": args.image,
            "environment": args.environment,
            "strategy": args.strategy,
            "replicas": args.replicas,
            "port": args.port,
            "health_path": args.health_path,
            "env": env_vars,
            "pre_deploy_checks": args.checks,
            "health_check_timeout_s": args.health_timeout_s,
            "health_check_max_retries": args.health_retries,
            "health_check_retry_delay_s": args.health_delay_s,
            "health_check_initial_delay_s": args.initial_delay_s,
            "retry_backoff_factor": args.backoff_factor,
            "post_cutover_grace_period_s": args.grace_period_s,
        }
        payload = {k: v for k, v in payload.items() if v is not None}
        r = requests.post(f"{base}/deployments", json=payload, auth=_auth(args), timeout=30)
        body = r.json()
        if not r.ok:
            _print(body)
            return 1
        if args.wait:
            body = _wait_terminal(base, body["id"], interval_s=2.0, timeout_s=args.wait_timeout_s)
        _print(body)
        if args.wait:
            return 0 if body.get("state") == "SUCCEEDED" else 1
        return 0

    if args.cmd == "status":
        r = requests.get(f"{base}/deployments/{args.attempt_id}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "cancel":
        r = requests.post(f"{base}/deployments/{args.attempt_id}/cancel", auth=_auth(args), timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "deployments":
        params = {"environment": args.environment} if args.environment else None
        _print(requests.get(f"{base}/deployments", params=params, timeout=10).json())
        return 0

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.environment:
            params["environment"] = args.environment
        if args.attempt:
            params["attempt_id"] = args.attempt
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "backup":
        r = requests.get(f"{base}/environments/{args.environment}/backup", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
