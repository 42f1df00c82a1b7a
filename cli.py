from __future__ import annotations

import argparse
import json
import os
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _pairs(items: list[str] | None, what: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise SystemExit(f"Invalid {what} '{item}', expected KEY=VALUE")
        out[key] = value
    return out


def _respond(r: requests.Response) -> int:
    try:
        _print(r.json())
    except ValueError:
        print(r.text)
    return 0 if r.ok else 1


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Dynamic Microservice Manager CLI")
    p.add_argument("--api", default=os.getenv("DMM_API", "http://localhost:4000"), help="Manager base URL")
    p.add_argument("--token", default=os.getenv("DMM_TOKEN"), help="Bearer token (or DMM_TOKEN)")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("services", help="List services (reconciled)")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    s_login = sub.add_parser("login", help="Obtain a token from the identity service")
    s_login.add_argument("--email", required=True)
    s_login.add_argument("--password", required=True)

    s_create = sub.add_parser("create", help="Build and deploy a service from a source file")
    s_create.add_argument("--name", required=True)
    s_create.add_argument("--code-file", required=True)
    s_create.add_argument("--dep", action="append", default=[], help="Package to install (repeatable)")
    s_create.add_argument("--base-image")
    s_create.add_argument("--description", default="")
    s_create.add_argument("--env", action="append", help="KEY=VALUE (repeatable)")

    s_update = sub.add_parser("update", help="Update name/description/env (no rebuild)")
    s_update.add_argument("--id", required=True)
    s_update.add_argument("--name")
    s_update.add_argument("--description")
    s_update.add_argument("--env", action="append", help="KEY=VALUE (repeatable)")

    s_delete = sub.add_parser("delete", help="Tear down a service and remove it")
    s_delete.add_argument("--id", required=True)

    for action in ("start", "stop", "restart"):
        s_act = sub.add_parser(action, help=f"{action.capitalize()} a service's container")
        s_act.add_argument("--id", required=True)

    s_test = sub.add_parser("test", help="Send a request through the gateway")
    s_test.add_argument("--id", required=True)
    s_test.add_argument("--endpoint", default="/")
    s_test.add_argument("--method", default="GET")
    s_test.add_argument("--header", action="append", help="KEY=VALUE (repeatable)")
    s_test.add_argument("--body", help="JSON body")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    headers = {"Authorization": f"Bearer {args.token}"} if args.token else {}
    ms = f"{base}/api/microservices"

    if args.cmd == "services":
        return _respond(requests.get(ms, headers=headers, timeout=30))

    if args.cmd == "events":
        return _respond(requests.get(f"{base}/api/events", params={"limit": args.limit}, headers=headers, timeout=10))

    if args.cmd == "login":
        payload = {"email": args.email, "password": args.password}
        return _respond(requests.post(f"{base}/api/auth/login", json=payload, timeout=30))

    if args.cmd == "create":
        with open(args.code_file, encoding="utf-8") as f:
            code = f.read()
        payload = {
            "name": args.name,
            "code": code,
            "dependencies": args.dep,
            "baseImage": args.base_image,
            "description": args.description,
            "env": _pairs(args.env, "env"),
        }
        # Builds can take minutes.
        return _respond(requests.post(ms, json=payload, headers=headers, timeout=900))

    if args.cmd == "update":
        payload = {"name": args.name, "description": args.description, "env": _pairs(args.env, "env") or None}
        return _respond(requests.put(f"{ms}/{args.id}", json=payload, headers=headers, timeout=30))

    if args.cmd == "delete":
        return _respond(requests.delete(f"{ms}/{args.id}", headers=headers, timeout=120))

    if args.cmd in ("start", "stop", "restart"):
        return _respond(requests.post(f"{ms}/{args.id}/{args.cmd}", headers=headers, timeout=120))

    if args.cmd == "test":
        payload = {
            "endpoint": args.endpoint,
            "method": args.method,
            "headers": _pairs(args.header, "header"),
            "body": json.loads(args.body) if args.body else None,
        }
        return _respond(requests.post(f"{ms}/{args.id}/test", json=payload, headers=headers, timeout=60))

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
