from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _auth() -> tuple[str, str] | None:
    password = os.getenv("STACKD_ADMIN_PASSWORD")
    if not password:
        return None
    return os.getenv("STACKD_ADMIN_USER", "admin"), password


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="stackd CLI")
    p.add_argument("--api", default="http://localhost:8080", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("stacks", help="List stacks")

    s_show = sub.add_parser("show", help="Show a stack description and env")
    s_show.add_argument("name")

    s_save = sub.add_parser("save", help="Create/replace a stack")
    s_save.add_argument("name")
    s_save.add_argument("--file", required=True, help="Compose-style YAML file")
    s_save.add_argument("--env-file", help="Dotenv file used for ${VAR} substitution")

    for action in ("start", "update", "stop"):
        s_act = sub.add_parser(action, help=f"{action.capitalize()} a stack")
        s_act.add_argument("name")

    s_status = sub.add_parser("status", help="Operational/Stopped")
    s_status.add_argument("name")

    s_ctr = sub.add_parser("containers", help="Running containers of a stack")
    s_ctr.add_argument("name")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--stack")

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    base = args.api.rstrip("/")
    auth = _auth()

    if args.cmd == "stacks":
        r = requests.get(f"{base}/api/stacks", auth=auth, timeout=10)
    elif args.cmd == "show":
        r = requests.get(f"{base}/api/stacks/{args.name}", auth=auth, timeout=10)
    elif args.cmd == "save":
        payload = {
            "yaml": Path(args.file).read_text(),
            "env": Path(args.env_file).read_text() if args.env_file else "",
        }
        r = requests.put(f"{base}/api/stacks/{args.name}", json=payload, auth=auth, timeout=30)
    elif args.cmd in {"start", "update", "stop"}:
        # dependency waits can take minutes
        r = requests.post(f"{base}/api/stacks/{args.name}/actions/{args.cmd}", auth=auth, timeout=None)
    elif args.cmd == "status":
        r = requests.get(f"{base}/api/stacks/{args.name}/status", auth=auth, timeout=10)
    elif args.cmd == "containers":
        r = requests.get(f"{base}/api/stacks/{args.name}/containers", auth=auth, timeout=10)
    elif args.cmd == "events":
        params = {"limit": args.limit}
        if args.stack:
            params["stack"] = args.stack
        r = requests.get(f"{base}/events", params=params, auth=auth, timeout=10)
    else:
        return 2

    _print(r.json())
    return 0 if r.ok else 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
