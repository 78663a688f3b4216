from __future__ import annotations

import argparse
import json
import os
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _show(r: requests.Response) -> int:
    try:
        _print(r.json())
    except ValueError:
        print(r.text)
    return 0 if r.ok else 1


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Blue-green release orchestrator CLI")
    p.add_argument("--api", default=os.getenv("BG_API", "http://localhost:8000"), help="API base URL")
    p.add_argument("--user", default=os.getenv("BG_ADMIN_USER", "admin"))
    p.add_argument("--password", default=os.getenv("BG_ADMIN_PASSWORD", "change-me"))
    sub = p.add_subparsers(dest="cmd", required=True)

    s_init = sub.add_parser("route-init", help="Create a route selecting the given slot")
    s_init.add_argument("route")
    s_init.add_argument("--slot", default="a", choices=["a", "b"])

    s_route = sub.add_parser("route", help="Show the active slot of a route")
    s_route.add_argument("route")

    s_dep = sub.add_parser("deploy", help="Release a build onto the idle slot of a route")
    s_dep.add_argument("route")
    s_dep.add_argument("--build-id", required=True)
    s_dep.add_argument("--artifact", help="Image reference; resolved from the build id when omitted")
    s_dep.add_argument("--expect-slot", choices=["a", "b"], help="Refuse unless this is the idle slot")
    s_dep.add_argument("--wait", action="store_true", help="Block until the release finishes")

    s_st = sub.add_parser("status", help="Show one release")
    s_st.add_argument("release_id")

    s_list = sub.add_parser("releases", help="List releases")
    s_list.add_argument("--route")

    s_cancel = sub.add_parser("cancel", help="Cancel a running release")
    s_cancel.add_argument("release_id")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--release-id")
    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    base = args.api.rstrip("/")
    auth = (args.user, args.password)

    if args.cmd == "route-init":
        r = requests.post(f"{base}/routes", json={"route": args.route, "initial_slot": args.slot}, auth=auth, timeout=30)
        return _show(r)

    if args.cmd == "route":
        return _show(requests.get(f"{base}/routes/{args.route}", auth=auth, timeout=10))

    if args.cmd == "deploy":
        payload = {
            "route": args.route,
            "build_id": args.build_id,
            "artifact_ref": args.artifact,
            "target_slot": args.expect_slot,
            "wait": args.wait,
        }
        # A waited release spans rollout and health timeouts; let the server bound it.
        timeout = None if args.wait else 30
        r = requests.post(f"{base}/releases", json=payload, auth=auth, timeout=timeout)
        code = _show(r)
        if code == 0 and args.wait and r.json().get("state") != "done":
            return 1
        return code

    if args.cmd == "status":
        return _show(requests.get(f"{base}/releases/{args.release_id}", auth=auth, timeout=10))

    if args.cmd == "releases":
        params = {"route": args.route} if args.route else None
        return _show(requests.get(f"{base}/releases", params=params, auth=auth, timeout=10))

    if args.cmd == "cancel":
        return _show(requests.post(f"{base}/releases/{args.release_id}/cancel", auth=auth, timeout=10))

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.release_id:
            params["release_id"] = args.release_id
        return _show(requests.get(f"{base}/events", params=params, auth=auth, timeout=10))

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
