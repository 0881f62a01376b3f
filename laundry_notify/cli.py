"""
Laundry-notify CLI: register and look up users against a running server.
"""

from __future__ import annotations

import argparse
import json
import sys
import urllib.parse
import urllib.request
from urllib.error import HTTPError, URLError


def _decode(raw: bytes) -> dict:
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text or "{}")
    except ValueError:
        return {"status": "error", "detail": text.strip()}


def post(url: str, data: dict) -> dict:
    """POST a form and decode the JSON reply, including 4xx/5xx bodies."""
    body = urllib.parse.urlencode(data).encode("utf-8")
    req = urllib.request.Request(url, data=body, method="POST")
    try:
        with urllib.request.urlopen(req, timeout=20) as r:
            return _decode(r.read())
    except HTTPError as e:
        return _decode(e.read())


def cmd_register(args: argparse.Namespace) -> int:
    """Register a user for the running or next cycle of a machine."""
    base = args.base_url.rstrip("/")
    out = post(f"{base}/register.json", {"name": args.name, "type": args.type})
    print(json.dumps(out, indent=2))
    if out.get("status") == "error":
        return 1
    print("\nSubscribe in the ntfy app:")
    print(f"  {out['url']}")
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    """List users whose name starts with a prefix."""
    base = args.base_url.rstrip("/")
    out = post(f"{base}/search.json", {"name": args.name})
    if out.get("status") == "error":
        print(f"error: {out.get('detail')}", file=sys.stderr)
        return 1
    for u in out.get("users", []):
        print(f"{u['name']}\t{u['created_at']}")
    return 0


def cmd_ping(args: argparse.Namespace) -> int:
    base = args.base_url.rstrip("/")
    with urllib.request.urlopen(f"{base}/ping", timeout=10) as r:
        print(r.read().decode("utf-8").strip())
    return 0


def main(argv=None) -> None:
    ap = argparse.ArgumentParser(
        prog="laundry-notify-ctl",
        description="Laundry-notify client CLI",
    )
    ap.add_argument("--base-url", default="http://127.0.0.1:8080", help="Server URL")

    sub = ap.add_subparsers(dest="cmd", required=True)

    s1 = sub.add_parser("register", help="Register for a machine's cycle")
    s1.add_argument("--name", required=True, help="User name")
    s1.add_argument("--type", required=True, choices=["washer", "dryer"],
                    help="Machine type")
    s1.set_defaults(func=cmd_register)

    s2 = sub.add_parser("search", help="Search users by name prefix")
    s2.add_argument("--name", default="", help="Name prefix (empty = most recent)")
    s2.set_defaults(func=cmd_search)

    s3 = sub.add_parser("ping", help="Check the server is up")
    s3.set_defaults(func=cmd_ping)

    args = ap.parse_args(argv)
    try:
        sys.exit(args.func(args))
    except URLError as e:
        print(f"error: cannot reach {args.base_url}: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
