#!/usr/bin/env python3
"""Local control client for line-monitor.

The monitor owns the controller connection, so operators talk to it over a
local UNIX socket instead of reaching the device directly.

Commands:
  status | start | stop | resolve [reason] | rules
  resolve-defects ID [ID ...]
  notifications [unread | read ID | clear]

Socket path:
  - default: /run/linemon/linemon.sock
  - override: --socket PATH or LINEMON_SOCKET env var
"""

from __future__ import annotations

import argparse
import json
import os
import socket
import sys

DEFAULT_SOCK = "/run/linemon/linemon.sock"


def _send(sock_path: str, cmd: str) -> dict:
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        s.connect(sock_path)
        s.sendall((cmd.strip() + "\n").encode("utf-8"))
        data = b""
        while b"\n" not in data and len(data) < 1048576:
            chunk = s.recv(4096)
            if not chunk:
                break
            data += chunk
        line = data.decode("utf-8", errors="replace").strip()
        if not line:
            return {"ok": False, "error": "empty response"}
        try:
            return json.loads(line)
        except ValueError:
            return {"ok": False, "error": "non-json response", "raw": line}
    finally:
        s.close()


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Control line-monitor via its local UNIX socket")
    ap.add_argument("command", choices=["status", "start", "stop", "resolve", "resolve-defects", "rules", "notifications"],
                    help="Command to send to the daemon")
    ap.add_argument("args", nargs="*",
                    help="Reason text for 'resolve', defect ids for 'resolve-defects', "
                         "'unread' / 'read ID' / 'clear' for 'notifications'")
    ap.add_argument("--socket", default=os.environ.get("LINEMON_SOCKET", DEFAULT_SOCK),
                    help=f"Control socket path (default: {DEFAULT_SOCK})")
    ap.add_argument("--json", action="store_true", help="Print raw JSON response")
    args = ap.parse_args(argv)

    cmd = " ".join([args.command, *args.args])

    try:
        resp = _send(args.socket, cmd)
    except OSError as e:
        print(f"error: cannot reach {args.socket}: {e}", file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(resp, indent=2, sort_keys=True))
        return 0 if resp.get("ok") else 2

    if not resp.get("ok"):
        print(f"error: {resp.get('error', 'unknown error')}", file=sys.stderr)
        raw = resp.get("raw")
        if raw:
            print(raw, file=sys.stderr)
        return 2

    if args.command == "status":
        st = resp.get("status", {})
        print(f"ok  version={resp.get('version', '')} running={st.get('running')} line={st.get('line_level')} "
              f"last_command={st.get('last_command')} counts={st.get('counts')}")
        if st.get("stop_reason"):
            print(f"    reason: {st['stop_reason']}")
    elif args.command == "rules":
        for r in resp.get("rules", []):
            flag = "on " if r.get("active") else "off"
            print(f"{flag} {r['code']:<12} threshold={r['threshold']:<4} {r['category']:<13} {r['name']}")
    elif args.command == "resolve-defects":
        print(f"ok  resolved={resp.get('resolved', 0)}")
    elif args.command == "notifications" and "notifications" in resp:
        for n in resp.get("notifications", []):
            mark = " " if n.get("read") else "*"
            print(f"{mark} {n['id']}  {n['type']:<14} {n['title']}: {n['message']}")
    else:
        print("ok" if resp.get("changed", True) else "ok (no change)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
