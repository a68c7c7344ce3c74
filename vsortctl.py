#!/usr/bin/env python3
"""Local control client for vision-sorter.

The daemon holds the actuator's serial port, so operator tools cannot safely
share the device. vsortctl talks to the daemon over a local UNIX socket.

Commands:
  status | start | stop | trigger | connect [PORT] | disconnect | send CMD |
  delay MS | policy ack|interval MS | map LABEL CMD | mapping | log [N]

Socket path:
  - default: /run/vsort/vsort.sock
  - override: --socket PATH or VSORT_SOCKET env var
"""

from __future__ import annotations

import argparse
import json
import os
import socket
import sys

DEFAULT_SOCK = "/run/vsort/vsort.sock"
COMMANDS = ["status", "start", "stop", "trigger", "connect", "disconnect", "send", "delay",
            "policy", "map", "mapping", "log", "help"]


def _send(sock_path: str, cmd: str) -> dict:
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        s.connect(sock_path)
        s.sendall((cmd.strip() + "\n").encode("utf-8"))
        data = b""
        while b"\n" not in data and len(data) < 262144:
            chunk = s.recv(4096)
            if not chunk:
                break
            data += chunk
    finally:
        s.close()
    line = data.decode("utf-8", errors="replace").strip()
    if not line:
        return {"ok": False, "error": "empty response"}
    try:
        return json.loads(line)
    except ValueError:
        return {"ok": False, "error": "non-json response", "raw": line}


def format_response(command: str, resp: dict) -> str:
    """Human summary of a successful response."""
    if command == "status":
        st = resp.get("state", {})
        preds = st.get("predictions") or []
        top = f"{preds[0]['label']}({preds[0]['confidence']:.2f})" if preds else "-"
        return (f"ok  version={resp.get('version', '')} active={st.get('active')} phase={st.get('phase')} "
                f"serial={st.get('serial_status')} delay_ms={st.get('delay_ms')} top={top} "
                f"last_command={st.get('last_command') or '-'} cycles={st.get('cycles_completed')}")
    if command == "mapping" or command == "map":
        return "\n".join(f"{label} -> {cmd}" for label, cmd in sorted(resp.get("mapping", {}).items())) or "ok"
    if command == "log":
        return "\n".join(f"{e['seq']:>6} {e['direction']:<8} {e['payload']}" for e in resp.get("log", [])) or "ok"
    if command == "help":
        return resp.get("help", "")
    return "ok"


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Control vision-sorter via its local UNIX socket")
    ap.add_argument("command", choices=COMMANDS, help="Command to send to the daemon")
    ap.add_argument("args", nargs="*", help="Command arguments (e.g. 'delay 500', 'map green 1')")
    ap.add_argument("--socket", default=os.environ.get("VSORT_SOCKET", DEFAULT_SOCK),
                    help=f"Control socket path (default: {DEFAULT_SOCK})")
    ap.add_argument("--json", action="store_true", help="Print raw JSON response")
    args = ap.parse_args(argv)

    try:
        resp = _send(args.socket, " ".join([args.command] + args.args))
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
    print(format_response(args.command, resp))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
