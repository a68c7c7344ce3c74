from __future__ import annotations

import json
import os
import socket
import threading
from typing import Optional

from .constants import VERSION
from .errors import SorterError
from .logging import JsonLogger
from .policy import make_policy

# ---------------- Local control socket ----------------
# The daemon holds the actuator's serial port, so the operator surface (start,
# stop, mapping edits, manual commands) goes through a local UNIX socket.

HELP = "status | start | stop | trigger | connect | disconnect | send CMD | delay MS | " \
       "policy ack MS | policy interval MS | map LABEL CMD | mapping | log [N]"


class ControlServer:
    """Single-line request / single-line JSON response control plane.

    One command per connection. See HELP for the command set."""
    def __init__(self, loop, sock_path: str, logger: Optional[JsonLogger] = None):
        self.loop = loop
        self.transport = loop.transport
        self.sock_path = sock_path
        self.logger = logger or loop.logger
        self._stop_evt = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if not self.sock_path:
            return
        self._stop_evt.clear()
        self._thread = threading.Thread(target=self._serve, daemon=True, name="vsort-control")
        self._thread.start()
        self.logger.emit("control_socket_started", path=self.sock_path)

    def stop(self):
        self._stop_evt.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None

    def _bind(self) -> Optional[socket.socket]:
        path = self.sock_path
        # Ensure parent directory exists (useful with RuntimeDirectory=/run/vsort)
        parent = os.path.dirname(path)
        srv = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            if parent:
                os.makedirs(parent, exist_ok=True)
            # Remove a stale socket left by a previous run.
            if os.path.exists(path):
                os.remove(path)
            srv.bind(path)
            # Restrict to local users. systemd can further manage permissions via RuntimeDirectory.
            os.chmod(path, 0o660)
            srv.listen(4)
            srv.settimeout(0.5)
        except OSError as e:
            self.logger.emit("control_socket_error", error=str(e), path=path)
            srv.close()
            return None
        return srv

    def _serve(self):
        srv = self._bind()
        if srv is None:
            return
        try:
            while not self._stop_evt.is_set():
                try:
                    conn, _ = srv.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    self.logger.emit("control_socket_error", error=str(e), path=self.sock_path)
                    break
                with conn:
                    self._serve_one(conn)
        finally:
            srv.close()
            try:
                os.remove(self.sock_path)
            except FileNotFoundError:
                pass

    def _serve_one(self, conn: socket.socket):
        try:
            conn.settimeout(2.0)
            data = b""
            while b"\n" not in data and len(data) < 4096:
                chunk = conn.recv(4096)
                if not chunk:
                    break
                data += chunk
            cmd = data.decode("utf-8", errors="replace").strip()
            try:
                resp = self.handle(cmd)
            except SorterError as e:
                resp = {"ok": False, "error": str(e)}
            conn.sendall((json.dumps(resp, sort_keys=True) + "\n").encode("utf-8"))
        except OSError as e:
            self.logger.emit("control_client_error", error=str(e))

    def handle(self, line: str) -> dict:
        """Execute one command line and return the JSON-able response."""
        parts = (line or "").strip().split()
        if not parts:
            return {"ok": False, "error": "empty command"}
        cmd, args = parts[0].lower(), parts[1:]

        if cmd in ("status", "state"):
            return {"ok": True, "state": self.loop.snapshot(), "version": VERSION}

        if cmd == "start":
            if not self.loop.start():
                return {"ok": False, "error": "model not loaded"}
            return {"ok": True}

        if cmd == "stop":
            self.loop.stop()
            return {"ok": True}

        if cmd == "trigger":
            if not self.loop.trigger():
                return {"ok": False, "error": "cannot trigger (inactive or classification in flight)"}
            return {"ok": True}

        if cmd == "connect":
            status = self.transport.connect(args[0] if args else None)
            return {"ok": self.transport.connected, "status": status.value}

        if cmd == "disconnect":
            self.transport.disconnect()
            return {"ok": True, "status": self.transport.status.value}

        if cmd == "send":
            if not args:
                return {"ok": False, "error": "usage: send CMD"}
            if not self.loop.send_manual(" ".join(args)):
                return {"ok": False, "error": f"not sent (serial {self.transport.status.value})"}
            return {"ok": True}

        if cmd == "delay":
            if len(args) != 1:
                return {"ok": False, "error": "usage: delay MS"}
            return {"ok": True, "delay_ms": self.loop.set_delay_ms(args[0])}

        if cmd == "policy":
            if len(args) != 2:
                return {"ok": False, "error": "usage: policy ack|interval MS"}
            name, ms = args
            policy = make_policy(name, delay_ms=ms, period_ms=ms)
            self.loop.set_policy(policy)
            return {"ok": True, "policy": policy.describe()}

        if cmd == "map":
            if len(args) < 2:
                return {"ok": False, "error": "usage: map LABEL CMD"}
            # Labels may contain spaces; the command is the last token.
            label, command = " ".join(args[:-1]), args[-1]
            self.loop.set_command(label, command)
            return {"ok": True, "mapping": self.loop.mapping.snapshot()}

        if cmd == "mapping":
            return {"ok": True, "mapping": self.loop.mapping.snapshot()}

        if cmd == "log":
            n = None
            if args:
                try:
                    n = int(args[0])
                except ValueError:
                    return {"ok": False, "error": "usage: log [N]"}
            return {"ok": True, "log": [e.as_dict() for e in self.transport.log.entries(n)]}

        if cmd == "help":
            return {"ok": True, "help": HELP}

        return {"ok": False, "error": f"unknown command: {cmd}"}
