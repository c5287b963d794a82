from __future__ import annotations

import json
import os
import socket
import threading
from contextlib import suppress
from typing import Optional

from .constants import (
    CONTROL_NOTIFICATIONS,
    CONTROL_RESOLVE,
    CONTROL_RESOLVE_DEFECTS,
    CONTROL_RULES,
    CONTROL_START,
    CONTROL_STATUS,
    CONTROL_STOP,
    VERSION,
)
from .errors import EvaluationError
from .logging import JsonLogger

MAX_REQUEST_BYTES = 4096


def _encode(resp: dict) -> bytes:
    return (json.dumps(resp, sort_keys=True, default=str) + "\n").encode("utf-8")


def _read_request(conn: socket.socket) -> str:
    data = b""
    while b"\n" not in data and len(data) < MAX_REQUEST_BYTES:
        chunk = conn.recv(MAX_REQUEST_BYTES)
        if not chunk:
            break
        data += chunk
    return data.decode("utf-8", errors="replace").strip()


class ControlServer:
    """Local control socket for the monitor.

    Accepts one command line per connection and answers with one JSON line.

      status | start | stop | resolve [reason] | rules
      resolve-defects <id> [<id> ...]
      notifications [unread | read <id> | clear]
    """
    def __init__(self, engine, logger: JsonLogger, events=None):
        self.engine = engine
        self.logger = logger
        self.events = events
        self._thread: Optional[threading.Thread] = None
        self._stop_evt = threading.Event()
        self._sock_path: Optional[str] = None

    def start(self, sock_path: str):
        if not sock_path:
            return
        self._sock_path = sock_path
        t = threading.Thread(target=self._loop, args=(sock_path,), daemon=True)
        t.start()
        self._thread = t
        self.logger.emit("control_socket_started", path=sock_path)

    def stop(self):
        self._stop_evt.set()

    def _listen(self, path: str) -> Optional[socket.socket]:
        parent = os.path.dirname(path)
        with suppress(OSError):
            if parent:
                os.makedirs(parent, exist_ok=True)
            if os.path.exists(path):
                os.remove(path)

        srv = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            srv.bind(path)
            with suppress(OSError):
                os.chmod(path, 0o660)
            srv.listen(4)
            srv.settimeout(0.5)
        except OSError as e:
            self.logger.emit("control_socket_error", level="error", error=str(e), path=path)
            srv.close()
            return None
        return srv

    def _serve(self, conn: socket.socket):
        with conn:
            conn.settimeout(2.0)
            try:
                resp = self.handle_command(_read_request(conn))
            except Exception as e:
                self.logger.emit("control_command_error", level="error", error=str(e))
                resp = {"ok": False, "error": str(e)}
            with suppress(OSError):
                conn.sendall(_encode(resp))

    def _loop(self, path: str):
        srv = self._listen(path)
        if srv is None:
            return
        with srv:
            while not self._stop_evt.is_set():
                try:
                    conn, _ = srv.accept()
                except socket.timeout:
                    continue
                except OSError:
                    break
                self._serve(conn)
        with suppress(OSError):
            os.remove(path)

    def handle_command(self, line: str) -> dict:
        cmd, _, arg = (line or "").strip().partition(" ")
        cmd = cmd.lower()
        arg = arg.strip()
        if not cmd:
            return {"ok": False, "error": "empty command"}

        if cmd in (CONTROL_STATUS, "state"):
            return {"ok": True, "status": self.engine.get_status().to_dict(), "version": VERSION}

        if cmd == CONTROL_START:
            return {"ok": True, "changed": self.engine.start()}

        if cmd == CONTROL_STOP:
            return {"ok": True, "changed": self.engine.stop()}

        if cmd == CONTROL_RESOLVE:
            reason = arg or "manual resolve"
            self.logger.emit("manual_resolve_requested", reason=reason)
            return {"ok": True, "changed": self.engine.resolve_stop(reason)}

        if cmd == CONTROL_RESOLVE_DEFECTS:
            ids = arg.split()
            if not ids:
                return {"ok": False, "error": "resolve-defects needs at least one defect id"}
            try:
                return {"ok": True, "resolved": self.engine.resolve_defects(ids)}
            except EvaluationError as e:
                return {"ok": False, "error": str(e)}

        if cmd == CONTROL_RULES:
            return {"ok": True, "rules": [r.to_dict() for r in self.engine.rules.get_rules()]}

        if cmd == CONTROL_NOTIFICATIONS:
            return self._notifications(arg)

        return {"ok": False, "error": f"unknown command: {cmd}"}

    def _notifications(self, arg: str) -> dict:
        if self.events is None:
            return {"ok": True, "notifications": []}
        sub, _, rest = arg.partition(" ")
        sub = sub.lower()
        if not sub:
            items = self.events.all()
        elif sub == "unread":
            items = self.events.unread()
        elif sub == "read":
            nid = rest.strip()
            if not nid:
                return {"ok": False, "error": "notifications read needs an id"}
            return {"ok": True, "changed": self.events.mark_read(nid)}
        elif sub == "clear":
            self.events.clear()
            return {"ok": True, "changed": True}
        else:
            return {"ok": False, "error": f"unknown notifications option: {sub}"}
        return {"ok": True, "notifications": [n.to_dict() for n in items]}
