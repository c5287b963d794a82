from __future__ import annotations

import json
import time

LEVELS = {"debug": 10, "info": 20, "warn": 30, "error": 40}


class JsonLogger:
    """Minimal structured logger.

    Emits single-line JSON events for control-loop activity (cycles, line
    commands, connection faults, auto-resolve timers) so logs are easy to grep
    and machine-parse. Events below ``min_level`` are dropped."""
    def __init__(self, enable_json: bool, min_level: str = "info"):
        self.enable_json = enable_json
        self.min_level = min_level

    def enabled_for(self, level: str) -> bool:
        return LEVELS.get(level, 20) >= LEVELS.get(self.min_level, 20)

    def emit(self, event: str, level: str = "info", **fields):
        """Emit an event with a name, a level and optional key/value fields."""
        if not self.enabled_for(level):
            return
        t = time.time()
        # ts: float seconds since epoch. ts_iso is local time with milliseconds.
        ts_iso = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(t)) + f'.{int((t - int(t))*1000):03d}'
        if self.enable_json:
            payload = {"ts": t, "ts_iso": ts_iso, "level": level, "event": event, **fields}
            print(json.dumps(payload, sort_keys=True, default=str), flush=True)
        else:
            msg = f"[{ts_iso}] {level.upper():5} {event}"
            if fields:
                msg += " " + " ".join(f"{k}={v}" for k, v in fields.items())
            print(msg, flush=True)
