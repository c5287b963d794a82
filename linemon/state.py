from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .models import CommandType, Defect, LineLevel


@dataclass(frozen=True)
class StatusSnapshot:
    """Read-only projection of the engine state.

    Replaced as a whole at the end of every cycle (and on start/stop/resolve), so
    readers on other threads always see a fully-formed snapshot."""
    running: bool = False
    line_level: LineLevel = LineLevel.RUNNING
    stop_reason: str = ""
    counts: dict = field(default_factory=dict)
    recent_defects: tuple = ()
    last_command: Optional[CommandType] = None
    last_command_ts: Optional[float] = None
    last_cycle_ts: Optional[float] = None
    poll_interval_s: float = 0.0
    controller_mode: str = ""
    controller_connected: bool = False
    defect_mode: str = ""
    evaluator_mode: str = ""
    epoch: int = 0

    def to_dict(self) -> dict:
        return {
            "running": self.running,
            "line_level": self.line_level.value,
            "stop_reason": self.stop_reason,
            "counts": dict(self.counts),
            "recent_defects": [d.to_dict() for d in self.recent_defects if isinstance(d, Defect)],
            "last_command": self.last_command.value if self.last_command else None,
            "last_command_ts": self.last_command_ts,
            "last_cycle_ts": self.last_cycle_ts,
            "poll_interval_s": self.poll_interval_s,
            "controller_mode": self.controller_mode,
            "controller_connected": self.controller_connected,
            "defect_mode": self.defect_mode,
            "evaluator_mode": self.evaluator_mode,
            "epoch": self.epoch,
        }
