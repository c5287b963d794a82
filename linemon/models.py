from __future__ import annotations

import enum
from dataclasses import asdict, dataclass
from datetime import datetime

from .errors import ConfigError


class DefectCategory(str, enum.Enum):
    APPEARANCE = "APPEARANCE"
    FUNCTION = "FUNCTION"
    PL = "PL"
    COMMON_SENSE = "COMMON_SENSE"


class LineLevel(str, enum.Enum):
    """Operating level of the line.

    The device stores the level as a small integer in a single word:
    0 = running, 1 = stopped, 2 = warning."""
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    WARNING = "WARNING"

    @property
    def value_code(self) -> int:
        return _LEVEL_CODES[self]

    @classmethod
    def from_value(cls, value: int) -> "LineLevel":
        # Anything the device reports outside 1/2 is treated as running.
        for level, code in _LEVEL_CODES.items():
            if code == value:
                return level
        return cls.RUNNING


_LEVEL_CODES = {LineLevel.RUNNING: 0, LineLevel.STOPPED: 1, LineLevel.WARNING: 2}


class DecisionLevel(str, enum.Enum):
    NONE = "NONE"
    WARN = "WARN"
    STOP = "STOP"


class CommandType(str, enum.Enum):
    STOP = "STOP"
    WARN = "WARN"
    RESET = "RESET"


class CheckResultCode(str, enum.Enum):
    STOP = "STOP"
    PASS = "PASS"
    ERROR = "ERROR"


@dataclass(frozen=True)
class DefectRule:
    """Threshold policy matched against a defect-code prefix."""
    code: str
    name: str
    category: DefectCategory = DefectCategory.APPEARANCE
    threshold: int = 1
    active: bool = True

    def __post_init__(self):
        if not self.code:
            raise ConfigError("rule code must not be empty")
        if int(self.threshold) < 1:
            raise ConfigError(f"rule {self.code}: threshold must be >= 1 (got {self.threshold})")

    def matches(self, defect_code: str) -> bool:
        return defect_code.startswith(self.code)

    @classmethod
    def from_dict(cls, raw: dict) -> "DefectRule":
        try:
            category = DefectCategory(str(raw.get("category", "APPEARANCE")).upper())
        except ValueError:
            raise ConfigError(f"rule {raw.get('code')}: unknown category {raw.get('category')!r}") from None
        try:
            threshold = int(raw.get("threshold", 1))
        except (TypeError, ValueError):
            raise ConfigError(f"rule {raw.get('code')}: threshold must be an integer") from None
        return cls(
            code=str(raw.get("code", "")).strip(),
            name=str(raw.get("name") or raw.get("code", "")),
            category=category,
            threshold=threshold,
            active=bool(raw.get("active", True)),
        )

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "name": self.name,
            "category": self.category.value,
            "threshold": self.threshold,
            "active": self.active,
        }


@dataclass
class Defect:
    """A single observed quality fault. ``timestamp`` is wall-clock seconds."""
    id: str
    code: str
    category: DefectCategory
    timestamp: float
    resolved: bool = False
    name: str = ""

    @classmethod
    def from_dict(cls, raw: dict) -> "Defect":
        ts = raw.get("timestamp", 0.0)
        if isinstance(ts, str):
            ts = datetime.fromisoformat(ts).timestamp()
        return cls(
            id=str(raw["id"]),
            code=str(raw["code"]),
            category=DefectCategory(str(raw.get("category", "APPEARANCE")).upper()),
            timestamp=float(ts),
            resolved=bool(raw.get("resolved", False)),
            name=str(raw.get("name", "")),
        )

    def to_dict(self) -> dict:
        d = asdict(self)
        d["category"] = self.category.value
        return d


@dataclass(frozen=True)
class RuleDecision:
    rule_code: str
    count: int
    level: DecisionLevel
    message: str = ""


@dataclass(frozen=True)
class RuleCheckResult:
    """Outcome of a delegated per-rule check."""
    result_code: CheckResultCode
    count: int
    message: str = ""
