from __future__ import annotations

import random
import threading
import uuid
from typing import Iterable, Optional

from .logging import JsonLogger
from .models import CheckResultCode, Defect, DefectCategory, DefectRule, RuleCheckResult
from .util import wall_s


class StaticRuleSource:
    """Rule source backed by the rules declared in the configuration."""

    def __init__(self, rules: Iterable[DefectRule] = ()):
        self._lock = threading.Lock()
        self._rules: dict[str, DefectRule] = {}
        for rule in rules:
            self.put(rule)

    def put(self, rule: DefectRule) -> None:
        with self._lock:
            self._rules[rule.code] = rule

    def get_rules(self) -> list[DefectRule]:
        with self._lock:
            return list(self._rules.values())

    def get_active_rules(self) -> list[DefectRule]:
        return [r for r in self.get_rules() if r.active]


class SimulatedDefectSource:
    """In-memory defect population for mock mode.

    Serves both defect-source shapes: the unresolved-defect query used by the local
    counting strategy and the per-rule check used by the delegated strategy."""

    mode = "sim"

    def __init__(
        self,
        rules: StaticRuleSource,
        logger: JsonLogger,
        probability: float = 0.3,
        rng: Optional[random.Random] = None,
        clock=wall_s,
    ):
        self.rules = rules
        self.logger = logger
        self.probability = float(probability)
        self._rng = rng or random.Random()
        self._clock = clock
        self._lock = threading.Lock()
        self._defects: list[Defect] = []

    def add_defect(self, code: str, rule: Optional[DefectRule] = None, timestamp: Optional[float] = None) -> Defect:
        defect = Defect(
            id=f"D-{uuid.uuid4().hex[:12]}",
            code=code,
            category=rule.category if rule else _category_for(code, self.rules),
            timestamp=self._clock() if timestamp is None else float(timestamp),
            name=rule.name if rule else "",
        )
        with self._lock:
            self._defects.append(defect)
        return defect

    def generate(self) -> list[Defect]:
        """Add at most one random defect for a random active rule."""
        active = self.rules.get_active_rules()
        if not active or self._rng.random() >= self.probability:
            return []
        rule = self._rng.choice(active)
        code = f"{rule.code}-{self._rng.randrange(999):03d}"
        defect = self.add_defect(code, rule=rule)
        self.logger.emit("simulated_defect", level="debug", code=defect.code, rule=rule.code)
        return [defect]

    def get_unresolved_defects(self, window_s: float) -> list[Defect]:
        cutoff = self._clock() - float(window_s)
        with self._lock:
            return [d for d in self._defects if not d.resolved and d.timestamp >= cutoff]

    def evaluate_rule(self, code: str, threshold: int, window_s: float = 3600.0) -> RuleCheckResult:
        matched = sorted(
            (d for d in self.get_unresolved_defects(window_s) if d.code.startswith(code)),
            key=lambda d: d.timestamp,
        )
        count = len(matched)
        if count >= threshold:
            return RuleCheckResult(CheckResultCode.STOP, count, f"Line stop: {code} reached {threshold} defects")
        return RuleCheckResult(CheckResultCode.PASS, count, f"{code}: {count} defect(s) in window")

    def resolve_by_prefix(self, code: str) -> int:
        """Drop every simulated defect the rule ``code`` matches. Returns how many."""
        with self._lock:
            before = len(self._defects)
            self._defects = [d for d in self._defects if not d.code.startswith(code)]
            removed = before - len(self._defects)
        if removed:
            self.logger.emit("simulated_defects_cleared", level="debug", rule=code, count=removed)
        return removed

    def resolve_ids(self, ids: Iterable[str]) -> int:
        wanted = set(ids)
        resolved = 0
        with self._lock:
            for d in self._defects:
                if d.id in wanted and not d.resolved:
                    d.resolved = True
                    resolved += 1
        return resolved


def _category_for(code: str, rules: StaticRuleSource) -> DefectCategory:
    for rule in rules.get_rules():
        if rule.matches(code):
            return rule.category
    return DefectCategory.APPEARANCE
