from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Sequence

from .constants import DEFAULT_LOOKBACK_WINDOW_S
from .errors import EvaluationError
from .logging import JsonLogger
from .models import CheckResultCode, Defect, DecisionLevel, DefectRule, RuleDecision


class RuleEvaluator(ABC):
    """Turns the active rules into one RuleDecision per rule, in rule order.

    Inactive rules never produce a decision. The order matters: the engine
    surfaces the message of the first STOP and the first WARN decision."""

    mode = ""

    def __init__(self, source, logger: JsonLogger, window_s: float = DEFAULT_LOOKBACK_WINDOW_S):
        self.source = source
        self.logger = logger
        self.window_s = float(window_s)

    @abstractmethod
    def evaluate(self, rules: Sequence[DefectRule]) -> list[RuleDecision]:
        ...

    @abstractmethod
    def recent_defects(self) -> list[Defect]:
        """Unresolved defects in the lookback window, for status reporting."""


def _clock_hhmm(ts: float) -> str:
    return time.strftime("%H:%M", time.localtime(ts))


class LocalRuleEvaluator(RuleEvaluator):
    """Counts unresolved defects in the window whose code starts with the rule code."""

    mode = "local"

    def __init__(self, source, logger: JsonLogger, window_s: float = DEFAULT_LOOKBACK_WINDOW_S):
        super().__init__(source, logger, window_s)
        self._last_defects: list[Defect] = []

    def evaluate(self, rules: Sequence[DefectRule]) -> list[RuleDecision]:
        # One fetch per cycle. If it fails the whole cycle must not act on it.
        try:
            defects = [d for d in self.source.get_unresolved_defects(self.window_s) if not d.resolved]
        except Exception as e:
            raise EvaluationError(f"defect query failed: {e}") from e
        self._last_defects = defects

        decisions = []
        for rule in rules:
            if not rule.active:
                continue
            matched = sorted((d for d in defects if rule.matches(d.code)), key=lambda d: d.timestamp)
            count = len(matched)
            if count >= rule.threshold:
                decisions.append(RuleDecision(
                    rule.code,
                    count,
                    DecisionLevel.STOP,
                    f"Line stop: {rule.name} reached {rule.threshold} defects (since {_clock_hhmm(matched[0].timestamp)})",
                ))
            elif count > 0:
                decisions.append(RuleDecision(
                    rule.code, count, DecisionLevel.WARN, f"Warning: {rule.name} {count} defect(s) detected",
                ))
            else:
                decisions.append(RuleDecision(rule.code, 0, DecisionLevel.NONE))
        return decisions

    def recent_defects(self) -> list[Defect]:
        return list(self._last_defects)


class DelegatedRuleEvaluator(RuleEvaluator):
    """Delegates each rule to the source's evaluate_rule(code, threshold).

    An ERROR result, or a failing call, makes that rule contribute NONE for the
    cycle. It is logged as a fault and never promoted to STOP."""

    mode = "delegated"

    def evaluate(self, rules: Sequence[DefectRule]) -> list[RuleDecision]:
        decisions = []
        for rule in rules:
            if not rule.active:
                continue
            try:
                decisions.append(self._evaluate_one(rule))
            except EvaluationError as e:
                self.logger.emit("rule_evaluation_failed", level="error", rule=rule.code, error=str(e))
                decisions.append(RuleDecision(rule.code, 0, DecisionLevel.NONE, str(e)))
        return decisions

    def _evaluate_one(self, rule: DefectRule) -> RuleDecision:
        try:
            result = self.source.evaluate_rule(rule.code, rule.threshold)
            code = CheckResultCode(result.result_code)
            count = int(result.count or 0)
        except Exception as e:
            raise EvaluationError(f"rule check failed: {e}", rule_code=rule.code) from e

        self.logger.emit(
            "rule_checked", level="debug", rule=rule.code, threshold=rule.threshold, result=code.value, count=count,
        )
        if code is CheckResultCode.STOP:
            self.logger.emit("rule_threshold_reached", level="warn", rule=rule.code, name=rule.name, count=count)
            return RuleDecision(rule.code, count, DecisionLevel.STOP, result.message or "")
        if code is CheckResultCode.ERROR:
            self.logger.emit("rule_check_error", level="error", rule=rule.code, message=result.message)
            return RuleDecision(rule.code, count, DecisionLevel.NONE, result.message or "")
        if count > 0:
            return RuleDecision(
                rule.code, count, DecisionLevel.WARN, f"Warning: {rule.name}({rule.code}) {count} defect(s) detected",
            )
        return RuleDecision(rule.code, 0, DecisionLevel.NONE)

    def recent_defects(self) -> list[Defect]:
        fetch = getattr(self.source, "get_unresolved_defects", None)
        if fetch is None:
            return []
        try:
            return list(fetch(self.window_s))
        except Exception as e:
            self.logger.emit("defect_list_failed", level="error", error=str(e))
            return []
