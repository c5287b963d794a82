from linemon.errors import LineIOError
from linemon.evaluator import DelegatedRuleEvaluator
from linemon.models import CommandType, DecisionLevel, DefectRule, LineLevel, RuleCheckResult, RuleDecision
from linemon.monitor import aggregate
from linemon.notify import LINE_RESUME, LINE_STOP


def _levels(h):
    return [lvl for lvl, _ in h.controller.writes]


def test_threshold_reached_issues_exactly_one_stop(make_engine, rule_x):
    h = make_engine([rule_x])
    for n in (1, 2, 3):
        h.source.add_defect(f"X-{n}")
    h.engine.start()

    h.engine.run_cycle()
    assert h.engine.level is LineLevel.STOPPED
    assert _levels(h) == [LineLevel.STOPPED]

    # Still over threshold: nothing more is written.
    h.engine.run_cycle()
    h.engine.run_cycle()
    assert _levels(h) == [LineLevel.STOPPED]

    status = h.engine.get_status()
    assert status.line_level is LineLevel.STOPPED
    assert status.counts == {"X": 3}
    assert status.last_command is CommandType.STOP
    assert status.stop_reason.startswith("Line stop: X rule reached 3 defects")
    assert [n.type for n in h.events.all()][0] == LINE_STOP


def test_warning_is_resent_only_when_count_rises(make_engine, rule_x):
    h = make_engine([rule_x])
    h.source.add_defect("X-1")
    h.engine.start()

    h.engine.run_cycle()
    assert h.engine.level is LineLevel.WARNING
    assert _levels(h) == [LineLevel.WARNING]
    assert h.engine.warn_high_water == 1

    h.engine.run_cycle()
    assert _levels(h) == [LineLevel.WARNING]

    h.source.add_defect("X-2")
    h.engine.run_cycle()
    assert _levels(h) == [LineLevel.WARNING, LineLevel.WARNING]
    assert h.engine.warn_high_water == 2
    assert "2 defect(s)" in h.controller.writes[-1][1]


def test_warning_count_falling_sends_nothing(make_engine, rule_x):
    h = make_engine([rule_x])
    a = h.source.add_defect("X-1")
    h.source.add_defect("X-2")
    h.engine.start()
    h.engine.run_cycle()
    assert _levels(h) == [LineLevel.WARNING]

    h.source.resolve_ids([a.id])
    h.engine.run_cycle()
    assert _levels(h) == [LineLevel.WARNING]
    assert h.engine.warn_high_water == 2


def test_stop_takes_priority_and_uses_first_stop_message(make_engine):
    rules = [
        DefectRule(code="W", name="Warn rule", threshold=5),
        DefectRule(code="A", name="First stop", threshold=1),
        DefectRule(code="B", name="Second stop", threshold=1),
    ]
    h = make_engine(rules)
    for code in ("W-1", "A-1", "B-1"):
        h.source.add_defect(code)
    h.engine.start()

    h.engine.run_cycle()
    assert _levels(h) == [LineLevel.STOPPED]
    assert "First stop" in h.controller.writes[0][1]


def test_warning_escalates_to_stop(make_engine, rule_x):
    h = make_engine([rule_x])
    h.source.add_defect("X-1")
    h.engine.start()
    h.engine.run_cycle()

    h.source.add_defect("X-2")
    h.source.add_defect("X-3")
    h.engine.run_cycle()
    assert _levels(h) == [LineLevel.WARNING, LineLevel.STOPPED]
    assert h.engine.level is LineLevel.STOPPED


def test_cleared_conditions_reset_the_line(make_engine, rule_x):
    h = make_engine([rule_x])
    h.source.add_defect("X-1")
    h.engine.start()
    h.engine.run_cycle()
    assert h.engine.level is LineLevel.WARNING

    h.source.resolve_by_prefix("X")
    h.engine.run_cycle()
    assert _levels(h) == [LineLevel.WARNING, LineLevel.RUNNING]
    assert h.engine.level is LineLevel.RUNNING
    assert h.engine.warn_high_water == 0
    assert h.engine.get_status().last_command is CommandType.RESET
    assert h.events.all()[0].type == LINE_RESUME

    # Idle and running: no further commands.
    h.engine.run_cycle()
    assert len(h.controller.writes) == 2


def test_no_rules_no_commands(make_engine):
    h = make_engine([])
    h.source.add_defect("X-1")
    h.engine.start()
    h.engine.run_cycle()
    assert h.controller.writes == []
    assert h.engine.level is LineLevel.RUNNING


def test_inactive_rule_never_stops_the_line(make_engine):
    h = make_engine([DefectRule(code="X", name="X", threshold=1, active=False)])
    for n in range(5):
        h.source.add_defect(f"X-{n}")
    h.engine.start()
    h.engine.run_cycle()
    assert h.controller.writes == []
    assert h.engine.get_status().counts == {}


def test_manual_resolve_is_idempotent(make_engine, rule_x):
    h = make_engine([rule_x])
    assert h.engine.resolve_stop("nothing to do") is False
    assert h.controller.writes == []

    for n in (1, 2, 3):
        h.source.add_defect(f"X-{n}")
    h.engine.start()
    h.engine.run_cycle()

    assert h.engine.resolve_stop("operator cleared jam") is True
    assert h.engine.level is LineLevel.RUNNING
    assert h.controller.writes[-1] == (LineLevel.RUNNING, "operator cleared jam")
    assert h.engine.get_status().stop_reason == ""
    assert h.events.all()[0].message == "Line resumed. Reason: operator cleared jam"

    writes = len(h.controller.writes)
    assert h.engine.resolve_stop("again") is False
    assert len(h.controller.writes) == writes


def test_manual_resolve_works_while_stopped_service(make_engine, rule_x):
    h = make_engine([rule_x])
    for n in (1, 2, 3):
        h.source.add_defect(f"X-{n}")
    h.engine.start()
    h.engine.run_cycle()
    h.engine.stop()

    assert h.engine.resolve_stop("after shutdown") is True
    assert h.engine.level is LineLevel.RUNNING


class FlakyController:
    """Wraps the simulated controller and fails the next N writes."""
    def __init__(self, inner, failures=1):
        self.inner = inner
        self.failures = failures

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def set_level(self, level, reason):
        if self.failures > 0:
            self.failures -= 1
            raise LineIOError("write D7000 failed: timed out")
        self.inner.set_level(level, reason)


def test_failed_stop_write_is_retried_next_cycle(make_engine, rule_x):
    h = make_engine([rule_x])
    flaky = FlakyController(h.controller, failures=1)
    h.engine.controller = flaky
    for n in (1, 2, 3):
        h.source.add_defect(f"X-{n}")
    h.engine.start()

    h.engine.run_cycle()
    assert h.engine.level is LineLevel.RUNNING
    assert h.controller.writes == []
    assert "command_failed" in h.logger.names()
    assert not [n for n in h.events.all() if n.type == LINE_STOP]

    h.engine.run_cycle()
    assert h.engine.level is LineLevel.STOPPED
    assert _levels(h) == [LineLevel.STOPPED]


def test_failed_resolve_leaves_line_stopped(make_engine, rule_x):
    h = make_engine([rule_x])
    for n in (1, 2, 3):
        h.source.add_defect(f"X-{n}")
    h.engine.start()
    h.engine.run_cycle()

    h.engine.controller = FlakyController(h.controller, failures=1)
    assert h.engine.resolve_stop("try") is False
    assert h.engine.level is LineLevel.STOPPED


def test_evaluation_failure_leaves_state_unchanged(make_engine, rule_x):
    h = make_engine([rule_x])
    h.source.add_defect("X-1")
    h.engine.start()
    h.engine.run_cycle()
    assert h.engine.level is LineLevel.WARNING

    def broken(window_s):
        raise ConnectionError("defect store unavailable")

    h.source.get_unresolved_defects = broken
    assert h.engine.run_cycle() is True
    assert h.engine.level is LineLevel.WARNING
    assert _levels(h) == [LineLevel.WARNING]
    errors = [e for e in h.logger.events if e[0] == "cycle_error"]
    assert errors and errors[0][1] == "error"
    assert errors[0][2]["error_type"] == "EvaluationError"


def test_cycle_records_liveness_and_snapshot(make_engine, rule_x):
    h = make_engine([rule_x])
    h.engine.start()
    assert h.engine.get_status().last_cycle_ts is None
    h.engine.run_cycle()
    status = h.engine.get_status()
    assert status.running is True
    assert status.last_cycle_ts is not None
    assert status.controller_mode == "sim"
    assert status.evaluator_mode == "local"
    assert status.to_dict()["line_level"] == "RUNNING"


def test_aggregate_folds_decisions():
    agg = aggregate([
        RuleDecision("A", 1, DecisionLevel.WARN, "warn A"),
        RuleDecision("B", 2, DecisionLevel.WARN, "warn B"),
        RuleDecision("C", 0, DecisionLevel.NONE),
    ])
    assert agg.should_warn and not agg.should_stop
    assert agg.warn_message == "warn A"
    assert agg.total_count == 3

    agg = aggregate([
        RuleDecision("A", 1, DecisionLevel.WARN, "warn A"),
        RuleDecision("B", 4, DecisionLevel.STOP, "stop B"),
    ])
    assert agg.should_stop and not agg.should_warn
    assert agg.stop_message == "stop B"

    empty = aggregate([])
    assert not empty.should_stop and not empty.should_warn and empty.total_count == 0


def test_delegated_stop_without_message_still_stops(make_engine, rule_x):
    h = make_engine([rule_x], evaluator_cls=DelegatedRuleEvaluator)
    h.source.evaluate_rule = lambda code, threshold: RuleCheckResult("STOP", 5, None)
    h.engine.start()

    h.engine.run_cycle()
    assert h.engine.level is LineLevel.STOPPED
    assert h.controller.writes == [(LineLevel.STOPPED, "")]
    assert h.engine.get_status().counts == {"X": 5}


def test_aggregate_uses_levels_not_messages():
    agg = aggregate([
        RuleDecision("A", 2, DecisionLevel.WARN, None),
        RuleDecision("B", 5, DecisionLevel.STOP, None),
    ])
    assert agg.should_stop and not agg.should_warn
    assert agg.stop_message == ""

    agg = aggregate([RuleDecision("A", 1, DecisionLevel.WARN, None)])
    assert agg.should_warn
    assert agg.warn_message == ""
