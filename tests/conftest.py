from types import SimpleNamespace

import pytest

from linemon.controller import SimulatedLineController
from linemon.evaluator import LocalRuleEvaluator
from linemon.models import DefectRule
from linemon.monitor import MonitorEngine
from linemon.notify import EventSink
from linemon.sources import SimulatedDefectSource, StaticRuleSource


class CapturingLogger:
    """Minimal logger that matches the .emit(event, level, **fields) contract."""
    def __init__(self):
        self.events = []

    def emit(self, event: str, level: str = "info", **fields):
        self.events.append((event, level, fields))

    def names(self):
        return [e[0] for e in self.events]


class FakeTimer:
    """threading.Timer stand-in: never fires on its own, tests call fire()."""
    def __init__(self, interval, function, args=()):
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function(*self.args)


class FakeMcClient:
    """Stand-in for a pymcprotocol Type3E/Type4E client."""
    def __init__(self, word=0, fail_connect=None, fail_read=None, fail_write=None):
        self.word = word
        self.fail_connect = fail_connect
        self.fail_read = fail_read
        self.fail_write = fail_write
        self.connected_to = None
        self.closed = False
        self.writes = []

    def connect(self, host, port):
        if self.fail_connect:
            raise self.fail_connect
        self.connected_to = (host, port)

    def batchread_wordunits(self, headdevice, readsize):
        if self.fail_read:
            raise self.fail_read
        return [self.word] * readsize

    def batchwrite_wordunits(self, headdevice, values):
        if self.fail_write:
            raise self.fail_write
        self.writes.append((headdevice, list(values)))
        self.word = values[0]

    def close(self):
        self.closed = True


@pytest.fixture
def make_engine():
    """Build an engine around a simulated controller and defect source.

    Threads are never started: spawned callables are collected in ``spawned``
    and auto-resolve timers in ``timers``."""
    def _make(rules, controller=None, evaluator_cls=LocalRuleEvaluator, simulator=False,
              auto_resolve_delay_s=30.0, **kwargs):
        logger = CapturingLogger()
        rule_source = StaticRuleSource(rules)
        source = SimulatedDefectSource(rule_source, logger, probability=0.0)
        if controller is None:
            controller = SimulatedLineController(logger)
        else:
            controller.logger = logger
        events = EventSink()
        spawned = []
        timers = []

        def timer_factory(interval, function, args=()):
            t = FakeTimer(interval, function, args)
            timers.append(t)
            return t

        engine = MonitorEngine(
            rules=rule_source,
            evaluator=evaluator_cls(source, logger),
            controller=controller,
            events=events,
            logger=logger,
            poll_interval_s=30.0,
            simulator=source if simulator else None,
            auto_resolve_delay_s=auto_resolve_delay_s,
            spawn=lambda target, *args: spawned.append((target, args)),
            timer_factory=timer_factory,
            **kwargs,
        )
        return SimpleNamespace(
            engine=engine,
            controller=controller,
            source=source,
            rules=rule_source,
            logger=logger,
            events=events,
            spawned=spawned,
            timers=timers,
        )
    return _make


@pytest.fixture
def rule_x():
    return DefectRule(code="X", name="X rule", threshold=3)
