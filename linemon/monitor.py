from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from .constants import DEFAULT_AUTO_RESOLVE_DELAY_S, DEFAULT_POLL_INTERVAL_S
from .controller import LineController
from .errors import ConnectError, ControllerError, EvaluationError
from .evaluator import RuleEvaluator
from .logging import JsonLogger
from .models import CommandType, DecisionLevel, LineLevel, RuleDecision
from .notify import LINE_RESUME, LINE_STOP, SERVICE_START, SERVICE_STOP, EventSink
from .state import StatusSnapshot
from .util import wall_s


@dataclass(frozen=True)
class Aggregate:
    should_stop: bool
    should_warn: bool
    stop_message: str
    warn_message: str
    total_count: int


def aggregate(decisions: Sequence[RuleDecision]) -> Aggregate:
    """Fold per-rule decisions into one target. STOP wins over WARN; the first
    decision at each level supplies the message."""
    saw_stop = saw_warn = False
    stop_message = warn_message = ""
    total = 0
    for d in decisions:
        total += int(d.count)
        if d.level is DecisionLevel.STOP and not saw_stop:
            saw_stop = True
            stop_message = d.message or ""
        elif d.level is DecisionLevel.WARN and not saw_warn:
            saw_warn = True
            warn_message = d.message or ""
    return Aggregate(saw_stop, saw_warn and not saw_stop, stop_message, warn_message, total)


def _spawn_daemon(target, *args):
    t = threading.Thread(target=target, args=args, daemon=True)
    t.start()
    return t


class MonitorEngine:
    """Defect-threshold control loop for a production line.

    Every poll interval the engine reads the active rules, asks the evaluator for
    one decision per rule, folds them into a target level and drives the line
    controller on meaningful transitions only:

      - STOP is sent whenever the line is not already believed stopped.
      - WARN is sent on a level change or when the total defect count rises.
      - RESET (running) is sent when nothing is wrong and the line is not running.

    ``level`` is the hysteresis state: the last level the engine believes it
    commanded. It only changes after a command was delivered, so a failed write
    is retried on the next cycle.

    Concurrency: at most one cycle body runs at a time (a busy tick is skipped),
    and every stop() bumps ``epoch``. Cycles and auto-resolve timers capture the
    epoch they were started under and drop their effects once it has moved on.
    """
    def __init__(
        self,
        rules,
        evaluator: RuleEvaluator,
        controller: LineController,
        events: EventSink,
        logger: JsonLogger,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        simulator=None,
        auto_resolve_delay_s: Optional[float] = DEFAULT_AUTO_RESOLVE_DELAY_S,
        spawn: Optional[Callable] = None,
        timer_factory: Callable = threading.Timer,
    ):
        self.rules = rules
        self.evaluator = evaluator
        self.controller = controller
        self.events = events
        self.logger = logger
        self.poll_interval_s = float(poll_interval_s)
        self.simulator = simulator
        self.auto_resolve_delay_s = auto_resolve_delay_s
        self._spawn = spawn or _spawn_daemon
        self._timer_factory = timer_factory

        self._lifecycle_lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        # Serialises controller commands with their hysteresis updates.
        self._command_lock = threading.RLock()
        self._pending_lock = threading.Lock()

        self._running = False
        self._epoch = 0
        self._stop_evt: Optional[threading.Event] = None

        self._level = LineLevel.RUNNING
        self._warn_count = 0
        self._last_command: Optional[CommandType] = None
        self._last_command_ts: Optional[float] = None
        self._last_cycle_ts: Optional[float] = None
        self._counts: dict = {}
        self._recent: tuple = ()
        self._pending: dict = {}  # rule code -> (epoch, timer)

        self._snapshot = StatusSnapshot()
        self._publish()

    # ---------------- Introspection ----------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def level(self) -> LineLevel:
        return self._level

    @property
    def warn_high_water(self) -> int:
        return self._warn_count

    def pending_timers(self) -> list[str]:
        with self._pending_lock:
            return sorted(self._pending)

    def get_status(self) -> StatusSnapshot:
        return self._snapshot

    def _is_current(self, epoch: Optional[int]) -> bool:
        # None means "not bound to a run" (manual operator commands).
        if epoch is None:
            return True
        return self._running and self._epoch == epoch

    def _publish(self):
        self._snapshot = StatusSnapshot(
            running=self._running,
            line_level=self._level,
            stop_reason=self.controller.reason,
            counts=dict(self._counts),
            recent_defects=self._recent,
            last_command=self._last_command,
            last_command_ts=self._last_command_ts,
            last_cycle_ts=self._last_cycle_ts,
            poll_interval_s=self.poll_interval_s,
            controller_mode=self.controller.mode,
            controller_connected=self.controller.connected,
            defect_mode=getattr(self.evaluator.source, "mode", "external"),
            evaluator_mode=self.evaluator.mode,
            epoch=self._epoch,
        )

    # ---------------- Lifecycle ----------------

    def start(self) -> bool:
        """Start polling. Returns False if already running, or if stop() won the
        race while the starting level was read from the device."""
        with self._lifecycle_lock:
            if self._running:
                return False
            self._running = True
            epoch = self._epoch
            stop_evt = threading.Event()
            self._stop_evt = stop_evt

        if not self.controller.is_simulated:
            self._seed_level(epoch)
            if not self._is_current(epoch):
                # stop() ran while the device was being read.
                self.logger.emit("service_start_aborted", level="warn", epoch=epoch)
                return False

        self.logger.emit(
            "service_started",
            epoch=epoch,
            poll_interval_s=self.poll_interval_s,
            controller=self.controller.mode,
            evaluator=self.evaluator.mode,
            line_level=self._level.value,
        )
        self.events.emit(SERVICE_START, "Monitoring started", "Defect monitoring service started.")
        self._publish()
        self._spawn(self._loop, stop_evt, epoch)
        return True

    def _seed_level(self, epoch: int):
        """Read the device once so a restart does not re-issue a command it already honours."""
        try:
            self.controller.connect()
            level = self.controller.read_level()
            self.logger.emit("line_level_seeded", line_level=level.value)
        except ControllerError as e:
            level = LineLevel.RUNNING
            self.logger.emit("line_level_seed_failed", level="error", error=str(e), assumed=level.value)
        with self._command_lock:
            if self._is_current(epoch):
                self._level = level

    def stop(self) -> bool:
        """Stop polling and invalidate outstanding timers. Safe from any state,
        including mid-cycle; does not wait for an in-flight cycle."""
        with self._lifecycle_lock:
            if not self._running:
                return False
            self._running = False
            self._epoch += 1
            if self._stop_evt is not None:
                self._stop_evt.set()
                self._stop_evt = None

        with self._pending_lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for _, timer in pending:
            timer.cancel()

        self.logger.emit("service_stopped", epoch=self._epoch, cancelled_timers=len(pending))
        self.events.emit(SERVICE_STOP, "Monitoring stopped", "Defect monitoring service stopped.")
        self._publish()
        return True

    def _loop(self, stop_evt: threading.Event, epoch: int):
        """Recurring timer. The first tick fires immediately."""
        while not stop_evt.is_set():
            self.tick(epoch)
            stop_evt.wait(self.poll_interval_s)

    # ---------------- Cycles ----------------

    def tick(self, epoch: Optional[int] = None) -> bool:
        """Dispatch one cycle on a worker. Skipped (not queued) while a cycle is in flight."""
        if epoch is None:
            epoch = self._epoch
        if not self._is_current(epoch):
            return False
        if not self._cycle_lock.acquire(blocking=False):
            self.logger.emit("cycle_skipped", level="warn", reason="previous cycle still running")
            return False
        try:
            self._spawn(self._run_locked, epoch)
        except Exception as e:
            self._cycle_lock.release()
            self.logger.emit("cycle_dispatch_failed", level="error", error=str(e))
            return False
        return True

    def _run_locked(self, epoch: int):
        try:
            self._cycle(epoch)
        finally:
            self._cycle_lock.release()

    def run_cycle(self) -> bool:
        """Run one cycle on the calling thread. Returns False if one is already in flight."""
        if not self._cycle_lock.acquire(blocking=False):
            self.logger.emit("cycle_skipped", level="warn", reason="previous cycle still running")
            return False
        try:
            self._cycle(self._epoch)
        finally:
            self._cycle_lock.release()
        return True

    def _cycle(self, epoch: int):
        if not self._is_current(epoch):
            return
        # Liveness signal, recorded even if the rest of the cycle fails.
        self._last_cycle_ts = wall_s()
        try:
            self._cycle_body(epoch)
        except Exception as e:
            # Hysteresis state is left as it was; the next tick still fires.
            self.logger.emit("cycle_error", level="error", error=str(e), error_type=type(e).__name__)
        if self._is_current(epoch):
            self._publish()

    def _cycle_body(self, epoch: int):
        if self.simulator is not None and self._level is LineLevel.RUNNING:
            self.simulator.generate()

        rules = self.rules.get_active_rules()
        if not self._is_current(epoch):
            return

        controller_ok = True
        try:
            self.controller.connect()
        except ConnectError as e:
            controller_ok = False
            self.logger.emit("cycle_connect_failed", level="error", error=str(e), line_level=self._level.value)
        if not self._is_current(epoch):
            return

        decisions = self.evaluator.evaluate(rules)
        if not self._is_current(epoch):
            return
        agg = aggregate(decisions)
        counts = {d.rule_code: d.count for d in decisions}
        recent = tuple(self.evaluator.recent_defects())
        if not self._is_current(epoch):
            return

        self._counts = counts
        self._recent = recent
        self.logger.emit(
            "cycle",
            level="debug",
            rules=len(rules),
            total=agg.total_count,
            stop=int(agg.should_stop),
            warn=int(agg.should_warn),
            line_level=self._level.value,
        )

        if controller_ok:
            self._apply_output(agg, counts, epoch)

        if self.simulator is not None:
            self._schedule_auto_resolve(decisions, epoch)

    def _apply_output(self, agg: Aggregate, counts: dict, epoch: int):
        with self._command_lock:
            if not self._is_current(epoch):
                return
            if agg.should_stop:
                if self._level is not LineLevel.STOPPED:
                    self.logger.emit(
                        "line_stop", level="warn", previous=self._level.value, counts=counts, reason=agg.stop_message,
                    )
                    if self._command(LineLevel.STOPPED, agg.stop_message, CommandType.STOP, epoch):
                        self._level = LineLevel.STOPPED
                        self.events.emit(LINE_STOP, "Line stopped", agg.stop_message, {"counts": counts})
            elif agg.should_warn:
                if self._level is not LineLevel.WARNING or agg.total_count > self._warn_count:
                    self.logger.emit(
                        "line_warning", level="warn", previous=self._level.value, total=agg.total_count,
                        reason=agg.warn_message,
                    )
                    if self._command(LineLevel.WARNING, agg.warn_message, CommandType.WARN, epoch):
                        self._level = LineLevel.WARNING
                        self._warn_count = agg.total_count
            elif self._level is not LineLevel.RUNNING:
                self.logger.emit("line_conditions_cleared", previous=self._level.value)
                self._resolve_locked("stop/warning conditions cleared", epoch)

    def _command(self, level: LineLevel, reason: str, command: CommandType, epoch: Optional[int]) -> bool:
        """Send one command. True only if it was delivered and the run is still current."""
        try:
            self.controller.set_level(level, reason)
        except ControllerError as e:
            self.logger.emit("command_failed", level="error", command=command.value, error=str(e))
            return False
        if not self._is_current(epoch):
            self.logger.emit("command_after_stop", level="debug", command=command.value, epoch=epoch)
            return False
        self._last_command = command
        self._last_command_ts = wall_s()
        return True

    # ---------------- Resolve ----------------

    def resolve_stop(self, reason: str) -> bool:
        """Operator override: put the line back to running. No-op if already running."""
        with self._command_lock:
            return self._resolve_locked(reason, None)

    def _resolve_locked(self, reason: str, epoch: Optional[int]) -> bool:
        if self._level is LineLevel.RUNNING:
            return False
        if not self._command(LineLevel.RUNNING, reason, CommandType.RESET, epoch):
            return False
        self._level = LineLevel.RUNNING
        self._warn_count = 0
        self.logger.emit("line_resumed", reason=reason)
        self.events.emit(LINE_RESUME, "Line resumed", f"Line resumed. Reason: {reason}")
        self._publish()
        return True

    def resolve_defects(self, ids: Sequence[str]) -> int:
        """Mark individual defects resolved at the source. The line itself is left to
        the next cycle, which sees the lower counts. Returns how many were resolved."""
        resolve_ids = getattr(self.evaluator.source, "resolve_ids", None)
        if resolve_ids is None:
            raise EvaluationError("defect source does not support resolving defects")
        resolved = resolve_ids(ids)
        self.logger.emit("defects_resolved", requested=len(ids), resolved=resolved)
        return resolved

    # ---------------- Auto-resolve (simulation only) ----------------

    def _schedule_auto_resolve(self, decisions: Sequence[RuleDecision], epoch: int):
        if not self.auto_resolve_delay_s or self.auto_resolve_delay_s <= 0:
            return
        for d in decisions:
            if d.level is not DecisionLevel.STOP:
                continue
            with self._pending_lock:
                if not self._is_current(epoch) or d.rule_code in self._pending:
                    continue
                timer = self._timer_factory(self.auto_resolve_delay_s, self._on_auto_resolve, args=(d.rule_code, epoch))
                timer.daemon = True
                self._pending[d.rule_code] = (epoch, timer)
            timer.start()
            self.logger.emit("auto_resolve_scheduled", level="debug", rule=d.rule_code, delay_s=self.auto_resolve_delay_s, epoch=epoch)

    def _on_auto_resolve(self, rule_code: str, epoch: int):
        with self._pending_lock:
            entry = self._pending.get(rule_code)
            if entry is not None and entry[0] == epoch:
                del self._pending[rule_code]
        if not self._is_current(epoch):
            self.logger.emit(
                "auto_resolve_discarded", level="debug", rule=rule_code, epoch=epoch, current_epoch=self._epoch,
            )
            return
        try:
            self.simulator.resolve_by_prefix(rule_code)
            with self._command_lock:
                if self._is_current(epoch) and self._level is LineLevel.STOPPED:
                    self._resolve_locked(f"auto-resolve: {rule_code} defects cleared", epoch)
        except Exception as e:
            self.logger.emit("auto_resolve_error", level="error", rule=rule_code, error=str(e))
