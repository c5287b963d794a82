from __future__ import annotations

import json
import signal
import sys
import threading

from .config import get_notifier_config, parse_args, resolved_config_dict, rules_from_config
from .constants import VERSION
from .control import ControlServer
from .controller import SimulatedLineController
from .doctor import build_mc_controller, run_doctor
from .errors import ConfigError
from .evaluator import DelegatedRuleEvaluator, LocalRuleEvaluator
from .logging import JsonLogger
from .monitor import MonitorEngine
from .notify import EventSink, Notifier
from .sources import SimulatedDefectSource, StaticRuleSource


def build_engine(args, rules, logger: JsonLogger, events: EventSink, **kwargs) -> MonitorEngine:
    """Wire collaborators selected by the configuration into a MonitorEngine."""
    rule_source = StaticRuleSource(rules)

    if args.controller == "mc":
        controller = build_mc_controller(args, logger)
    else:
        controller = SimulatedLineController(logger)

    simulator = SimulatedDefectSource(rule_source, logger, probability=args.defect_probability)

    if args.evaluator == "delegated":
        evaluator = DelegatedRuleEvaluator(simulator, logger, window_s=args.lookback_window)
    else:
        evaluator = LocalRuleEvaluator(simulator, logger, window_s=args.lookback_window)

    return MonitorEngine(
        rules=rule_source,
        evaluator=evaluator,
        controller=controller,
        events=events,
        logger=logger,
        poll_interval_s=args.poll_interval,
        simulator=simulator,
        auto_resolve_delay_s=args.auto_resolve_delay,
        **kwargs,
    )


def main(argv=None):
    """CLI entry point. Parses args, builds the engine and runs until signalled."""
    try:
        args, cfg = parse_args(argv)
        rules = rules_from_config(cfg)
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    if args.version:
        print(VERSION)
        return 0

    if args.print_config:
        print(json.dumps(resolved_config_dict(args, rules), indent=2, sort_keys=True))
        return 0

    if args.doctor:
        return run_doctor(args)

    logger = JsonLogger(enable_json=bool(args.json), min_level="debug" if args.verbose else "info")
    if not rules:
        logger.emit("no_rules_configured", level="warn", hint="add [[rules]] tables to the config file")

    notifier_cfg = get_notifier_config()
    events = EventSink(notifier=Notifier(**notifier_cfg), logger=logger)
    engine = build_engine(args, rules, logger, events)

    if not args.no_banner:
        print(f"line-monitor {VERSION}")
        logger.emit(
            "startup",
            version=VERSION,
            controller=args.controller,
            evaluator=args.evaluator,
            poll_interval_s=args.poll_interval,
            lookback_window_s=args.lookback_window,
            rules=len(rules),
            control_socket=args.control_socket,
        )

    control = ControlServer(engine, logger, events)
    if args.control_socket:
        control.start(args.control_socket)
    engine.start()

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    while not stop.is_set():
        stop.wait(0.5)

    engine.stop()
    control.stop()
    engine.controller.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
