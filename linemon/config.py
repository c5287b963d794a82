from __future__ import annotations

import argparse
import os
from argparse import RawDescriptionHelpFormatter

try:
    import tomllib  # py3.11+
except ImportError:  # pragma: no cover
    import tomli as tomllib

from .constants import (
    DEFAULT_AUTO_RESOLVE_DELAY_S,
    DEFAULT_CONTROL_SOCKET,
    DEFAULT_CONTROLLER_TIMEOUT_S,
    DEFAULT_DEFECT_PROBABILITY,
    DEFAULT_LOOKBACK_WINDOW_S,
    DEFAULT_POLL_INTERVAL_S,
    USAGE_EXAMPLES,
)
from .errors import ConfigError
from .models import DefectRule


def get_bool_env(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    val = val.lower()
    if val in ("1", "true", "yes", "on"):
        return True
    if val in ("0", "false", "no", "off"):
        return False
    return default


def get_notifier_config():
    return {
        "enabled": get_bool_env("LINEMON_NOTIFY", False),
        "pushover_token": os.getenv("PUSHOVER_TOKEN"),
        "pushover_user": os.getenv("PUSHOVER_USER"),
    }


def load_toml_config(path: str) -> dict:
    """Load TOML configuration from path."""
    with open(path, "rb") as f:
        return tomllib.load(f)


def _get_cfg(cfg: dict, section: str, key: str, default=None):
    sec = cfg.get(section, {})
    if not isinstance(sec, dict):
        return default
    return sec.get(key, default)


def config_defaults_from(cfg: dict) -> dict:
    """Map TOML config into argparse defaults."""
    return {
        "controller": _get_cfg(cfg, "controller", "mode", "sim"),
        "host": _get_cfg(cfg, "controller", "host", "192.168.151.27"),
        "port": _get_cfg(cfg, "controller", "port", 5012),
        "address": _get_cfg(cfg, "controller", "address", "D7000"),
        "ascii": _get_cfg(cfg, "controller", "ascii", False),
        "frame": _get_cfg(cfg, "controller", "frame", "3E"),
        "plc_type": _get_cfg(cfg, "controller", "plc_type", "Q"),
        "network": _get_cfg(cfg, "controller", "network", 1),
        "station": _get_cfg(cfg, "controller", "station", 0),
        "timeout": _get_cfg(cfg, "controller", "timeout", DEFAULT_CONTROLLER_TIMEOUT_S),
        "poll_interval": _get_cfg(cfg, "monitor", "poll_interval", DEFAULT_POLL_INTERVAL_S),
        "lookback_window": _get_cfg(cfg, "monitor", "lookback_window", DEFAULT_LOOKBACK_WINDOW_S),
        "auto_resolve_delay": _get_cfg(cfg, "monitor", "auto_resolve_delay", DEFAULT_AUTO_RESOLVE_DELAY_S),
        "evaluator": _get_cfg(cfg, "defects", "evaluator", "local"),
        "defect_probability": _get_cfg(cfg, "defects", "probability", DEFAULT_DEFECT_PROBABILITY),
        "verbose": _get_cfg(cfg, "logging", "verbose", False),
        "json": _get_cfg(cfg, "logging", "json", False),
        "no_banner": _get_cfg(cfg, "logging", "no_banner", False),
        "control_socket": _get_cfg(cfg, "control", "socket", DEFAULT_CONTROL_SOCKET),
    }


def rules_from_config(cfg: dict) -> list[DefectRule]:
    """Build the rule list from ``[[rules]]`` tables. Codes must be unique."""
    raw_rules = cfg.get("rules", [])
    if not isinstance(raw_rules, list):
        raise ConfigError("'rules' must be an array of tables ([[rules]])")
    rules = []
    seen = set()
    for raw in raw_rules:
        if not isinstance(raw, dict):
            raise ConfigError(f"invalid rule entry: {raw!r}")
        rule = DefectRule.from_dict(raw)
        if rule.code in seen:
            raise ConfigError(f"duplicate rule code: {rule.code}")
        seen.add(rule.code)
        rules.append(rule)
    return rules


def resolved_config_dict(args, rules=()) -> dict:
    return {
        "controller": {
            "mode": args.controller,
            "host": args.host,
            "port": args.port,
            "address": args.address,
            "ascii": bool(args.ascii),
            "frame": args.frame,
            "plc_type": args.plc_type,
            "network": args.network,
            "station": args.station,
            "timeout": args.timeout,
        },
        "monitor": {
            "poll_interval": args.poll_interval,
            "lookback_window": args.lookback_window,
            "auto_resolve_delay": args.auto_resolve_delay,
        },
        "defects": {
            "evaluator": args.evaluator,
            "probability": args.defect_probability,
        },
        "logging": {
            "verbose": args.verbose,
            "json": bool(args.json),
            "no_banner": args.no_banner,
        },
        "control": {
            "socket": getattr(args, "control_socket", None),
        },
        "rules": [r.to_dict() for r in rules],
    }


def build_arg_parser(defaults=None):
    """Construct the CLI argument parser for the daemon.

    Defaults come from the built-in values, optionally overridden by a TOML file;
    anything given on the command line wins over both."""
    ap = argparse.ArgumentParser(
        description="Defect-threshold line monitor",
        epilog=USAGE_EXAMPLES,
        formatter_class=RawDescriptionHelpFormatter,
    )
    if defaults is None:
        defaults = config_defaults_from({})
    ap.set_defaults(**defaults)
    ap.add_argument("--controller", choices=["sim", "mc"], help="Line controller: in-memory simulation or MELSEC MC protocol.")
    ap.add_argument("--host", help="Controller IP address.")
    ap.add_argument("--port", type=int, help="Controller MC protocol TCP port.")
    ap.add_argument("--address", help="Device word holding the line level (e.g. D7000).")
    mode_group = ap.add_mutually_exclusive_group()
    mode_group.add_argument("--ascii", dest="ascii", action="store_true", help="Use MC protocol ASCII mode.")
    mode_group.add_argument("--binary", dest="ascii", action="store_false", help="Use MC protocol binary mode (default).")
    ap.add_argument("--frame", choices=["3E", "4E"], help="MC protocol frame.")
    ap.add_argument("--plc-type", help="PLC series (Q, L, QnA, iQ-L, iQ-R).")
    ap.add_argument("--network", type=int, help="MC protocol network number.")
    ap.add_argument("--station", type=int, help="MC protocol station (PC) number.")
    ap.add_argument("--timeout", type=float, help="Controller connect/read/write timeout in seconds.")

    ap.add_argument("--poll-interval", type=float, help="Seconds between monitoring cycles.")
    ap.add_argument("--lookback-window", type=float, help="Seconds of unresolved defects that count toward a rule.")
    ap.add_argument("--auto-resolve-delay", type=float,
                    help="Simulation only: seconds after a stop before the offending defects are cleared. 0 disables.")
    ap.add_argument("--evaluator", choices=["local", "delegated"],
                    help="Count defects locally, or delegate each rule decision to the defect source.")
    ap.add_argument("--defect-probability", type=float, help="Simulation only: chance of a new defect per cycle.")

    ap.add_argument("--verbose", dest="verbose", action="store_true", help="Verbose logging (debug events).")
    ap.add_argument("--no-verbose", dest="verbose", action="store_false", help="Disable verbose logging.")
    json_group = ap.add_mutually_exclusive_group()
    json_group.add_argument("--json", dest="json", action="store_true", help="Emit JSON log events.")
    json_group.add_argument("--no-json", dest="json", action="store_false", help="Disable JSON log output.")
    ap.add_argument("--no-banner", dest="no_banner", action="store_true", help="Disable the startup banner.")
    ap.add_argument("--banner", dest="no_banner", action="store_false", help="Enable the startup banner.")
    sock_group = ap.add_mutually_exclusive_group()
    sock_group.add_argument("--control-socket", dest="control_socket",
                            help="Path to a local UNIX control socket (status, start, stop, resolve).")
    sock_group.add_argument("--no-control-socket", dest="control_socket", action="store_const", const="",
                            help="Disable the local control socket.")
    ap.add_argument("--doctor", action="store_true", help="Probe the controller (port + single read, no writes) and exit.")
    ap.add_argument("--config", help="Path to a TOML config file. CLI args override config values.")
    ap.add_argument("--print-config", action="store_true", help="Print the resolved configuration and exit.")
    ap.add_argument("--version", action="store_true", help="Print version and exit.")
    return ap


def parse_args(argv=None):
    """Parse CLI args on top of the TOML file named by --config.

    Returns (args, cfg) where cfg is the raw TOML dict (empty without --config)."""
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config")
    known, _ = pre.parse_known_args(argv)
    cfg = {}
    if known.config:
        try:
            cfg = load_toml_config(known.config)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigError(f"cannot load config {known.config}: {e}") from e
    ap = build_arg_parser(config_defaults_from(cfg))
    return ap.parse_args(argv), cfg
