from __future__ import annotations

VERSION = "1.0.0"

CONTROL_STATUS = "status"
CONTROL_START = "start"
CONTROL_STOP = "stop"
CONTROL_RESOLVE = "resolve"
CONTROL_RESOLVE_DEFECTS = "resolve-defects"
CONTROL_RULES = "rules"
CONTROL_NOTIFICATIONS = "notifications"

DEFAULT_POLL_INTERVAL_S = 30.0
DEFAULT_LOOKBACK_WINDOW_S = 3600.0
DEFAULT_AUTO_RESOLVE_DELAY_S = 30.0
DEFAULT_CONTROLLER_TIMEOUT_S = 5.0
DEFAULT_DEFECT_PROBABILITY = 0.3
DEFAULT_CONTROL_SOCKET = "/run/linemon/linemon.sock"
MAX_NOTIFICATIONS = 100


USAGE_EXAMPLES = """\
Usage examples:
  # Simulated line controller and defect feed (no hardware needed)
  python line-monitor.py --config linemon.toml

  # Real MELSEC controller over MC protocol (binary, 3E frame)
  python line-monitor.py --config linemon.toml --controller mc --host 192.168.151.27 --port 5012 --address D7000

  # Delegate per-rule decisions to the defect source, JSON logs
  python line-monitor.py --config linemon.toml --evaluator delegated --json --verbose

  # Controller diagnostic (port probe + single read, never writes)
  python line-monitor.py --doctor --controller mc --host 192.168.151.27
"""
