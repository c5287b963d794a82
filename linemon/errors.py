from __future__ import annotations


class LineMonitorError(Exception):
    """Base class for line-monitor failures."""


class ControllerError(LineMonitorError):
    """The line controller could not complete a request."""


class ConnectError(ControllerError):
    """Transport unreachable, refused or timed out while connecting."""


class LineIOError(ControllerError):
    """A read or write failed after the connection was established."""


class EvaluationError(LineMonitorError):
    """The rule source or an evaluator failed."""

    def __init__(self, message: str, rule_code: str = ""):
        super().__init__(message)
        self.rule_code = rule_code


class ConfigError(LineMonitorError):
    """Invalid configuration (bad rule definition, unknown mode, ...)."""
