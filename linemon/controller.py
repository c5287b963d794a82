from __future__ import annotations

import enum
import errno
import socket
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

try:
    import pymcprotocol  # MELSEC MC protocol client
except ImportError:  # pragma: no cover
    pymcprotocol = None

from .constants import DEFAULT_CONTROLLER_TIMEOUT_S
from .errors import ConnectError, LineIOError
from .logging import JsonLogger
from .models import LineLevel


class ConnState(str, enum.Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    FAULTED = "FAULTED"


class LineController(ABC):
    """Three-level command interface to the line.

    Implementations raise ConnectError / LineIOError on failure and never let
    transport exceptions escape. Every successful set_level() updates the cached
    reason exposed through ``reason``."""

    mode = ""
    is_simulated = False

    def __init__(self, logger: JsonLogger):
        self.logger = logger
        self._reason = ""

    @property
    def reason(self) -> str:
        return self._reason

    @property
    @abstractmethod
    def state(self) -> ConnState:
        ...

    @property
    def connected(self) -> bool:
        return self.state is ConnState.CONNECTED

    @abstractmethod
    def connect(self) -> None:
        """Open the transport. No-op when already connected."""

    @abstractmethod
    def read_level(self) -> LineLevel:
        """Return the level the device currently reports."""

    @abstractmethod
    def set_level(self, level: LineLevel, reason: str) -> None:
        """Command the line to ``level``."""

    def close(self) -> None:
        pass

    def _log_command(self, level: LineLevel, reason: str, **fields):
        # Logged before the write so the intent is visible even if the write fails.
        self.logger.emit(
            "line_command",
            level="error" if level is LineLevel.STOPPED else ("warn" if level is LineLevel.WARNING else "info"),
            target=level.value,
            value=level.value_code,
            reason=reason,
            mode=self.mode,
            **fields,
        )


class SimulatedLineController(LineController):
    """In-memory line controller with zero latency. Always connected."""

    mode = "sim"
    is_simulated = True

    def __init__(self, logger: JsonLogger, initial_level: LineLevel = LineLevel.RUNNING):
        super().__init__(logger)
        self._level = initial_level
        self._lock = threading.Lock()
        self.writes: list[tuple[LineLevel, str]] = []

    @property
    def state(self) -> ConnState:
        return ConnState.CONNECTED

    def connect(self) -> None:
        return None

    def read_level(self) -> LineLevel:
        return self._level

    def set_level(self, level: LineLevel, reason: str) -> None:
        self._log_command(level, reason)
        with self._lock:
            self._level = level
            self.writes.append((level, reason))
            self._reason = "" if level is LineLevel.RUNNING else reason


class McProtocolLineController(LineController):
    """Line controller backed by a MELSEC PLC over MC protocol (TCP).

    A single data-register word (e.g. ``D7000``) carries both the command and the
    status: 0 running, 1 stopped, 2 warning. Reconnection is lazy: a faulted
    connection is dropped on the next connect() attempt, there is no background
    reconnect thread."""

    mode = "mc"

    def __init__(
        self,
        logger: JsonLogger,
        host: str,
        port: int,
        address: str = "D7000",
        ascii_mode: bool = False,
        frame: str = "3E",
        plc_type: str = "Q",
        network: int = 1,
        station: int = 0,
        timeout_s: float = DEFAULT_CONTROLLER_TIMEOUT_S,
        client_factory: Optional[Callable[[], object]] = None,
    ):
        super().__init__(logger)
        self.host = host
        self.port = int(port)
        self.address = address
        self.ascii_mode = bool(ascii_mode)
        self.frame = str(frame).upper()
        self.plc_type = plc_type
        self.network = int(network)
        self.station = int(station)
        self.timeout_s = float(timeout_s)
        self._client_factory = client_factory or self._make_client
        self._client = None
        self._state = ConnState.DISCONNECTED
        # Cycle thread, control socket and timers may all reach the device.
        self._io_lock = threading.RLock()

    @property
    def state(self) -> ConnState:
        return self._state

    def describe(self) -> dict:
        return {
            "host": self.host,
            "port": self.port,
            "address": self.address,
            "mode": "ascii" if self.ascii_mode else "binary",
            "frame": self.frame,
            "plc_type": self.plc_type,
            "network": self.network,
            "station": self.station,
        }

    def _make_client(self):
        if pymcprotocol is None:
            raise ConnectError("pymcprotocol is not installed. Install it with: pip install pymcprotocol")
        cls = pymcprotocol.Type4E if self.frame == "4E" else pymcprotocol.Type3E
        client = cls(plctype=self.plc_type)
        client.setaccessopt(
            commtype="ascii" if self.ascii_mode else "binary",
            network=self.network,
            pc=self.station,
            timer_sec=max(1, int(round(self.timeout_s))),
        )
        client.soc_timeout = self.timeout_s
        return client

    def _drop_client(self):
        client, self._client = self._client, None
        if client is None:
            return
        try:
            client.close()
        except Exception as e:
            self.logger.emit("controller_close_error", level="debug", error=str(e))

    def _fault(self, event: str, error: Exception, **fields):
        self._state = ConnState.FAULTED
        self.logger.emit(event, level="error", error=str(error), state=self._state.value, **fields)

    def connect(self) -> None:
        with self._io_lock:
            if self._state is ConnState.CONNECTED and self._client is not None:
                return
            if self._state is ConnState.FAULTED:
                self._drop_client()
                self._state = ConnState.DISCONNECTED

            self._state = ConnState.CONNECTING
            self.logger.emit("controller_connecting", level="debug", timeout_s=self.timeout_s, **self.describe())
            try:
                client = self._client_factory()
                client.connect(self.host, self.port)
            except Exception as e:
                self._fault("connect_failed", e, host=self.host, port=self.port)
                raise ConnectError(f"connect to {self.host}:{self.port} failed: {e}") from e

            self._client = client
            self._state = ConnState.CONNECTED
            self.logger.emit("controller_connected", **self.describe())

    def read_level(self) -> LineLevel:
        with self._io_lock:
            self.connect()
            try:
                values = self._client.batchread_wordunits(headdevice=self.address, readsize=1)
                value = int(values[0])
            except Exception as e:
                self._fault("read_failed", e, address=self.address)
                raise LineIOError(f"read {self.address} failed: {e}") from e
            level = LineLevel.from_value(value)
            self.logger.emit("line_level_read", level="debug", address=self.address, value=value, line_level=level.value)
            return level

    def set_level(self, level: LineLevel, reason: str) -> None:
        self._log_command(level, reason, address=self.address)
        with self._io_lock:
            self.connect()
            try:
                self._client.batchwrite_wordunits(headdevice=self.address, values=[level.value_code])
            except Exception as e:
                self._fault("write_failed", e, address=self.address, target=level.value)
                raise LineIOError(f"write {self.address}={level.value_code} failed: {e}") from e
            self._reason = "" if level is LineLevel.RUNNING else reason

    def close(self) -> None:
        with self._io_lock:
            self._drop_client()
            self._state = ConnState.DISCONNECTED

    # ---------------- Diagnostics ----------------

    def probe_port(self) -> dict:
        """Attempt a raw TCP connection to the controller port and report latency."""
        t0 = time.monotonic()
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.timeout_s)
        except socket.timeout:
            return {"ok": False, "message": f"connection timed out (no answer within {self.timeout_s:g}s)"}
        except ConnectionRefusedError:
            return {"ok": False, "message": f"port {self.port} is closed (connection refused)"}
        except OSError as e:
            if e.errno in (errno.EHOSTUNREACH, errno.ENETUNREACH):
                return {"ok": False, "message": f"host {self.host} is unreachable"}
            return {"ok": False, "message": f"connection failed: {e}"}
        latency_ms = round((time.monotonic() - t0) * 1000.0, 1)
        sock.close()
        return {"ok": True, "message": f"port reachable ({self.host}:{self.port})", "latency_ms": latency_ms}

    def test_connection(self) -> dict:
        """Connect a throwaway client and read the device word once. Never writes."""
        client = None
        try:
            client = self._client_factory()
            client.connect(self.host, self.port)
            value = int(client.batchread_wordunits(headdevice=self.address, readsize=1)[0])
        except Exception as e:
            return {"ok": False, "message": f"MC protocol read failed: {e}"}
        finally:
            if client is not None:
                try:
                    client.close()
                except Exception:
                    pass
        level = LineLevel.from_value(value)
        return {
            "ok": True,
            "message": f"read {self.address} = {value} ({level.value})",
            "value": value,
            "frame": f"MC protocol {self.frame}",
        }
