from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

import requests

from .constants import MAX_NOTIFICATIONS
from .util import wall_s

SERVICE_START = "SERVICE_START"
SERVICE_STOP = "SERVICE_STOP"
LINE_STOP = "LINE_STOP"
LINE_RESUME = "LINE_RESUME"

# Pushover priorities per event type; line stops page at high priority.
_PRIORITIES = {LINE_STOP: 1, LINE_RESUME: 0, SERVICE_START: -1, SERVICE_STOP: 0}


class Notifier:
    def __init__(self, enabled: bool, pushover_token: Optional[str], pushover_user: Optional[str], timeout_s: float = 5.0):
        self.enabled = enabled and bool(pushover_token and pushover_user)
        self._token = pushover_token
        self._user = pushover_user
        self._timeout = timeout_s

    def send(self, title: str, message: str, priority: int = 0):
        if not self.enabled:
            return
        threading.Thread(target=self._send_sync, args=(title, message, priority), daemon=True).start()

    def _send_sync(self, title: str, message: str, priority: int):
        try:
            requests.post(
                "https://api.pushover.net/1/messages.json",
                data={
                    "token": self._token,
                    "user": self._user,
                    "title": title,
                    "message": message,
                    "priority": priority,
                },
                timeout=self._timeout,
            )
        except Exception:
            pass


@dataclass
class Notification:
    id: str
    type: str
    title: str
    message: str
    timestamp: float
    read: bool = False
    data: Any = field(default=None)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "timestamp": self.timestamp,
            "read": self.read,
            "data": self.data,
        }


class EventSink:
    """Bounded in-memory store of operator notifications (newest first).

    emit() is fire-and-forget: it never raises, so a broken sink cannot affect
    the control loop. Events are optionally forwarded to Pushover."""

    def __init__(self, notifier: Optional[Notifier] = None, logger=None, max_items: int = MAX_NOTIFICATIONS):
        self.notifier = notifier
        self.logger = logger
        self.max_items = int(max_items)
        self._lock = threading.Lock()
        self._items: list[Notification] = []

    def emit(self, event_type: str, title: str, message: str, data: Any = None) -> Optional[Notification]:
        try:
            item = Notification(
                id=f"notif_{uuid.uuid4().hex[:16]}",
                type=event_type,
                title=title,
                message=message,
                timestamp=wall_s(),
                data=data,
            )
            with self._lock:
                self._items.insert(0, item)
                del self._items[self.max_items:]
            if self.logger is not None:
                self.logger.emit("notification", type=event_type, title=title, message=message)
            if self.notifier is not None:
                self.notifier.send(title, message, priority=_PRIORITIES.get(event_type, 0))
            return item
        except Exception:
            return None

    def all(self) -> list[Notification]:
        with self._lock:
            return list(self._items)

    def unread(self) -> list[Notification]:
        with self._lock:
            return [n for n in self._items if not n.read]

    def mark_read(self, notification_id: str) -> bool:
        with self._lock:
            for n in self._items:
                if n.id == notification_id:
                    n.read = True
                    return True
        return False

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
