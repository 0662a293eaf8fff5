"""Notification sinks. Fire-and-forget: callers never look at a return value."""
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Protocol

import timeflow.constants as C

log = logging.getLogger("timeflow.notify")


class NotificationSink(Protocol):
    def notify(self, severity: C.Severity, message: str) -> None: ...


@dataclass
class Notification:
    severity: C.Severity
    message: str
    at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {"severity": str(self.severity), "message": self.message, "at": self.at}


class LoggingSink:
    _LEVELS = {
        C.Severity.INFO: logging.INFO,
        C.Severity.SUCCESS: logging.INFO,
        C.Severity.ERROR: logging.WARNING,
    }

    def notify(self, severity: C.Severity, message: str) -> None:
        log.log(self._LEVELS.get(severity, logging.INFO), "[%s] %s", severity, message)


class MemorySink(LoggingSink):
    """Keeps the most recent notifications for whoever is displaying them."""

    def __init__(self, maxlen: int = C.NOTIFICATION_HISTORY):
        self.history: deque[Notification] = deque(maxlen=maxlen)

    def notify(self, severity: C.Severity, message: str) -> None:
        super().notify(severity, message)
        self.history.append(Notification(severity, message))

    def messages(self, severity: C.Severity | None = None) -> list[str]:
        return [n.message for n in self.history if severity is None or n.severity == severity]
