"""User-facing notifications emitted by the mutation API and the sync worker."""

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

import structlog

logger = structlog.get_logger()


class NotificationLevel(StrEnum):
    INFO = "info"
    ERROR = "error"


@dataclass(frozen=True)
class Notification:
    title: str
    description: str
    level: NotificationLevel = NotificationLevel.INFO


Notifier = Callable[[Notification], None]


def log_notification(notification: Notification) -> None:
    """Default notifier: write the notification to the structured log."""
    log = logger.warning if notification.level == NotificationLevel.ERROR else logger.info
    log("notification", title=notification.title, description=notification.description)


class NotificationLog:
    """Notifier that keeps the most recent notifications for later display."""

    def __init__(self, maxlen: int = 50) -> None:
        self._items: deque[Notification] = deque(maxlen=maxlen)

    def __call__(self, notification: Notification) -> None:
        log_notification(notification)
        self._items.append(notification)

    @property
    def items(self) -> list[Notification]:
        return list(self._items)

    @property
    def errors(self) -> list[Notification]:
        return [n for n in self._items if n.level == NotificationLevel.ERROR]
