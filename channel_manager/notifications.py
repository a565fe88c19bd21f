"""
User-facing notifications.

The channel manager reports outcomes (connections, sync failures, feed
conflicts) to a NotificationSink. Delivery to the operator's UI is the
sink's business.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Protocol

import structlog

logger = structlog.get_logger(__name__)


class NotificationLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class Notification:
    title: str
    message: str
    level: NotificationLevel = NotificationLevel.INFO


class NotificationSink(Protocol):
    def notify(self, notification: Notification) -> None: ...


class LoggingNotificationSink:
    """Default sink: writes notifications to the structured log."""

    def notify(self, notification: Notification) -> None:
        log = logger.error if notification.level == NotificationLevel.ERROR else logger.info
        log(
            "User notification",
            title=notification.title,
            message=notification.message,
            level=notification.level.value
        )


class RecordingNotificationSink:
    """Keeps notifications in memory (tests, admin views)."""

    def __init__(self):
        self.notifications: List[Notification] = []

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)

    @property
    def titles(self) -> List[str]:
        return [n.title for n in self.notifications]
