"""Strategy event notifications."""

from autotrader.notifications.notifier import (
    LoggingNotifier,
    NotificationDispatcher,
    NotificationEvent,
    NotificationType,
    Notifier,
)

__all__ = [
    "LoggingNotifier",
    "NotificationDispatcher",
    "NotificationEvent",
    "NotificationType",
    "Notifier",
]
