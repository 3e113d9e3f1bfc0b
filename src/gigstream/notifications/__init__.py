"""Notifications — fire-and-forget dispatch and the in-app inbox."""

from gigstream.notifications.dispatcher import (
    InboxNotifier,
    NotificationDispatcher,
    Notifier,
)

__all__ = ["InboxNotifier", "NotificationDispatcher", "Notifier"]
