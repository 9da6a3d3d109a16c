"""User notification persistence and real-time delivery."""

from loanguard.notifications.sink import NotificationSink

__all__ = ["NotificationSink"]
