"""Notification sink -- persists user alerts and pushes them to live clients.

Persistence and delivery are separate steps. record() writes the row and
joins the caller's database transaction when one is open; publish() is
called only after that transaction commits and never raises, so a dead
WebSocket can not fail or roll back the operation that produced the alert.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loanguard.dashboard.serializers import notification_to_dict
from loanguard.data.store import LendingStore
from loanguard.exceptions import NotFoundError
from loanguard.logging import get_logger
from loanguard.models import Notification, NotificationType, User

if TYPE_CHECKING:
    from loanguard.dashboard.routes.ws import DashboardHub

logger = get_logger(__name__)


class NotificationSink:
    """Stores notifications and fans them out over the WebSocket hub.

    Args:
        store: Lending store holding the notifications table.
        hub: Connected-client registry. None disables pushes (CLI, tests).
    """

    def __init__(self, store: LendingStore, hub: DashboardHub | None = None) -> None:
        self._store = store
        self._hub = hub

    async def record(
        self, user_id: str, message: str, type: NotificationType
    ) -> Notification:
        """Persist a notification without pushing it."""
        notification = await self._store.create_notification(user_id, message, type)
        logger.info(
            "notification_recorded",
            user_id=user_id,
            notification_id=notification.id,
            type=type.value,
        )
        return notification

    async def publish(self, notification: Notification) -> None:
        """Push a stored notification to the owner's connected clients. Never raises."""
        if self._hub is None:
            return
        try:
            delivered = await self._hub.send_to_user(
                notification.user_id,
                {"type": "new_notification", "data": notification_to_dict(notification)},
            )
        except Exception:
            logger.warning(
                "notification_publish_failed",
                notification_id=notification.id,
                exc_info=True,
            )
            return
        logger.debug(
            "notification_published",
            notification_id=notification.id,
            delivered=delivered,
        )

    async def notify(
        self, user_id: str, message: str, type: NotificationType
    ) -> Notification:
        """record() then publish(). Use outside of database transactions."""
        notification = await self.record(user_id, message, type)
        await self.publish(notification)
        return notification

    async def send_sms(self, user: User, message: str) -> None:
        """SMS dispatch hook. No provider is wired; the dispatch is logged."""
        logger.info(
            "sms_dispatched",
            user_id=user.id,
            recipient=user.sms_number or user.wallet_address,
            message=message,
        )

    async def list_recent(self, user_id: str, limit: int = 20) -> list[Notification]:
        return await self._store.list_notifications(user_id, limit)

    async def mark_read(self, user_id: str, notification_id: str) -> Notification:
        notification = await self._store.mark_notification_read(user_id, notification_id)
        if notification is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        return notification
