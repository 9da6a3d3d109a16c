"""Tests for NotificationSink -- persistence and WebSocket fan-out."""

from unittest.mock import MagicMock, patch

import pytest

from loanguard.data.store import LendingStore
from loanguard.exceptions import NotFoundError
from loanguard.models import NotificationType
from loanguard.notifications.sink import NotificationSink


class TestNotificationSink:
    @pytest.mark.asyncio
    async def test_notify_persists_and_pushes(
        self, notifier: NotificationSink, store: LendingStore, mock_hub: MagicMock
    ) -> None:
        user = await store.create_user(username="alice")

        notification = await notifier.notify(user.id, "Heads up", NotificationType.PRICE_ALERT)

        assert (await store.list_notifications(user.id))[0].id == notification.id
        user_id, message = mock_hub.send_to_user.await_args.args
        assert user_id == user.id
        assert message["type"] == "new_notification"
        assert message["data"]["message"] == "Heads up"
        assert message["data"]["type"] == "price_alert"
        assert message["data"]["isRead"] is False

    @pytest.mark.asyncio
    async def test_record_does_not_push(
        self, notifier: NotificationSink, store: LendingStore, mock_hub: MagicMock
    ) -> None:
        user = await store.create_user(username="alice")

        await notifier.record(user.id, "quiet", NotificationType.REPAYMENT)

        mock_hub.send_to_user.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_publish_swallows_delivery_errors(
        self, notifier: NotificationSink, store: LendingStore, mock_hub: MagicMock
    ) -> None:
        user = await store.create_user(username="alice")
        mock_hub.send_to_user.side_effect = ConnectionError("socket gone")

        notification = await notifier.notify(user.id, "x", NotificationType.PRICE_ALERT)

        assert notification.user_id == user.id

    @pytest.mark.asyncio
    async def test_without_hub_only_persists(self, store: LendingStore) -> None:
        user = await store.create_user(username="alice")
        sink = NotificationSink(store)

        await sink.notify(user.id, "x", NotificationType.PRICE_ALERT)

        assert len(await sink.list_recent(user.id)) == 1

    @pytest.mark.asyncio
    async def test_mark_read(self, notifier: NotificationSink, store: LendingStore) -> None:
        user = await store.create_user(username="alice")
        notification = await notifier.record(user.id, "x", NotificationType.PRICE_ALERT)

        assert (await notifier.mark_read(user.id, notification.id)).is_read is True
        with pytest.raises(NotFoundError):
            await notifier.mark_read(user.id, "missing")

    @pytest.mark.asyncio
    async def test_send_sms_logs_dispatch(
        self, notifier: NotificationSink, store: LendingStore
    ) -> None:
        user = await store.create_user(username="alice", sms_number="+15550100")

        with patch("loanguard.notifications.sink.logger") as mock_logger:
            await notifier.send_sms(user, "Price alert")

        mock_logger.info.assert_called_once()
        assert mock_logger.info.call_args.kwargs["recipient"] == "+15550100"
