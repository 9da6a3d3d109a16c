"""Tests for TopUpEngine -- atomic top-ups, collateral adds and risk triggers.

Uses a real temporary SQLite database; the exchange and WebSocket hub are mocked.
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import aiosqlite
import pytest

from loanguard.config import AppSettings, DatabaseSettings
from loanguard.data.store import LendingStore
from loanguard.exceptions import (
    InsufficientBalanceError,
    NotFoundError,
    PersistenceError,
    ValidationFailedError,
)
from loanguard.lending.topup import TopUpEngine
from loanguard.main import _build_components
from loanguard.models import (
    Currency,
    NotificationType,
    RiskLevel,
    TopUpRequest,
    TransactionKind,
)


async def _seed(store: LendingStore, usdt: str = "0.00", btc: str = "0", **user_kwargs):
    user = await store.create_user(
        username="trader.eth",
        linked_wallet_balance_btc=Decimal(btc),
        linked_wallet_balance_usdt=Decimal(usdt),
        **user_kwargs,
    )
    position = await store.create_position(
        user_id=user.id,
        position_name="BTC Loan #1",
        collateral_btc=Decimal("0.10"),
        collateral_usdt=Decimal("0"),
        borrowed_amount=Decimal("1000.00"),
        apr=Decimal("7.5"),
        health_factor=Decimal("3.00"),
    )
    return user, position


class TestPerformTopUp:
    @pytest.mark.asyncio
    async def test_end_to_end_usdt_top_up(self, engine: TopUpEngine, store: LendingStore) -> None:
        user, position = await _seed(store)

        tx = await engine.perform_top_up(
            TopUpRequest(user.id, position.id, Decimal("500"), Currency.USDT)
        )

        updated_user = await store.get_user(user.id)
        updated_position = await store.get_position(position.id)
        assert updated_user.linked_wallet_balance_usdt == Decimal("500.00")
        assert updated_position.collateral_usdt == Decimal("500")
        assert updated_position.collateral_btc == Decimal("0.10")
        assert updated_position.health_factor == Decimal("3.50")
        assert updated_position.liquidation_price == Decimal("5000.00")

        assert tx.amount == Decimal("500")
        assert tx.currency is Currency.USDT
        assert tx.is_automatic is False
        assert tx.kind is TransactionKind.TOPUP
        assert tx.status == "completed"
        assert tx.tx_hash.startswith("0x") and len(tx.tx_hash) == 10
        assert await store.count_topup_transactions(position.id) == 1

    @pytest.mark.asyncio
    async def test_btc_top_up_credits_btc_legs(self, engine: TopUpEngine, store: LendingStore) -> None:
        user, position = await _seed(store, btc="0.5")

        await engine.perform_top_up(
            TopUpRequest(user.id, position.id, Decimal("0.05"), Currency.BTC)
        )

        assert (await store.get_user(user.id)).linked_wallet_balance_btc == Decimal("0.55")
        updated = await store.get_position(position.id)
        assert updated.collateral_btc == Decimal("0.15")
        assert updated.health_factor == Decimal("4.50")

    @pytest.mark.asyncio
    async def test_success_notification_recorded_and_pushed(
        self, engine: TopUpEngine, store: LendingStore, mock_hub: MagicMock
    ) -> None:
        user, position = await _seed(store)

        await engine.perform_top_up(
            TopUpRequest(user.id, position.id, Decimal("500"), "USDT")
        )

        notifications = await store.list_notifications(user.id)
        assert len(notifications) == 1
        assert notifications[0].type is NotificationType.TOPUP_SUCCESS
        assert "Manual Top-Up Success" in notifications[0].message
        assert "BTC Loan #1" in notifications[0].message

        mock_hub.send_to_user.assert_awaited_once()
        pushed_user, message = mock_hub.send_to_user.await_args.args
        assert pushed_user == user.id
        assert message["type"] == "new_notification"
        assert message["data"]["id"] == notifications[0].id

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "amount, currency",
        [
            (Decimal("0"), Currency.USDT),
            (Decimal("-5"), Currency.USDT),
            (Decimal("1.001"), Currency.USDT),
            (Decimal("10"), "ETH"),
        ],
    )
    async def test_rejects_invalid_requests(
        self, engine: TopUpEngine, store: LendingStore, amount: Decimal, currency
    ) -> None:
        user, position = await _seed(store)

        with pytest.raises(ValidationFailedError):
            await engine.perform_top_up(TopUpRequest(user.id, position.id, amount, currency))

        assert await store.count_topup_transactions(position.id) == 0

    @pytest.mark.asyncio
    async def test_missing_user_or_position_is_not_found(
        self, engine: TopUpEngine, store: LendingStore
    ) -> None:
        user, position = await _seed(store)

        with pytest.raises(NotFoundError):
            await engine.perform_top_up(
                TopUpRequest("nobody", position.id, Decimal("1"), Currency.USDT)
            )
        with pytest.raises(NotFoundError):
            await engine.perform_top_up(
                TopUpRequest(user.id, "missing", Decimal("1"), Currency.USDT)
            )

    @pytest.mark.asyncio
    async def test_position_of_other_user_is_not_found(
        self, engine: TopUpEngine, store: LendingStore
    ) -> None:
        _, position = await _seed(store)
        intruder = await store.create_user(username="intruder")

        with pytest.raises(NotFoundError):
            await engine.perform_top_up(
                TopUpRequest(intruder.id, position.id, Decimal("1"), Currency.USDT)
            )
        assert (await store.get_position(position.id)).collateral_usdt == Decimal("0")

    @pytest.mark.asyncio
    async def test_concurrent_top_ups_lose_no_update(
        self, engine: TopUpEngine, store: LendingStore
    ) -> None:
        user, position = await _seed(store)

        await asyncio.gather(*[
            engine.perform_top_up(
                TopUpRequest(user.id, position.id, Decimal("1"), Currency.USDT)
            )
            for _ in range(20)
        ])

        assert (await store.get_position(position.id)).collateral_usdt == Decimal("20")
        assert (await store.get_user(user.id)).linked_wallet_balance_usdt == Decimal("20.00")
        assert await store.count_topup_transactions(position.id) == 20

    @pytest.mark.asyncio
    async def test_failure_after_partial_writes_rolls_everything_back(
        self, engine: TopUpEngine, store: LendingStore, mock_hub: MagicMock
    ) -> None:
        user, position = await _seed(store)

        with patch.object(
            store,
            "create_notification",
            AsyncMock(side_effect=aiosqlite.OperationalError("disk I/O error")),
        ):
            with pytest.raises(PersistenceError):
                await engine.perform_top_up(
                    TopUpRequest(user.id, position.id, Decimal("500"), Currency.USDT)
                )

        assert (await store.get_user(user.id)).linked_wallet_balance_usdt == Decimal("0.00")
        unchanged = await store.get_position(position.id)
        assert unchanged.collateral_usdt == Decimal("0")
        assert unchanged.health_factor == Decimal("3.00")
        assert await store.count_topup_transactions(position.id) == 0
        mock_hub.send_to_user.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_reader_never_sees_rolled_back_top_up(
        self, engine: TopUpEngine, store: LendingStore
    ) -> None:
        user, position = await _seed(store)
        writes_pending = asyncio.Event()

        async def fail_late(*args, **kwargs):
            writes_pending.set()
            await asyncio.sleep(0.05)
            raise aiosqlite.OperationalError("disk I/O error")

        async def read_while_pending():
            await writes_pending.wait()
            return await store.get_user(user.id), await store.get_position(position.id)

        with patch.object(store, "create_notification", AsyncMock(side_effect=fail_late)):
            top_up, seen = await asyncio.gather(
                engine.perform_top_up(
                    TopUpRequest(user.id, position.id, Decimal("500"), Currency.USDT)
                ),
                read_while_pending(),
                return_exceptions=True,
            )

        assert isinstance(top_up, PersistenceError)
        seen_user, seen_position = seen
        assert seen_user.linked_wallet_balance_usdt == Decimal("0.00")
        assert seen_position.collateral_usdt == Decimal("0")
        assert seen_position.health_factor == Decimal("3.00")

    @pytest.mark.asyncio
    async def test_push_failure_does_not_fail_top_up(
        self, engine: TopUpEngine, store: LendingStore, mock_hub: MagicMock
    ) -> None:
        user, position = await _seed(store)
        mock_hub.send_to_user.side_effect = RuntimeError("socket closed")

        tx = await engine.perform_top_up(
            TopUpRequest(user.id, position.id, Decimal("500"), Currency.USDT)
        )

        assert tx.amount == Decimal("500")
        assert (await store.get_position(position.id)).collateral_usdt == Decimal("500")


class TestAddCollateral:
    @pytest.mark.asyncio
    async def test_moves_funds_from_wallet(self, engine: TopUpEngine, store: LendingStore) -> None:
        user, position = await _seed(store, usdt="800.00")

        tx = await engine.add_collateral(user.id, position.id, "300", "USDT")

        assert tx.kind is TransactionKind.COLLATERAL_ADD
        assert (await store.get_user(user.id)).linked_wallet_balance_usdt == Decimal("500.00")
        updated = await store.get_position(position.id)
        assert updated.collateral_usdt == Decimal("300")
        assert updated.health_factor == Decimal("3.30")
        notifications = await store.list_notifications(user.id)
        assert notifications[0].type is NotificationType.COLLATERAL_ADDED

    @pytest.mark.asyncio
    async def test_insufficient_balance_changes_nothing(
        self, engine: TopUpEngine, store: LendingStore
    ) -> None:
        user, position = await _seed(store, usdt="100.00")

        with pytest.raises(InsufficientBalanceError):
            await engine.add_collateral(user.id, position.id, Decimal("300"), Currency.USDT)

        assert (await store.get_user(user.id)).linked_wallet_balance_usdt == Decimal("100.00")
        assert (await store.get_position(position.id)).collateral_usdt == Decimal("0")
        assert await store.count_topup_transactions(position.id) == 0


class TestHandleRiskSignal:
    @pytest.mark.asyncio
    async def test_high_risk_tops_up_weakest_position(
        self, engine: TopUpEngine, store: LendingStore
    ) -> None:
        user, strong = await _seed(store)
        weak = await store.create_position(
            user_id=user.id,
            position_name="BTC Loan #2",
            collateral_btc=Decimal("0.05"),
            collateral_usdt=Decimal("0"),
            borrowed_amount=Decimal("1000.00"),
            apr=Decimal("7.5"),
            health_factor=Decimal("1.50"),
        )

        result = await engine.handle_risk_signal(user.id, "high")

        assert result.skipped is False
        assert result.auto_top_up is not None
        assert result.auto_top_up.loan_position_id == weak.id
        assert result.auto_top_up.is_automatic is True
        assert result.auto_top_up.amount == Decimal("1000")
        assert (await store.get_position(weak.id)).collateral_usdt == Decimal("1000")
        assert (await store.get_position(strong.id)).collateral_usdt == Decimal("0")

        types = [n.type for n in await store.list_notifications(user.id)]
        assert NotificationType.PRICE_ALERT in types
        assert NotificationType.TOPUP_SUCCESS in types

    @pytest.mark.asyncio
    async def test_repeat_within_cooldown_is_skipped(
        self, engine: TopUpEngine, store: LendingStore, clock
    ) -> None:
        user, position = await _seed(store)

        first = await engine.handle_risk_signal(user.id, RiskLevel.HIGH)
        clock.advance(5)
        second = await engine.handle_risk_signal(user.id, RiskLevel.HIGH)

        assert first.skipped is False
        assert second.skipped is True
        assert await store.count_topup_transactions(position.id) == 1
        assert len(await store.list_notifications(user.id)) == 2  # one success, one alert

    @pytest.mark.asyncio
    async def test_fires_again_after_cooldown(
        self, engine: TopUpEngine, store: LendingStore, clock
    ) -> None:
        user, position = await _seed(store)

        await engine.handle_risk_signal(user.id, RiskLevel.MEDIUM_HIGH)
        clock.advance(10)
        result = await engine.handle_risk_signal(user.id, RiskLevel.MEDIUM_HIGH)

        assert result.skipped is False
        assert await store.count_topup_transactions(position.id) == 2

    @pytest.mark.asyncio
    async def test_cooldown_is_per_risk_level(
        self, engine: TopUpEngine, store: LendingStore
    ) -> None:
        user, _ = await _seed(store)

        await engine.handle_risk_signal(user.id, RiskLevel.HIGH)
        result = await engine.handle_risk_signal(user.id, RiskLevel.MEDIUM)

        assert result.skipped is False

    @pytest.mark.asyncio
    async def test_low_risk_only_alerts(self, engine: TopUpEngine, store: LendingStore) -> None:
        user, position = await _seed(store)

        result = await engine.handle_risk_signal(user.id, RiskLevel.LOW)

        assert result.auto_top_up is None
        assert result.alert.type is NotificationType.PRICE_ALERT
        assert "low risk level" in result.alert.message
        assert await store.count_topup_transactions(position.id) == 0

    @pytest.mark.asyncio
    async def test_auto_top_up_disabled(self, engine: TopUpEngine, store: LendingStore) -> None:
        user, position = await _seed(store, auto_topup_enabled=False)

        result = await engine.handle_risk_signal(user.id, RiskLevel.HIGH)

        assert result.auto_top_up is None
        assert await store.count_topup_transactions(position.id) == 0

    @pytest.mark.asyncio
    async def test_failed_auto_top_up_notifies_user(
        self, engine: TopUpEngine, store: LendingStore
    ) -> None:
        user, position = await _seed(store)

        with patch.object(
            store,
            "create_topup_transaction",
            AsyncMock(side_effect=aiosqlite.OperationalError("database is locked")),
        ):
            result = await engine.handle_risk_signal(user.id, RiskLevel.HIGH)

        assert result.auto_top_up is None
        assert "database is locked" in result.auto_top_up_error
        types = [n.type for n in await store.list_notifications(user.id)]
        assert NotificationType.TOPUP_FAILED in types
        assert NotificationType.PRICE_ALERT in types

    @pytest.mark.asyncio
    async def test_sms_dispatched_when_enabled(
        self, engine: TopUpEngine, store: LendingStore, notifier
    ) -> None:
        user, _ = await _seed(store, sms_alerts_enabled=True)

        with patch.object(notifier, "send_sms", AsyncMock()) as send_sms:
            await engine.handle_risk_signal(user.id, RiskLevel.MEDIUM)

        send_sms.assert_awaited_once()
        assert "medium risk level" in send_sms.await_args.args[1]

    @pytest.mark.asyncio
    async def test_unknown_user_and_level(self, engine: TopUpEngine, store: LendingStore) -> None:
        user, _ = await _seed(store)

        with pytest.raises(NotFoundError):
            await engine.handle_risk_signal("nobody", RiskLevel.HIGH)
        with pytest.raises(ValidationFailedError):
            await engine.handle_risk_signal(user.id, "apocalyptic")


class TestCollaboratorWiring:
    def test_injected_empty_lock_registry_is_shared(
        self, engine: TopUpEngine, loan_service, locks
    ) -> None:
        assert len(locks) == 0
        assert engine._locks is locks
        assert loan_service._locks is engine._locks

    @pytest.mark.asyncio
    async def test_injected_cooldown_clock_drives_expiry(
        self, engine: TopUpEngine, clock
    ) -> None:
        assert await engine._cooldown.try_acquire(("user-1", RiskLevel.HIGH)) is True
        assert await engine._cooldown.try_acquire(("user-1", RiskLevel.HIGH)) is False

        clock.advance(10)

        assert await engine._cooldown.try_acquire(("user-1", RiskLevel.HIGH)) is True

    @pytest.mark.asyncio
    async def test_built_components_share_one_lock_registry(self, tmp_path) -> None:
        settings = AppSettings(database=DatabaseSettings(path=str(tmp_path / "wiring.db")))

        components = await _build_components(settings)
        try:
            assert components["top_up_engine"]._locks is components["loan_service"]._locks
        finally:
            await components["market_client"].close()
