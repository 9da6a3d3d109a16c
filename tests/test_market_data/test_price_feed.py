"""Tests for PriceFeed -- ingestion, fallback and 24h change."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from loanguard.config import PriceFeedSettings
from loanguard.data.store import LendingStore
from loanguard.exceptions import UpstreamUnavailableError
from loanguard.market_data.price_feed import DAY_MS, FALLBACK_SOURCE, PriceFeed


def _feed(store, client, settings, clock) -> PriceFeed:
    return PriceFeed(store, client, settings, clock=clock)


class TestRefresh:
    @pytest.mark.asyncio
    async def test_live_price_is_recorded(
        self, store: LendingStore, mock_market_client: AsyncMock, price_settings, clock
    ) -> None:
        feed = _feed(store, mock_market_client, price_settings, clock)

        sample = await feed.refresh()

        assert sample.price == Decimal("30000")
        assert sample.source == "binance"
        assert sample.timestamp_ms == int(clock.now * 1000)
        mock_market_client.fetch_last_price.assert_awaited_once_with("BTC/USDT")
        latest = await store.get_latest_price("BTC")
        assert latest.price == Decimal("30000")

    @pytest.mark.asyncio
    async def test_upstream_error_without_history_uses_default(
        self, store: LendingStore, mock_market_client: AsyncMock, price_settings, clock
    ) -> None:
        mock_market_client.fetch_last_price.side_effect = UpstreamUnavailableError("down")
        feed = _feed(store, mock_market_client, price_settings, clock)

        sample = await feed.refresh()

        assert sample.price == Decimal("31247.82")
        assert sample.source == FALLBACK_SOURCE
        assert await feed.get_current_price() == Decimal("31247.82")

    @pytest.mark.asyncio
    async def test_upstream_error_repeats_last_price(
        self, store: LendingStore, mock_market_client: AsyncMock, price_settings, clock
    ) -> None:
        feed = _feed(store, mock_market_client, price_settings, clock)
        await feed.refresh()
        mock_market_client.fetch_last_price.side_effect = UpstreamUnavailableError("down")
        clock.advance(30)

        sample = await feed.refresh()

        assert sample.price == Decimal("30000")
        assert sample.source == FALLBACK_SOURCE
        assert len(await feed.get_price_history()) == 2

    @pytest.mark.asyncio
    async def test_timeout_falls_back(
        self, store: LendingStore, mock_market_client: AsyncMock, clock
    ) -> None:
        async def hang(symbol: str) -> Decimal:
            await asyncio.sleep(5)
            return Decimal("1")

        mock_market_client.fetch_last_price.side_effect = hang
        settings = PriceFeedSettings(fetch_timeout_seconds=0.05)
        feed = _feed(store, mock_market_client, settings, clock)

        sample = await feed.refresh()

        assert sample.source == FALLBACK_SOURCE
        assert sample.price == Decimal("31247.82")


class TestQueries:
    @pytest.mark.asyncio
    async def test_current_price_defaults_when_empty(
        self, store: LendingStore, mock_market_client: AsyncMock, price_settings, clock
    ) -> None:
        feed = _feed(store, mock_market_client, price_settings, clock)

        assert await feed.get_current_price() == Decimal("31247.82")
        assert await feed.get_latest_sample() is None

    @pytest.mark.asyncio
    async def test_change_is_synthetic_without_day_old_sample(
        self, store: LendingStore, mock_market_client: AsyncMock, price_settings, clock
    ) -> None:
        feed = _feed(store, mock_market_client, price_settings, clock)
        await feed.refresh()

        change = await feed.get_price_change_24h()

        # past = 30000 * 1.044 = 31320
        assert change.is_synthetic is True
        assert change.price == Decimal("30000")
        assert change.change == Decimal("-1320.00")
        assert change.change_percent == Decimal("-4.21")

    @pytest.mark.asyncio
    async def test_change_uses_day_old_sample(
        self, store: LendingStore, mock_market_client: AsyncMock, price_settings, clock
    ) -> None:
        feed = _feed(store, mock_market_client, price_settings, clock)
        await store.insert_price(
            "BTC", Decimal("28000"), "binance", timestamp_ms=int(clock.now * 1000) - DAY_MS - 1
        )
        await feed.refresh()

        change = await feed.get_price_change_24h()

        assert change.is_synthetic is False
        assert change.change == Decimal("2000.00")
        assert change.change_percent == Decimal("7.14")

    @pytest.mark.asyncio
    async def test_staleness(
        self, store: LendingStore, mock_market_client: AsyncMock, price_settings, clock
    ) -> None:
        feed = _feed(store, mock_market_client, price_settings, clock)
        assert await feed.is_stale() is True

        await feed.refresh()
        assert await feed.is_stale() is False

        clock.advance(price_settings.max_staleness_seconds + 1)
        assert await feed.is_stale() is True

    @pytest.mark.asyncio
    async def test_history_is_oldest_first(
        self, store: LendingStore, mock_market_client: AsyncMock, price_settings, clock
    ) -> None:
        feed = _feed(store, mock_market_client, price_settings, clock)
        for price in ("29000", "29500", "30000"):
            mock_market_client.fetch_last_price.return_value = Decimal(price)
            await feed.refresh()
            clock.advance(30)

        history = await feed.get_price_history(limit=2)

        assert [s.price for s in history] == [Decimal("29500"), Decimal("30000")]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_loads_price_and_stop_cancels(
        self, store: LendingStore, mock_market_client: AsyncMock, clock
    ) -> None:
        settings = PriceFeedSettings(poll_interval=3600)
        feed = _feed(store, mock_market_client, settings, clock)

        await feed.start()
        assert await feed.get_current_price() == Decimal("30000")
        await feed.stop()

        assert mock_market_client.fetch_last_price.await_count == 1
