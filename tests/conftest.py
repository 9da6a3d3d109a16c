"""Shared test fixtures for the lending backend."""

from collections.abc import AsyncIterator
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from loanguard.config import LendingSettings, PriceFeedSettings
from loanguard.data.database import LendingDatabase
from loanguard.data.store import LendingStore
from loanguard.lending.cooldown import CooldownCache
from loanguard.lending.loans import LoanService
from loanguard.lending.locks import KeyedLocks
from loanguard.lending.topup import TopUpEngine
from loanguard.market_data.price_feed import PriceFeed
from loanguard.notifications.sink import NotificationSink

BTC_PRICE = Decimal("30000")


class FakeClock:
    """Manually advanced clock for cooldown and staleness tests."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def lending_settings() -> LendingSettings:
    return LendingSettings()


@pytest.fixture
def price_settings() -> PriceFeedSettings:
    return PriceFeedSettings(fetch_timeout_seconds=0.2)


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncIterator[LendingDatabase]:
    """Fresh on-disk SQLite database per test."""
    db = LendingDatabase(str(tmp_path / "lending.db"))
    await db.connect()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def store(database: LendingDatabase) -> LendingStore:
    return LendingStore(database)


@pytest.fixture
def mock_market_client() -> AsyncMock:
    """Market-data client returning a fixed BTC price."""
    client = AsyncMock()
    client.source_name = "binance"
    client.fetch_last_price = AsyncMock(return_value=BTC_PRICE)
    client.fetch_ticker_24h = AsyncMock(return_value={"symbol": "BTCUSDT"})
    client.fetch_klines = AsyncMock(return_value=[])
    return client


@pytest_asyncio.fixture
async def price_feed(
    store: LendingStore,
    mock_market_client: AsyncMock,
    price_settings: PriceFeedSettings,
) -> PriceFeed:
    """Price feed with one live sample at BTC_PRICE already recorded."""
    feed = PriceFeed(store, mock_market_client, price_settings)
    await feed.refresh()
    return feed


@pytest.fixture
def mock_hub() -> MagicMock:
    hub = MagicMock()
    hub.send_to_user = AsyncMock(return_value=1)
    return hub


@pytest.fixture
def notifier(store: LendingStore, mock_hub: MagicMock) -> NotificationSink:
    return NotificationSink(store, mock_hub)


@pytest.fixture
def locks() -> KeyedLocks:
    return KeyedLocks()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(
    database: LendingDatabase,
    store: LendingStore,
    price_feed: PriceFeed,
    notifier: NotificationSink,
    lending_settings: LendingSettings,
    locks: KeyedLocks,
    clock: FakeClock,
) -> TopUpEngine:
    return TopUpEngine(
        database,
        store,
        price_feed,
        notifier,
        lending_settings,
        locks=locks,
        cooldown=CooldownCache(lending_settings.trigger_cooldown_seconds, clock=clock),
    )


@pytest.fixture
def loan_service(
    database: LendingDatabase,
    store: LendingStore,
    price_feed: PriceFeed,
    notifier: NotificationSink,
    lending_settings: LendingSettings,
    locks: KeyedLocks,
) -> LoanService:
    return LoanService(database, store, price_feed, notifier, lending_settings, locks=locks)
