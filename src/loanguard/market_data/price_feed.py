"""BTC price feed -- polls the exchange and appends samples to price history.

Uses REST polling on a fixed interval. Staleness of up to one interval is
acceptable for an advisory lending dashboard. Upstream failures are absorbed:
refresh() records a fallback-tagged sample (last known price, or the
configured default) instead of raising.
"""

import asyncio
import time
from collections.abc import Callable
from decimal import Decimal

from loanguard.config import PriceFeedSettings
from loanguard.data.store import LendingStore
from loanguard.exchange.client import MarketDataClient
from loanguard.logging import get_logger
from loanguard.models import PriceChange, PriceSample

logger = get_logger(__name__)

FALLBACK_SOURCE = "fallback"
DAY_MS = 24 * 60 * 60 * 1000

_CENT = Decimal("0.01")


class PriceFeed:
    """Maintains the price history that every health calculation reads from.

    Args:
        store: Lending store holding the price_history table.
        client: Market-data source for live prices.
        settings: Symbol, polling interval, timeout and fallback values.
        clock: Wall-clock in seconds; injectable for tests.
    """

    def __init__(
        self,
        store: LendingStore,
        client: MarketDataClient,
        settings: PriceFeedSettings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._client = client
        self._settings = settings or PriceFeedSettings()
        self._clock = clock
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    @property
    def symbol(self) -> str:
        return self._settings.symbol

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    async def start(self) -> None:
        """Load an initial price, then keep polling in the background."""
        if self._running:
            logger.warning("price_feed_already_running")
            return
        await self.refresh()
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("price_feed_started", poll_interval=self._settings.poll_interval)

    async def stop(self) -> None:
        """Stop the polling loop gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("price_feed_stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._settings.poll_interval)
            try:
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("price_feed_poll_error", exc_info=True)

    # ──────────────────────────────────────────────
    # Ingestion
    # ──────────────────────────────────────────────

    async def refresh(self) -> PriceSample:
        """Fetch the live price and append it; fall back on any upstream failure.

        Returns the recorded sample. Never raises for upstream or storage
        errors; a sample that could not be stored is returned with id None.
        """
        symbol = self._settings.symbol
        try:
            price = await asyncio.wait_for(
                self._client.fetch_last_price(self._settings.exchange_symbol),
                timeout=self._settings.fetch_timeout_seconds,
            )
            source = self._client.source_name
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            price = await self._fallback_price(symbol)
            source = FALLBACK_SOURCE
            logger.warning(
                "price_refresh_failed",
                symbol=symbol,
                error=str(exc) or type(exc).__name__,
                fallback_price=str(price),
            )

        try:
            sample = await self._store.insert_price(
                symbol, price, source, timestamp_ms=self._now_ms()
            )
        except Exception:
            logger.error("price_sample_persist_failed", symbol=symbol, exc_info=True)
            return PriceSample(
                symbol=symbol, price=price, source=source, timestamp_ms=self._now_ms()
            )

        logger.debug("price_refreshed", symbol=symbol, price=str(price), source=source)
        return sample

    async def _fallback_price(self, symbol: str) -> Decimal:
        try:
            latest = await self._store.get_latest_price(symbol)
        except Exception:
            logger.warning("price_fallback_lookup_failed", symbol=symbol, exc_info=True)
            latest = None
        if latest is not None:
            return latest.price
        return self._settings.fallback_price

    # ──────────────────────────────────────────────
    # Queries
    # ──────────────────────────────────────────────

    async def get_latest_sample(self, symbol: str | None = None) -> PriceSample | None:
        return await self._store.get_latest_price(symbol or self._settings.symbol)

    async def get_current_price(self, symbol: str | None = None) -> Decimal:
        """Latest recorded price; the configured fallback if history is empty."""
        latest = await self.get_latest_sample(symbol)
        if latest is None:
            return self._settings.fallback_price
        return latest.price

    async def get_past_price(self, symbol: str | None, age_ms: int) -> PriceSample | None:
        """Most recent sample recorded at or before (now - age_ms)."""
        return await self._store.get_past_price(
            symbol or self._settings.symbol, age_ms, now_ms=self._now_ms()
        )

    async def get_price_change_24h(self, symbol: str | None = None) -> PriceChange:
        """Delta between the current price and the price 24h ago.

        Without a sample at least 24h old, the past price is approximated as
        current * change_fallback_factor and the result is flagged synthetic.
        """
        current = await self.get_current_price(symbol)
        past_sample = await self.get_past_price(symbol, DAY_MS)

        if past_sample is not None:
            past_price = past_sample.price
            synthetic = False
        else:
            past_price = current * self._settings.change_fallback_factor
            synthetic = True

        change = current - past_price
        if past_price > 0:
            change_percent = (change / past_price * 100).quantize(_CENT)
        else:
            change_percent = Decimal("0.00")

        return PriceChange(
            price=current,
            change=change.quantize(_CENT),
            change_percent=change_percent,
            is_synthetic=synthetic,
        )

    async def get_price_history(
        self, symbol: str | None = None, limit: int = 100
    ) -> list[PriceSample]:
        return await self._store.get_price_history(symbol or self._settings.symbol, limit)

    async def is_stale(self, symbol: str | None = None) -> bool:
        """True when no sample exists or the newest is older than max_staleness_seconds."""
        latest = await self.get_latest_sample(symbol)
        if latest is None:
            return True
        age_seconds = (self._now_ms() - latest.timestamp_ms) / 1000
        return age_seconds > self._settings.max_staleness_seconds
