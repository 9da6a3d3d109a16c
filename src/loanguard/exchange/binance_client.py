"""Binance market-data client implementation via ccxt async.

Wraps ccxt.async_support.binance for public market data only: last price for
the price feed, plus raw 24h ticker and kline payloads that the dashboard
forwards unchanged to chart clients.
"""

from decimal import Decimal

import ccxt
import ccxt.async_support as ccxt_async

from loanguard.exceptions import UpstreamUnavailableError
from loanguard.exchange.client import MarketDataClient
from loanguard.logging import get_logger

logger = get_logger(__name__)


class BinanceClient(MarketDataClient):
    """Concrete public Binance client using ccxt async. No API keys required."""

    def __init__(self, timeout_seconds: float = 10.0) -> None:
        self._exchange = ccxt_async.binance({
            "enableRateLimit": True,
            "timeout": int(timeout_seconds * 1000),
        })

    @property
    def exchange(self) -> ccxt_async.binance:
        """Access the underlying ccxt exchange instance."""
        return self._exchange

    @property
    def source_name(self) -> str:
        return "binance"

    async def close(self) -> None:
        """Clean up ccxt async resources. CRITICAL: must be called to avoid resource leaks."""
        await self._exchange.close()
        logger.info("binance_connection_closed")

    async def fetch_last_price(self, symbol: str) -> Decimal:
        """Fetch the last traded price; raises UpstreamUnavailableError on any failure."""
        try:
            ticker = await self._exchange.fetch_ticker(symbol)
        except ccxt.BaseError as exc:
            raise UpstreamUnavailableError(f"Binance ticker request failed: {exc}") from exc

        last = ticker.get("last")
        if last is None:
            raise UpstreamUnavailableError(f"Binance ticker for {symbol} has no last price")
        price = Decimal(str(last))
        if price <= 0:
            raise UpstreamUnavailableError(f"Binance returned non-positive price {price}")
        return price

    async def fetch_ticker_24h(self, market_id: str) -> dict:
        """Forward GET /api/v3/ticker/24hr for one market id."""
        try:
            return await self._exchange.public_get_ticker_24hr({"symbol": market_id})
        except ccxt.BaseError as exc:
            raise UpstreamUnavailableError(f"Binance 24h ticker request failed: {exc}") from exc

    async def fetch_klines(self, market_id: str, interval: str, limit: int) -> list[list]:
        """Forward GET /api/v3/klines for one market id."""
        try:
            return await self._exchange.public_get_klines({
                "symbol": market_id,
                "interval": interval,
                "limit": limit,
            })
        except ccxt.BaseError as exc:
            raise UpstreamUnavailableError(f"Binance klines request failed: {exc}") from exc
