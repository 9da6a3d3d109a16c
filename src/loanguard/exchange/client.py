"""Abstract market-data client interface.

The price feed and the chart passthrough endpoints depend only on this
interface, keeping exchange-specific details in the concrete implementation.
"""

from abc import ABC, abstractmethod
from decimal import Decimal


class MarketDataClient(ABC):
    """Abstract base class for read-only market-data sources."""

    @property
    @abstractmethod
    def source_name(self) -> str:
        """Tag recorded on price samples fetched from this source."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Clean up network resources."""
        ...

    @abstractmethod
    async def fetch_last_price(self, symbol: str) -> Decimal:
        """Return the last traded price for a unified symbol (e.g. "BTC/USDT")."""
        ...

    @abstractmethod
    async def fetch_ticker_24h(self, market_id: str) -> dict:
        """Return the exchange's raw 24h ticker payload for a market id (e.g. "BTCUSDT")."""
        ...

    @abstractmethod
    async def fetch_klines(self, market_id: str, interval: str, limit: int) -> list[list]:
        """Return raw candlestick rows for a market id.

        Each row is [open_time_ms, open, high, low, close, volume, ...] exactly
        as the exchange reports it.
        """
        ...
