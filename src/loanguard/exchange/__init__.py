"""Market-data client layer -- Binance public API integration via ccxt."""

from loanguard.exchange.binance_client import BinanceClient
from loanguard.exchange.client import MarketDataClient

__all__ = ["BinanceClient", "MarketDataClient"]
