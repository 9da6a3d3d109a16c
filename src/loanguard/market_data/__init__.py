"""Market data layer -- BTC price polling, fallback and 24h change."""

from loanguard.market_data.price_feed import FALLBACK_SOURCE, PriceFeed

__all__ = ["FALLBACK_SOURCE", "PriceFeed"]
