"""Pluggable risk signal providers.

A provider turns a window of recent BTC prices into a RiskSignal. The top-up
engine only ever sees the RiskLevel, so the heuristic below can be replaced
by a real forecasting model without touching the lending code.

CRITICAL: All computations use Decimal. Never use float.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from loanguard.models import RiskLevel, RiskSignal

_CONFIDENCE_QUANTIZE = Decimal("0.1")
_CONFIDENCE_MIN = Decimal("30")
_CONFIDENCE_MAX = Decimal("95")


class RiskSignalProvider(ABC):
    """Abstract base class for price-driven risk signals."""

    @abstractmethod
    def evaluate(self, prices: list[Decimal]) -> RiskSignal | None:
        """Assess risk from prices ordered oldest first.

        Returns None when there is not enough data for a reading.
        """
        ...


def mean_step(prices: list[Decimal]) -> Decimal:
    """Average price change between consecutive samples (0 for < 2 samples)."""
    if len(prices) < 2:
        return Decimal("0")
    return (prices[-1] - prices[0]) / (len(prices) - 1)


def population_volatility(prices: list[Decimal]) -> Decimal:
    """Population standard deviation of the samples (0 for < 2 samples)."""
    if len(prices) < 2:
        return Decimal("0")
    mean = sum(prices) / len(prices)
    variance = sum((p - mean) ** 2 for p in prices) / len(prices)
    return variance.sqrt()


class TrendVolatilitySignal(RiskSignalProvider):
    """Trend/volatility heuristic: a toy model, not a forecast.

    Compares the mean price step over the most recent half of the window with
    the step over the full window, and the volatility of the recent half.
    Diverging trends and high volatility lower confidence; low confidence or
    a large projected move raise the risk level.

    Args:
        window: Maximum number of samples considered (at least 2).
        min_samples: Fewer samples than this yield no reading (at least 2).
        horizon_hours: Projection horizon for the expected move.
        trend_weight: Weight of the recent trend against the long trend.
    """

    def __init__(
        self,
        window: int = 24,
        min_samples: int = 5,
        horizon_hours: int = 24,
        trend_weight: Decimal = Decimal("0.5"),
    ) -> None:
        if window < 2 or min_samples < 2:
            raise ValueError(
                f"window and min_samples must be at least 2, got {window} and {min_samples}"
            )
        self._window = window
        self._min_samples = min_samples
        self._horizon = Decimal(horizon_hours)
        self._trend_weight = trend_weight

    def evaluate(self, prices: list[Decimal]) -> RiskSignal | None:
        if len(prices) < self._min_samples:
            return None
        latest = prices[-1]
        if latest <= 0:
            return None

        window = min(len(prices), self._window)
        long_term = prices[-window:]
        recent = prices[-(window // 2):]

        recent_trend = mean_step(recent)
        long_trend = mean_step(long_term)
        volatility = population_volatility(recent)

        projected_move = self._horizon * (
            recent_trend * self._trend_weight
            + long_trend * (Decimal("1") - self._trend_weight)
        )
        move_percent = abs(projected_move / latest * 100)

        confidence = Decimal("100") - volatility / latest * 200
        confidence -= abs(recent_trend - long_trend) * 100
        confidence = max(_CONFIDENCE_MIN, min(_CONFIDENCE_MAX, confidence))

        if confidence < 50:
            level = RiskLevel.HIGH
        elif confidence < 70 or volatility > latest * Decimal("0.02"):
            level = RiskLevel.MEDIUM
        elif confidence < 85 or volatility > latest * Decimal("0.01"):
            level = RiskLevel.MEDIUM_LOW
        else:
            level = RiskLevel.LOW

        if move_percent > 10:
            level = RiskLevel.HIGH
        elif move_percent > 5 and level is not RiskLevel.HIGH:
            level = RiskLevel.MEDIUM_HIGH

        return RiskSignal(
            risk_level=level,
            confidence=confidence.quantize(_CONFIDENCE_QUANTIZE),
        )
