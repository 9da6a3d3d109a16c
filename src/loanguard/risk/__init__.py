"""Risk signal providers and the optional server-side risk loop."""

from loanguard.risk.monitor import RiskMonitor
from loanguard.risk.signal import RiskSignalProvider, TrendVolatilitySignal

__all__ = [
    "RiskMonitor",
    "RiskSignalProvider",
    "TrendVolatilitySignal",
]
