"""Server-side risk loop feeding the top-up engine.

Disabled by default: dashboard clients usually post their own readings to
/api/notifications/trigger. When enabled, every interval the provider
evaluates recent price history and elevated readings are delivered to the
engine for each user with auto top-up on. The engine's cooldown guard
debounces repeated readings.
"""

import asyncio

from loanguard.config import RiskMonitorSettings
from loanguard.data.store import LendingStore
from loanguard.exceptions import LendingError
from loanguard.lending.topup import TopUpEngine, TriggerResult
from loanguard.logging import get_logger
from loanguard.market_data.price_feed import PriceFeed
from loanguard.models import RiskSignal
from loanguard.risk.signal import RiskSignalProvider

logger = get_logger(__name__)


class RiskMonitor:
    """Periodically evaluates a RiskSignalProvider and fires risk triggers."""

    def __init__(
        self,
        store: LendingStore,
        price_feed: PriceFeed,
        engine: TopUpEngine,
        provider: RiskSignalProvider,
        settings: RiskMonitorSettings | None = None,
    ) -> None:
        self._store = store
        self._price_feed = price_feed
        self._engine = engine
        self._provider = provider
        self._settings = settings or RiskMonitorSettings()
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self.last_signal: RiskSignal | None = None

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("risk_monitor_started", interval=self._settings.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("risk_monitor_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.evaluate_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("risk_monitor_cycle_error")
            await asyncio.sleep(self._settings.interval)

    async def evaluate_once(self) -> list[TriggerResult]:
        """Run one evaluation and deliver an elevated reading to every eligible user."""
        history = await self._price_feed.get_price_history(limit=self._settings.window)
        signal = self._provider.evaluate([sample.price for sample in history])
        self.last_signal = signal
        if signal is None:
            logger.debug("risk_signal_insufficient_data", samples=len(history))
            return []

        logger.debug(
            "risk_signal_evaluated",
            risk_level=signal.risk_level.value,
            confidence=str(signal.confidence),
        )
        if not signal.risk_level.triggers_auto_topup:
            return []

        results = []
        for user in await self._store.list_users():
            if not user.auto_topup_enabled:
                continue
            try:
                results.append(
                    await self._engine.handle_risk_signal(user.id, signal.risk_level)
                )
            except LendingError as exc:
                logger.warning("risk_trigger_failed", user_id=user.id, error=str(exc))
        return results
