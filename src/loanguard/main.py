"""Entry point for the LoanGuard lending backend.

Wires all components together and serves the REST/WebSocket API with
uvicorn's programmatic API. Background work (price polling, WebSocket
pushes, the optional risk loop) shares the server's event loop and is
started and stopped by FastAPI's lifespan.

Component wiring order (in _build_components):
1. AppSettings (configuration)
2. Logging setup
3. LendingDatabase + LendingStore (SQLite persistence)
4. BinanceClient (public market data)
5. PriceFeed (polling with fallback)
6. DashboardHub (connected WebSocket clients)
7. NotificationSink (persist + push)
8. KeyedLocks (per-user serialisation shared by the engines)
9. TopUpEngine and LoanService
10. DashboardAggregator
11. RiskMonitor (only started when RISK_ENABLED=true)
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from loanguard.config import AppSettings, DemoUserSettings
from loanguard.dashboard.aggregator import DashboardAggregator
from loanguard.dashboard.routes.ws import DashboardHub
from loanguard.data.database import LendingDatabase
from loanguard.data.store import LendingStore
from loanguard.exchange.binance_client import BinanceClient
from loanguard.lending.cooldown import CooldownCache
from loanguard.lending.loans import LoanService
from loanguard.lending.locks import KeyedLocks
from loanguard.lending.topup import TopUpEngine
from loanguard.logging import get_logger, setup_logging
from loanguard.market_data.price_feed import PriceFeed
from loanguard.models import User
from loanguard.notifications.sink import NotificationSink
from loanguard.risk.monitor import RiskMonitor
from loanguard.risk.signal import TrendVolatilitySignal


async def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all service components from settings.

    Note: Does NOT open the database or start any loop -- that happens in
    the lifespan (API mode) or run() (headless mode).

    Args:
        settings: Application-wide settings.

    Returns:
        Dict mapping component names to instances.
    """
    database = LendingDatabase(settings.database.path)
    store = LendingStore(database)

    market_client = BinanceClient(timeout_seconds=settings.price_feed.fetch_timeout_seconds)
    price_feed = PriceFeed(store, market_client, settings.price_feed)

    hub = DashboardHub()
    notifier = NotificationSink(store, hub)

    locks = KeyedLocks()
    top_up_engine = TopUpEngine(
        database,
        store,
        price_feed,
        notifier,
        settings.lending,
        locks=locks,
        cooldown=CooldownCache(settings.lending.trigger_cooldown_seconds),
    )
    loan_service = LoanService(
        database, store, price_feed, notifier, settings.lending, locks=locks
    )
    aggregator = DashboardAggregator(database, store, price_feed, settings.lending)

    risk_monitor = RiskMonitor(
        store,
        price_feed,
        top_up_engine,
        TrendVolatilitySignal(window=settings.risk_monitor.window),
        settings.risk_monitor,
    )

    return {
        "database": database,
        "store": store,
        "market_client": market_client,
        "price_feed": price_feed,
        "hub": hub,
        "notifier": notifier,
        "top_up_engine": top_up_engine,
        "loan_service": loan_service,
        "aggregator": aggregator,
        "risk_monitor": risk_monitor,
    }


async def ensure_demo_user(store: LendingStore, settings: DemoUserSettings) -> User:
    """Return the demo user, creating it with the configured profile if absent."""
    logger = get_logger("loanguard.main")
    user = await store.get_user_by_username(settings.username)
    if user is not None:
        return user
    user = await store.create_user(
        username=settings.username,
        wallet_address=settings.wallet_address,
        linked_wallet_balance_btc=settings.linked_wallet_balance_btc,
        linked_wallet_balance_usdt=settings.linked_wallet_balance_usdt,
        auto_topup_enabled=settings.auto_topup_enabled,
        sms_alerts_enabled=settings.sms_alerts_enabled,
    )
    logger.info("demo_user_created", user_id=user.id, username=user.username)
    return user


async def _start_services(settings: AppSettings, components: dict[str, Any]) -> str | None:
    """Open the database, seed the demo user and start background loops.

    Returns the demo user's id, or None when the demo user is disabled.
    """
    await components["database"].connect()

    default_user_id = None
    if settings.demo_user.enabled:
        user = await ensure_demo_user(components["store"], settings.demo_user)
        default_user_id = user.id

    await components["price_feed"].start()
    if settings.risk_monitor.enabled:
        await components["risk_monitor"].start()
    return default_user_id


async def _stop_services(settings: AppSettings, components: dict[str, Any]) -> None:
    if settings.risk_monitor.enabled:
        await components["risk_monitor"].stop()
    await components["price_feed"].stop()
    await components["market_client"].close()
    await components["database"].close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage service lifecycle within the FastAPI application.

    On startup: stores components on app.state, opens the database, seeds
    the demo user, starts the price feed, the optional risk monitor and the
    WebSocket update loop.

    On shutdown: cancels the update loop, then stops everything in reverse.
    """
    from loanguard.dashboard.update_loop import dashboard_update_loop

    logger = get_logger("loanguard.main")
    settings: AppSettings = app.state.settings
    components = app.state.components

    # Store all components on app.state for route handler access
    app.state.hub = components["hub"]
    app.state.price_feed = components["price_feed"]
    app.state.market_client = components["market_client"]
    app.state.notifier = components["notifier"]
    app.state.top_up_engine = components["top_up_engine"]
    app.state.loan_service = components["loan_service"]
    app.state.aggregator = components["aggregator"]
    app.state.lending_settings = settings.lending
    app.state.update_interval = settings.dashboard.update_interval

    app.state.default_user_id = await _start_services(settings, components)

    # Start WebSocket update loop as background task
    update_task = asyncio.create_task(dashboard_update_loop(app))

    logger.info("lifespan_started", default_user_id=app.state.default_user_id)

    yield

    # Shutdown: cancel update loop
    update_task.cancel()
    try:
        await update_task
    except asyncio.CancelledError:
        pass

    await _stop_services(settings, components)

    logger.info("loanguard_stopped")


async def run() -> None:
    """Run the lending backend.

    When the API is enabled (DASHBOARD_ENABLED=true, the default) uvicorn
    serves the app and the lifespan manages all services. Otherwise only
    the price feed and the risk monitor run until SIGINT/SIGTERM.
    """
    # 1. Load settings
    settings = AppSettings()

    # 2. Setup logging
    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger("loanguard.main")

    # 3-11. Build all components
    components = await _build_components(settings)

    if settings.dashboard.enabled:
        from loanguard.dashboard.app import create_app

        app = create_app(lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info(
            "starting_api_server",
            host=settings.dashboard.host,
            port=settings.dashboard.port,
        )

        config = uvicorn.Config(
            app,
            host=settings.dashboard.host,
            port=settings.dashboard.port,
            log_level="warning",  # Suppress uvicorn access logs
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        logger.info(
            "starting_headless",
            risk_monitor=settings.risk_monitor.enabled,
            poll_interval=settings.price_feed.poll_interval,
        )
        await _start_services(settings, components)
        try:
            await stop_event.wait()
        finally:
            await _stop_services(settings, components)
            logger.info("loanguard_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
