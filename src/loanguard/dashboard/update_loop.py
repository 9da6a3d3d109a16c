"""Periodic WebSocket price_update pushes for real-time dashboard refresh."""

from __future__ import annotations

import asyncio

import structlog
from fastapi import FastAPI

from loanguard.dashboard.aggregator import DashboardAggregator
from loanguard.dashboard.routes.ws import DashboardHub
from loanguard.exceptions import NotFoundError

log = structlog.get_logger(__name__)


async def push_user_update(app: FastAPI, user_id: str) -> None:
    """Send a fresh price_update to every socket of one user. Never raises."""
    hub: DashboardHub = app.state.hub
    aggregator: DashboardAggregator | None = getattr(app.state, "aggregator", None)
    if aggregator is None or not hub.connections.get(user_id):
        return
    try:
        message = await aggregator.build_price_update(user_id)
    except NotFoundError:
        log.debug("dashboard_update_unknown_user", user_id=user_id)
        return
    except Exception:
        log.warning("dashboard_update_build_failed", user_id=user_id, exc_info=True)
        return
    await hub.send_to_user(user_id, message)


async def dashboard_update_loop(app: FastAPI) -> None:
    """Push a price_update to every connected user every ``update_interval`` seconds.

    Runs until cancelled by the application lifespan.
    """
    update_interval = getattr(app.state, "update_interval", 5)

    log.info("dashboard_update_loop_started", interval=update_interval)

    while True:
        try:
            await asyncio.sleep(update_interval)

            hub: DashboardHub = app.state.hub
            for user_id in hub.connected_users:
                await push_user_update(app, user_id)

        except asyncio.CancelledError:
            log.info("dashboard_update_loop_cancelled")
            break
        except Exception:
            log.warning("dashboard_update_loop_error", exc_info=True)
            # Continue loop on error -- don't crash the update loop
            await asyncio.sleep(1)
