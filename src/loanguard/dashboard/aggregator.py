"""Read-only dashboard aggregation.

Builds the per-user snapshot served by /api/dashboard-snapshot and the
price_update message pushed over the WebSocket. All inputs are read inside
one database transaction so a concurrent top-up can never be half-visible
in a snapshot.

CRITICAL: All monetary values use Decimal. Never use float.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from loanguard.config import LendingSettings
from loanguard.dashboard.serializers import (
    iso_timestamp,
    position_to_dict,
    price_change_to_dict,
    user_to_dict,
)
from loanguard.data.database import LendingDatabase
from loanguard.data.store import LendingStore
from loanguard.exceptions import NotFoundError
from loanguard.lending.health import (
    INFINITE_HEALTH,
    classify_health,
    collateral_value,
    position_health_factor,
)
from loanguard.market_data.price_feed import PriceFeed
from loanguard.models import HealthStatus, LoanPosition, PriceChange, User

_CENT = Decimal("0.01")


@dataclass
class DashboardSnapshot:
    """Everything the dashboard shows for one user at one logical instant."""

    user: User
    positions: list[LoanPosition]
    btc_price: Decimal
    price_change: PriceChange
    total_collateral_value: Decimal
    total_borrowed: Decimal
    health_factor: Decimal
    health_status: HealthStatus
    price_is_stale: bool = False
    generated_at: float = field(default_factory=time.time)
    settings: LendingSettings | None = None

    @property
    def active_loan_count(self) -> int:
        return len(self.positions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user": user_to_dict(self.user),
            "stats": {
                "btcPrice": price_change_to_dict(self.price_change),
                "totalCollateral": str(self.total_collateral_value),
                "totalBorrowed": str(self.total_borrowed),
                "healthFactor": str(self.health_factor),
                "healthStatus": self.health_status.value,
                "activeLoanCount": self.active_loan_count,
                "priceIsStale": self.price_is_stale,
            },
            "loanPositions": [position_to_dict(p, self.settings) for p in self.positions],
            "timestamp": iso_timestamp(self.generated_at),
        }


def portfolio_totals(
    user: User, positions: list[LoanPosition], btc_price: Decimal
) -> tuple[Decimal, Decimal, Decimal]:
    """Total collateral value (positions plus free wallet), total debt, health factor.

    The health factor is INFINITE_HEALTH when nothing is borrowed.
    """
    total_collateral = sum(
        (collateral_value(p.collateral_btc, p.collateral_usdt, btc_price) for p in positions),
        Decimal("0"),
    )
    total_collateral += collateral_value(
        user.linked_wallet_balance_btc, user.linked_wallet_balance_usdt, btc_price
    )
    total_borrowed = sum((p.borrowed_amount for p in positions), Decimal("0"))
    if total_borrowed > 0:
        health = (total_collateral / total_borrowed).quantize(_CENT, rounding=ROUND_HALF_UP)
    else:
        health = INFINITE_HEALTH
    return total_collateral.quantize(_CENT, rounding=ROUND_HALF_UP), total_borrowed, health


class DashboardAggregator:
    """Assembles read-only dashboard views."""

    def __init__(
        self,
        database: LendingDatabase,
        store: LendingStore,
        price_feed: PriceFeed,
        settings: LendingSettings | None = None,
    ) -> None:
        self._database = database
        self._store = store
        self._price_feed = price_feed
        self._settings = settings or LendingSettings()

    async def build_snapshot(self, user_id: str) -> DashboardSnapshot:
        """Snapshot of one user's positions and portfolio. NotFoundError if absent."""
        async with self._database.transaction():
            user = await self._store.get_user(user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found")
            positions = await self._store.list_positions(user_id)
            price_change = await self._price_feed.get_price_change_24h()
            stale = await self._price_feed.is_stale()

        # Stored factors date from the last mutation; show them at the current price
        positions = [
            replace(p, health_factor=position_health_factor(p, price_change.price))
            for p in positions
        ]
        total_collateral, total_borrowed, health = portfolio_totals(
            user, positions, price_change.price
        )
        return DashboardSnapshot(
            user=user,
            positions=positions,
            btc_price=price_change.price,
            price_change=price_change,
            total_collateral_value=total_collateral,
            total_borrowed=total_borrowed,
            health_factor=health,
            health_status=classify_health(health, self._settings),
            price_is_stale=stale,
            settings=self._settings,
        )

    async def build_price_update(self, user_id: str) -> dict[str, Any]:
        """The ``price_update`` WebSocket message for one user."""
        snapshot = await self.build_snapshot(user_id)
        return {
            "type": "price_update",
            "data": {
                "btcPrice": price_change_to_dict(snapshot.price_change),
                "healthFactor": str(snapshot.health_factor),
                "loanPositions": [
                    position_to_dict(p, self._settings) for p in snapshot.positions
                ],
                "user": {
                    "linkedWalletBalanceBtc": str(snapshot.user.linked_wallet_balance_btc),
                    "linkedWalletBalanceUsdt": str(snapshot.user.linked_wallet_balance_usdt),
                },
                "timestamp": iso_timestamp(snapshot.generated_at),
            },
        }
