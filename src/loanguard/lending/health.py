"""Position health factor calculation.

health_factor = (collateral_btc * btc_price + collateral_usdt) / borrowed_amount

The factor is advisory: thresholds classify positions as SAFE / WARNING /
DANGER for display and auto top-up targeting, and the liquidation price is
informational. Nothing in this module closes or liquidates a position.

CRITICAL: All computations use Decimal. Never use float.
"""

from collections.abc import Iterable
from decimal import ROUND_HALF_UP, ROUND_UP, Decimal

from loanguard.config import LendingSettings
from loanguard.models import HealthStatus, LoanPosition

#: Sentinel for positions without debt. Compares greater than every finite
#: factor, so "no debt" always sorts and classifies as the safest value.
INFINITE_HEALTH = Decimal("Infinity")

_HEALTH_QUANTIZE = Decimal("0.01")
_PRICE_QUANTIZE = Decimal("0.01")


def collateral_value(
    collateral_btc: Decimal, collateral_usdt: Decimal, btc_price: Decimal
) -> Decimal:
    """USD value of a BTC + stablecoin collateral basket."""
    return collateral_btc * btc_price + collateral_usdt


def compute_health_factor(
    collateral_btc: Decimal,
    collateral_usdt: Decimal,
    borrowed_amount: Decimal,
    btc_price: Decimal,
) -> Decimal:
    """Compute a health factor rounded half-up to 2 decimal places.

    Pure function: identical inputs always yield identical output.

    Args:
        collateral_btc: BTC pledged.
        collateral_usdt: Stablecoin pledged (USD-equivalent).
        borrowed_amount: Outstanding principal in USD.
        btc_price: Current BTC price in USD.

    Returns:
        The rounded factor, or INFINITE_HEALTH when nothing is borrowed.
    """
    if borrowed_amount <= 0:
        return INFINITE_HEALTH
    value = collateral_value(collateral_btc, collateral_usdt, btc_price)
    return (value / borrowed_amount).quantize(_HEALTH_QUANTIZE, rounding=ROUND_HALF_UP)


def position_health_factor(position: LoanPosition, btc_price: Decimal) -> Decimal:
    """compute_health_factor applied to a stored position."""
    return compute_health_factor(
        position.collateral_btc,
        position.collateral_usdt,
        position.borrowed_amount,
        btc_price,
    )


def is_infinite(health_factor: Decimal) -> bool:
    return health_factor.is_infinite()


def classify_health(
    health_factor: Decimal, settings: LendingSettings | None = None
) -> HealthStatus:
    """Map a factor to its advisory band (>=1.5 safe, [1.2, 1.5) warning, <1.2 danger)."""
    settings = settings or LendingSettings()
    if health_factor >= settings.safe_threshold:
        return HealthStatus.SAFE
    if health_factor >= settings.warning_threshold:
        return HealthStatus.WARNING
    return HealthStatus.DANGER


def liquidation_price(
    collateral_btc: Decimal,
    collateral_usdt: Decimal,
    borrowed_amount: Decimal,
    threshold: Decimal = Decimal("1.0"),
) -> Decimal | None:
    """BTC price at which the health factor would fall to ``threshold``.

    Solves (btc * p + usdt) / borrowed = threshold for p. Returns None when
    there is no debt or no BTC collateral (the factor does not depend on the
    price), and 0 when the stablecoin leg alone keeps the position above the
    threshold.
    """
    if borrowed_amount <= 0 or collateral_btc <= 0:
        return None
    price = (borrowed_amount * threshold - collateral_usdt) / collateral_btc
    if price <= 0:
        return Decimal("0.00")
    return price.quantize(_PRICE_QUANTIZE, rounding=ROUND_HALF_UP)


def select_at_risk_position(
    positions: Iterable[LoanPosition], btc_price: Decimal
) -> LoanPosition | None:
    """Pick the position with the lowest health factor at ``btc_price``.

    Positions without debt are never selected. Ties keep the earliest
    position in iteration order. Returns None if nothing carries debt.
    """
    worst: LoanPosition | None = None
    worst_factor = INFINITE_HEALTH
    for position in positions:
        factor = position_health_factor(position, btc_price)
        if factor.is_infinite():
            continue
        if worst is None or factor < worst_factor:
            worst = position
            worst_factor = factor
    return worst


def usd_to_btc(amount_usd: Decimal, btc_price: Decimal) -> Decimal:
    """Convert a USD amount to BTC at ``btc_price``, rounded up to 1 satoshi."""
    if btc_price <= 0:
        raise ValueError("BTC price must be positive")
    return (amount_usd / btc_price).quantize(Decimal("0.00000001"), rounding=ROUND_UP)
