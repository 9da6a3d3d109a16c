"""Shared data models for the lending backend.

CRITICAL: All monetary values use Decimal. Never use float for prices, balances,
collateral or debt. Values are persisted as TEXT and restored as Decimal.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


class Currency(str, Enum):
    """Assets a wallet can hold and a position can pledge."""

    BTC = "BTC"
    USDT = "USDT"

    @property
    def quantum(self) -> Decimal:
        """Smallest representable amount (BTC 8 dp, USDT 2 dp)."""
        return _QUANTA[self]


_QUANTA = {
    Currency.BTC: Decimal("0.00000001"),
    Currency.USDT: Decimal("0.01"),
}


class HealthStatus(str, Enum):
    """Advisory health band for a position or portfolio."""

    SAFE = "safe"
    WARNING = "warning"
    DANGER = "danger"


class RiskLevel(str, Enum):
    """Risk levels emitted by a risk signal provider."""

    LOW = "low"
    MEDIUM_LOW = "medium-low"
    MEDIUM = "medium"
    MEDIUM_HIGH = "medium-high"
    HIGH = "high"

    @property
    def triggers_auto_topup(self) -> bool:
        return self in (RiskLevel.HIGH, RiskLevel.MEDIUM_HIGH)


class NotificationType(str, Enum):
    """Kinds of user-visible notifications."""

    TOPUP_SUCCESS = "topup_success"
    TOPUP_FAILED = "topup_failed"
    COLLATERAL_ADDED = "collateral_added"
    REPAYMENT = "repayment"
    LOAN_CREATED = "loan_created"
    PRICE_ALERT = "price_alert"


class TransactionKind(str, Enum):
    """How collateral entered a position."""

    TOPUP = "topup"  # wallet credited, then pledged
    COLLATERAL_ADD = "collateral_add"  # pledged out of the existing wallet balance


@dataclass
class User:
    """A wallet owner. Owns loan positions, transactions and notifications."""

    id: str
    username: str
    wallet_address: str | None = None
    linked_wallet_balance_btc: Decimal = Decimal("0")
    linked_wallet_balance_usdt: Decimal = Decimal("0")
    auto_topup_enabled: bool = True
    sms_alerts_enabled: bool = False
    sms_number: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def balance(self, currency: Currency) -> Decimal:
        """Linked wallet balance held in the given currency."""
        if currency is Currency.BTC:
            return self.linked_wallet_balance_btc
        return self.linked_wallet_balance_usdt


@dataclass
class LoanPosition:
    """One borrow/collateral pairing owned by a user.

    health_factor is derived state: recomputed from collateral, debt and the
    current price on every mutation. Decimal("Infinity") means no debt.
    """

    id: str
    user_id: str
    position_name: str
    collateral_btc: Decimal
    collateral_usdt: Decimal
    borrowed_amount: Decimal
    apr: Decimal
    health_factor: Decimal
    is_protected: bool = True
    liquidation_price: Decimal | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)


@dataclass
class TopUpTransaction:
    """Immutable audit record of one collateral addition."""

    id: str
    user_id: str
    loan_position_id: str
    amount: Decimal
    currency: Currency
    is_automatic: bool
    tx_hash: str
    status: str = "completed"
    kind: TransactionKind = TransactionKind.TOPUP
    created_at: float = field(default_factory=time.time)


@dataclass
class PriceSample:
    """A single price observation. Append-only."""

    symbol: str
    price: Decimal
    source: str
    timestamp_ms: int
    id: int | None = None


@dataclass
class PriceChange:
    """Current price and its delta against the price 24h ago.

    is_synthetic is True when no 24h-old sample existed and the past price
    was approximated with the configured fallback factor.
    """

    price: Decimal
    change: Decimal
    change_percent: Decimal
    is_synthetic: bool = False


@dataclass
class Notification:
    """A user-visible alert. Only is_read ever changes after creation."""

    id: str
    user_id: str
    message: str
    type: NotificationType
    is_read: bool = False
    created_at: float = field(default_factory=time.time)


@dataclass
class RiskSignal:
    """Output of a risk signal provider."""

    risk_level: RiskLevel
    confidence: Decimal


@dataclass
class TopUpRequest:
    """Input to TopUpEngine.perform_top_up."""

    user_id: str
    loan_position_id: str
    amount: Decimal
    currency: Currency
    is_automatic: bool = False
