"""Top-up engine -- moves collateral into loan positions atomically.

A top-up credits the user's linked wallet, records an immutable transaction,
adds the same amount to the position's collateral, recomputes the health
factor and stores a success notification. All of it runs inside a single
database transaction under a per-user lock: either every sub-step lands or
none does. The notification is pushed to live clients only after commit.

CRITICAL: All monetary values use Decimal. Never use float.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import uuid4

import aiosqlite

from loanguard.config import LendingSettings
from loanguard.data.database import LendingDatabase
from loanguard.data.store import LendingStore
from loanguard.exceptions import (
    InsufficientBalanceError,
    LendingError,
    NotFoundError,
    PersistenceError,
    ValidationFailedError,
)
from loanguard.lending.cooldown import CooldownCache
from loanguard.lending.health import (
    compute_health_factor,
    liquidation_price,
    select_at_risk_position,
)
from loanguard.lending.locks import KeyedLocks
from loanguard.lending.validation import parse_currency, parse_decimal, validate_amount
from loanguard.logging import get_logger
from loanguard.market_data.price_feed import PriceFeed
from loanguard.models import (
    Currency,
    LoanPosition,
    Notification,
    NotificationType,
    RiskLevel,
    TopUpRequest,
    TopUpTransaction,
    TransactionKind,
    User,
)
from loanguard.notifications.sink import NotificationSink

logger = get_logger(__name__)

BALANCE_FIELDS = {
    Currency.BTC: "linked_wallet_balance_btc",
    Currency.USDT: "linked_wallet_balance_usdt",
}


def mock_tx_hash() -> str:
    """Reference hash for a simulated on-chain transfer."""
    return f"0x{uuid4().hex[:8]}"


def derived_position_fields(
    collateral_btc: Decimal,
    collateral_usdt: Decimal,
    borrowed_amount: Decimal,
    btc_price: Decimal,
    settings: LendingSettings,
) -> dict[str, Any]:
    """Health factor and liquidation price for the given position inputs."""
    return {
        "health_factor": compute_health_factor(
            collateral_btc, collateral_usdt, borrowed_amount, btc_price
        ),
        "liquidation_price": liquidation_price(
            collateral_btc,
            collateral_usdt,
            borrowed_amount,
            settings.liquidation_threshold,
        ),
    }


async def load_owned_position(
    store: LendingStore, user_id: str, loan_position_id: str
) -> tuple[User, LoanPosition]:
    """Load a user and one of their positions, raising NotFoundError otherwise.

    A position owned by another user is reported as missing.
    """
    user = await store.get_user(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    position = await store.get_position(loan_position_id)
    if position is None or position.user_id != user_id:
        raise NotFoundError(f"Loan position {loan_position_id} not found")
    return user, position


@dataclass
class TriggerResult:
    """Outcome of one risk signal delivered to the engine."""

    skipped: bool
    message: str | None = None
    auto_top_up: TopUpTransaction | None = None
    auto_top_up_error: str | None = None
    alert: Notification | None = None


class TopUpEngine:
    """Applies manual and automatic collateral top-ups.

    Args:
        database: Connection owning the transaction scope.
        store: Typed access to users, positions and transactions.
        price_feed: Source of the BTC price used for health recomputation.
        notifier: Records and pushes user notifications.
        settings: Auto top-up amount/currency, cooldown and thresholds.
        locks: Per-user locks. Pass the instance shared with LoanService so
            repayments and top-ups of one user never interleave.
        cooldown: Debounce cache for risk triggers.
    """

    def __init__(
        self,
        database: LendingDatabase,
        store: LendingStore,
        price_feed: PriceFeed,
        notifier: NotificationSink,
        settings: LendingSettings | None = None,
        locks: KeyedLocks | None = None,
        cooldown: CooldownCache | None = None,
    ) -> None:
        self._database = database
        self._store = store
        self._price_feed = price_feed
        self._notifier = notifier
        self._settings = settings or LendingSettings()
        self._locks = locks if locks is not None else KeyedLocks()
        self._cooldown = (
            cooldown
            if cooldown is not None
            else CooldownCache(self._settings.trigger_cooldown_seconds)
        )

    # ──────────────────────────────────────────────
    # Collateral mutations
    # ──────────────────────────────────────────────

    async def perform_top_up(self, request: TopUpRequest) -> TopUpTransaction:
        """Credit the wallet and the position collateral by the same amount.

        Raises:
            ValidationFailedError: Non-positive amount, unsupported currency
                or more decimals than the currency supports.
            NotFoundError: User missing, or position missing / owned by
                another user.
            PersistenceError: The database rejected a write. Nothing was
                applied.
        """
        return await self._pledge(
            user_id=request.user_id,
            loan_position_id=request.loan_position_id,
            amount=request.amount,
            currency=request.currency,
            is_automatic=request.is_automatic,
            kind=TransactionKind.TOPUP,
        )

    async def add_collateral(
        self,
        user_id: str,
        loan_position_id: str,
        amount: Decimal | str,
        currency: Currency | str,
    ) -> TopUpTransaction:
        """Move funds from the linked wallet into position collateral.

        Unlike perform_top_up the wallet is debited, so the user must hold
        at least ``amount`` (InsufficientBalanceError otherwise).
        """
        return await self._pledge(
            user_id=user_id,
            loan_position_id=loan_position_id,
            amount=amount,
            currency=currency,
            is_automatic=False,
            kind=TransactionKind.COLLATERAL_ADD,
        )

    async def _pledge(
        self,
        user_id: str,
        loan_position_id: str,
        amount: Decimal | str,
        currency: Currency | str,
        is_automatic: bool,
        kind: TransactionKind,
    ) -> TopUpTransaction:
        currency = parse_currency(currency)
        amount = validate_amount(parse_decimal(amount, "amount"), currency)
        btc_price = await self._price_feed.get_current_price()

        async with self._locks.hold(user_id):
            try:
                async with self._database.transaction():
                    user, position = await load_owned_position(
                        self._store, user_id, loan_position_id
                    )

                    wallet_delta = amount if kind is TransactionKind.TOPUP else -amount
                    new_balance = user.balance(currency) + wallet_delta
                    if new_balance < 0:
                        raise InsufficientBalanceError(
                            f"Insufficient {currency.value} balance: "
                            f"have {user.balance(currency)}, need {amount}"
                        )
                    await self._store.update_user(
                        user_id, **{BALANCE_FIELDS[currency]: new_balance}
                    )

                    transaction = await self._store.create_topup_transaction(
                        user_id=user_id,
                        loan_position_id=loan_position_id,
                        amount=amount,
                        currency=currency,
                        is_automatic=is_automatic,
                        tx_hash=mock_tx_hash(),
                        kind=kind,
                    )

                    collateral_btc = position.collateral_btc
                    collateral_usdt = position.collateral_usdt
                    if currency is Currency.BTC:
                        collateral_btc += amount
                    else:
                        collateral_usdt += amount
                    position = await self._store.update_position(
                        loan_position_id,
                        collateral_btc=collateral_btc,
                        collateral_usdt=collateral_usdt,
                        **derived_position_fields(
                            collateral_btc,
                            collateral_usdt,
                            position.borrowed_amount,
                            btc_price,
                            self._settings,
                        ),
                    )

                    notification = await self._notifier.record(
                        user_id,
                        _pledge_message(kind, is_automatic, amount, currency, position),
                        NotificationType.TOPUP_SUCCESS
                        if kind is TransactionKind.TOPUP
                        else NotificationType.COLLATERAL_ADDED,
                    )
            except aiosqlite.Error as exc:
                logger.error(
                    "topup_persistence_failed",
                    user_id=user_id,
                    loan_position_id=loan_position_id,
                    error=str(exc),
                )
                raise PersistenceError(f"Top-up could not be saved: {exc}") from exc

        await self._notifier.publish(notification)
        logger.info(
            "topup_completed",
            kind=kind.value,
            user_id=user_id,
            loan_position_id=loan_position_id,
            amount=str(amount),
            currency=currency.value,
            is_automatic=is_automatic,
            health_factor=str(position.health_factor),
            tx_hash=transaction.tx_hash,
        )
        return transaction

    # ──────────────────────────────────────────────
    # Risk trigger
    # ──────────────────────────────────────────────

    async def handle_risk_signal(
        self, user_id: str, risk_level: RiskLevel | str
    ) -> TriggerResult:
        """React to a risk reading for one user.

        Repeated readings of the same level for the same user within the
        cooldown window are skipped without side effects. Otherwise a high
        or medium-high reading tops up the user's weakest position (when
        auto top-up is enabled), and a price alert is always recorded.
        """
        risk_level = _parse_risk_level(risk_level)
        user = await self._store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")

        if not await self._cooldown.try_acquire((user_id, risk_level)):
            logger.info("risk_trigger_skipped", user_id=user_id, risk_level=risk_level.value)
            return TriggerResult(skipped=True)

        logger.info("risk_trigger_received", user_id=user_id, risk_level=risk_level.value)
        result = TriggerResult(skipped=False)

        if risk_level.triggers_auto_topup and user.auto_topup_enabled:
            await self._auto_top_up(user, result)

        alert_text = (
            f"AI Price Alert: BTC showing {risk_level.value} risk level. "
            "Consider adding collateral."
        )
        result.alert = await self._notifier.notify(
            user_id, alert_text, NotificationType.PRICE_ALERT
        )
        if user.sms_alerts_enabled:
            await self._notifier.send_sms(user, alert_text)

        result.message = "Server-side notifications processed."
        return result

    async def _auto_top_up(self, user: User, result: TriggerResult) -> None:
        btc_price = await self._price_feed.get_current_price()
        positions = await self._store.list_positions(user.id)
        target = select_at_risk_position(positions, btc_price)
        if target is None:
            logger.info("auto_topup_no_position", user_id=user.id)
            return

        amount = self._settings.auto_topup_amount
        currency = Currency(self._settings.auto_topup_currency)
        try:
            result.auto_top_up = await self.perform_top_up(
                TopUpRequest(
                    user_id=user.id,
                    loan_position_id=target.id,
                    amount=amount,
                    currency=currency,
                    is_automatic=True,
                )
            )
        except LendingError as exc:
            logger.warning(
                "auto_topup_failed",
                user_id=user.id,
                loan_position_id=target.id,
                error=str(exc),
            )
            result.auto_top_up_error = str(exc)
            await self._notifier.notify(
                user.id,
                f"Auto Top-Up Failed: Could not add {amount} {currency.value} "
                f"collateral to '{target.position_name}'. {exc}",
                NotificationType.TOPUP_FAILED,
            )


def _parse_risk_level(value: RiskLevel | str) -> RiskLevel:
    if isinstance(value, RiskLevel):
        return value
    try:
        return RiskLevel(value)
    except ValueError:
        raise ValidationFailedError(f"Unknown risk level: {value}") from None


def _pledge_message(
    kind: TransactionKind,
    is_automatic: bool,
    amount: Decimal,
    currency: Currency,
    position: LoanPosition,
) -> str:
    if kind is TransactionKind.COLLATERAL_ADD:
        return (
            f"Collateral Added: Moved {amount} {currency.value} from your wallet "
            f"to '{position.position_name}'."
        )
    mode = "Auto" if is_automatic else "Manual"
    return (
        f"{mode} Top-Up Success: Added {amount} {currency.value} collateral "
        f"to '{position.position_name}'."
    )
