"""Loan lifecycle -- creation, repayment, account settings.

Repayment reduces the outstanding principal and leaves collateral untouched.
The wallet is debited in the chosen currency; a BTC repayment is converted
from its USD amount at the current price (rounded up to one satoshi) before
the balance check.

CRITICAL: All monetary values use Decimal. Never use float.
"""

from decimal import Decimal

import aiosqlite

from loanguard.config import LendingSettings
from loanguard.data.database import LendingDatabase
from loanguard.data.store import LendingStore
from loanguard.exceptions import (
    InsufficientBalanceError,
    NotFoundError,
    PersistenceError,
    ValidationFailedError,
)
from loanguard.lending.health import usd_to_btc
from loanguard.lending.locks import KeyedLocks
from loanguard.lending.topup import (
    BALANCE_FIELDS,
    derived_position_fields,
    load_owned_position,
)
from loanguard.lending.validation import (
    parse_currency,
    parse_decimal,
    validate_amount,
    validate_non_negative,
)
from loanguard.logging import get_logger
from loanguard.market_data.price_feed import PriceFeed
from loanguard.models import (
    Currency,
    LoanPosition,
    NotificationType,
    TopUpTransaction,
    User,
)
from loanguard.notifications.sink import NotificationSink

logger = get_logger(__name__)


class LoanService:
    """Creates and repays loan positions and edits account settings.

    Shares its KeyedLocks with TopUpEngine so every wallet/position
    mutation of one user is serialised.
    """

    def __init__(
        self,
        database: LendingDatabase,
        store: LendingStore,
        price_feed: PriceFeed,
        notifier: NotificationSink,
        settings: LendingSettings | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._database = database
        self._store = store
        self._price_feed = price_feed
        self._notifier = notifier
        self._settings = settings or LendingSettings()
        self._locks = locks if locks is not None else KeyedLocks()

    async def create_loan_position(
        self,
        user_id: str,
        position_name: str,
        collateral_btc: Decimal | str,
        borrowed_amount: Decimal | str,
        collateral_usdt: Decimal | str = Decimal("0"),
    ) -> LoanPosition:
        """Open a new position at the default APR.

        BTC collateral must be positive: a loan backed by nothing but
        stablecoin is rejected rather than created with a price-independent
        health factor.
        """
        position_name = (position_name or "").strip()
        if not position_name:
            raise ValidationFailedError("positionName is required")
        collateral_btc = validate_amount(
            parse_decimal(collateral_btc, "collateralBtc"), Currency.BTC, "collateralBtc"
        )
        collateral_usdt = validate_non_negative(
            parse_decimal(collateral_usdt, "collateralUsdt"), "collateralUsdt"
        )
        if collateral_usdt > 0:
            validate_amount(collateral_usdt, Currency.USDT, "collateralUsdt")
        borrowed_amount = validate_amount(
            parse_decimal(borrowed_amount, "borrowedAmount"), Currency.USDT, "borrowedAmount"
        )

        btc_price = await self._price_feed.get_current_price()
        async with self._locks.hold(user_id):
            async with self._database.transaction():
                if await self._store.get_user(user_id) is None:
                    raise NotFoundError(f"User {user_id} not found")
                position = await self._store.create_position(
                    user_id=user_id,
                    position_name=position_name,
                    collateral_btc=collateral_btc,
                    collateral_usdt=collateral_usdt,
                    borrowed_amount=borrowed_amount,
                    apr=self._settings.default_apr,
                    is_protected=True,
                    **derived_position_fields(
                        collateral_btc,
                        collateral_usdt,
                        borrowed_amount,
                        btc_price,
                        self._settings,
                    ),
                )
                notification = await self._notifier.record(
                    user_id,
                    f"Loan Created: '{position_name}' opened with {borrowed_amount} "
                    f"borrowed against {collateral_btc} BTC.",
                    NotificationType.LOAN_CREATED,
                )

        await self._notifier.publish(notification)
        logger.info(
            "loan_created",
            user_id=user_id,
            position_id=position.id,
            collateral_btc=str(collateral_btc),
            borrowed_amount=str(borrowed_amount),
            health_factor=str(position.health_factor),
        )
        return position

    async def repay_loan(
        self,
        user_id: str,
        loan_position_id: str,
        amount: Decimal | str,
        currency: Currency | str,
    ) -> LoanPosition:
        """Repay ``amount`` USD of principal from the linked wallet.

        Raises:
            ValidationFailedError: amount <= 0, amount above the outstanding
                principal, or unsupported currency.
            InsufficientBalanceError: Wallet cannot cover the (converted) amount.
            NotFoundError: User or owned position missing.
        """
        currency = parse_currency(currency)
        amount = validate_amount(parse_decimal(amount, "amount"), Currency.USDT)
        btc_price = await self._price_feed.get_current_price()

        async with self._locks.hold(user_id):
            try:
                async with self._database.transaction():
                    user, position = await load_owned_position(
                        self._store, user_id, loan_position_id
                    )
                    if amount > position.borrowed_amount:
                        raise ValidationFailedError(
                            f"Repayment {amount} exceeds outstanding principal "
                            f"{position.borrowed_amount}"
                        )

                    debit = usd_to_btc(amount, btc_price) if currency is Currency.BTC else amount
                    balance = user.balance(currency)
                    if balance < debit:
                        raise InsufficientBalanceError(
                            f"Insufficient {currency.value} balance: have {balance}, need {debit}"
                        )
                    await self._store.update_user(
                        user_id, **{BALANCE_FIELDS[currency]: balance - debit}
                    )

                    borrowed_amount = position.borrowed_amount - amount
                    position = await self._store.update_position(
                        loan_position_id,
                        borrowed_amount=borrowed_amount,
                        **derived_position_fields(
                            position.collateral_btc,
                            position.collateral_usdt,
                            borrowed_amount,
                            btc_price,
                            self._settings,
                        ),
                    )
                    notification = await self._notifier.record(
                        user_id,
                        f"Repayment Received: Repaid {amount} on '{position.position_name}' "
                        f"using {debit} {currency.value}.",
                        NotificationType.REPAYMENT,
                    )
            except aiosqlite.Error as exc:
                logger.error(
                    "repayment_persistence_failed",
                    user_id=user_id,
                    loan_position_id=loan_position_id,
                    error=str(exc),
                )
                raise PersistenceError(f"Repayment could not be saved: {exc}") from exc

        await self._notifier.publish(notification)
        logger.info(
            "loan_repaid",
            user_id=user_id,
            loan_position_id=loan_position_id,
            amount=str(amount),
            debit=str(debit),
            currency=currency.value,
            borrowed_amount=str(position.borrowed_amount),
            health_factor=str(position.health_factor),
        )
        return position

    async def update_settings(
        self,
        user_id: str,
        auto_topup_enabled: bool | None = None,
        sms_alerts_enabled: bool | None = None,
        linked_wallet_balance_btc: Decimal | str | None = None,
        linked_wallet_balance_usdt: Decimal | str | None = None,
        sms_number: str | None = None,
    ) -> User:
        """Apply the provided settings; omitted (None) fields are left unchanged."""
        fields: dict[str, object] = {}
        if auto_topup_enabled is not None:
            fields["auto_topup_enabled"] = auto_topup_enabled
        if sms_alerts_enabled is not None:
            fields["sms_alerts_enabled"] = sms_alerts_enabled
        if sms_number is not None:
            fields["sms_number"] = sms_number
        for field, value, currency in (
            ("linked_wallet_balance_btc", linked_wallet_balance_btc, Currency.BTC),
            ("linked_wallet_balance_usdt", linked_wallet_balance_usdt, Currency.USDT),
        ):
            if value is None:
                continue
            balance = validate_non_negative(parse_decimal(value, field), field)
            if balance > 0:
                validate_amount(balance, currency, field)
            fields[field] = balance

        async with self._locks.hold(user_id):
            if not fields:
                user = await self._store.get_user(user_id)
            else:
                user = await self._store.update_user(user_id, **fields)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        logger.info("settings_updated", user_id=user_id, fields=sorted(fields))
        return user

    async def delete_loan_position(self, user_id: str, loan_position_id: str) -> None:
        """Remove a position. Its top-up records stay in the audit trail."""
        async with self._locks.hold(user_id):
            async with self._database.transaction():
                await load_owned_position(self._store, user_id, loan_position_id)
                await self._store.delete_position(loan_position_id)

    async def list_loan_positions(self, user_id: str) -> list[LoanPosition]:
        await self._require_user(user_id)
        return await self._store.list_positions(user_id)

    async def list_topup_transactions(
        self, user_id: str, limit: int = 20
    ) -> list[TopUpTransaction]:
        await self._require_user(user_id)
        return await self._store.list_topup_transactions(user_id, limit)

    async def _require_user(self, user_id: str) -> User:
        user = await self._store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user
