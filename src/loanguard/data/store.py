"""Typed SQLite read/write abstraction for lending state.

Provides LendingStore with typed methods for users (wallet ledger), loan
positions, top-up transactions, price history and notifications. All SQL is
isolated behind this interface.

CRITICAL: All monetary values stored as TEXT in SQLite, restored as Decimal on read.
"""

import time
from decimal import Decimal
from typing import Any
from uuid import uuid4

from loanguard.data.database import LendingDatabase
from loanguard.logging import get_logger
from loanguard.models import (
    Currency,
    LoanPosition,
    Notification,
    NotificationType,
    PriceSample,
    TopUpTransaction,
    TransactionKind,
    User,
)

logger = get_logger(__name__)

_USER_COLUMNS = (
    "id, username, wallet_address, linked_wallet_balance_btc, "
    "linked_wallet_balance_usdt, auto_topup_enabled, sms_alerts_enabled, "
    "sms_number, created_at, updated_at"
)
_POSITION_COLUMNS = (
    "id, user_id, position_name, collateral_btc, collateral_usdt, "
    "borrowed_amount, apr, health_factor, is_protected, liquidation_price, "
    "created_at, updated_at"
)
_TRANSACTION_COLUMNS = (
    "id, user_id, loan_position_id, amount, currency, is_automatic, "
    "tx_hash, status, kind, created_at"
)
_NOTIFICATION_COLUMNS = "id, user_id, message, type, is_read, created_at"

_UPDATABLE_USER_FIELDS = frozenset({
    "wallet_address",
    "linked_wallet_balance_btc",
    "linked_wallet_balance_usdt",
    "auto_topup_enabled",
    "sms_alerts_enabled",
    "sms_number",
})
_UPDATABLE_POSITION_FIELDS = frozenset({
    "position_name",
    "collateral_btc",
    "collateral_usdt",
    "borrowed_amount",
    "apr",
    "health_factor",
    "is_protected",
    "liquidation_price",
})


def _new_id() -> str:
    return uuid4().hex


def _to_db(value: Any) -> Any:
    """Convert a Python value to its SQLite column representation."""
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, Decimal):
        return str(value)
    return value


def _row_to_user(row: Any) -> User:
    return User(
        id=row[0],
        username=row[1],
        wallet_address=row[2],
        linked_wallet_balance_btc=Decimal(row[3]),
        linked_wallet_balance_usdt=Decimal(row[4]),
        auto_topup_enabled=bool(row[5]),
        sms_alerts_enabled=bool(row[6]),
        sms_number=row[7],
        created_at=row[8],
        updated_at=row[9],
    )


def _row_to_position(row: Any) -> LoanPosition:
    return LoanPosition(
        id=row[0],
        user_id=row[1],
        position_name=row[2],
        collateral_btc=Decimal(row[3]),
        collateral_usdt=Decimal(row[4]),
        borrowed_amount=Decimal(row[5]),
        apr=Decimal(row[6]),
        health_factor=Decimal(row[7]),
        is_protected=bool(row[8]),
        liquidation_price=Decimal(row[9]) if row[9] is not None else None,
        created_at=row[10],
        updated_at=row[11],
    )


def _row_to_transaction(row: Any) -> TopUpTransaction:
    return TopUpTransaction(
        id=row[0],
        user_id=row[1],
        loan_position_id=row[2],
        amount=Decimal(row[3]),
        currency=Currency(row[4]),
        is_automatic=bool(row[5]),
        tx_hash=row[6],
        status=row[7],
        kind=TransactionKind(row[8]),
        created_at=row[9],
    )


def _row_to_price(row: Any) -> PriceSample:
    return PriceSample(
        id=row[0],
        symbol=row[1],
        price=Decimal(row[2]),
        source=row[3],
        timestamp_ms=row[4],
    )


def _row_to_notification(row: Any) -> Notification:
    return Notification(
        id=row[0],
        user_id=row[1],
        message=row[2],
        type=NotificationType(row[3]),
        is_read=bool(row[4]),
        created_at=row[5],
    )


class LendingStore:
    """Async SQLite store for the wallet ledger, positions and audit trails.

    Wraps LendingDatabase with typed read/write methods. Every write runs
    inside database.transaction(), so a write issued by a caller that already
    holds a transaction becomes part of that caller's atomic unit.

    Usage:
        async with LendingDatabase("data/loanguard.db") as database:
            store = LendingStore(database)
            user = await store.get_user(user_id)
    """

    def __init__(self, database: LendingDatabase) -> None:
        self._database = database

    @property
    def database(self) -> LendingDatabase:
        return self._database

    # ──────────────────────────────────────────────
    # Users / wallet ledger
    # ──────────────────────────────────────────────

    async def create_user(
        self,
        username: str,
        wallet_address: str | None = None,
        linked_wallet_balance_btc: Decimal = Decimal("0"),
        linked_wallet_balance_usdt: Decimal = Decimal("0"),
        auto_topup_enabled: bool = True,
        sms_alerts_enabled: bool = False,
        sms_number: str | None = None,
    ) -> User:
        """Insert a new user and return it."""
        now = time.time()
        user = User(
            id=_new_id(),
            username=username,
            wallet_address=wallet_address,
            linked_wallet_balance_btc=linked_wallet_balance_btc,
            linked_wallet_balance_usdt=linked_wallet_balance_usdt,
            auto_topup_enabled=auto_topup_enabled,
            sms_alerts_enabled=sms_alerts_enabled,
            sms_number=sms_number,
            created_at=now,
            updated_at=now,
        )
        async with self._database.transaction() as db:
            await db.execute(
                f"INSERT INTO users ({_USER_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    user.id,
                    user.username,
                    user.wallet_address,
                    str(user.linked_wallet_balance_btc),
                    str(user.linked_wallet_balance_usdt),
                    _to_db(user.auto_topup_enabled),
                    _to_db(user.sms_alerts_enabled),
                    user.sms_number,
                    user.created_at,
                    user.updated_at,
                ),
            )
        logger.info("user_created", user_id=user.id, username=username)
        return user

    async def get_user(self, user_id: str) -> User | None:
        async with self._database.read() as db:
            cursor = await db.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,)
            )
            row = await cursor.fetchone()
        return _row_to_user(row) if row is not None else None

    async def get_user_by_username(self, username: str) -> User | None:
        async with self._database.read() as db:
            cursor = await db.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE username = ?", (username,)
            )
            row = await cursor.fetchone()
        return _row_to_user(row) if row is not None else None

    async def list_users(self) -> list[User]:
        async with self._database.read() as db:
            cursor = await db.execute(
                f"SELECT {_USER_COLUMNS} FROM users ORDER BY created_at ASC"
            )
            rows = await cursor.fetchall()
        return [_row_to_user(row) for row in rows]

    async def update_user(self, user_id: str, **fields: Any) -> User | None:
        """Update the given columns of a user and return the new row.

        Returns None if the user does not exist.
        Raises ValueError for columns that may not be updated.
        """
        return await self._update_row(
            "users", _UPDATABLE_USER_FIELDS, user_id, fields, self.get_user
        )

    # ──────────────────────────────────────────────
    # Loan positions
    # ──────────────────────────────────────────────

    async def create_position(
        self,
        user_id: str,
        position_name: str,
        collateral_btc: Decimal,
        collateral_usdt: Decimal,
        borrowed_amount: Decimal,
        apr: Decimal,
        health_factor: Decimal,
        liquidation_price: Decimal | None = None,
        is_protected: bool = True,
    ) -> LoanPosition:
        """Insert a new loan position and return it."""
        now = time.time()
        position = LoanPosition(
            id=_new_id(),
            user_id=user_id,
            position_name=position_name,
            collateral_btc=collateral_btc,
            collateral_usdt=collateral_usdt,
            borrowed_amount=borrowed_amount,
            apr=apr,
            health_factor=health_factor,
            is_protected=is_protected,
            liquidation_price=liquidation_price,
            created_at=now,
            updated_at=now,
        )
        async with self._database.transaction() as db:
            await db.execute(
                f"INSERT INTO loan_positions ({_POSITION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    position.id,
                    position.user_id,
                    position.position_name,
                    str(position.collateral_btc),
                    str(position.collateral_usdt),
                    str(position.borrowed_amount),
                    str(position.apr),
                    str(position.health_factor),
                    _to_db(position.is_protected),
                    _to_db(position.liquidation_price),
                    position.created_at,
                    position.updated_at,
                ),
            )
        logger.info("loan_position_saved", position_id=position.id, user_id=user_id)
        return position

    async def get_position(self, position_id: str) -> LoanPosition | None:
        async with self._database.read() as db:
            cursor = await db.execute(
                f"SELECT {_POSITION_COLUMNS} FROM loan_positions WHERE id = ?",
                (position_id,),
            )
            row = await cursor.fetchone()
        return _row_to_position(row) if row is not None else None

    async def list_positions(self, user_id: str) -> list[LoanPosition]:
        """All positions owned by a user, oldest first."""
        async with self._database.read() as db:
            cursor = await db.execute(
                f"SELECT {_POSITION_COLUMNS} FROM loan_positions "
                "WHERE user_id = ? ORDER BY created_at ASC, rowid ASC",
                (user_id,),
            )
            rows = await cursor.fetchall()
        return [_row_to_position(row) for row in rows]

    async def update_position(self, position_id: str, **fields: Any) -> LoanPosition | None:
        """Update the given columns of a position and return the new row."""
        return await self._update_row(
            "loan_positions",
            _UPDATABLE_POSITION_FIELDS,
            position_id,
            fields,
            self.get_position,
        )

    async def delete_position(self, position_id: str) -> bool:
        """Delete a position, leaving its top-up records intact. False if absent."""
        async with self._database.transaction() as db:
            cursor = await db.execute(
                "DELETE FROM loan_positions WHERE id = ?", (position_id,)
            )
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("loan_position_deleted", position_id=position_id)
        return deleted

    # ──────────────────────────────────────────────
    # Top-up transactions
    # ──────────────────────────────────────────────

    async def create_topup_transaction(
        self,
        user_id: str,
        loan_position_id: str,
        amount: Decimal,
        currency: Currency,
        is_automatic: bool,
        tx_hash: str,
        status: str = "completed",
        kind: TransactionKind = TransactionKind.TOPUP,
    ) -> TopUpTransaction:
        """Append an immutable top-up record."""
        transaction = TopUpTransaction(
            id=_new_id(),
            user_id=user_id,
            loan_position_id=loan_position_id,
            amount=amount,
            currency=currency,
            is_automatic=is_automatic,
            tx_hash=tx_hash,
            status=status,
            kind=kind,
            created_at=time.time(),
        )
        async with self._database.transaction() as db:
            await db.execute(
                f"INSERT INTO topup_transactions ({_TRANSACTION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    transaction.id,
                    transaction.user_id,
                    transaction.loan_position_id,
                    str(transaction.amount),
                    transaction.currency.value,
                    _to_db(transaction.is_automatic),
                    transaction.tx_hash,
                    transaction.status,
                    transaction.kind.value,
                    transaction.created_at,
                ),
            )
        return transaction

    async def list_topup_transactions(
        self, user_id: str, limit: int = 20
    ) -> list[TopUpTransaction]:
        """Most recent top-up records for a user, newest first."""
        async with self._database.read() as db:
            cursor = await db.execute(
                f"SELECT {_TRANSACTION_COLUMNS} FROM topup_transactions "
                "WHERE user_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (user_id, limit),
            )
            rows = await cursor.fetchall()
        return [_row_to_transaction(row) for row in rows]

    async def count_topup_transactions(self, loan_position_id: str) -> int:
        async with self._database.read() as db:
            cursor = await db.execute(
                "SELECT COUNT(*) FROM topup_transactions WHERE loan_position_id = ?",
                (loan_position_id,),
            )
            return (await cursor.fetchone())[0]

    # ──────────────────────────────────────────────
    # Price history
    # ──────────────────────────────────────────────

    async def insert_price(
        self,
        symbol: str,
        price: Decimal,
        source: str,
        timestamp_ms: int | None = None,
    ) -> PriceSample:
        """Append a price sample. Defaults to the current wall-clock time."""
        if timestamp_ms is None:
            timestamp_ms = int(time.time() * 1000)
        async with self._database.transaction() as db:
            cursor = await db.execute(
                "INSERT INTO price_history (symbol, price, source, timestamp_ms) "
                "VALUES (?, ?, ?, ?)",
                (symbol, str(price), source, timestamp_ms),
            )
        sample = PriceSample(
            id=cursor.lastrowid,
            symbol=symbol,
            price=price,
            source=source,
            timestamp_ms=timestamp_ms,
        )
        logger.debug("price_sample_inserted", symbol=symbol, price=str(price), source=source)
        return sample

    async def get_latest_price(self, symbol: str) -> PriceSample | None:
        async with self._database.read() as db:
            cursor = await db.execute(
                "SELECT id, symbol, price, source, timestamp_ms FROM price_history "
                "WHERE symbol = ? ORDER BY timestamp_ms DESC, id DESC LIMIT 1",
                (symbol,),
            )
            row = await cursor.fetchone()
        return _row_to_price(row) if row is not None else None

    async def get_past_price(
        self, symbol: str, age_ms: int, now_ms: int | None = None
    ) -> PriceSample | None:
        """Most recent sample with timestamp at or before (now - age_ms)."""
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        async with self._database.read() as db:
            cursor = await db.execute(
                "SELECT id, symbol, price, source, timestamp_ms FROM price_history "
                "WHERE symbol = ? AND timestamp_ms <= ? "
                "ORDER BY timestamp_ms DESC, id DESC LIMIT 1",
                (symbol, now_ms - age_ms),
            )
            row = await cursor.fetchone()
        return _row_to_price(row) if row is not None else None

    async def get_price_history(self, symbol: str, limit: int = 100) -> list[PriceSample]:
        """Most recent samples, returned oldest first (chart order)."""
        async with self._database.read() as db:
            cursor = await db.execute(
                "SELECT id, symbol, price, source, timestamp_ms FROM price_history "
                "WHERE symbol = ? ORDER BY timestamp_ms DESC, id DESC LIMIT ?",
                (symbol, limit),
            )
            rows = await cursor.fetchall()
        return [_row_to_price(row) for row in reversed(rows)]

    # ──────────────────────────────────────────────
    # Notifications
    # ──────────────────────────────────────────────

    async def create_notification(
        self, user_id: str, message: str, type: NotificationType
    ) -> Notification:
        notification = Notification(
            id=_new_id(),
            user_id=user_id,
            message=message,
            type=type,
            is_read=False,
            created_at=time.time(),
        )
        async with self._database.transaction() as db:
            await db.execute(
                f"INSERT INTO notifications ({_NOTIFICATION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    notification.id,
                    notification.user_id,
                    notification.message,
                    notification.type.value,
                    0,
                    notification.created_at,
                ),
            )
        return notification

    async def list_notifications(self, user_id: str, limit: int = 20) -> list[Notification]:
        """Most recent notifications for a user, newest first."""
        async with self._database.read() as db:
            cursor = await db.execute(
                f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications "
                "WHERE user_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (user_id, limit),
            )
            rows = await cursor.fetchall()
        return [_row_to_notification(row) for row in rows]

    async def mark_notification_read(
        self, user_id: str, notification_id: str
    ) -> Notification | None:
        """Flip is_read on a notification owned by user_id."""
        async with self._database.transaction() as db:
            cursor = await db.execute(
                "UPDATE notifications SET is_read = 1 WHERE id = ? AND user_id = ?",
                (notification_id, user_id),
            )
            if cursor.rowcount == 0:
                return None
            cursor = await db.execute(
                f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications WHERE id = ?",
                (notification_id,),
            )
            row = await cursor.fetchone()
        return _row_to_notification(row)

    # ──────────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────────

    async def _update_row(
        self,
        table: str,
        allowed: frozenset[str],
        row_id: str,
        fields: dict[str, Any],
        reload: Any,
    ) -> Any:
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update {table} columns: {sorted(unknown)}")

        assignments = [f"{name} = ?" for name in fields]
        assignments.append("updated_at = ?")
        params = [_to_db(value) for value in fields.values()]
        params.extend([time.time(), row_id])

        async with self._database.transaction() as db:
            cursor = await db.execute(
                f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
            if cursor.rowcount == 0:
                return None
            return await reload(row_id)
