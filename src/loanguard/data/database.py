"""Async SQLite database manager for lending state.

Uses aiosqlite for non-blocking database operations with WAL mode. The
connection runs in autocommit mode; multi-statement units of work go through
transaction(), which serialises writers on the shared connection. Plain reads
go through read() so they never observe another task's open transaction.
"""

import asyncio
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Self

import aiosqlite

from loanguard.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    username TEXT NOT NULL UNIQUE,
    wallet_address TEXT,
    linked_wallet_balance_btc TEXT NOT NULL DEFAULT '0',
    linked_wallet_balance_usdt TEXT NOT NULL DEFAULT '0',
    auto_topup_enabled INTEGER NOT NULL DEFAULT 1,
    sms_alerts_enabled INTEGER NOT NULL DEFAULT 0,
    sms_number TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS loan_positions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    position_name TEXT NOT NULL,
    collateral_btc TEXT NOT NULL,
    collateral_usdt TEXT NOT NULL DEFAULT '0',
    borrowed_amount TEXT NOT NULL,
    apr TEXT NOT NULL,
    health_factor TEXT NOT NULL,
    is_protected INTEGER NOT NULL DEFAULT 1,
    liquidation_price TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS topup_transactions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    loan_position_id TEXT NOT NULL,  -- kept after the position is deleted
    amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    is_automatic INTEGER NOT NULL DEFAULT 0,
    tx_hash TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'completed',
    kind TEXT NOT NULL DEFAULT 'topup',
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS price_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    price TEXT NOT NULL,
    source TEXT NOT NULL,
    timestamp_ms INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    message TEXT NOT NULL,
    type TEXT NOT NULL,
    is_read INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_positions_user
    ON loan_positions(user_id, created_at);

CREATE INDEX IF NOT EXISTS idx_topups_user
    ON topup_transactions(user_id, created_at);

CREATE INDEX IF NOT EXISTS idx_price_symbol_ts
    ON price_history(symbol, timestamp_ms);

CREATE INDEX IF NOT EXISTS idx_notifications_user
    ON notifications(user_id, created_at);
"""

# Set while the current task holds the write lock, so nested
# transaction() calls join the outer unit instead of deadlocking.
_in_transaction: ContextVar[bool] = ContextVar("loanguard_in_transaction", default=False)


class LendingDatabase:
    """Async SQLite connection manager for users, positions and ledgers.

    Usage:
        async with LendingDatabase("data/loanguard.db") as database:
            async with database.transaction() as db:
                await db.execute("UPDATE ...")
                await db.execute("INSERT ...")
    """

    def __init__(self, db_path: str = "data/loanguard.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises RuntimeError if not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    @property
    def in_transaction(self) -> bool:
        """Whether the calling task is inside transaction()."""
        return _in_transaction.get()

    async def connect(self) -> None:
        """Open the connection, configure pragmas, and create the schema.

        Creates the parent directory if it does not exist.
        """
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path, isolation_level=None)

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA foreign_keys=ON")

        await self._create_tables()
        await self._ensure_schema_version()

        logger.info("lending_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the database connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("lending_db_closed", db_path=self._db_path)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block as one atomic unit: everything commits or nothing does.

        Writers are serialised through an asyncio.Lock because all coroutines
        share a single connection. Re-entrant within the same task.
        """
        if _in_transaction.get():
            yield self.db
            return

        async with self._write_lock:
            token = _in_transaction.set(True)
            try:
                await self.db.execute("BEGIN IMMEDIATE")
                try:
                    yield self.db
                except BaseException:
                    await self.db.rollback()
                    logger.debug("lending_db_rolled_back")
                    raise
                await self.db.commit()
            finally:
                _in_transaction.reset(token)

    @asynccontextmanager
    async def read(self) -> AsyncIterator[aiosqlite.Connection]:
        """Connection for reads that must only see committed state.

        Inside transaction() the caller's own unit is joined. Otherwise the
        write lock is held for the read, so another task's open BEGIN
        IMMEDIATE on the shared connection is never visible.
        """
        if _in_transaction.get():
            yield self.db
            return

        async with self._write_lock:
            yield self.db

    async def _create_tables(self) -> None:
        """Create all tables and indexes if they do not exist."""
        assert self._connection is not None
        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.executescript(_CREATE_INDEXES_SQL)

    async def _ensure_schema_version(self) -> None:
        """Insert schema version if not already set."""
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT version FROM schema_version LIMIT 1"
        )
        row = await cursor.fetchone()
        if row is None:
            await self._connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            logger.info("schema_version_set", version=SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        """Async context manager exit."""
        await self.close()
