"""Lending state persistence layer.

Provides the aiosqlite database manager with atomic transactions and the
typed store for users, loan positions, top-up transactions, price history
and notifications.
"""

from loanguard.data.database import LendingDatabase
from loanguard.data.store import LendingStore

__all__ = [
    "LendingDatabase",
    "LendingStore",
]
