"""Custom exceptions for the lending backend.

Every domain error lives here so the data, lending and dashboard layers can
share them without circular imports. The HTTP layer maps each class to a
status code in loanguard.dashboard.app.
"""


class LendingError(Exception):
    """Base exception for all lending errors."""


class NotFoundError(LendingError):
    """Raised when a user, loan position or notification does not exist (or is not owned by the caller)."""


class ValidationFailedError(LendingError):
    """Raised when a request is rejected before any state is touched."""


class InsufficientBalanceError(ValidationFailedError):
    """Raised when the linked wallet cannot cover a debit."""


class UpstreamUnavailableError(LendingError):
    """Raised when the external market-data source fails or times out."""


class PersistenceError(LendingError):
    """Raised when the database cannot complete a write."""
