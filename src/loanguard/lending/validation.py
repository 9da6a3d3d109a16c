"""Request validation shared by the top-up engine and the loan service."""

from decimal import Decimal, InvalidOperation

from loanguard.exceptions import ValidationFailedError
from loanguard.models import Currency


def parse_currency(value: Currency | str) -> Currency:
    """Coerce a currency symbol, rejecting anything but BTC and USDT."""
    if isinstance(value, Currency):
        return value
    try:
        return Currency(str(value).upper())
    except ValueError:
        raise ValidationFailedError(f"Unsupported currency: {value}") from None


def parse_decimal(value: Decimal | str | int, field: str) -> Decimal:
    """Parse a finite decimal. Floats are not accepted for money."""
    if isinstance(value, float):
        raise ValidationFailedError(f"{field} must be a decimal string, not a float")
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationFailedError(f"{field} is not a valid decimal: {value!r}") from None
    if not amount.is_finite():
        raise ValidationFailedError(f"{field} must be finite")
    return amount


def validate_amount(amount: Decimal, currency: Currency, field: str = "amount") -> Decimal:
    """Require a positive amount no finer than the currency's smallest unit."""
    if amount <= 0:
        raise ValidationFailedError(f"{field} must be positive")
    if amount.quantize(currency.quantum) != amount:
        raise ValidationFailedError(
            f"{field} has more decimal places than {currency.value} supports"
        )
    return amount


def validate_non_negative(amount: Decimal, field: str) -> Decimal:
    if amount < 0:
        raise ValidationFailedError(f"{field} must not be negative")
    return amount
