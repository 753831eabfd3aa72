"""
Fee calculator.

    fee   = amount * FEE_RATE   (0.0002, i.e. 0.02%)
    total = amount + fee

All arithmetic is Decimal; fee and total are quantized to two places with
ROUND_HALF_UP. Floats are never used, so calculate_fee(1000) is exactly
fee 0.20 / total 1000.20.

The card is credited `amount`; the payer is asked for `total`.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from fundcard.config import settings
from fundcard.exceptions import ValidationError

CENT = Decimal("0.01")


@dataclass(frozen=True)
class FeeBreakdown:
    amount: Decimal
    fee: Decimal
    total: Decimal


def _to_decimal(amount) -> Decimal:
    if isinstance(amount, float):
        # str() keeps the literal the caller wrote, not its binary expansion
        amount = str(amount)
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Amount is not a number: {amount!r}") from None
    if not value.is_finite():
        raise ValidationError("Amount must be finite")
    return value


def calculate_fee(amount, rate: Decimal | None = None) -> FeeBreakdown:
    """
    Compute the platform fee and total payable for `amount`.

    Args:
        amount: int, str or Decimal amount in the funding currency.
        rate: Override FEE_RATE.

    Returns:
        FeeBreakdown with fee and total rounded to two decimal places.
    """
    value = _to_decimal(amount)
    fee_rate = settings.FEE_RATE if rate is None else Decimal(rate)
    fee = (value * fee_rate).quantize(CENT, rounding=ROUND_HALF_UP)
    total = (value + fee).quantize(CENT, rounding=ROUND_HALF_UP)
    return FeeBreakdown(amount=value, fee=fee, total=total)


def validate_amount(amount) -> int:
    """
    Check a funding amount against MIN/MAX_FUNDING_AMOUNT.

    Returns:
        The amount as an int (whole minor units).

    Raises:
        ValidationError: If the amount is not a positive whole number or is
            outside the configured bounds.
    """
    if isinstance(amount, bool):
        raise ValidationError("Amount must be a number")
    value = _to_decimal(amount)
    if value != value.to_integral_value():
        raise ValidationError("Amount must be a whole number of minor units")
    if value < settings.MIN_FUNDING_AMOUNT:
        raise ValidationError(f"Minimum funding amount is {settings.MIN_FUNDING_AMOUNT}")
    if value > settings.MAX_FUNDING_AMOUNT:
        raise ValidationError(f"Maximum funding amount is {settings.MAX_FUNDING_AMOUNT}")
    return int(value)
