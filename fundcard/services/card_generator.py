"""
Card number generator — Luhn-valid numbers, CVCs, expiries, and masking.

Numbers are 16 digits: one brand digit (4 for Visa-style, 5 for
Mastercard-style), 14 random digits, and a Luhn check digit. All randomness
comes from the `secrets` module.

The generator does not check new numbers against existing cards. Two cards
drawing the same number is possible in principle; nothing here prevents it.
"""

import secrets
from datetime import datetime, timezone

from fundcard.config import settings
from fundcard.exceptions import InvalidCardNumberError
from fundcard.models.card import CardBrand

CARD_NUMBER_LENGTH = 16
CVC_LENGTH = 3

BRAND_PREFIX = {
    CardBrand.VISA: "4",
    CardBrand.MASTERCARD: "5",
}
PREFIX_BRAND = {prefix: brand for brand, prefix in BRAND_PREFIX.items()}


def _random_digits(count: int) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(count))


def luhn_check_digit(partial: str) -> str:
    """
    Compute the Luhn check digit to append to `partial`.

    Walking from the right of the partial number, every first, third, ...
    digit is doubled (it will sit in an even position once the check digit
    is appended).
    """
    total = 0
    for index, char in enumerate(reversed(partial)):
        digit = int(char)
        if index % 2 == 0:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return str((10 - total % 10) % 10)


def is_luhn_valid(number: str) -> bool:
    """True if `number` is all digits and its last digit is the Luhn check digit."""
    if not number or not number.isdigit() or len(number) < 2:
        return False
    return luhn_check_digit(number[:-1]) == number[-1]


def generate_number(brand: CardBrand = CardBrand.VISA) -> str:
    """Generate a 16-digit, Luhn-valid card number for `brand`."""
    partial = BRAND_PREFIX[brand] + _random_digits(CARD_NUMBER_LENGTH - 2)
    return partial + luhn_check_digit(partial)


def generate_cvc() -> str:
    return _random_digits(CVC_LENGTH)


def generate_expiry(months_ahead: int | None = None, now: datetime | None = None) -> str:
    """
    Expiry as "MM/YY", `months_ahead` calendar months after `now`.

    Defaults to CARD_EXPIRY_MONTHS (36) from the current UTC time.
    """
    months = settings.CARD_EXPIRY_MONTHS if months_ahead is None else months_ahead
    now = now or datetime.now(timezone.utc)
    month_index = now.month - 1 + months
    year = now.year + month_index // 12
    month = month_index % 12 + 1
    return f"{month:02d}/{year % 100:02d}"


def mask_number(number: str) -> str:
    """
    Display-safe form of a card number: "****" plus the last four digits.

    Raises:
        InvalidCardNumberError: If `number` is not exactly 16 digits.
    """
    if len(number) != CARD_NUMBER_LENGTH or not number.isdigit():
        raise InvalidCardNumberError()
    return "****" + number[-4:]


def brand_for_number(number: str) -> CardBrand:
    """Brand encoded by the leading digit."""
    try:
        return PREFIX_BRAND[number[:1]]
    except KeyError:
        raise InvalidCardNumberError(f"Unknown card brand prefix: {number[:1]!r}") from None


def _expiry_end(expiry: str) -> datetime:
    """First instant after the expiry month, in UTC."""
    try:
        month_str, year_str = expiry.split("/")
        month, year = int(month_str), 2000 + int(year_str)
    except ValueError:
        raise InvalidCardNumberError(f"Invalid expiry: {expiry!r}") from None
    if not 1 <= month <= 12:
        raise InvalidCardNumberError(f"Invalid expiry: {expiry!r}")
    if month == 12:
        return datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(year, month + 1, 1, tzinfo=timezone.utc)


def is_card_valid(expiry: str, is_active: bool = True, now: datetime | None = None) -> bool:
    """A card is usable while active and until the end of its expiry month."""
    now = now or datetime.now(timezone.utc)
    return is_active and now < _expiry_end(expiry)


def days_until_expiry(expiry: str, now: datetime | None = None) -> int:
    """Whole days left before the card expires; 0 once expired."""
    now = now or datetime.now(timezone.utc)
    remaining = _expiry_end(expiry) - now
    return max(remaining.days, 0)
