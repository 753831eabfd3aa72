"""
VirtualCard model — a prepaid virtual card materialized after verified funding.

A card is created exactly once per successful issuance FundingIntent
(UNIQUE funding_reference). It is never hard-deleted: deactivation flips
is_active to False and keeps the row for audit.

Encryption strategy:
  - encrypted_number: Full 16-digit number, AES-256-GCM under the owner's
    session-derived key, stored as base64(nonce || ciphertext || tag)
  - encrypted_cvc: 3-digit CVC, same scheme
  - masked_number: "****" + last four digits, derived once at creation

The derived key itself is never stored anywhere; only a caller holding a
key derived for owner_id can decrypt the sensitive columns.

Monetary columns are integers in the currency's minor units. CHECK
constraints back the service-level rules:
  balance >= 0, current_spend >= 0, current_spend <= spending_limit
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fundcard.database import Base


class CardBrand(str, enum.Enum):
    """Card brand, encoded by the leading digit of the number."""
    VISA = "visa"               # leading 4
    MASTERCARD = "mastercard"   # leading 5


class VirtualCard(Base):
    __tablename__ = "virtual_cards"

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_virtual_cards_non_negative_balance"),
        CheckConstraint("current_spend >= 0", name="ck_virtual_cards_non_negative_spend"),
        CheckConstraint("spending_limit >= 0", name="ck_virtual_cards_non_negative_limit"),
        CheckConstraint(
            "current_spend <= spending_limit",
            name="ck_virtual_cards_spend_within_limit",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # Opaque identity reference (e.g. a wallet address)
    owner_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        index=True,
    )

    card_name: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    encrypted_number: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    encrypted_cvc: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    # "****1234" — immutable after creation
    masked_number: Mapped[str] = mapped_column(
        String(8),
        nullable=False,
    )

    # "MM/YY"
    expiry: Mapped[str] = mapped_column(
        String(5),
        nullable=False,
    )

    brand: Mapped[CardBrand] = mapped_column(
        Enum(CardBrand, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )

    # ISO 4217 code of the funding currency
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
    )

    spending_limit: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    # Only the funding ledger mutates these two
    balance: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    current_spend: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    # One card per issuance funding event — the race between concurrent
    # issuance attempts is decided by this constraint
    funding_reference: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("funding_intents.reference"),
        unique=True,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
