"""
CardTransaction model — append-only history of every balance movement on a card.

Key fields:
  - type: "fund", "spend", "refund" or "transfer"
  - amount: Always positive, in minor units (direction is implied by type)
  - reference: The funding reference for "fund" rows; a generated or
               caller-supplied reference for the others
  - status: "pending", "completed" or "failed"
  - counterparty_card_id: The other card of a card-to-card transfer

Ledger invariant (over completed rows only):
    balance = sum(fund) + sum(refund) - sum(spend) - sum(transfer)

Idempotent funding:
  UNIQUE(card_id, reference) means the same funding reference can credit a
  card at most once. The funding ledger inserts with ON CONFLICT DO NOTHING,
  so the check and the insert are one atomic statement.

Why amount is always positive:
  A positive amount plus an explicit type is clearer than signed integers.
  Declined spends are kept as "failed" rows for audit; they never count
  toward the balance.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, DateTime, Enum, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fundcard.database import Base


class TransactionType(str, enum.Enum):
    FUND = "fund"
    SPEND = "spend"
    REFUND = "refund"
    TRANSFER = "transfer"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


CREDIT_TYPES = (TransactionType.FUND, TransactionType.REFUND)
DEBIT_TYPES = (TransactionType.SPEND, TransactionType.TRANSFER)


def _enum_column(enum_cls):
    return Enum(enum_cls, native_enum=False, values_callable=lambda e: [m.value for m in e])


class CardTransaction(Base):
    __tablename__ = "card_transactions"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_card_transactions_positive_amount"),
        UniqueConstraint("card_id", "reference", name="uq_card_transactions_card_reference"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    card_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("virtual_cards.id"),
        nullable=False,
        index=True,
    )

    type: Mapped[TransactionType] = mapped_column(
        _enum_column(TransactionType),
        nullable=False,
    )

    amount: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
    )

    reference: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    status: Mapped[TransactionStatus] = mapped_column(
        _enum_column(TransactionStatus),
        nullable=False,
        default=TransactionStatus.PENDING,
    )

    description: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    merchant: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    counterparty_card_id: Mapped[uuid.UUID | None] = mapped_column(
        nullable=True,
    )

    # Indexed for history queries ordered by time
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
