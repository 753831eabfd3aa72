"""
FundingIntent model — the tracked lifecycle of one funding request.

States:
    requested -> pending -> {successful | failed | timed_out}

  - requested: created locally, nothing sent to the rail yet
  - pending:   the rail accepted a payment request; the verifier polls it
  - successful / failed / timed_out: terminal, never left again

`reference` is the idempotency key: at most one row per reference, enforced
by a UNIQUE constraint. Status transitions are applied with conditional
UPDATEs (WHERE status = <expected>), so a terminal row cannot be moved even
by a concurrent process.

Rows are never deleted; they are the audit trail of every funding attempt.

`deadline_at` is fixed at creation (created_at + poll timeout): the timeout
is a hard ceiling from `requested`, not from each poll.
"""

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, Enum, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from fundcard.database import Base


class RailKind(str, enum.Enum):
    """The external payment channel a funding intent is settled on."""
    MOBILE_MONEY = "mobile_money"
    CRYPTO = "crypto"


class IntentStatus(str, enum.Enum):
    REQUESTED = "requested"
    PENDING = "pending"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {IntentStatus.SUCCESSFUL, IntentStatus.FAILED, IntentStatus.TIMED_OUT}
)

# Allowed source states for each target state
ALLOWED_TRANSITIONS: dict[IntentStatus, frozenset[IntentStatus]] = {
    IntentStatus.PENDING: frozenset({IntentStatus.REQUESTED}),
    IntentStatus.SUCCESSFUL: frozenset({IntentStatus.PENDING}),
    IntentStatus.FAILED: frozenset({IntentStatus.REQUESTED, IntentStatus.PENDING}),
    IntentStatus.TIMED_OUT: frozenset({IntentStatus.REQUESTED, IntentStatus.PENDING}),
}


class IntentPurpose(str, enum.Enum):
    ISSUANCE = "issuance"   # creates a new card
    TOP_UP = "top_up"       # funds an existing card


def _enum_column(enum_cls):
    return Enum(enum_cls, native_enum=False, values_callable=lambda e: [m.value for m in e])


class FundingIntent(Base):
    __tablename__ = "funding_intents"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_funding_intents_positive_amount"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # Caller- or system-generated idempotency key
    reference: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
        index=True,
    )

    rail: Mapped[RailKind] = mapped_column(
        _enum_column(RailKind),
        nullable=False,
    )

    purpose: Mapped[IntentPurpose] = mapped_column(
        _enum_column(IntentPurpose),
        nullable=False,
        default=IntentPurpose.ISSUANCE,
    )

    owner_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        index=True,
    )

    # Target card for top-ups (NULL for issuance). No FK: cards reference
    # intents, so the reverse link stays a plain indexed column.
    card_id: Mapped[uuid.UUID | None] = mapped_column(
        nullable=True,
        index=True,
    )

    # Amount credited to the card, in minor units
    amount: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    # Platform fee and the total asked from the rail
    fee: Mapped[Decimal] = mapped_column(
        Numeric(14, 2),
        nullable=False,
    )
    total: Mapped[Decimal] = mapped_column(
        Numeric(14, 2),
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
    )

    # Payer handle on the rail (MSISDN for mobile money)
    payer: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )

    status: Mapped[IntentStatus] = mapped_column(
        _enum_column(IntentStatus),
        nullable=False,
        default=IntentStatus.REQUESTED,
        index=True,
    )

    # Rail-assigned reference used for status queries
    rail_reference: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    # Settlement id reported by the rail on success
    external_transaction_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    failure_reason: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    deadline_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
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
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
