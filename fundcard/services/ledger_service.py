"""
Funding ledger — the only code that changes a card's balance or current_spend.

THIS IS THE MOST CRITICAL FILE IN THE PROJECT. It handles:
  - Applying verified funding exactly once per (card, funding reference)
  - Spends, with balance and spending-limit enforcement
  - Refunds and card-to-card transfers
  - Declined-spend audit rows
  - Reconciliation of cached balances against the transaction log

Invariant (completed rows only):
    balance       = Σfund + Σrefund − Σspend − Σtransfer
    current_spend = Σspend − Σrefund
    balance >= 0 and current_spend <= spending_limit

Atomicity:
  Every mutation writes its CardTransaction row and its card update inside the
  caller's database transaction. Nothing is committed here; get_db() (or the
  issuance coordinator) commits or rolls back the whole unit, so readers never
  see a row without its balance change or the reverse.

Idempotency:
  The transaction row is written first with INSERT ... ON CONFLICT DO NOTHING
  on UNIQUE(card_id, reference). Only the caller whose row landed goes on to
  touch the balance. A repeated funding reference is a no-op that returns
  the original row.

Concurrency:
  Balance changes are conditional UPDATEs (e.g. WHERE balance >= :amount),
  evaluated by the database. Two processes spending from the same card can
  never both succeed past the available balance, with or without row locks.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fundcard.database import insert_if_absent
from fundcard.exceptions import (
    CardInactiveError,
    CardNotFoundError,
    InsufficientBalanceError,
    SpendingLimitExceededError,
    ValidationError,
)
from fundcard.models.card import VirtualCard
from fundcard.models.card_transaction import CardTransaction, TransactionStatus, TransactionType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of a ledger mutation. `applied` is False for an idempotent repeat."""
    card: VirtualCard
    transaction: CardTransaction
    applied: bool


@dataclass(frozen=True)
class TransferResult:
    source: VirtualCard
    destination: VirtualCard
    debit: CardTransaction
    credit: CardTransaction


@dataclass(frozen=True)
class ReconciliationReport:
    card_id: uuid.UUID
    cached_balance: int
    computed_balance: int
    cached_spend: int
    computed_spend: int

    @property
    def consistent(self) -> bool:
        return (
            self.cached_balance == self.computed_balance
            and self.cached_spend == self.computed_spend
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Amount must be a positive whole number of minor units")


async def load_card(db: AsyncSession, card_id: uuid.UUID) -> VirtualCard:
    """Read a card fresh from the database (bypassing stale identity-map state)."""
    result = await db.execute(
        select(VirtualCard)
        .where(VirtualCard.id == card_id)
        .execution_options(populate_existing=True)
    )
    card = result.scalar_one_or_none()
    if card is None:
        raise CardNotFoundError(card_id)
    return card


async def find_transaction(
    db: AsyncSession, card_id: uuid.UUID, reference: str
) -> CardTransaction | None:
    result = await db.execute(
        select(CardTransaction)
        .where(CardTransaction.card_id == card_id)
        .where(CardTransaction.reference == reference)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _load_transaction(
    db: AsyncSession, card_id: uuid.UUID, reference: str
) -> CardTransaction:
    txn = await find_transaction(db, card_id, reference)
    if txn is None:
        raise RuntimeError(f"Transaction {reference} vanished for card {card_id}")
    return txn


async def _claim_reference(
    db: AsyncSession,
    card: VirtualCard,
    txn_type: TransactionType,
    amount: int,
    reference: str,
    **extra,
) -> tuple[CardTransaction, bool]:
    """
    Write the pending transaction row for `reference`, unless it exists.

    Returns:
        (row, claimed). claimed is False when the reference was already used.
    """
    claimed = await insert_if_absent(
        db,
        CardTransaction,
        {
            "id": uuid.uuid4(),
            "card_id": card.id,
            "type": txn_type,
            "amount": amount,
            "currency": card.currency,
            "reference": reference,
            "status": TransactionStatus.PENDING,
            "created_at": _now(),
            **extra,
        },
        ["card_id", "reference"],
    )
    txn = await _load_transaction(db, card.id, reference)
    if not claimed and txn.type is not txn_type:
        raise ValidationError(f"Reference {reference} is already used by a {txn.type.value}")
    return txn, claimed


async def _settle(
    db: AsyncSession, txn: CardTransaction, status: TransactionStatus
) -> CardTransaction:
    await db.execute(
        update(CardTransaction)
        .where(CardTransaction.id == txn.id)
        .values(
            status=status,
            completed_at=_now() if status is TransactionStatus.COMPLETED else None,
        )
        .execution_options(synchronize_session=False)
    )
    return await _load_transaction(db, txn.card_id, txn.reference)


# ---------------------------------------------------------------------------
# Funding
# ---------------------------------------------------------------------------

async def apply_funding(
    db: AsyncSession,
    card_id: uuid.UUID,
    funding_reference: str,
    amount: int,
    currency: str | None = None,
    description: str | None = None,
) -> LedgerResult:
    """
    Credit a card with a verified funding event, exactly once.

    Args:
        db: Database session (the caller commits).
        card_id: The card to credit.
        funding_reference: Reference of the successful FundingIntent.
        amount: Positive amount in minor units.
        currency: Optional check against the card currency.
        description: Optional memo.

    Returns:
        LedgerResult. applied=False means this reference had already funded
        the card; balance was not touched.

    Raises:
        CardNotFoundError: If the card doesn't exist.
        CardInactiveError: If the card has been deactivated.
        ValidationError: Non-positive amount or currency mismatch.
    """
    _require_positive(amount)
    card = await load_card(db, card_id)
    if currency and currency.upper() != card.currency:
        raise ValidationError(f"Card is in {card.currency}, funding is in {currency}")

    if not card.is_active:
        # A repeat of funding the card already received is still a no-op
        existing = await find_transaction(db, card_id, funding_reference)
        if existing is not None and existing.type is TransactionType.FUND:
            return LedgerResult(card=card, transaction=existing, applied=False)
        raise CardInactiveError(card_id)

    txn, claimed = await _claim_reference(
        db, card, TransactionType.FUND, amount, funding_reference, description=description
    )
    if not claimed:
        logger.info(
            "Duplicate funding ignored card=%s reference=%s", card_id, funding_reference
        )
        return LedgerResult(card=card, transaction=txn, applied=False)

    await db.execute(
        update(VirtualCard)
        .where(VirtualCard.id == card_id)
        .values(balance=VirtualCard.balance + amount, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    txn = await _settle(db, txn, TransactionStatus.COMPLETED)
    card = await load_card(db, card_id)
    logger.info(
        "Funding applied card=%s reference=%s amount=%s balance=%s",
        card_id,
        funding_reference,
        amount,
        card.balance,
    )
    return LedgerResult(card=card, transaction=txn, applied=True)


# ---------------------------------------------------------------------------
# Spend and refund
# ---------------------------------------------------------------------------

async def apply_spend(
    db: AsyncSession,
    card_id: uuid.UUID,
    amount: int,
    reference: str | None = None,
    merchant: str | None = None,
    description: str | None = None,
) -> LedgerResult:
    """
    Debit a card for a purchase.

    The debit is a single conditional UPDATE: it applies only if the card is
    active, balance >= amount, and current_spend + amount <= spending_limit.
    If it does not apply, the pending row is marked failed (kept for audit)
    and the matching error is raised. Balance is never clamped.

    Raises:
        InsufficientBalanceError: amount > balance.
        SpendingLimitExceededError: amount > spending_limit - current_spend.
        CardInactiveError: The card has been deactivated.
    """
    _require_positive(amount)
    card = await load_card(db, card_id)
    reference = reference or f"spend_{uuid.uuid4().hex}"

    txn, claimed = await _claim_reference(
        db,
        card,
        TransactionType.SPEND,
        amount,
        reference,
        merchant=merchant,
        description=description,
    )
    if not claimed:
        if txn.status is TransactionStatus.FAILED:
            raise ValidationError(f"Spend {reference} was declined; use a new reference")
        return LedgerResult(card=card, transaction=txn, applied=False)

    result = await db.execute(
        update(VirtualCard)
        .where(VirtualCard.id == card_id)
        .where(VirtualCard.is_active.is_(True))
        .where(VirtualCard.balance >= amount)
        .where(VirtualCard.current_spend + amount <= VirtualCard.spending_limit)
        .values(
            balance=VirtualCard.balance - amount,
            current_spend=VirtualCard.current_spend + amount,
            updated_at=_now(),
        )
        .execution_options(synchronize_session=False)
    )

    if result.rowcount != 1:
        await _settle(db, txn, TransactionStatus.FAILED)
        card = await load_card(db, card_id)
        logger.info(
            "Spend declined card=%s amount=%s balance=%s", card_id, amount, card.balance
        )
        if not card.is_active:
            raise CardInactiveError(card_id)
        if amount > card.balance:
            raise InsufficientBalanceError(card_id, requested=amount, available=card.balance)
        raise SpendingLimitExceededError(
            card_id,
            requested=amount,
            remaining=card.spending_limit - card.current_spend,
        )

    txn = await _settle(db, txn, TransactionStatus.COMPLETED)
    card = await load_card(db, card_id)
    return LedgerResult(card=card, transaction=txn, applied=True)


async def apply_refund(
    db: AsyncSession,
    card_id: uuid.UUID,
    amount: int,
    reference: str | None = None,
    description: str | None = None,
) -> LedgerResult:
    """
    Return part of earlier spend to the card.

    Credits the balance and lowers current_spend by the same amount. A refund
    can never exceed the card's current_spend.
    """
    _require_positive(amount)
    card = await load_card(db, card_id)
    if not card.is_active:
        raise CardInactiveError(card_id)
    if amount > card.current_spend:
        raise ValidationError(
            f"Refund of {amount} exceeds current spend of {card.current_spend}"
        )
    reference = reference or f"refund_{uuid.uuid4().hex}"

    txn, claimed = await _claim_reference(
        db, card, TransactionType.REFUND, amount, reference, description=description
    )
    if not claimed:
        return LedgerResult(card=card, transaction=txn, applied=False)

    result = await db.execute(
        update(VirtualCard)
        .where(VirtualCard.id == card_id)
        .where(VirtualCard.current_spend >= amount)
        .values(
            balance=VirtualCard.balance + amount,
            current_spend=VirtualCard.current_spend - amount,
            updated_at=_now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await _settle(db, txn, TransactionStatus.FAILED)
        raise ValidationError("Refund exceeds current spend")

    txn = await _settle(db, txn, TransactionStatus.COMPLETED)
    card = await load_card(db, card_id)
    return LedgerResult(card=card, transaction=txn, applied=True)


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------

async def apply_transfer(
    db: AsyncSession,
    source_card_id: uuid.UUID,
    destination_card_id: uuid.UUID,
    amount: int,
    reference: str | None = None,
    description: str | None = None,
) -> TransferResult:
    """
    Move balance from one card to another in one database transaction.

    The source gets a "transfer" row, the destination a "fund" row; both
    carry the same reference and point at each other through
    counterparty_card_id. Transfers do not count toward current_spend.

    Raises:
        ValidationError: Same card, currency mismatch, or reused reference.
        CardInactiveError: Either card is deactivated.
        InsufficientBalanceError: The source balance is too low.
    """
    _require_positive(amount)
    if source_card_id == destination_card_id:
        raise ValidationError("Cannot transfer to the same card")

    source = await load_card(db, source_card_id)
    destination = await load_card(db, destination_card_id)
    for card in (source, destination):
        if not card.is_active:
            raise CardInactiveError(card.id)
    if source.currency != destination.currency:
        raise ValidationError("Cards must share a currency to transfer between them")

    reference = reference or f"transfer_{uuid.uuid4().hex}"
    if await find_transaction(db, destination.id, reference) is not None:
        raise ValidationError(f"Transfer reference {reference} was already used")

    debit, claimed = await _claim_reference(
        db,
        source,
        TransactionType.TRANSFER,
        amount,
        reference,
        counterparty_card_id=destination.id,
        description=description,
    )
    if not claimed:
        raise ValidationError(f"Transfer reference {reference} was already used")

    result = await db.execute(
        update(VirtualCard)
        .where(VirtualCard.id == source.id)
        .where(VirtualCard.balance >= amount)
        .values(balance=VirtualCard.balance - amount, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await _settle(db, debit, TransactionStatus.FAILED)
        source = await load_card(db, source.id)
        logger.info("Transfer declined source=%s amount=%s", source.id, amount)
        raise InsufficientBalanceError(source.id, requested=amount, available=source.balance)

    credit, claimed = await _claim_reference(
        db,
        destination,
        TransactionType.FUND,
        amount,
        reference,
        counterparty_card_id=source.id,
        description=description,
    )
    if not claimed:
        # Lost a race for the destination reference: put the debit back
        await db.execute(
            update(VirtualCard)
            .where(VirtualCard.id == source.id)
            .values(balance=VirtualCard.balance + amount, updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        await _settle(db, debit, TransactionStatus.FAILED)
        raise ValidationError(f"Transfer reference {reference} was already used")

    await db.execute(
        update(VirtualCard)
        .where(VirtualCard.id == destination.id)
        .values(balance=VirtualCard.balance + amount, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    debit = await _settle(db, debit, TransactionStatus.COMPLETED)
    credit = await _settle(db, credit, TransactionStatus.COMPLETED)

    return TransferResult(
        source=await load_card(db, source.id),
        destination=await load_card(db, destination.id),
        debit=debit,
        credit=credit,
    )


# ---------------------------------------------------------------------------
# History and reconciliation
# ---------------------------------------------------------------------------

async def list_transactions(
    db: AsyncSession,
    card_id: uuid.UUID,
    status_filter: TransactionStatus | None = None,
    type_filter: TransactionType | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[CardTransaction]:
    """Transactions of one card, newest first."""
    query = (
        select(CardTransaction)
        .where(CardTransaction.card_id == card_id)
        .order_by(CardTransaction.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    if status_filter:
        query = query.where(CardTransaction.status == status_filter)
    if type_filter:
        query = query.where(CardTransaction.type == type_filter)

    result = await db.execute(query)
    return list(result.scalars().all())


def _signed(kind: str):
    """Signed amount of a completed row for the balance or spend total."""
    if kind == "balance":
        credits, debits = (TransactionType.FUND, TransactionType.REFUND), (
            TransactionType.SPEND,
            TransactionType.TRANSFER,
        )
    else:
        credits, debits = (TransactionType.SPEND,), (TransactionType.REFUND,)
    return func.coalesce(
        func.sum(
            case(
                (CardTransaction.type.in_(credits), CardTransaction.amount),
                (CardTransaction.type.in_(debits), -CardTransaction.amount),
                else_=0,
            )
        ),
        0,
    )


async def reconcile(db: AsyncSession, card_id: uuid.UUID) -> ReconciliationReport:
    """Compare a card's cached balance and spend with its transaction log."""
    card = await load_card(db, card_id)
    result = await db.execute(
        select(_signed("balance"), _signed("spend"))
        .where(CardTransaction.card_id == card_id)
        .where(CardTransaction.status == TransactionStatus.COMPLETED)
    )
    computed_balance, computed_spend = result.one()
    report = ReconciliationReport(
        card_id=card.id,
        cached_balance=card.balance,
        computed_balance=int(computed_balance),
        cached_spend=card.current_spend,
        computed_spend=int(computed_spend),
    )
    if not report.consistent:
        logger.error(
            "Ledger mismatch card=%s cached=%s computed=%s",
            card_id,
            report.cached_balance,
            report.computed_balance,
        )
    return report


async def reconcile_all(db: AsyncSession) -> list[ReconciliationReport]:
    """Sweep every card; returns only the inconsistent ones."""
    totals = (
        select(
            CardTransaction.card_id.label("card_id"),
            _signed("balance").label("computed_balance"),
            _signed("spend").label("computed_spend"),
        )
        .where(CardTransaction.status == TransactionStatus.COMPLETED)
        .group_by(CardTransaction.card_id)
        .subquery()
    )
    result = await db.execute(
        select(
            VirtualCard.id,
            VirtualCard.balance,
            VirtualCard.current_spend,
            func.coalesce(totals.c.computed_balance, 0),
            func.coalesce(totals.c.computed_spend, 0),
        ).outerjoin(totals, totals.c.card_id == VirtualCard.id)
    )

    mismatches = []
    for card_id, balance, spend, computed_balance, computed_spend in result.all():
        report = ReconciliationReport(
            card_id=card_id,
            cached_balance=balance,
            computed_balance=int(computed_balance),
            cached_spend=spend,
            computed_spend=int(computed_spend),
        )
        if not report.consistent:
            mismatches.append(report)
    if mismatches:
        logger.error("Reconciliation found %d inconsistent card(s)", len(mismatches))
    return mismatches
