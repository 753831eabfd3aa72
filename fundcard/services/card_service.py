"""
Card service — reads, authorized reveal, and card management.

Cards are created only by the issuance coordinator and their balances are
changed only by the funding ledger. This module covers everything else:

  - Safe reads (ownership-scoped; never decrypts anything)
  - reveal_card(): decrypts number and CVC for the owner's open KeySession
  - Deactivation (soft delete) and spending-limit changes

Reveal is the only place plaintext card data leaves the vault. The result is
handed straight back to the caller and never logged or stored.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fundcard import vault
from fundcard.exceptions import (
    DecryptionError,
    UnauthorizedAccessError,
    ValidationError,
)
from fundcard.models.card import VirtualCard
from fundcard.security import KeySession
from fundcard.services.card_generator import days_until_expiry, is_card_valid, mask_number
from fundcard.services.ledger_service import load_card

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RevealedCard:
    """Authorized view. Lives only for the duration of one response."""
    id: uuid.UUID
    number: str = field(repr=False)
    cvc: str = field(repr=False)
    expiry: str
    masked_number: str
    brand: str


async def get_card(
    db: AsyncSession,
    card_id: uuid.UUID,
    owner_id: str,
) -> VirtualCard:
    """
    Get a card, verifying that `owner_id` owns it.

    Raises:
        CardNotFoundError: If the card doesn't exist.
        UnauthorizedAccessError: If the card belongs to someone else.
    """
    card = await load_card(db, card_id)
    if card.owner_id != owner_id:
        raise UnauthorizedAccessError("You do not have access to this card")
    return card


async def list_cards(
    db: AsyncSession,
    owner_id: str,
    active_only: bool = False,
) -> list[VirtualCard]:
    """All cards of one identity, newest first."""
    query = (
        select(VirtualCard)
        .where(VirtualCard.owner_id == owner_id)
        .order_by(VirtualCard.created_at.desc())
    )
    if active_only:
        query = query.where(VirtualCard.is_active.is_(True))
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_card_by_funding_reference(
    db: AsyncSession,
    funding_reference: str,
) -> VirtualCard | None:
    result = await db.execute(
        select(VirtualCard)
        .where(VirtualCard.funding_reference == funding_reference)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def reveal_card(
    db: AsyncSession,
    card_id: uuid.UUID,
    session: KeySession,
) -> RevealedCard:
    """
    Decrypt a card's number and CVC for its owner.

    Args:
        db: Database session.
        card_id: The card to reveal.
        session: The caller's open KeySession; its identity must own the card.

    Returns:
        RevealedCard with plaintext number and CVC.

    Raises:
        UnauthorizedAccessError: The session identity does not own the card.
        KeyDerivationError: The session was closed or has expired.
        DecryptionError: Wrong key or tampered ciphertext, or the decrypted
            number does not match the stored masked number.
    """
    card = await get_card(db, card_id, session.identity)
    key = session.key

    number = vault.decrypt(key, card.encrypted_number)
    cvc = vault.decrypt(key, card.encrypted_cvc)
    if mask_number(number) != card.masked_number:
        raise DecryptionError("Card data failed its integrity check")

    logger.info("Card %s revealed to its owner", card.id)
    return RevealedCard(
        id=card.id,
        number=number,
        cvc=cvc,
        expiry=card.expiry,
        masked_number=card.masked_number,
        brand=card.brand.value,
    )


def card_validity(card: VirtualCard) -> tuple[bool, int]:
    """(usable now, whole days until expiry)."""
    return is_card_valid(card.expiry, card.is_active), days_until_expiry(card.expiry)


async def deactivate_card(
    db: AsyncSession,
    card_id: uuid.UUID,
    owner_id: str | None = None,
    reason: str | None = None,
) -> VirtualCard:
    """
    Soft-delete a card: is_active becomes False, the row stays.

    owner_id=None skips the ownership check (used by the issuance
    coordinator's compensating action). Deactivating twice is harmless.
    """
    if owner_id is None:
        card = await load_card(db, card_id)
    else:
        card = await get_card(db, card_id, owner_id)

    if card.is_active:
        await db.execute(
            update(VirtualCard)
            .where(VirtualCard.id == card.id)
            .values(is_active=False, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        logger.warning("Card %s deactivated: %s", card.id, reason or "owner request")
    return await load_card(db, card.id)


async def update_spending_limit(
    db: AsyncSession,
    card_id: uuid.UUID,
    owner_id: str,
    spending_limit: int,
) -> VirtualCard:
    """
    Change a card's spending limit.

    Raises:
        ValidationError: If the new limit is not positive or is below what the
            card has already spent.
    """
    if isinstance(spending_limit, bool) or not isinstance(spending_limit, int) or spending_limit <= 0:
        raise ValidationError("Spending limit must be a positive whole number")

    card = await get_card(db, card_id, owner_id)
    result = await db.execute(
        update(VirtualCard)
        .where(VirtualCard.id == card.id)
        .where(VirtualCard.current_spend <= spending_limit)
        .values(spending_limit=spending_limit, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ValidationError(
            f"Spending limit cannot be below current spend ({card.current_spend})"
        )
    return await load_card(db, card.id)

