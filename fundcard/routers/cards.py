"""
Cards router — issuance, safe reads, reveal, ledger operations, management.

Endpoints:
  POST  /cards                         — Issue a card for a verified funding intent
  GET   /cards                         — List the identity's cards (safe view)
  GET   /cards/{card_id}               — One card (safe view + expiry status)
  POST  /cards/{card_id}/reveal        — Full number and CVC (owner's session only)
  POST  /cards/{card_id}/fund          — Verified top-up
  POST  /cards/{card_id}/spend         — Purchase against the balance
  POST  /cards/{card_id}/refund        — Return earlier spend (operator key)
  POST  /cards/{card_id}/transfer      — Move balance to another card
  POST  /cards/{card_id}/deactivate    — Soft delete
  PATCH /cards/{card_id}/limit         — Change the spending limit
  GET   /cards/{card_id}/transactions  — History, newest first
  GET   /cards/{card_id}/reconciliation — Cached vs computed balance

Every endpoint except refund requires an open key session and is scoped to
its identity. Refunds are merchant-side and need the operator key instead.
Safe views never include the full number or CVC.
"""

import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from fundcard.database import get_db
from fundcard.dependencies import (
    get_coordinator,
    get_identity,
    get_key_session,
    require_operator,
)
from fundcard.models.card_transaction import TransactionStatus, TransactionType
from fundcard.schemas.card import (
    CardDetailResponse,
    CardFundRequest,
    CardIssueRequest,
    CardResponse,
    RevealedCardResponse,
    SpendingLimitUpdate,
)
from fundcard.schemas.transaction import (
    LedgerResponse,
    ReconciliationResponse,
    RefundRequest,
    SpendRequest,
    TransactionResponse,
    TransferRequest,
    TransferResponse,
)
from fundcard.security import KeySession
from fundcard.services import card_service, ledger_service
from fundcard.services.issuance_service import IssuanceCoordinator

router = APIRouter()


@router.post(
    "",
    response_model=CardResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Issue a card for a verified funding intent",
)
async def issue_card(
    request: CardIssueRequest,
    session: KeySession = Depends(get_key_session),
    coordinator: IssuanceCoordinator = Depends(get_coordinator),
):
    """
    Issue a virtual card once its funding intent is confirmed.

    - Waits for the rail to settle (up to the polling timeout)
    - Repeating the call with the same funding reference returns the same card
    - 402 if the payment failed or timed out
    - 202 with the (deactivated) card if the external mirror failed
    """
    return await coordinator.issue_card(
        session,
        request.funding_reference,
        request.amount,
        card_name=request.card_name,
        brand=request.brand,
        spending_limit=request.spending_limit,
    )


@router.get(
    "",
    response_model=list[CardResponse],
    summary="List cards",
)
async def list_cards(
    active_only: bool = Query(False),
    owner_id: str = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    return await card_service.list_cards(db, owner_id, active_only=active_only)


@router.get(
    "/{card_id}",
    response_model=CardDetailResponse,
    summary="Get card details (masked)",
)
async def get_card(
    card_id: uuid.UUID,
    owner_id: str = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    """Safe view of one card plus whether it is currently usable."""
    card = await card_service.get_card(db, card_id, owner_id)
    is_valid, days_left = card_service.card_validity(card)
    return CardDetailResponse(
        **CardResponse.model_validate(card).model_dump(),
        is_valid=is_valid,
        days_until_expiry=days_left,
    )


@router.post(
    "/{card_id}/reveal",
    response_model=RevealedCardResponse,
    summary="Reveal the full card number and CVC",
)
async def reveal_card(
    card_id: uuid.UUID,
    session: KeySession = Depends(get_key_session),
    db: AsyncSession = Depends(get_db),
):
    """
    Decrypt the card with the session's derived key.

    403 if the key cannot authenticate the stored ciphertext.
    """
    return await card_service.reveal_card(db, card_id, session)


@router.post(
    "/{card_id}/fund",
    response_model=LedgerResponse,
    summary="Top up a card from a verified funding intent",
)
async def fund_card(
    card_id: uuid.UUID,
    request: CardFundRequest,
    owner_id: str = Depends(get_identity),
    coordinator: IssuanceCoordinator = Depends(get_coordinator),
):
    """Each funding reference credits the card at most once (`applied` is false on repeats)."""
    return await coordinator.fund_card(owner_id, card_id, request.funding_reference)


@router.post(
    "/{card_id}/spend",
    response_model=LedgerResponse,
    summary="Spend from a card",
)
async def spend(
    card_id: uuid.UUID,
    request: SpendRequest,
    owner_id: str = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    """
    Debit the card.

    Rejected (and recorded as a failed transaction) when the amount exceeds
    the balance or the remaining spending limit. The balance is never clamped.
    """
    await card_service.get_card(db, card_id, owner_id)
    return await ledger_service.apply_spend(
        db,
        card_id,
        request.amount,
        reference=request.reference,
        merchant=request.merchant,
        description=request.description,
    )


@router.post(
    "/{card_id}/refund",
    response_model=LedgerResponse,
    summary="Refund earlier spend to a card",
    dependencies=[Depends(require_operator)],
)
async def refund(
    card_id: uuid.UUID,
    request: RefundRequest,
    db: AsyncSession = Depends(get_db),
):
    return await ledger_service.apply_refund(
        db,
        card_id,
        request.amount,
        reference=request.reference,
        description=request.description,
    )


@router.post(
    "/{card_id}/transfer",
    response_model=TransferResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Transfer balance to another card",
)
async def transfer(
    card_id: uuid.UUID,
    request: TransferRequest,
    owner_id: str = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    """
    Move balance from this card to another.

    - The source card must belong to the session identity
    - The destination can belong to any identity but must share the currency
    """
    await card_service.get_card(db, card_id, owner_id)
    return await ledger_service.apply_transfer(
        db,
        card_id,
        request.destination_card_id,
        request.amount,
        reference=request.reference,
        description=request.description,
    )


@router.post(
    "/{card_id}/deactivate",
    response_model=CardResponse,
    summary="Deactivate a card",
)
async def deactivate(
    card_id: uuid.UUID,
    owner_id: str = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    """Soft delete. The card and its history are kept."""
    return await card_service.deactivate_card(db, card_id, owner_id)


@router.patch(
    "/{card_id}/limit",
    response_model=CardResponse,
    summary="Update the spending limit",
)
async def update_limit(
    card_id: uuid.UUID,
    request: SpendingLimitUpdate,
    owner_id: str = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    return await card_service.update_spending_limit(
        db, card_id, owner_id, request.spending_limit
    )


@router.get(
    "/{card_id}/transactions",
    response_model=list[TransactionResponse],
    summary="List transactions for a card",
)
async def list_transactions(
    card_id: uuid.UUID,
    status: TransactionStatus | None = Query(None, description="Filter by status"),
    type: TransactionType | None = Query(None, description="Filter by type"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    owner_id: str = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    await card_service.get_card(db, card_id, owner_id)
    return await ledger_service.list_transactions(
        db,
        card_id,
        status_filter=status,
        type_filter=type,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/{card_id}/reconciliation",
    response_model=ReconciliationResponse,
    summary="Compare cached balance with the transaction log",
)
async def reconciliation(
    card_id: uuid.UUID,
    owner_id: str = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    await card_service.get_card(db, card_id, owner_id)
    return await ledger_service.reconcile(db, card_id)
