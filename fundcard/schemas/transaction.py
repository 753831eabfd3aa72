"""
Pydantic schemas for ledger endpoints (spend, refund, transfer, history).

All monetary amounts are integers in the card currency's minor units.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from fundcard.models.card_transaction import TransactionStatus, TransactionType
from fundcard.schemas.card import CardResponse


class SpendRequest(BaseModel):
    """Request body for POST /cards/{id}/spend."""
    amount: int = Field(gt=0, description="Amount in minor units (must be positive)")
    reference: str | None = Field(None, max_length=100, description="Optional idempotency key")
    merchant: str | None = Field(None, max_length=100)
    description: str | None = Field(None, max_length=255)


class RefundRequest(BaseModel):
    """Request body for POST /cards/{id}/refund."""
    amount: int = Field(gt=0)
    reference: str | None = Field(None, max_length=100)
    description: str | None = Field(None, max_length=255)


class TransferRequest(BaseModel):
    """Request body for POST /cards/{id}/transfer."""
    destination_card_id: uuid.UUID
    amount: int = Field(gt=0)
    reference: str | None = Field(None, max_length=100)
    description: str | None = Field(None, max_length=255)


class TransactionResponse(BaseModel):
    """Public representation of a card transaction."""
    id: uuid.UUID
    card_id: uuid.UUID
    type: TransactionType
    amount: int
    currency: str
    reference: str
    status: TransactionStatus
    description: str | None
    merchant: str | None
    counterparty_card_id: uuid.UUID | None
    created_at: datetime
    completed_at: datetime | None

    model_config = {"from_attributes": True}


class LedgerResponse(BaseModel):
    """Card state after a ledger mutation, plus the row it wrote."""
    card: CardResponse
    transaction: TransactionResponse
    applied: bool


class TransferResponse(BaseModel):
    source: CardResponse
    destination: CardResponse
    debit: TransactionResponse
    credit: TransactionResponse


class ReconciliationResponse(BaseModel):
    card_id: uuid.UUID
    cached_balance: int
    computed_balance: int
    cached_spend: int
    computed_spend: int
    consistent: bool

    model_config = {"from_attributes": True}
