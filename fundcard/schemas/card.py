"""
Pydantic schemas for Card endpoints.

Card numbers and CVCs are NEVER part of CardResponse. Only the masked
representation ("****1234") is exposed. The full number and CVC appear
only in RevealedCardResponse, returned by POST /cards/{id}/reveal to the
owner's open key session.

All monetary amounts are integers in the currency's minor units.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from fundcard.models.card import CardBrand


class CardIssueRequest(BaseModel):
    """Request body for POST /cards."""
    funding_reference: str = Field(min_length=1, max_length=100)
    amount: int | None = Field(None, description="Expected amount; must match the funding intent")
    card_name: str | None = Field(None, max_length=100)
    brand: CardBrand = CardBrand.VISA
    spending_limit: int | None = Field(None, gt=0, description="Defaults to the funded amount")


class CardResponse(BaseModel):
    """Safe view of a card (masked — no full number or CVC)."""
    id: uuid.UUID
    card_name: str | None
    masked_number: str
    expiry: str
    brand: CardBrand
    currency: str
    spending_limit: int
    balance: int
    current_spend: int
    is_active: bool
    funding_reference: str
    created_at: datetime

    model_config = {"from_attributes": True}


class CardDetailResponse(CardResponse):
    """Safe view plus expiry status."""
    is_valid: bool
    days_until_expiry: int


class RevealedCardResponse(BaseModel):
    """Authorized view. Returned only to the owner's open key session."""
    id: uuid.UUID
    number: str
    cvc: str
    expiry: str
    masked_number: str
    brand: str

    model_config = {"from_attributes": True}


class CardFundRequest(BaseModel):
    """Request body for POST /cards/{id}/fund."""
    funding_reference: str = Field(min_length=1, max_length=100)


class SpendingLimitUpdate(BaseModel):
    """Request body for PATCH /cards/{id}/limit."""
    spending_limit: int = Field(gt=0)
