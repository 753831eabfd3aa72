"""
Pydantic schemas for funding intents and fee quotes.

`amount` is what the card receives (minor units); `fee` and `total` are
decimals, and `total` is what the payer is asked for on the rail.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from fundcard.models.funding_intent import IntentPurpose, IntentStatus, RailKind


class FeeQuoteResponse(BaseModel):
    amount: Decimal
    fee: Decimal
    total: Decimal
    currency: str

    model_config = {"from_attributes": True}


class FundingIntentCreate(BaseModel):
    """Request body for POST /funding-intents."""
    rail: RailKind
    amount: int = Field(description="Amount to credit the card, in minor units")
    currency: str | None = Field(None, min_length=3, max_length=3)
    reference: str | None = Field(None, max_length=100, description="Optional idempotency key")
    payer: str | None = Field(None, max_length=64, description="MSISDN for mobile money")
    purpose: IntentPurpose = IntentPurpose.ISSUANCE
    card_id: uuid.UUID | None = Field(None, description="Target card for a top-up")


class FundingIntentResponse(BaseModel):
    reference: str
    rail: RailKind
    purpose: IntentPurpose
    card_id: uuid.UUID | None
    amount: int
    fee: Decimal
    total: Decimal
    currency: str
    status: IntentStatus
    rail_reference: str | None
    external_transaction_id: str | None
    failure_reason: str | None
    deadline_at: datetime
    created_at: datetime
    resolved_at: datetime | None

    model_config = {"from_attributes": True}
