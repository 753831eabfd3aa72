"""
Fees router — fee quote shown before the payer is asked for money.

Endpoints:
  GET /fees?amount= — Fee and total payable for a funding amount
"""

from fastapi import APIRouter, Query

from fundcard.config import settings
from fundcard.schemas.funding import FeeQuoteResponse
from fundcard.services.fee_service import calculate_fee, validate_amount

router = APIRouter()


@router.get(
    "",
    response_model=FeeQuoteResponse,
    summary="Quote the platform fee for a funding amount",
)
async def quote_fee(
    amount: int = Query(..., description="Amount to credit the card, in minor units"),
    currency: str | None = Query(None, min_length=3, max_length=3),
):
    """
    fee = amount × 0.02%, total = amount + fee (both to two decimal places).

    The amount must be within the configured funding bounds.
    """
    breakdown = calculate_fee(validate_amount(amount))
    return FeeQuoteResponse(
        amount=breakdown.amount,
        fee=breakdown.fee,
        total=breakdown.total,
        currency=(currency or settings.DEFAULT_CURRENCY).upper(),
    )
