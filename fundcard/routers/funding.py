"""
Funding intents router — start and track payments on a rail.

Endpoints:
  POST /funding-intents             — Create an intent and send the payment request
  GET  /funding-intents/{reference} — Current state (polls the rail once if pending)

Creating an intent is idempotent on `reference`. If the rail cannot be
reached the intent stays `requested` and the call answers 502; repeating
it with the same reference retries the payment request.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from fundcard.database import get_db
from fundcard.dependencies import get_identity, get_verifier
from fundcard.exceptions import UnauthorizedAccessError, ValidationError
from fundcard.models.funding_intent import IntentPurpose, IntentStatus
from fundcard.schemas.funding import FundingIntentCreate, FundingIntentResponse
from fundcard.services import card_service
from fundcard.services.verification_service import PaymentVerifier

router = APIRouter()


@router.post(
    "",
    response_model=FundingIntentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a funding intent and request payment",
)
async def create_funding_intent(
    request: FundingIntentCreate,
    owner_id: str = Depends(get_identity),
    verifier: PaymentVerifier = Depends(get_verifier),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a funding intent and ask the rail to collect the fee-inclusive total.

    - **purpose=issuance**: pays for a new card (POST /cards afterwards)
    - **purpose=top_up**: funds an existing card (`card_id` required)
    - **payer**: the MSISDN to charge, required for mobile money
    """
    if request.purpose is IntentPurpose.TOP_UP:
        if request.card_id is None:
            raise ValidationError("card_id is required for a top-up")
        await card_service.get_card(db, request.card_id, owner_id)

    intent = await verifier.create_intent(
        owner_id=owner_id,
        rail=request.rail,
        amount=request.amount,
        currency=request.currency,
        reference=request.reference,
        payer=request.payer,
        purpose=request.purpose,
        card_id=request.card_id,
    )
    if intent.status is IntentStatus.REQUESTED:
        intent = await verifier.request_payment(intent.reference)
    return intent


@router.get(
    "/{reference}",
    response_model=FundingIntentResponse,
    summary="Get a funding intent",
)
async def get_funding_intent(
    reference: str,
    owner_id: str = Depends(get_identity),
    verifier: PaymentVerifier = Depends(get_verifier),
):
    """
    Re-query a funding intent by reference.

    A pending intent is polled once against its rail before answering, so
    this also picks up results that arrived after an abandoned issuance.
    """
    intent = await verifier.get_intent(reference)
    if intent.owner_id != owner_id:
        raise UnauthorizedAccessError("You do not have access to this funding intent")
    if intent.status is IntentStatus.PENDING and not verifier.is_polling(reference):
        intent = await verifier.poll_once(reference)
    return intent
