"""
Issuance coordinator — turns a verified funding event into exactly one card.

Protocol for issue_card():
  1. Validate the amount (and the spending limit). Nothing is written yet.
  2. Resolve the funding intent through the PaymentVerifier. Anything other
     than `successful` aborts with PaymentNotConfirmedError.
  3. If a card already exists for the funding reference, return it.
  4. Generate number, CVC and expiry; encrypt number and CVC under the
     caller's session key.
  5. In ONE database transaction: insert the card with
     INSERT ... ON CONFLICT(funding_reference) DO NOTHING, then apply the
     initial funding through the ledger. If the insert lost to a concurrent
     issuance, the transaction is rolled back and the winner's card is
     returned instead (first writer wins).
  6. Mirror (card_id, funding_reference, amount) to the external ledger if
     one is configured. On failure the card is deactivated and
     MirrorFailedError is raised; the card is not deleted.

fund_card() is the top-up path: verify the intent, then hand the amount to
the ledger, which applies each funding reference at most once.

The session key is used only in step 4 and never reaches the database layer;
only ciphertext does.
"""

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fundcard import vault
from fundcard.database import insert_if_absent
from fundcard.exceptions import (
    DuplicateIssuanceError,
    MirrorFailedError,
    PaymentNotConfirmedError,
    UnauthorizedAccessError,
    ValidationError,
)
from fundcard.mirror import LedgerMirror, MirrorError
from fundcard.models.card import CardBrand, VirtualCard
from fundcard.models.funding_intent import FundingIntent, IntentPurpose, IntentStatus
from fundcard.security import KeySession
from fundcard.services import card_service, ledger_service
from fundcard.services.card_generator import generate_cvc, generate_expiry, generate_number, mask_number
from fundcard.services.fee_service import validate_amount
from fundcard.services.verification_service import PaymentVerifier

logger = logging.getLogger(__name__)


class IssuanceCoordinator:
    """
    Orchestrates verification, generation, encryption, persistence and mirroring.

    Args:
        session_factory: async_sessionmaker for the coordinator's own
            transactions (issuance must commit independently of any request).
        verifier: PaymentVerifier that resolves funding intents.
        mirror: Optional external ledger mirror.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        verifier: PaymentVerifier,
        mirror: LedgerMirror | None = None,
    ):
        self._session_factory = session_factory
        self._verifier = verifier
        self._mirror = mirror

    async def _confirmed_intent(
        self,
        owner_id: str,
        funding_reference: str,
        purpose: IntentPurpose,
    ) -> FundingIntent:
        intent = await self._verifier.get_intent(funding_reference)
        if intent.owner_id != owner_id:
            raise UnauthorizedAccessError("Funding reference belongs to another identity")
        if intent.purpose is not purpose:
            raise ValidationError(
                f"Funding intent {funding_reference} is for {intent.purpose.value}, not {purpose.value}"
            )

        intent = await self._verifier.resolve(funding_reference)
        if intent.status is not IntentStatus.SUCCESSFUL:
            raise PaymentNotConfirmedError(
                funding_reference, intent.status.value, intent.failure_reason
            )
        return intent

    async def issue_card(
        self,
        session: KeySession,
        funding_reference: str,
        amount: int | None = None,
        *,
        card_name: str | None = None,
        brand: CardBrand = CardBrand.VISA,
        spending_limit: int | None = None,
    ) -> VirtualCard:
        """
        Issue the card paid for by `funding_reference`, or return the one
        already issued for it.

        Args:
            session: Caller's open KeySession; its identity becomes owner_id.
            funding_reference: Reference of an issuance FundingIntent.
            amount: Expected amount; must match the intent when given.
            card_name: Optional display name.
            brand: Card brand (leading digit 4 or 5).
            spending_limit: Defaults to the funded amount.

        Returns:
            The VirtualCard (safe fields only are ever serialized).

        Raises:
            ValidationError: Invalid amount or spending limit.
            PaymentNotConfirmedError: The intent ended failed or timed out.
            KeyDerivationError: The session is closed or expired.
            MirrorFailedError: Card issued but deactivated after mirror failure.
        """
        if amount is not None:
            amount = validate_amount(amount)
        if spending_limit is not None and (
            isinstance(spending_limit, bool)
            or not isinstance(spending_limit, int)
            or spending_limit <= 0
        ):
            raise ValidationError("Spending limit must be a positive whole number")
        key = session.key

        intent = await self._verifier.get_intent(funding_reference)
        if amount is not None and amount != intent.amount:
            raise ValidationError("Amount does not match the funding intent")
        validate_amount(intent.amount)

        intent = await self._confirmed_intent(
            session.identity, funding_reference, IntentPurpose.ISSUANCE
        )

        async with self._session_factory() as db:
            existing = await card_service.get_card_by_funding_reference(db, funding_reference)
        if existing is not None:
            return existing

        number = generate_number(brand)
        values = {
            "id": uuid.uuid4(),
            "owner_id": session.identity,
            "card_name": card_name,
            "encrypted_number": vault.encrypt(key, number),
            "encrypted_cvc": vault.encrypt(key, generate_cvc()),
            "masked_number": mask_number(number),
            "expiry": generate_expiry(),
            "brand": brand,
            "currency": intent.currency,
            "spending_limit": spending_limit if spending_limit is not None else intent.amount,
            "balance": 0,
            "current_spend": 0,
            "is_active": True,
            "funding_reference": funding_reference,
        }

        try:
            card = await self._persist(values, intent)
        except DuplicateIssuanceError:
            async with self._session_factory() as db:
                winner = await card_service.get_card_by_funding_reference(db, funding_reference)
            logger.info("Concurrent issuance for %s resolved to card %s", funding_reference, winner.id)
            return winner

        logger.info(
            "Card issued id=%s masked=%s reference=%s",
            card.id,
            card.masked_number,
            funding_reference,
        )

        if self._mirror is not None:
            await self._mirror_or_deactivate(card, funding_reference, intent.amount)
        return card

    async def _persist(self, values: dict, intent: FundingIntent) -> VirtualCard:
        async with self._session_factory() as db:
            inserted = await insert_if_absent(db, VirtualCard, values, ["funding_reference"])
            if not inserted:
                await db.rollback()
                raise DuplicateIssuanceError(intent.reference)

            result = await ledger_service.apply_funding(
                db,
                values["id"],
                intent.reference,
                intent.amount,
                intent.currency,
                description="Initial card funding",
            )
            await db.commit()
            return result.card

    async def _mirror_or_deactivate(
        self, card: VirtualCard, funding_reference: str, amount: int
    ) -> None:
        try:
            await self._mirror.record(card.id, funding_reference, amount)
        except MirrorError as exc:
            logger.error("Mirror failed for card %s: %s", card.id, exc)
            async with self._session_factory() as db:
                card = await card_service.deactivate_card(
                    db, card.id, reason="external ledger mirror failed"
                )
                await db.commit()
            raise MirrorFailedError(card, str(exc)) from exc

    async def fund_card(
        self,
        owner_id: str,
        card_id: uuid.UUID,
        funding_reference: str,
    ) -> ledger_service.LedgerResult:
        """
        Top up an existing card from a verified top-up intent.

        Idempotent: a funding reference credits the card at most once; the
        repeat returns applied=False.

        Raises:
            CardNotFoundError / UnauthorizedAccessError: Not the owner's card.
            ValidationError: The intent targets another card or is not a top-up.
            PaymentNotConfirmedError: The intent did not succeed.
            CardInactiveError: The card has been deactivated.
        """
        async with self._session_factory() as db:
            await card_service.get_card(db, card_id, owner_id)

        intent = await self._verifier.get_intent(funding_reference)
        if intent.card_id is not None and intent.card_id != card_id:
            raise ValidationError("Funding intent was created for a different card")

        intent = await self._confirmed_intent(owner_id, funding_reference, IntentPurpose.TOP_UP)

        async with self._session_factory() as db:
            result = await ledger_service.apply_funding(
                db,
                card_id,
                funding_reference,
                intent.amount,
                intent.currency,
                description="Card top-up",
            )
            await db.commit()
        return result
