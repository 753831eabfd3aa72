"""
Custom exception classes and FastAPI exception handlers.

The service layer raises domain-specific errors (like InsufficientBalanceError)
without importing HTTP concepts. The handler layer translates them into
consistent JSON responses: {"detail": "...", "error_type": "..."}.

Exception hierarchy:
    CardEngineError (base)
    ├── ValidationError              — bad amount/format, rejected before side effects
    │   └── InvalidCardNumberError   — card number is not exactly 16 digits
    ├── PaymentNotConfirmedError     — rail status pending/failed/timed out
    ├── KeyDerivationError           — malformed signature, empty identity, expired session
    ├── DecryptionError              — authentication tag mismatch (tamper or wrong key)
    ├── InsufficientBalanceError     — spend exceeds balance
    ├── SpendingLimitExceededError   — spend exceeds the card's remaining limit
    ├── CardInactiveError            — mutation on a deactivated card
    ├── DuplicateIssuanceError       — lost the issuance race (resolved internally)
    ├── MirrorFailedError            — card issued but external mirror failed
    ├── RailError                    — transport failure talking to a payment rail
    ├── CardNotFoundError
    ├── FundingIntentNotFoundError
    └── UnauthorizedAccessError
"""

import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


# ---------------------------------------------------------------------------
# Base exception
# ---------------------------------------------------------------------------

class CardEngineError(Exception):
    """Base exception for all card engine domain errors."""

    def __init__(self, detail: str = "An error occurred"):
        self.detail = detail
        super().__init__(self.detail)


# ---------------------------------------------------------------------------
# Domain exceptions
# ---------------------------------------------------------------------------

class ValidationError(CardEngineError):
    """Raised when an amount or format is invalid. Always raised before any side effect."""


class InvalidCardNumberError(ValidationError):
    """Raised when a card number is not exactly 16 digits."""

    def __init__(self, detail: str = "Card number must be exactly 16 digits"):
        super().__init__(detail)


class PaymentNotConfirmedError(CardEngineError):
    """
    Raised when the funding intent did not reach Successful.

    Attributes:
        reference: The funding reference that was checked.
        status: The intent status observed (pending, failed or timed_out).
    """

    def __init__(self, reference: str, status: str, reason: str | None = None):
        self.reference = reference
        self.status = status
        self.reason = reason
        message = f"Payment {reference} not confirmed (status: {status})"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class KeyDerivationError(CardEngineError):
    """Raised when a key cannot be derived or the session holding it is gone."""


class DecryptionError(CardEngineError):
    """Raised when ciphertext fails authentication. Never masked, never retried."""

    def __init__(self, detail: str = "Card data could not be decrypted with this key"):
        super().__init__(detail)


class InsufficientBalanceError(CardEngineError):
    """
    Raised when a spend or transfer would make a card balance negative.

    Attributes:
        card_id: The card that lacks sufficient balance.
        requested: The amount the caller tried to spend.
        available: The current balance of the card.
    """

    def __init__(self, card_id: uuid.UUID, requested: int, available: int):
        self.card_id = card_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient balance: requested {requested}, available {available}"
        )


class SpendingLimitExceededError(CardEngineError):
    """Raised when a spend would push current_spend above the spending limit."""

    def __init__(self, card_id: uuid.UUID, requested: int, remaining: int):
        self.card_id = card_id
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Spending limit exceeded: requested {requested}, remaining {remaining}"
        )


class CardInactiveError(CardEngineError):
    """Raised when funding or spending against a deactivated card."""

    def __init__(self, card_id: uuid.UUID):
        self.card_id = card_id
        super().__init__(f"Card {card_id} is not active")


class DuplicateIssuanceError(CardEngineError):
    """
    Raised when a concurrent issuance already created the card for a reference.

    The issuance coordinator catches this and returns the winner's card, so
    callers never see it.
    """

    def __init__(self, funding_reference: str):
        self.funding_reference = funding_reference
        super().__init__(f"A card already exists for funding reference {funding_reference}")


class MirrorFailedError(CardEngineError):
    """
    Raised when the external ledger mirror rejected a card record.

    The card exists but has been deactivated. `card` carries the safe view.
    """

    def __init__(self, card, reason: str):
        self.card = card
        self.reason = reason
        super().__init__(f"Card {card.id} was issued but could not be mirrored: {reason}")


class RailError(CardEngineError):
    """Raised when a payment rail cannot be reached or answers with an error."""

    def __init__(self, rail: str, detail: str):
        self.rail = rail
        super().__init__(f"{rail} rail error: {detail}")


class CardNotFoundError(CardEngineError):
    """Raised when a requested card does not exist."""

    def __init__(self, card_id):
        self.card_id = card_id
        super().__init__(f"Card {card_id} not found")


class FundingIntentNotFoundError(CardEngineError):
    """Raised when no funding intent exists for a reference."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Funding intent {reference} not found")


class UnauthorizedAccessError(CardEngineError):
    """Raised when an identity attempts to access a card it doesn't own."""

    def __init__(self, detail: str = "You do not have access to this resource"):
        super().__init__(detail)


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

def _error(status_code: int, exc: CardEngineError, error_type: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.detail, "error_type": error_type, **extra},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register custom exception handlers with the FastAPI application.

    Each handler maps a domain exception to an HTTP status code and the
    consistent JSON response format. Called once during app startup in main.py.
    """

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return _error(422, exc, "validation_error")

    @app.exception_handler(PaymentNotConfirmedError)
    async def payment_not_confirmed_handler(
        request: Request, exc: PaymentNotConfirmedError
    ) -> JSONResponse:
        return _error(
            402,  # Payment Required: the user may retry once the payment settles
            exc,
            "payment_not_confirmed",
            reference=exc.reference,
            status=exc.status,
        )

    @app.exception_handler(KeyDerivationError)
    async def key_derivation_handler(request: Request, exc: KeyDerivationError) -> JSONResponse:
        return _error(401, exc, "key_derivation_failed")

    @app.exception_handler(DecryptionError)
    async def decryption_handler(request: Request, exc: DecryptionError) -> JSONResponse:
        return _error(403, exc, "decryption_failed")

    @app.exception_handler(InsufficientBalanceError)
    async def insufficient_balance_handler(
        request: Request, exc: InsufficientBalanceError
    ) -> JSONResponse:
        return _error(
            422,
            exc,
            "insufficient_balance",
            requested=exc.requested,
            available=exc.available,
        )

    @app.exception_handler(SpendingLimitExceededError)
    async def spending_limit_handler(
        request: Request, exc: SpendingLimitExceededError
    ) -> JSONResponse:
        return _error(422, exc, "spending_limit_exceeded", remaining=exc.remaining)

    @app.exception_handler(CardInactiveError)
    async def card_inactive_handler(request: Request, exc: CardInactiveError) -> JSONResponse:
        return _error(409, exc, "card_inactive")

    @app.exception_handler(MirrorFailedError)
    async def mirror_failed_handler(request: Request, exc: MirrorFailedError) -> JSONResponse:
        # Degraded success: the card exists (inactive), so this is not a 5xx
        from fundcard.schemas.card import CardResponse

        return JSONResponse(
            status_code=202,
            content={
                "detail": exc.detail,
                "error_type": "mirror_failed",
                "card": CardResponse.model_validate(exc.card).model_dump(mode="json"),
            },
        )

    @app.exception_handler(RailError)
    async def rail_error_handler(request: Request, exc: RailError) -> JSONResponse:
        return _error(502, exc, "rail_unavailable", rail=exc.rail)

    @app.exception_handler(CardNotFoundError)
    async def card_not_found_handler(request: Request, exc: CardNotFoundError) -> JSONResponse:
        return _error(404, exc, "card_not_found")

    @app.exception_handler(FundingIntentNotFoundError)
    async def intent_not_found_handler(
        request: Request, exc: FundingIntentNotFoundError
    ) -> JSONResponse:
        return _error(404, exc, "funding_intent_not_found")

    @app.exception_handler(UnauthorizedAccessError)
    async def unauthorized_access_handler(
        request: Request, exc: UnauthorizedAccessError
    ) -> JSONResponse:
        return _error(403, exc, "unauthorized_access")
