"""
FastAPI dependencies for key sessions and the long-lived engine components.

Dependency chain:

  get_session_registry (app.state)
      └── get_key_session (Bearer token -> open KeySession)
              └── get_identity (KeySession -> owner_id)

  get_verifier / get_coordinator (app.state)

  require_operator (X-Operator-Key -> OPERATOR_API_KEY)

The verifier, coordinator and session registry are built once in the
application lifespan (main.py) and stored on app.state, so tests can swap
them for instances wired to fake rails and an in-memory database.
"""

import hmac

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader, OAuth2PasswordBearer

from fundcard.config import settings
from fundcard.exceptions import UnauthorizedAccessError
from fundcard.security import KeySession, SessionRegistry
from fundcard.services.issuance_service import IssuanceCoordinator
from fundcard.services.verification_service import PaymentVerifier


# Reads the "Authorization: Bearer <token>" header. tokenUrl is only used by
# Swagger UI; sessions are opened with a signed challenge, not a password.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/sessions")

# Merchant-side calls carry a shared operator key instead of a key session
operator_key_header = APIKeyHeader(name="X-Operator-Key", auto_error=False)


def get_session_registry(request: Request) -> SessionRegistry:
    return request.app.state.sessions


def get_verifier(request: Request) -> PaymentVerifier:
    return request.app.state.verifier


def get_coordinator(request: Request) -> IssuanceCoordinator:
    return request.app.state.coordinator


async def get_key_session(
    token: str = Depends(oauth2_scheme),
    registry: SessionRegistry = Depends(get_session_registry),
) -> KeySession:
    """
    Resolve the bearer token to an open KeySession.

    Raises:
        KeyDerivationError (401): If the token is invalid, or the session was
            closed or has expired.
    """
    return registry.resolve(token)


async def get_identity(session: KeySession = Depends(get_key_session)) -> str:
    """The owner_id every card query is scoped to."""
    return session.identity


async def require_operator(key: str | None = Depends(operator_key_header)) -> None:
    """
    Require the operator key on merchant-side endpoints such as refunds.

    A cardholder's key session is not enough: refunds return spend that the
    merchant side has agreed to give back.

    Raises:
        UnauthorizedAccessError (403): If no operator key is configured, or
            the request carries a missing or wrong key.
    """
    expected = settings.OPERATOR_API_KEY
    if not expected or not key or not hmac.compare_digest(key.encode(), expected.encode()):
        raise UnauthorizedAccessError("Operator access required")
