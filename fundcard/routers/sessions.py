"""
Sessions router — signed-challenge key sessions.

Endpoints:
  POST   /sessions/challenge — Issue a challenge for an identity to sign
  POST   /sessions           — Derive the card key and open a session
  DELETE /sessions           — Logout: drop the session and its key

The derived key stays in server memory for the session only. The session
token returned to the client names the session; it never carries the key.
"""

from fastapi import APIRouter, Depends, Response, status

from fundcard.config import settings
from fundcard.dependencies import get_key_session, get_session_registry
from fundcard.schemas.session import (
    ChallengeRequest,
    ChallengeResponse,
    SessionOpenRequest,
    SessionResponse,
)
from fundcard.security import KeySession, SessionRegistry, SignedChallenge, issue_challenge

router = APIRouter()


@router.post(
    "/challenge",
    response_model=ChallengeResponse,
    summary="Issue a key-derivation challenge",
)
async def create_challenge(request: ChallengeRequest):
    """
    Issue a short-lived challenge bound to the identity.

    The identity signs it and sends the signature to POST /sessions before
    the challenge expires.
    """
    return ChallengeResponse(
        identity=request.identity,
        challenge=issue_challenge(request.identity),
        expires_in_minutes=settings.CHALLENGE_EXPIRE_MINUTES,
    )


@router.post(
    "",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a key session from a signed challenge",
)
async def open_session(
    request: SessionOpenRequest,
    registry: SessionRegistry = Depends(get_session_registry),
):
    """
    Derive the card-vault key and open a session.

    - The challenge must be unexpired and issued for this identity
    - The signature must be 0x-prefixed hex
    - Returns a bearer token for the card endpoints
    """
    session, token = registry.open(
        request.identity,
        SignedChallenge(challenge=request.challenge, signature=request.signature),
    )
    return SessionResponse(
        token=token,
        identity=session.identity,
        expires_at=session.expires_at,
    )


@router.delete(
    "",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Close the current key session",
)
async def close_session(
    session: KeySession = Depends(get_key_session),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Logout. The derived key is cleared; the token stops working."""
    registry.close(session.session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
