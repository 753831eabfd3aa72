"""
Pydantic schemas for key sessions.

Flow:
  1. POST /sessions/challenge {identity}            -> {challenge}
  2. The identity signs the challenge out of band (e.g. a wallet signature)
  3. POST /sessions {identity, challenge, signature} -> {token}
  4. Send "Authorization: Bearer <token>" on card endpoints
  5. DELETE /sessions                                -> key dropped
"""

from datetime import datetime

from pydantic import BaseModel, Field


class ChallengeRequest(BaseModel):
    identity: str = Field(min_length=1, max_length=128)


class ChallengeResponse(BaseModel):
    identity: str
    challenge: str
    expires_in_minutes: int


class SessionOpenRequest(BaseModel):
    identity: str = Field(min_length=1, max_length=128)
    challenge: str
    signature: str = Field(description="0x-prefixed hex signature over the challenge")


class SessionResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    identity: str
    expires_at: datetime
