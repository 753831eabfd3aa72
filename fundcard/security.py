"""
Security utilities: signed challenges, key derivation, and session-scoped keys.

This module centralizes the identity side of card encryption so it is easy
to audit. Three concerns are handled here:

1. CHALLENGES (JWT, HS256)
   - issue_challenge() returns a short-lived token bound to one identity
   - The identity signs it out of band (e.g. with a wallet) and sends back
     the signature together with the challenge

2. KEY DERIVATION (PBKDF2-HMAC-SHA256)
   - derive_key() turns (identity, signed challenge) into a 256-bit key
   - Fixed, domain-separated salt and >= 100,000 iterations
   - Deterministic: the same pair always yields the same key, which is what
     makes later decryption possible
   - No network or disk I/O; the key is returned, never stored

3. SESSION-SCOPED KEYS
   - KeySession holds one identity's derived key for one session
   - SessionRegistry maps opaque session tokens to KeySessions in memory
   - Logout or expiry drops the key; nothing here touches the database

There is no process-wide "current key": every caller passes its
own KeySession, so concurrent identities never share key state.
"""

import asyncio
import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from jose import JWTError, jwt

from fundcard.config import settings
from fundcard.exceptions import KeyDerivationError

logger = logging.getLogger(__name__)

KEY_LENGTH_BYTES = 32  # AES-256
CHALLENGE_PURPOSE = "card-key-derivation"
SESSION_PURPOSE = "card-session"

# Hex signature with 0x prefix, at least 32 bytes, whole bytes only
_SIGNATURE_RE = re.compile(r"^0x(?:[0-9a-fA-F]{2}){32,}$")


# ---------------------------------------------------------------------------
# 1. JWT helpers
# ---------------------------------------------------------------------------


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """
    Create a signed JWT.

    Args:
        data: Dictionary of claims to encode (must include "sub").
        expires_delta: Optional custom lifetime. Defaults to
                       SESSION_EXPIRE_MINUTES from settings.

    Returns:
        An encoded JWT string.
    """
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(
            minutes=settings.SESSION_EXPIRE_MINUTES
        )

    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> dict:
    """
    Decode and verify a JWT.

    Raises:
        JWTError: If the token is expired, tampered with, or invalid.
    """
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])


# ---------------------------------------------------------------------------
# 2. Challenges and key derivation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SignedChallenge:
    """A challenge issued by issue_challenge() and the identity's signature over it."""
    challenge: str
    signature: str = field(repr=False)


def issue_challenge(identity: str) -> str:
    """
    Issue a fresh, time-boxed challenge bound to `identity`.

    Each call carries a random nonce, so two challenges for the same identity
    are never equal.
    """
    if not identity or not identity.strip():
        raise KeyDerivationError("Identity must not be empty")

    return create_access_token(
        {
            "sub": identity,
            "purpose": CHALLENGE_PURPOSE,
            "nonce": secrets.token_hex(16),
        },
        expires_delta=timedelta(minutes=settings.CHALLENGE_EXPIRE_MINUTES),
    )


def verify_challenge(identity: str, challenge: str) -> dict:
    """
    Check that a challenge was issued by us, is unexpired, and names `identity`.

    Returns:
        The decoded challenge claims.

    Raises:
        KeyDerivationError: On any mismatch. The JWT error is chained, not exposed.
    """
    try:
        claims = decode_access_token(challenge)
    except JWTError as exc:
        raise KeyDerivationError("Challenge is invalid or expired") from exc

    if claims.get("purpose") != CHALLENGE_PURPOSE or claims.get("sub") != identity:
        raise KeyDerivationError("Challenge is not bound to this identity")
    return claims


def derive_key(
    identity: str,
    signed_challenge: SignedChallenge,
    *,
    iterations: int | None = None,
    salt: str | None = None,
) -> bytes:
    """
    Derive the 256-bit card-vault key for `identity` from a signed challenge.

    The key material is the signature followed by the identity, stretched
    with PBKDF2-HMAC-SHA256 under a fixed, domain-separated salt.

    Args:
        identity: Stable identity identifier (the card owner_id).
        signed_challenge: Challenge from issue_challenge() plus its signature.
        iterations: Override KDF_ITERATIONS (tests only; floor still applies).
        salt: Override KDF_SALT.

    Returns:
        32 raw key bytes. The caller keeps them in a KeySession; they must
        never be persisted or handed to the persistence layer.

    Raises:
        KeyDerivationError: If the identity is empty, the signature is
            malformed, or the challenge is not valid for this identity.
    """
    if not identity or not identity.strip():
        raise KeyDerivationError("Identity must not be empty")

    signature = signed_challenge.signature or ""
    if not _SIGNATURE_RE.match(signature):
        raise KeyDerivationError("Signature is malformed")

    verify_challenge(identity, signed_challenge.challenge)

    rounds = iterations or settings.KDF_ITERATIONS
    if rounds < 100_000:
        raise KeyDerivationError("KDF iteration count below policy minimum")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH_BYTES,
        salt=(salt or settings.KDF_SALT).encode(),
        iterations=rounds,
    )
    # Signatures are case-insensitive hex; normalize so "0xAB" and "0xab" agree
    return kdf.derive((signature.lower() + identity).encode())


# ---------------------------------------------------------------------------
# 3. Session-scoped keys
# ---------------------------------------------------------------------------


@dataclass
class KeySession:
    """
    One identity's derived key for the lifetime of one session.

    The key is readable only while the session is open and unexpired.
    clear() wipes it; any later access raises KeyDerivationError.
    """
    session_id: str
    identity: str
    expires_at: datetime
    _key: bytes | None = field(default=None, repr=False)

    @property
    def is_active(self) -> bool:
        return self._key is not None and datetime.now(timezone.utc) < self.expires_at

    @property
    def key(self) -> bytes:
        if self._key is None:
            raise KeyDerivationError("Session has been closed; re-authenticate")
        if datetime.now(timezone.utc) >= self.expires_at:
            self.clear()
            raise KeyDerivationError("Session has expired; re-authenticate")
        return self._key

    def clear(self) -> None:
        self._key = None


class SessionRegistry:
    """
    In-memory map of open sessions.

    Lives on the application instance (app.state), never in the database.
    Sessions are bound to the process that opened them.
    """

    def __init__(self, ttl: timedelta | None = None):
        self._ttl = ttl or timedelta(minutes=settings.SESSION_EXPIRE_MINUTES)
        self._sessions: dict[str, KeySession] = {}

    def open(self, identity: str, signed_challenge: SignedChallenge) -> tuple[KeySession, str]:
        """
        Derive the key and open a session for it.

        Expired sessions are purged first, so their keys do not outlive them
        even when their clients never come back.

        Returns:
            (session, token). The token is a signed JWT naming the session id;
            it carries no key material.
        """
        self.purge_expired()
        key = derive_key(identity, signed_challenge)
        session = KeySession(
            session_id=secrets.token_urlsafe(24),
            identity=identity,
            expires_at=datetime.now(timezone.utc) + self._ttl,
            _key=key,
        )
        self._sessions[session.session_id] = session
        token = create_access_token(
            {"sub": identity, "sid": session.session_id, "purpose": SESSION_PURPOSE},
            expires_delta=self._ttl,
        )
        logger.info("Opened key session for identity %s", identity)
        return session, token

    def resolve(self, token: str) -> KeySession:
        """
        Return the open session named by `token`.

        Raises:
            KeyDerivationError: If the token is invalid, or the session is
                closed or expired.
        """
        try:
            claims = decode_access_token(token)
        except JWTError as exc:
            raise KeyDerivationError("Session token is invalid or expired") from exc

        if claims.get("purpose") != SESSION_PURPOSE:
            raise KeyDerivationError("Not a session token")

        session = self._sessions.get(claims.get("sid", ""))
        if session is None or session.identity != claims.get("sub"):
            raise KeyDerivationError("Session not found; re-authenticate")
        if not session.is_active:
            self._drop(session.session_id)
            raise KeyDerivationError("Session has expired; re-authenticate")
        return session

    def close(self, session_id: str) -> None:
        """Logout: clear the key and forget the session."""
        if self._drop(session_id):
            logger.info("Closed key session %s", session_id[:8])

    def purge_expired(self) -> int:
        """Drop every expired session. Returns how many were removed."""
        expired = [sid for sid, s in self._sessions.items() if not s.is_active]
        for sid in expired:
            self._drop(sid)
        return len(expired)

    async def purge_periodically(self, interval: float, sleep=asyncio.sleep) -> None:
        """Purge expired sessions every `interval` seconds until cancelled."""
        while True:
            await sleep(interval)
            removed = self.purge_expired()
            if removed:
                logger.info("Purged %d expired key session(s)", removed)

    def _drop(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.clear()
        return True

    def __len__(self) -> int:
        return len(self._sessions)
