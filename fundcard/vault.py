"""
Card vault: authenticated encryption of card numbers and CVCs.

AES-256-GCM under the caller's session-derived key. Every encrypt() call
draws a fresh 96-bit nonce from the OS CSPRNG; the stored form is

    base64( nonce[12] || ciphertext || tag[16] )

A wrong key or any modified byte fails authentication and raises
DecryptionError. Decryption never returns partial data and is never retried.

Nothing in this module logs, caches, or stores plaintext.
"""

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from fundcard.exceptions import DecryptionError

NONCE_SIZE = 12
TAG_SIZE = 16


def _cipher(key: bytes) -> AESGCM:
    if len(key) != 32:
        raise DecryptionError("Vault key must be 256 bits")
    return AESGCM(key)


def encrypt(key: bytes, plaintext: str) -> str:
    """
    Encrypt a string for storage.

    Args:
        key: 32-byte key from a KeySession.
        plaintext: The value to protect (card number or CVC).

    Returns:
        Opaque base64 string holding nonce, ciphertext and tag.
    """
    nonce = os.urandom(NONCE_SIZE)
    sealed = _cipher(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt(key: bytes, ciphertext: str) -> str:
    """
    Decrypt a value produced by encrypt().

    Raises:
        DecryptionError: If the blob is malformed, was tampered with, or was
            sealed under a different key.
    """
    try:
        blob = base64.b64decode(ciphertext.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
        raise DecryptionError("Ciphertext is not valid vault data") from exc

    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionError("Ciphertext is too short")

    nonce, sealed = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
    try:
        plaintext = _cipher(key).decrypt(nonce, sealed, None)
    except InvalidTag as exc:
        raise DecryptionError() from exc
    return plaintext.decode("utf-8")
