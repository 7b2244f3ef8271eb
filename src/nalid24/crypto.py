"""
Nalid24 - Message encryption.

Message bodies are sealed with AES-256-GCM before they are written to the
shared realtime store, so the store (and the push relay) only ever sees
ciphertext.

The per-pair key is derived deterministically from the two participant ids:
- Both parties compute it locally, with no network round-trip
- It is NOT forward-secure and anyone who knows both ids can derive it

This is a placeholder key agreement until an authenticated key exchange
(e.g. X25519 with identity verification) replaces it.

All cryptographic operations use the cryptography library (Apache 2.0/BSD).
"""

import base64
import binascii
import hashlib
import os
import secrets
import uuid

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import (
    CIPHERTEXT_VERSION,
    KEY_SIZE,
    MESSAGE_ID_PREFIX,
    MESSAGE_ID_RANDOM_BYTES,
    NONCE_SIZE,
    SHARED_SECRET_SEPARATOR,
)
from .errors import CryptoError, DecryptionError, ErrorCode

_HEADER_SIZE = 1 + NONCE_SIZE


def derive_shared_secret(user_a: str, user_b: str) -> bytes:
    """
    Derive the 32-byte shared secret for a pair of users.

    SHA-256 over the sorted ids joined with a separator, so
    ``derive_shared_secret(a, b) == derive_shared_secret(b, a)``.
    """
    combined = SHARED_SECRET_SEPARATOR.join(sorted([user_a, user_b]))
    return hashlib.sha256(combined.encode("utf-8")).digest()


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise CryptoError(
            ErrorCode.E103_INVALID_KEY,
            f"Key must be {KEY_SIZE} bytes",
            {"length": len(key) if isinstance(key, (bytes, bytearray)) else None},
        )


def encrypt(plaintext: str, key: bytes) -> str:
    """
    Encrypt a message body.

    Layout before base64: ``version (1 byte) || nonce (12 bytes) || ciphertext+tag``.
    The version byte is authenticated as associated data.

    Returns:
        Text-safe base64 string
    """
    _check_key(key)
    header = bytes([CIPHERTEXT_VERSION])
    nonce = os.urandom(NONCE_SIZE)
    try:
        sealed = AESGCM(bytes(key)).encrypt(nonce, plaintext.encode("utf-8"), header)
    except (TypeError, ValueError, AttributeError) as e:
        raise CryptoError(ErrorCode.E101_ENCRYPTION_FAILED, f"Encryption failed: {e}") from e
    return base64.b64encode(header + nonce + sealed).decode("ascii")


def decrypt(ciphertext: str, key: bytes) -> str:
    """
    Decrypt a message body produced by :func:`encrypt`.

    Raises:
        DecryptionError: If the key is wrong or the data is corrupted
    """
    _check_key(key)
    try:
        raw = base64.b64decode(ciphertext.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, AttributeError, UnicodeEncodeError) as e:
        raise DecryptionError("Ciphertext is not valid base64") from e

    if len(raw) <= _HEADER_SIZE:
        raise DecryptionError("Ciphertext is truncated", {"length": len(raw)})

    version = raw[0]
    if version != CIPHERTEXT_VERSION:
        raise DecryptionError(f"Unsupported ciphertext version {version}")

    nonce = raw[1:_HEADER_SIZE]
    try:
        plaintext = AESGCM(bytes(key)).decrypt(nonce, raw[_HEADER_SIZE:], raw[:1])
    except InvalidTag as e:
        raise DecryptionError("Authentication tag mismatch (wrong key or tampered data)") from e

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted payload is not valid UTF-8") from e


def generate_message_id(now_ms: int) -> str:
    """
    Generate a creation-time ordered message id.

    The millisecond timestamp is zero padded so ids sort lexicographically
    in creation order; the random suffix keeps them unique.
    """
    return f"{MESSAGE_ID_PREFIX}_{now_ms:013d}_{secrets.token_hex(MESSAGE_ID_RANDOM_BYTES)}"


def generate_user_id() -> str:
    """Generate a new random user id (UUID4)."""
    return str(uuid.uuid4())
