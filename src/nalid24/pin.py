"""
Nalid24 - Local unlock PIN.

The PIN never leaves the device and is never stored in clear: only an
Argon2id hash and its random salt are kept in the local store.
"""

import base64
import hmac
import logging
import os
from typing import Optional

from argon2.low_level import Type, hash_secret_raw

from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    KEY_SIZE,
    PIN_LENGTH,
    PIN_STORAGE_KEY,
    SALT_SIZE,
)
from .errors import ErrorCode, IdentityError
from .storage import LocalStore

logger = logging.getLogger(__name__)


def _hash_pin(pin: str, salt: bytes) -> bytes:
    return hash_secret_raw(
        secret=pin.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=KEY_SIZE,
        type=Type.ID,
    )


def validate_pin(pin: str) -> bool:
    """A PIN is exactly PIN_LENGTH ASCII digits."""
    return isinstance(pin, str) and len(pin) == PIN_LENGTH and pin.isascii() and pin.isdigit()


class PinManager:
    """Stores and verifies the unlock PIN."""

    def __init__(self, store: LocalStore):
        self.store = store

    async def has_pin(self) -> bool:
        return await self.store.get_item(PIN_STORAGE_KEY) is not None

    async def set_pin(self, pin: str) -> None:
        """
        Hash and store a new PIN, replacing any previous one.

        Raises:
            IdentityError: If the PIN is not PIN_LENGTH digits
        """
        if not validate_pin(pin):
            raise IdentityError(ErrorCode.E306_INVALID_PIN, f"PIN must be {PIN_LENGTH} digits")

        salt = os.urandom(SALT_SIZE)
        digest = _hash_pin(pin, salt)
        await self.store.set_item(
            PIN_STORAGE_KEY,
            {
                "salt": base64.b64encode(salt).decode("utf-8"),
                "hash": base64.b64encode(digest).decode("utf-8"),
            },
        )
        logger.info("Unlock PIN updated")

    async def verify_pin(self, pin: str) -> bool:
        """Return True if ``pin`` matches the stored hash (False when none is set)."""
        record: Optional[dict] = await self.store.get_item(PIN_STORAGE_KEY)
        if not record or not validate_pin(pin):
            return False

        try:
            salt = base64.b64decode(record["salt"])
            expected = base64.b64decode(record["hash"])
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Stored PIN record is malformed: {e}")
            return False

        return hmac.compare_digest(_hash_pin(pin, salt), expected)

    async def clear_pin(self) -> None:
        await self.store.remove_item(PIN_STORAGE_KEY)
        logger.info("Unlock PIN cleared")
