"""
Nalid24 - QR payloads for contact sharing.

A user's QR code carries a small JSON document naming them:

    {"userId": "...", "username": "...", "notificationHandle": "..."}

Older or third-party codes may carry ``id``/``uniqueId`` instead of
``userId``, ``fcmToken`` instead of ``notificationHandle``, or just the bare
user id as text. Rendering and scanning the image itself is left to the
host platform.
"""

import json
import logging
from typing import Any, Dict, Optional

from .constants import QR_USERNAME_FALLBACK_LENGTH, QR_USERNAME_FALLBACK_PREFIX
from .errors import ContactError, ErrorCode
from .utils import truncate_string, validate_uid, validate_username

logger = logging.getLogger(__name__)

_ID_FIELDS = ("userId", "id", "uniqueId")
_HANDLE_FIELDS = ("notificationHandle", "fcmToken")


class QRPayload:
    """Decoded contents of a scanned QR code."""

    def __init__(self, user_id: str, username: str, notification_handle: Optional[str] = None):
        self.user_id = user_id
        self.username = username
        self.notification_handle = notification_handle

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"userId": self.user_id, "username": self.username}
        if self.notification_handle:
            data["notificationHandle"] = self.notification_handle
        return data

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, QRPayload):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"QRPayload(user_id={self.user_id!r}, username={self.username!r})"


def fallback_username(user_id: str) -> str:
    """Placeholder name for a contact whose code carries no username."""
    return f"{QR_USERNAME_FALLBACK_PREFIX}{user_id[:QR_USERNAME_FALLBACK_LENGTH]}"


def build_qr_payload(user_id: str, username: str, notification_handle: Optional[str] = None) -> str:
    """Encode the text to show in this user's QR code."""
    payload = QRPayload(user_id, username, notification_handle)
    return json.dumps(payload.to_dict(), separators=(",", ":"))


def _first_string(data: Dict[str, Any], fields) -> Optional[str]:
    for field in fields:
        value = data.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def parse_qr_payload(text: str) -> QRPayload:
    """
    Decode scanned QR text.

    Accepts the JSON payload (with its legacy field names) or a bare user id.

    Raises:
        ContactError: If the payload is empty or names no valid user id
    """
    if not isinstance(text, str) or not text.strip():
        raise ContactError(ErrorCode.E407_INVALID_QR_PAYLOAD, "QR payload is empty")

    text = text.strip()
    handle: Optional[str] = None
    username: Optional[str] = None

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, dict):
        user_id = _first_string(data, _ID_FIELDS)
        if user_id is None:
            raise ContactError(
                ErrorCode.E407_INVALID_QR_PAYLOAD,
                "QR payload does not contain a user id",
                {"payload": truncate_string(text, 80)},
            )
        username = _first_string(data, ("username",))
        handle = _first_string(data, _HANDLE_FIELDS)
    else:
        # Bare id (or a JSON scalar, which is treated as text)
        user_id = text

    if not validate_uid(user_id):
        raise ContactError(
            ErrorCode.E407_INVALID_QR_PAYLOAD,
            "QR payload contains an invalid user id",
            {"payload": truncate_string(text, 80)},
        )

    if not validate_username(username):
        username = fallback_username(user_id)

    payload = QRPayload(user_id, username, handle)
    logger.debug(f"Parsed QR payload for {payload.user_id}")
    return payload
