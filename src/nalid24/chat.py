"""
Nalid24 - Chat addressing.

Both participants derive the same conversation namespace from their two ids
without any coordination.
"""

from typing import Tuple

from .constants import CHAT_ID_SEPARATOR


def chat_id(user_a: str, user_b: str) -> str:
    """Return the canonical chat id for a pair of user ids.

    The ids are sorted lexicographically before joining, so
    ``chat_id(a, b) == chat_id(b, a)``.
    """
    return CHAT_ID_SEPARATOR.join(sorted([user_a, user_b]))


def chat_participants(chat_id_value: str) -> Tuple[str, str]:
    """Split a chat id back into its two (sorted) participant ids.

    Raises:
        ValueError: If the id does not contain exactly two participants
    """
    parts = chat_id_value.split(CHAT_ID_SEPARATOR)
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"Invalid chat id: {chat_id_value!r}")
    return parts[0], parts[1]


def peer_of(chat_id_value: str, user_id: str) -> str:
    """Return the participant of a chat that is not ``user_id``."""
    first, second = chat_participants(chat_id_value)
    if user_id == first:
        return second
    if user_id == second:
        return first
    raise ValueError(f"User {user_id} is not a participant of chat {chat_id_value}")
