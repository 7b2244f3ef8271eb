"""
Nalid24 - Messages and the local message cache.

Defines the message model, the delivery status state machine
(sending < sent < delivered < read) and the per-contact plaintext cache kept
in the local persistent map.

Messages are ordered by their server-assigned creation time, with the id
(itself time-prefixed) as a tie-breaker, so a timeline is stable regardless
of the order records arrive in.
"""

import bisect
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from .constants import MESSAGE_RETENTION_MS, MESSAGES_STORAGE_KEY, UNDECRYPTABLE_PLACEHOLDER
from .storage import LocalStore
from .utils import coerce_timestamp, now_ms

logger = logging.getLogger(__name__)


class MessageStatus(str, Enum):
    """Delivery status. Only ever moves forward."""

    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    def can_advance(self, target: "MessageStatus") -> bool:
        """True if moving from this status to ``target`` is forward progress."""
        return target.rank > self.rank

    @classmethod
    def parse(cls, value: Any) -> "MessageStatus":
        """Parse a wire value; anything missing or unknown counts as sent."""
        if isinstance(value, MessageStatus):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.SENT


_STATUS_ORDER = [
    MessageStatus.SENDING,
    MessageStatus.SENT,
    MessageStatus.DELIVERED,
    MessageStatus.READ,
]


class Message:
    """A message in a two-party chat."""

    def __init__(
        self,
        uid: str,
        sender_id: str,
        plaintext: Optional[str] = None,
        created_at: Optional[int] = None,
        status: MessageStatus = MessageStatus.SENT,
        ciphertext: Optional[str] = None,
        delivered_at: Optional[int] = None,
        read_at: Optional[int] = None,
        read_by: Optional[Dict[str, int]] = None,
        undecryptable: bool = False,
    ):
        self.uid = uid
        self.sender_id = sender_id
        self.plaintext = plaintext
        self.created_at = created_at
        self.status = MessageStatus.parse(status)
        self.ciphertext = ciphertext
        self.delivered_at = delivered_at
        self.read_at = read_at
        self.read_by = dict(read_by or {})
        self.undecryptable = undecryptable

    @property
    def text(self) -> str:
        """Displayable text; a placeholder when the payload could not be decrypted."""
        if self.undecryptable or self.plaintext is None:
            return UNDECRYPTABLE_PLACEHOLDER
        return self.plaintext

    @property
    def sort_key(self) -> tuple:
        return (self.created_at if self.created_at is not None else 0, self.uid)

    def is_expired(self, current_ms: int, retention_ms: int = MESSAGE_RETENTION_MS) -> bool:
        """A message without a creation time is treated as expired."""
        if self.created_at is None:
            return True
        return current_ms - self.created_at >= retention_ms

    def to_record(self) -> Dict[str, Any]:
        """Remote record (ciphertext only; never the plaintext)."""
        record: Dict[str, Any] = {
            "ciphertext": self.ciphertext,
            "senderId": self.sender_id,
            "createdAt": self.created_at,
            "status": self.status.value,
        }
        if self.delivered_at is not None:
            record["deliveredAt"] = self.delivered_at
        if self.read_at is not None:
            record["readAt"] = self.read_at
        if self.read_by:
            record["readBy"] = dict(self.read_by)
        return record

    @staticmethod
    def from_record(uid: str, record: Dict[str, Any]) -> "Message":
        """Build a message from a remote record, leaving plaintext unset."""
        read_by = record.get("readBy")
        return Message(
            uid=uid,
            sender_id=record.get("senderId", ""),
            created_at=coerce_timestamp(record.get("createdAt")),
            status=MessageStatus.parse(record.get("status")),
            ciphertext=record.get("ciphertext"),
            delivered_at=coerce_timestamp(record.get("deliveredAt")),
            read_at=coerce_timestamp(record.get("readAt")),
            read_by=read_by if isinstance(read_by, dict) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary for the local cache."""
        return {
            "id": self.uid,
            "senderId": self.sender_id,
            "text": self.plaintext,
            "createdAt": self.created_at,
            "status": self.status.value,
            "deliveredAt": self.delivered_at,
            "readAt": self.read_at,
            "readBy": dict(self.read_by),
            "undecryptable": self.undecryptable,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Message":
        """Create message from a local cache entry."""
        return Message(
            uid=data["id"],
            sender_id=data["senderId"],
            plaintext=data.get("text"),
            created_at=coerce_timestamp(data.get("createdAt")),
            status=MessageStatus.parse(data.get("status")),
            delivered_at=coerce_timestamp(data.get("deliveredAt")),
            read_at=coerce_timestamp(data.get("readAt")),
            read_by=data.get("readBy"),
            undecryptable=data.get("undecryptable", False),
        )

    def __repr__(self) -> str:
        return f"Message(uid={self.uid!r}, sender_id={self.sender_id!r}, status={self.status.value})"


def insert_sorted(messages: List[Message], message: Message) -> List[Message]:
    """
    Insert ``message`` into a timeline already sorted by creation time.

    A message with an id already present replaces the old entry (status
    updates re-deliver the same record). Mutates and returns ``messages``.
    """
    for index, existing in enumerate(messages):
        if existing.uid == message.uid:
            del messages[index]
            break

    keys = [m.sort_key for m in messages]
    messages.insert(bisect.bisect_right(keys, message.sort_key), message)
    return messages


class MessageStore:
    """Per-contact plaintext message cache in the local persistent map.

    Entries live under ``@Nalid24:Messages:{contactId}`` and follow the same
    retention window as the shared store.
    """

    def __init__(self, store: LocalStore, retention_ms: int = MESSAGE_RETENTION_MS):
        self.store = store
        self.retention_ms = retention_ms

    @staticmethod
    def _key(contact_id: str) -> str:
        return f"{MESSAGES_STORAGE_KEY}:{contact_id}"

    async def _load(self, contact_id: str) -> List[Message]:
        raw = await self.store.get_item(self._key(contact_id), [])
        messages: List[Message] = []
        for entry in raw or []:
            try:
                messages.append(Message.from_dict(entry))
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed cached message for {contact_id}: {e}")
        return messages

    async def _save(self, contact_id: str, messages: List[Message]) -> None:
        await self.store.set_item(self._key(contact_id), [m.to_dict() for m in messages])

    async def add_message(self, contact_id: str, message: Message) -> None:
        """Add or replace a message in the contact's cached timeline."""
        key = self._key(contact_id)
        async with self.store.lock(key):
            messages = await self._load(contact_id)
            insert_sorted(messages, message)
            await self._save(contact_id, messages)
        logger.debug(f"Cached message {message.uid} for {contact_id}")

    async def get_messages(self, contact_id: str) -> List[Message]:
        """Cached messages for a contact, oldest first."""
        messages = await self._load(contact_id)
        return sorted(messages, key=lambda m: m.sort_key)

    async def cleanup_old_messages(self, contact_id: str, current_ms: Optional[int] = None) -> int:
        """Drop cached messages past retention. Returns how many were removed."""
        current_ms = now_ms() if current_ms is None else current_ms
        key = self._key(contact_id)
        async with self.store.lock(key):
            messages = await self._load(contact_id)
            kept = [m for m in messages if not m.is_expired(current_ms, self.retention_ms)]
            removed = len(messages) - len(kept)
            if removed:
                await self._save(contact_id, kept)
                logger.info(f"Removed {removed} expired cached messages for {contact_id}")
        return removed

    async def delete_message(self, contact_id: str, message_id: str) -> bool:
        """Delete one cached message. Returns True if it existed."""
        key = self._key(contact_id)
        async with self.store.lock(key):
            messages = await self._load(contact_id)
            kept = [m for m in messages if m.uid != message_id]
            if len(kept) == len(messages):
                return False
            await self._save(contact_id, kept)
        return True

    async def clear_messages(self, contact_id: str) -> None:
        """Delete the cached timeline for one contact."""
        key = self._key(contact_id)
        async with self.store.lock(key):
            await self.store.remove_item(key)

    async def clear_all_messages(self) -> int:
        """Delete every cached timeline. Returns the number of contacts cleared."""
        prefix = f"{MESSAGES_STORAGE_KEY}:"
        keys = [key for key in await self.store.get_all_keys() if key.startswith(prefix)]
        removed = await self.store.multi_remove(keys)
        logger.info(f"Cleared cached messages for {removed} contacts")
        return removed
