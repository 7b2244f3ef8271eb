"""
Nalid24 - Contact management system.

Contacts live in the local persistent map under a single key. Every
mutation is a read-modify-write of that list, serialized through the
store's per-key lock so two concurrent add/remove calls never lose an
update.
"""

import logging
from typing import Any, Dict, List, Optional

from .constants import CONTACTS_STORAGE_KEY
from .errors import ContactError, ErrorCode, NotFoundError
from .storage import LocalStore
from .utils import now_ms, validate_username

logger = logging.getLogger(__name__)


class Contact:
    """Represents a contact in the messenger."""

    def __init__(
        self,
        uid: str,
        username: str,
        notification_handle: Optional[str] = None,
        added_at: Optional[int] = None,
    ):
        self.uid = uid
        self.username = username
        self.notification_handle = notification_handle
        self.added_at = added_at if added_at is not None else now_ms()

    def to_dict(self) -> Dict[str, Any]:
        """Convert contact to dictionary for storage."""
        return {
            "id": self.uid,
            "username": self.username,
            "notificationHandle": self.notification_handle,
            "addedAt": self.added_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Contact":
        """Create contact from dictionary."""
        return Contact(
            uid=data["id"],
            username=data["username"],
            notification_handle=data.get("notificationHandle"),
            added_at=data.get("addedAt"),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Contact):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __hash__(self) -> int:
        return hash(self.uid)

    def __repr__(self) -> str:
        return f"Contact(uid={self.uid!r}, username={self.username!r})"


class ContactManager:
    """Manages contacts and their persistent storage."""

    def __init__(self, store: LocalStore):
        self.store = store

    async def _load(self) -> Dict[str, Contact]:
        raw = await self.store.get_item(CONTACTS_STORAGE_KEY, [])
        contacts: Dict[str, Contact] = {}
        for entry in raw or []:
            try:
                contact = Contact.from_dict(entry)
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed contact entry: {e}")
                continue
            if not isinstance(contact.uid, str) or not validate_username(contact.username):
                logger.warning(f"Skipping malformed contact entry: {entry!r}")
                continue
            contacts[contact.uid] = contact
        return contacts

    async def _save(self, contacts: Dict[str, Contact]) -> None:
        await self.store.set_item(CONTACTS_STORAGE_KEY, [c.to_dict() for c in contacts.values()])
        logger.debug(f"Saved {len(contacts)} contacts")

    async def list_contacts(self) -> List[Contact]:
        """Get all contacts sorted by username."""
        contacts = await self._load()
        return sorted(contacts.values(), key=lambda c: c.username.lower())

    async def get_contact(self, uid: str) -> Optional[Contact]:
        """Get a contact by id."""
        return (await self._load()).get(uid)

    async def require_contact(self, uid: str) -> Contact:
        """Get a contact by id or raise NotFoundError."""
        contact = await self.get_contact(uid)
        if contact is None:
            raise NotFoundError(ErrorCode.E401_CONTACT_NOT_FOUND, f"Contact {uid} not found", {"uid": uid})
        return contact

    async def upsert_contact(
        self, uid: str, username: str, notification_handle: Optional[str] = None
    ) -> Contact:
        """
        Add a contact, or refresh an existing one.

        Idempotent: an existing contact only changes when a different,
        non-empty notification handle is supplied.

        Raises:
            ContactError: If the id is empty, the username is not valid or
                the notification handle is not a string
            StorageError: If the contact list cannot be persisted
        """
        if not isinstance(uid, str) or not uid:
            raise ContactError(ErrorCode.E405_INVALID_CONTACT, "Contact id must not be empty")
        if not validate_username(username):
            raise ContactError(ErrorCode.E405_INVALID_CONTACT, f"Invalid contact username: {username!r}")
        if notification_handle is not None and not isinstance(notification_handle, str):
            raise ContactError(ErrorCode.E405_INVALID_CONTACT, "Notification handle must be a string")

        async with self.store.lock(CONTACTS_STORAGE_KEY):
            contacts = await self._load()
            existing = contacts.get(uid)

            if existing is not None:
                if notification_handle and existing.notification_handle != notification_handle:
                    existing.notification_handle = notification_handle
                    await self._save(contacts)
                    logger.info(f"Refreshed notification handle for {existing.username}")
                return existing

            contact = Contact(uid, username, notification_handle)
            contacts[uid] = contact
            await self._save(contacts)
            logger.info(f"Added contact {username} ({uid})")
            return contact

    async def remove_contact(self, uid: str) -> bool:
        """
        Remove a contact locally. Returns True if removed, False if not found.

        The peer's own contact entry for us is not touched.
        """
        async with self.store.lock(CONTACTS_STORAGE_KEY):
            contacts = await self._load()
            if uid not in contacts:
                return False
            del contacts[uid]
            await self._save(contacts)
        logger.info(f"Removed contact {uid}")
        return True

    async def clear_all_contacts(self) -> None:
        """Delete every contact."""
        async with self.store.lock(CONTACTS_STORAGE_KEY):
            await self.store.remove_item(CONTACTS_STORAGE_KEY)
        logger.info("Deleted all contacts")
