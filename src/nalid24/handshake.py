"""
Nalid24 - Bidirectional contact handshake.

When A scans B's QR code:
1. A adds B to its local contacts.
2. A writes a request to contactRequests/{B}/{A}.
3. B's request listener adds A to its own contacts and deletes the request.

Both sides also publish {id, username, notificationHandle} under users/ so
notifications can be addressed without exchanging handles again.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from .constants import CONTACT_REQUESTS_ROOT, USERS_ROOT
from .contact import Contact, ContactManager
from .errors import ContactError, ErrorCode, NalidError, RemoteError
from .identity import User
from .qr_code import QRPayload, fallback_username, parse_qr_payload
from .realtime import SERVER_TIMESTAMP, DataSnapshot, RealtimeStore, Subscription
from .utils import validate_uid, validate_username

logger = logging.getLogger(__name__)

RequestCallback = Callable[[Contact], Union[None, Awaitable[None]]]


def request_path(target_id: str, requester_id: str) -> str:
    return f"{CONTACT_REQUESTS_ROOT}/{target_id}/{requester_id}"


class ContactHandshake:
    """Contact exchange over the shared store."""

    def __init__(self, store: RealtimeStore, contacts: ContactManager):
        self.store = store
        self.contacts = contacts

    async def publish_user(self, user_id: str, username: str, notification_handle: Optional[str] = None) -> None:
        """
        Publish (or refresh) this user's public record under users/.

        A missing handle leaves any previously published handle in place.
        """
        fields: Dict[str, Any] = {"id": user_id, "username": username, "updatedAt": SERVER_TIMESTAMP}
        if notification_handle:
            fields["notificationHandle"] = notification_handle
        await self.store.update(f"{USERS_ROOT}/{user_id}", fields)
        logger.debug(f"Published user record for {user_id}")

    async def lookup_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Return a published user record, or None."""
        snapshot = await self.store.get(f"{USERS_ROOT}/{user_id}")
        value = snapshot.val()
        return value if isinstance(value, dict) else None

    async def request_contact(
        self,
        requester_id: str,
        requester_username: str,
        requester_handle: Optional[str],
        target_id: str,
    ) -> None:
        """
        Ask ``target_id`` to add the requester back.

        Raises:
            RemoteWriteError: If the request cannot be written
        """
        await self.store.set(
            request_path(target_id, requester_id),
            {
                "requesterId": requester_id,
                "requesterUsername": requester_username,
                "requesterNotificationHandle": requester_handle,
                "sentAt": SERVER_TIMESTAMP,
            },
        )
        logger.info(f"Contact request sent to {target_id}")

        try:
            await self.publish_user(requester_id, requester_username, requester_handle)
        except RemoteError as e:
            logger.warning(f"Could not publish user record after request: {e.message}")

    def listen_for_requests(self, self_id: str, on_request: Optional[RequestCallback] = None) -> Subscription:
        """
        Auto-accept incoming contact requests.

        Each request (existing or new) adds the requester as a contact, is
        deleted from the store, then ``on_request`` is called. A failure on
        one request is logged and does not affect the others.
        """

        async def handle(snapshot: DataSnapshot) -> None:
            requester_id = snapshot.key
            data = snapshot.val()
            if not isinstance(data, dict):
                data = {}

            if not validate_uid(requester_id) or requester_id == self_id:
                logger.warning(f"Discarding invalid contact request from {requester_id!r}")
                await self._discard(self_id, requester_id)
                return

            username = data.get("requesterUsername")
            if not validate_username(username):
                username = fallback_username(requester_id)
            handle_value = data.get("requesterNotificationHandle")
            if not isinstance(handle_value, str) or not handle_value:
                handle_value = None
            try:
                contact = await self.contacts.upsert_contact(requester_id, username, handle_value)
            except NalidError as e:
                logger.error(f"Failed to accept contact request from {requester_id}: {e.message}")
                return

            await self._discard(self_id, requester_id)
            logger.info(f"Auto-added {contact.username} as contact")

            if on_request is not None:
                result = on_request(contact)
                if inspect.isawaitable(result):
                    await result

        subscription = self.store.on_child_added(f"{CONTACT_REQUESTS_ROOT}/{self_id}", handle)
        logger.debug(f"Listening for contact requests to {self_id}")
        return subscription

    async def _discard(self, self_id: str, requester_id: str) -> None:
        try:
            await self.store.remove(request_path(self_id, requester_id))
        except RemoteError as e:
            logger.warning(f"Could not delete handled contact request from {requester_id}: {e.message}")

    async def add_contact_from_qr(
        self, user: User, payload: Union[str, QRPayload], notification_handle: Optional[str] = None
    ) -> Contact:
        """
        Add the user named by a scanned QR code and ask them to add us back.

        The contact is stored locally before the request is sent, so it is
        kept even if the request write fails.

        Raises:
            ContactError: If the payload is invalid or names this user
            RemoteWriteError: If the contact request cannot be written
        """
        scanned = payload if isinstance(payload, QRPayload) else parse_qr_payload(payload)
        if scanned.user_id == user.uid:
            raise ContactError(ErrorCode.E406_SELF_CONTACT, "Cannot add yourself as a contact")

        contact = await self.contacts.upsert_contact(
            scanned.user_id, scanned.username, scanned.notification_handle
        )
        await self.request_contact(user.uid, user.username, notification_handle, scanned.user_id)
        return contact


class GlobalContactListener:
    """Process-lifetime contact request listener for the signed-in user."""

    def __init__(self, handshake: ContactHandshake):
        self.handshake = handshake
        self.user_id: Optional[str] = None
        self._subscription: Optional[Subscription] = None

    @property
    def active(self) -> bool:
        return self._subscription is not None

    def start(self, self_id: str, on_request: Optional[RequestCallback] = None) -> None:
        """Start listening; a previous listener is replaced."""
        self.stop()
        self._subscription = self.handshake.listen_for_requests(self_id, on_request)
        self.user_id = self_id
        logger.info(f"Global contact listener started for {self_id}")

    def stop(self) -> None:
        if self._subscription is None:
            return
        self._subscription.cancel()
        self._subscription = None
        logger.info(f"Global contact listener stopped for {self.user_id}")
        self.user_id = None
