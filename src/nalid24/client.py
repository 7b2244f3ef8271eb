"""
Nalid24 - Messenger client.

Wires the components together for the signed-in user of one installation:
identity, contacts and local caches on disk; message sync, presence and the
contact handshake over the shared realtime store.

Typical lifecycle::

    client = MessengerClient(store, config)
    await client.register("alice")        # first run only
    await client.start()
    session = await client.open_chat(peer_id, on_update=render)
    await session.send("hi")
    ...
    await client.logout()
"""

import inspect
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .chat import chat_id
from .config import Config
from .constants import CONTACT_REQUESTS_ROOT, STORE_FILENAME, USERS_ROOT
from .contact import Contact, ContactManager
from .errors import ErrorCode, IdentityError, NalidError, RemoteError, StorageError
from .handshake import ContactHandshake, GlobalContactListener, RequestCallback
from .identity import IdentityManager, User
from .message import Message, MessageStatus, MessageStore, insert_sorted
from .pin import PinManager
from .presence import AppLifecycle, PresenceTracker, presence_path
from .qr_code import QRPayload, build_qr_payload
from .realtime import RealtimeStore, Subscription
from .storage import LocalStore
from .sync import ClearReport, ExpiryScheduler, MessageSyncEngine

logger = logging.getLogger(__name__)

TimelineCallback = Callable[[List[Message]], Any]


class ChatSession:
    """An open conversation: ordered timeline, live updates and receipts."""

    def __init__(self, client: "MessengerClient", peer: Contact, on_update: Optional[TimelineCallback] = None):
        self.client = client
        self.peer = peer
        self.on_update = on_update
        self.messages: List[Message] = []
        self._subscription: Optional[Subscription] = None
        self._status_watches: Dict[str, Subscription] = {}
        self.closed = False

    @property
    def user_id(self) -> str:
        return self.client.user.uid

    @property
    def chat_id(self) -> str:
        return chat_id(self.user_id, self.peer.uid)

    async def open(self) -> None:
        """Load history, start the live subscription and mark the peer's messages read."""
        engine = self.client.engine
        for message in await engine.fetch_history(self.user_id, self.peer.uid):
            await self._track(message)

        self._subscription = engine.subscribe(self.user_id, self.peer.uid, self._on_message)

        try:
            await engine.mark_all_read(self.user_id, self.peer.uid)
        except NalidError as e:
            logger.warning(f"Could not mark chat with {self.peer.username} read: {e.message}")

        await self._notify()

    async def _track(self, message: Message) -> None:
        # A re-delivered record may carry an older status than we already saw
        for existing in self.messages:
            if existing.uid == message.uid and message.status.can_advance(existing.status):
                message.status = existing.status
                message.delivered_at = message.delivered_at or existing.delivered_at
                message.read_at = message.read_at or existing.read_at
                break
        insert_sorted(self.messages, message)
        try:
            await self.client.message_cache.add_message(self.peer.uid, message)
        except StorageError as e:
            logger.warning(f"Could not cache message {message.uid}: {e.message}")

        if message.sender_id == self.user_id and message.uid not in self._status_watches:
            if message.status != MessageStatus.READ:
                self._status_watches[message.uid] = self.client.engine.listen_to_status(
                    self.user_id, self.peer.uid, message.uid, self._status_callback(message.uid)
                )

    def _status_callback(self, message_id: str):
        async def on_status(status: MessageStatus, timestamp: Optional[int]) -> None:
            if self.closed:
                return
            for message in self.messages:
                if message.uid == message_id and message.status.can_advance(status):
                    message.status = status
                    if status == MessageStatus.DELIVERED:
                        message.delivered_at = timestamp
                    elif status == MessageStatus.READ:
                        message.read_at = timestamp
                    await self._notify()
                    break
            if status == MessageStatus.READ:
                watch = self._status_watches.pop(message_id, None)
                if watch is not None:
                    watch.cancel()

        return on_status

    async def _on_message(self, message: Message) -> None:
        if self.closed:
            return
        if message.sender_id != self.user_id and message.status != MessageStatus.READ:
            try:
                await self.client.engine.mark_read(self.user_id, self.peer.uid, message.uid)
                message.status = MessageStatus.READ
            except NalidError as e:
                logger.warning(f"Read receipt for {message.uid} failed: {e.message}")
        await self._track(message)
        await self._notify()

    async def _notify(self) -> None:
        if self.on_update is None:
            return
        result = self.on_update(list(self.messages))
        if inspect.isawaitable(result):
            await result

    async def send(self, text: str) -> Message:
        """
        Send a message to the peer.

        Raises:
            RemoteWriteError: If the message cannot be published
        """
        message = await self.client.engine.send(self.user_id, self.peer.uid, text)
        await self._track(message)
        await self._notify()
        return message

    def close(self) -> None:
        """Stop every subscription of this session. Safe to call twice."""
        if self.closed:
            return
        self.closed = True
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        for watch in self._status_watches.values():
            watch.cancel()
        self._status_watches.clear()
        logger.debug(f"Closed chat with {self.peer.username}")


class MessengerClient:
    """High-level API for one installation."""

    def __init__(
        self,
        store: RealtimeStore,
        config: Optional[Config] = None,
        data_dir: Optional[Union[str, Path]] = None,
        clock: Optional[Callable[[], int]] = None,
        lifecycle: Optional[AppLifecycle] = None,
    ):
        self.config = config or Config()
        self.data_dir = Path(data_dir).expanduser() if data_dir else self.config.data_dir
        self.store = store
        self.lifecycle = lifecycle

        store_filename = self.config.get("storage", "store_filename", STORE_FILENAME)
        self.local_store = LocalStore(self.data_dir / store_filename)
        self.identity = IdentityManager(self.local_store)
        self.contacts = ContactManager(self.local_store)
        self.pins = PinManager(self.local_store)
        self.message_cache = MessageStore(self.local_store, self.config.retention_ms)

        self.engine = MessageSyncEngine(
            store,
            clock=clock,
            retention_ms=self.config.retention_ms,
            clear_retry_attempts=int(self.config.get("messages", "clear_retry_attempts", 3)),
        )
        self.handshake = ContactHandshake(store, self.contacts)
        self.contact_listener = GlobalContactListener(self.handshake)
        self.presence = PresenceTracker(store)
        self.scheduler = ExpiryScheduler(
            self.engine,
            interval=float(self.config.get("messages", "expiry_interval", 3600)),
            chat_ids_provider=self._chat_ids,
        )

        self.user: Optional[User] = None
        self.sessions: Dict[str, ChatSession] = {}

    async def register(self, username: str) -> User:
        """Create the local user (onboarding)."""
        self.user = await self.identity.create_user(username)
        return self.user

    async def _require_user(self) -> User:
        if self.user is None:
            self.user = await self.identity.require_user()
        return self.user

    async def _chat_ids(self) -> List[str]:
        user = await self._require_user()
        return [chat_id(user.uid, contact.uid) for contact in await self.contacts.list_contacts()]

    async def start(self, on_contact_request: Optional[RequestCallback] = None) -> User:
        """
        Bring the signed-in user online.

        Publishes the user record, starts presence, the contact request
        listener and the retention sweep.

        Raises:
            IdentityError: If no local user exists yet
        """
        user = await self._require_user()
        handle = await self.identity.get_notification_handle()

        try:
            await self.handshake.publish_user(user.uid, user.username, handle)
        except RemoteError as e:
            logger.warning(f"Could not publish user record: {e.message}")

        if self.config.get("presence", "enabled", True):
            await self.presence.initialize(user.uid, self.lifecycle)

        self.contact_listener.start(user.uid, on_contact_request)
        self.scheduler.start()
        logger.info(f"Client started for {user.username}")
        return user

    def invite_payload(self, notification_handle: Optional[str] = None) -> str:
        """Text to render in this user's QR code."""
        if self.user is None:
            raise IdentityError(ErrorCode.E301_IDENTITY_NOT_FOUND, "No local user; onboarding required")
        return build_qr_payload(self.user.uid, self.user.username, notification_handle)

    async def scan_qr(self, payload: Union[str, QRPayload]) -> Contact:
        """Add the user from a scanned QR code and ask them to add us back."""
        user = await self._require_user()
        handle = await self.identity.get_notification_handle()
        return await self.handshake.add_contact_from_qr(user, payload, handle)

    async def update_notification_handle(self, handle: Optional[str]) -> None:
        """Cache a refreshed push handle and republish it."""
        user = await self._require_user()
        await self.identity.set_notification_handle(handle)
        try:
            await self.handshake.publish_user(user.uid, user.username, handle)
        except RemoteError as e:
            logger.warning(f"Could not publish refreshed handle: {e.message}")

    async def open_chat(self, peer_id: str, on_update: Optional[TimelineCallback] = None) -> ChatSession:
        """
        Open (or return the already open) conversation with a contact.

        Raises:
            NotFoundError: If ``peer_id`` is not a contact
        """
        await self._require_user()
        existing = self.sessions.get(peer_id)
        if existing is not None and not existing.closed:
            if on_update is not None:
                existing.on_update = on_update
            return existing

        peer = await self.contacts.require_contact(peer_id)
        session = ChatSession(self, peer, on_update)
        self.sessions[peer_id] = session
        await session.open()
        return session

    def close_chat(self, peer_id: str) -> None:
        session = self.sessions.pop(peer_id, None)
        if session is not None:
            session.close()

    async def send(self, peer_id: str, text: str) -> Message:
        """Send through the open session if any, otherwise directly."""
        session = self.sessions.get(peer_id)
        if session is not None and not session.closed:
            return await session.send(text)

        user = await self._require_user()
        await self.contacts.require_contact(peer_id)
        message = await self.engine.send(user.uid, peer_id, text)
        await self.message_cache.add_message(peer_id, message)
        return message

    async def remove_contact(self, peer_id: str) -> bool:
        """Forget a contact locally; the peer keeps us."""
        self.close_chat(peer_id)
        removed = await self.contacts.remove_contact(peer_id)
        if removed:
            await self.message_cache.clear_messages(peer_id)
        return removed

    async def _teardown(self) -> None:
        for peer_id in list(self.sessions):
            self.close_chat(peer_id)

        self.contact_listener.stop()
        await self.presence.cleanup()
        await self.scheduler.stop()

    async def logout(self) -> None:
        """Stop every listener and go offline. Local data is kept."""
        await self._teardown()
        self.user = None
        logger.info("Logged out")

    async def clear_all_data(self) -> ClearReport:
        """
        Delete every chat and contact, keeping the account.

        Best effort: failures are logged and reported, the rest continues.
        """
        user = await self._require_user()
        for peer_id in list(self.sessions):
            self.close_chat(peer_id)

        peer_ids = [contact.uid for contact in await self.contacts.list_contacts()]
        report = await self.engine.clear_all_chats(user.uid, peer_ids)

        try:
            await self.contacts.clear_all_contacts()
        except StorageError as e:
            logger.warning(f"Error clearing contacts: {e.message}")
        try:
            await self.message_cache.clear_all_messages()
        except StorageError as e:
            logger.warning(f"Error clearing cached messages: {e.message}")

        logger.info(f"All data cleared ({report})")
        return report

    async def delete_account(self) -> ClearReport:
        """
        Remove the account everywhere: shared records, chats and all local data.

        Best effort throughout; the local identity is always removed.
        """
        user = await self._require_user()
        peer_ids: List[str] = []
        try:
            peer_ids = [contact.uid for contact in await self.contacts.list_contacts()]
        except StorageError as e:
            logger.warning(f"Could not list contacts during account deletion: {e.message}")

        await self._teardown()

        for path in (
            f"{USERS_ROOT}/{user.uid}",
            presence_path(user.uid),
            f"{CONTACT_REQUESTS_ROOT}/{user.uid}",
        ):
            try:
                await self.store.remove(path)
            except RemoteError as e:
                logger.warning(f"Error removing {path}: {e.message}")

        report = await self.engine.clear_all_chats(user.uid, peer_ids)

        try:
            await self.local_store.clear()
        except StorageError as e:
            logger.warning(f"Local store clear failed, removing items individually: {e.message}")
            for step in (
                self.contacts.clear_all_contacts,
                self.message_cache.clear_all_messages,
                self.pins.clear_pin,
                self.identity.clear_user,
            ):
                try:
                    await step()
                except StorageError as e2:
                    logger.warning(f"Cleanup step failed: {e2.message}")

        self.identity.invalidate()
        self.user = None
        logger.info(f"Account {user.uid} deleted")
        return report
