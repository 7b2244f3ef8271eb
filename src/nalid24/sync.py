"""
Nalid24 - Message synchronization engine.

Sends, receives and tracks messages through the shared realtime store:

- Each chat lives at chats/{chatId}/messages/{messageId}; records carry only
  ciphertext, the sender id, a server-assigned creation time and the
  delivery status.
- Status moves forward only (sending < sent < delivered < read). Status
  changes go through a transaction scoped to the record's ``status`` field
  that aborts unless the new status ranks higher; timestamps and receipts
  are written with partial updates so concurrent writers never clobber
  each other's fields.
- A sender never advances the status of its own messages.
- Records live for the retention window (24h) and are removed by the
  periodic sweep or lazily when history is loaded.
"""

import asyncio
import contextlib
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from . import crypto
from .chat import chat_id, chat_participants
from .constants import (
    CHATS_ROOT,
    CLEAR_RETRY_ATTEMPTS,
    MESSAGE_EXPIRY_INTERVAL,
    MESSAGE_RETENTION_MS,
)
from .errors import CryptoError, ErrorCode, NalidError, NotFoundError, RemoteError
from .message import Message, MessageStatus
from .realtime import ABORT, SERVER_TIMESTAMP, DataSnapshot, RealtimeStore, Subscription
from .utils import now_ms

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Message], Union[None, Awaitable[None]]]
StatusCallback = Callable[[MessageStatus, Optional[int]], Union[None, Awaitable[None]]]


def messages_path(chat_id_value: str) -> str:
    return f"{CHATS_ROOT}/{chat_id_value}/messages"


def message_path(chat_id_value: str, message_id: str) -> str:
    return f"{messages_path(chat_id_value)}/{message_id}"


async def advance_message_status(
    store: RealtimeStore,
    path: str,
    target: MessageStatus,
    fields_on_change: Optional[Dict[str, Any]] = None,
    receipt_fields: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Move the record at ``path`` forward to ``target``.

    The status field is changed through a transaction that aborts unless
    ``target`` ranks higher than the current status. ``fields_on_change``
    are merged only if the status moved; ``receipt_fields`` are merged
    either way. Returns True if the status changed.
    """

    def advance(current: Any) -> Any:
        if MessageStatus.parse(current).can_advance(target):
            return target.value
        return ABORT

    committed = await store.transaction(f"{path}/status", advance)

    fields: Dict[str, Any] = dict(receipt_fields or {})
    if committed:
        fields.update(fields_on_change or {})
        logger.debug(f"{path} advanced to {target.value}")
    if fields:
        await store.update(path, fields)
    return committed


class ClearReport:
    """Outcome of clearing several chats."""

    def __init__(self):
        self.cleared: List[str] = []
        self.failed: Dict[str, str] = {}

    @property
    def ok(self) -> bool:
        return not self.failed

    def __repr__(self) -> str:
        return f"ClearReport(cleared={len(self.cleared)}, failed={len(self.failed)})"


class MessageSyncEngine:
    """Message send/receive/status protocol over a RealtimeStore."""

    def __init__(
        self,
        store: RealtimeStore,
        clock: Optional[Callable[[], int]] = None,
        retention_ms: int = MESSAGE_RETENTION_MS,
        clear_retry_attempts: int = CLEAR_RETRY_ATTEMPTS,
    ):
        self.store = store
        self.clock = clock or now_ms
        self.retention_ms = retention_ms
        self.clear_retry_attempts = max(1, clear_retry_attempts)
        self._keys: Dict[str, bytes] = {}

    def _key(self, chat_id_value: str) -> bytes:
        key = self._keys.get(chat_id_value)
        if key is None:
            key = crypto.derive_shared_secret(*chat_participants(chat_id_value))
            self._keys[chat_id_value] = key
        return key

    def _decode(self, chat_id_value: str, message_id: str, record: Dict[str, Any]) -> Message:
        """Build a message from a record. Undecryptable payloads are flagged, not raised."""
        message = Message.from_record(message_id, record)
        ciphertext = message.ciphertext if isinstance(message.ciphertext, str) else ""
        try:
            message.plaintext = crypto.decrypt(ciphertext, self._key(chat_id_value))
        except CryptoError as e:
            message.undecryptable = True
            logger.warning(f"Could not decrypt message {message_id} in {chat_id_value}: {e.message}")
        return message

    def _is_expired(self, record: Any, current_ms: int) -> bool:
        if not isinstance(record, dict):
            return True
        return Message.from_record("", record).is_expired(current_ms, self.retention_ms)

    async def send(self, sender_id: str, recipient_id: str, plaintext: str) -> Message:
        """
        Encrypt and publish a message.

        The record is written in one set with status ``sent`` and a
        server-assigned creation time.

        Raises:
            RemoteWriteError: If the store rejects the write
        """
        cid = chat_id(sender_id, recipient_id)
        local_time = self.clock()
        message_id = crypto.generate_message_id(local_time)
        ciphertext = crypto.encrypt(plaintext, self._key(cid))

        await self.store.set(
            message_path(cid, message_id),
            {
                "ciphertext": ciphertext,
                "senderId": sender_id,
                "createdAt": SERVER_TIMESTAMP,
                "status": MessageStatus.SENT.value,
            },
        )
        logger.debug(f"Sent message {message_id} to chat {cid}")

        # The authoritative createdAt arrives with the subscription event
        return Message(
            uid=message_id,
            sender_id=sender_id,
            plaintext=plaintext,
            created_at=local_time,
            status=MessageStatus.SENT,
            ciphertext=ciphertext,
        )

    def subscribe(self, observer_id: str, peer_id: str, on_message: MessageCallback) -> Subscription:
        """
        Stream every existing and future message of the chat to ``on_message``.

        Messages from the peer are acknowledged as delivered before the
        callback runs. Expired records are skipped. Failures while handling
        one record are logged and never end the stream.
        """
        cid = chat_id(observer_id, peer_id)

        async def handle(snapshot: DataSnapshot) -> None:
            record = snapshot.val()
            if self._is_expired(record, self.clock()):
                logger.debug(f"Skipping expired record {snapshot.key} in {cid}")
                return

            message = self._decode(cid, snapshot.key, record)

            if message.sender_id != observer_id and message.status.can_advance(MessageStatus.DELIVERED):
                try:
                    if await self.mark_delivered(observer_id, peer_id, message.uid):
                        message.status = MessageStatus.DELIVERED
                        message.delivered_at = self.clock()
                except NalidError as e:
                    logger.warning(f"Delivery receipt for {message.uid} failed: {e.message}")

            try:
                result = on_message(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Message callback failed for {message.uid}: {e}", exc_info=True)

        subscription = self.store.on_child_added(messages_path(cid), handle)
        logger.debug(f"Subscribed {observer_id} to chat {cid}")
        return subscription

    async def fetch_history(self, observer_id: str, peer_id: str, descending: bool = False) -> List[Message]:
        """
        Read the chat once, ordered by creation time.

        Expired records found on the way are deleted; a failed deletion is
        logged and does not fail the read.
        """
        cid = chat_id(observer_id, peer_id)
        snapshot = await self.store.get(messages_path(cid))
        current_ms = self.clock()

        messages: List[Message] = []
        expired: List[str] = []
        for child in snapshot.children():
            record = child.val()
            if self._is_expired(record, current_ms):
                expired.append(child.key)
                continue
            messages.append(self._decode(cid, child.key, record))

        for message_id in expired:
            try:
                await self.store.remove(message_path(cid, message_id))
            except RemoteError as e:
                logger.warning(f"Failed to delete expired message {message_id}: {e.message}")

        messages.sort(key=lambda m: m.sort_key, reverse=descending)
        return messages

    async def _advance_status(
        self,
        actor_id: str,
        peer_id: str,
        message_id: str,
        target: MessageStatus,
        extra_fields: Dict[str, Any],
        receipt_fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Move a peer's message forward to ``target``. Returns True if it changed."""
        cid = chat_id(actor_id, peer_id)
        path = message_path(cid, message_id)
        record = (await self.store.get(path)).val()
        if not isinstance(record, dict) or not record.get("senderId"):
            raise NotFoundError(
                ErrorCode.E601_MESSAGE_NOT_FOUND,
                f"Message {message_id} not found",
                {"chatId": cid, "messageId": message_id},
            )

        if record["senderId"] == actor_id:
            return False

        fields = dict(extra_fields)
        if target == MessageStatus.READ and record.get("deliveredAt") is None:
            fields["deliveredAt"] = SERVER_TIMESTAMP
        return await advance_message_status(self.store, path, target, fields, receipt_fields)

    async def mark_delivered(self, observer_id: str, peer_id: str, message_id: str) -> bool:
        """
        Acknowledge delivery of a peer's message.

        A no-op (False) when the message is already delivered or read.

        Raises:
            NotFoundError: If the message no longer exists
        """
        return await self._advance_status(
            observer_id, peer_id, message_id, MessageStatus.DELIVERED, {"deliveredAt": SERVER_TIMESTAMP}
        )

    async def mark_read(self, reader_id: str, peer_id: str, message_id: str) -> bool:
        """
        Mark a peer's message as read and stamp the reader's receipt.

        The receipt is stamped even when the status was already ``read``.

        Raises:
            NotFoundError: If the message no longer exists
        """
        return await self._advance_status(
            reader_id,
            peer_id,
            message_id,
            MessageStatus.READ,
            {"readAt": SERVER_TIMESTAMP},
            receipt_fields={f"readBy/{reader_id}": SERVER_TIMESTAMP},
        )

    async def mark_all_read(self, reader_id: str, peer_id: str) -> int:
        """
        Mark every unread message from the peer as read in one multi-path update.

        Returns the number of messages updated. ``read`` is the highest
        status, so writing it without a transaction never regresses.
        """
        cid = chat_id(reader_id, peer_id)
        snapshot = await self.store.get(messages_path(cid))
        current_ms = self.clock()

        updates: Dict[str, Any] = {}
        count = 0
        for child in snapshot.children():
            record = child.val()
            if self._is_expired(record, current_ms):
                continue
            sender = record.get("senderId")
            if not sender or sender == reader_id:
                continue
            if MessageStatus.parse(record.get("status")) == MessageStatus.READ:
                continue

            updates[f"{child.key}/status"] = MessageStatus.READ.value
            updates[f"{child.key}/readAt"] = SERVER_TIMESTAMP
            updates[f"{child.key}/readBy/{reader_id}"] = SERVER_TIMESTAMP
            if record.get("deliveredAt") is None:
                updates[f"{child.key}/deliveredAt"] = SERVER_TIMESTAMP
            count += 1

        if updates:
            await self.store.update(messages_path(cid), updates)
            logger.debug(f"Marked {count} messages read in {cid}")
        return count

    def listen_to_status(
        self, observer_id: str, peer_id: str, message_id: str, on_status: StatusCallback
    ) -> Subscription:
        """
        Follow one message's status.

        ``on_status`` receives the status and the timestamp of the latest
        transition (readAt, deliveredAt or createdAt).
        """
        path = message_path(chat_id(observer_id, peer_id), message_id)

        async def handle(snapshot: DataSnapshot) -> None:
            record = snapshot.val()
            if not isinstance(record, dict):
                return
            message = Message.from_record(message_id, record)
            if message.status == MessageStatus.READ:
                timestamp = message.read_at
            elif message.status == MessageStatus.DELIVERED:
                timestamp = message.delivered_at
            else:
                timestamp = message.created_at
            result = on_status(message.status, timestamp)
            if inspect.isawaitable(result):
                await result

        return self.store.on_value(path, handle)

    async def _remove_expired(self, chat_id_value: str, messages: DataSnapshot, current_ms: int) -> int:
        removed = 0
        for child in messages.children():
            if not self._is_expired(child.val(), current_ms):
                continue
            try:
                await self.store.remove(message_path(chat_id_value, child.key))
                removed += 1
            except RemoteError as e:
                logger.warning(f"Failed to delete expired message {child.key}: {e.message}")
        return removed

    async def expire(self, chat_id_value: Optional[str] = None) -> int:
        """
        Delete messages past retention (or with no valid creation time).

        Scoped to one chat when ``chat_id_value`` is given, otherwise every
        chat in the store. Returns the number of records deleted.
        """
        current_ms = self.clock()
        if chat_id_value is not None:
            snapshot = await self.store.get(messages_path(chat_id_value))
            removed = await self._remove_expired(chat_id_value, snapshot, current_ms)
        else:
            chats = await self.store.get(CHATS_ROOT)
            removed = 0
            for chat in chats.children():
                removed += await self._remove_expired(chat.key, chat.child("messages"), current_ms)

        if removed:
            logger.info(f"Expired {removed} messages")
        return removed

    async def clear_chat(self, chat_id_value: str) -> None:
        """Delete a whole chat. Clearing a missing chat succeeds."""
        await self.store.remove(f"{CHATS_ROOT}/{chat_id_value}")
        self._keys.pop(chat_id_value, None)
        logger.info(f"Cleared chat {chat_id_value}")

    async def clear_all_chats(
        self, user_id: str, peer_ids: Iterable[str], retry_delay: float = 0.0
    ) -> ClearReport:
        """
        Delete every chat between ``user_id`` and each peer.

        Each deletion is retried; chats that still fail are reported and
        logged without stopping the others.
        """
        report = ClearReport()
        for peer_id in peer_ids:
            cid = chat_id(user_id, peer_id)
            last_error: Optional[Exception] = None
            for attempt in range(1, self.clear_retry_attempts + 1):
                try:
                    await self.clear_chat(cid)
                    report.cleared.append(cid)
                    last_error = None
                    break
                except RemoteError as e:
                    last_error = e
                    logger.warning(f"Clearing chat {cid} failed (attempt {attempt}): {e.message}")
                    if retry_delay and attempt < self.clear_retry_attempts:
                        await asyncio.sleep(retry_delay)
            if last_error is not None:
                report.failed[cid] = str(last_error)
                logger.error(f"Giving up on clearing chat {cid}: {last_error}")
        return report


class ExpiryScheduler:
    """Runs the retention sweep at startup and then periodically."""

    def __init__(
        self,
        engine: MessageSyncEngine,
        interval: float = MESSAGE_EXPIRY_INTERVAL,
        chat_ids_provider: Optional[Callable[[], Any]] = None,
    ):
        self.engine = engine
        self.interval = interval
        self.chat_ids_provider = chat_ids_provider
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        """Run one sweep. Failures are logged; returns the number of records deleted."""
        try:
            if self.chat_ids_provider is None:
                return await self.engine.expire()

            chat_ids = self.chat_ids_provider()
            if inspect.isawaitable(chat_ids):
                chat_ids = await chat_ids
            total = 0
            for cid in chat_ids:
                total += await self.engine.expire(cid)
            return total
        except NalidError as e:
            logger.error(f"Expiry sweep failed: {e.message}")
            return 0

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Unexpected error in expiry sweep: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Expiry scheduler started (every {self.interval}s)")

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        logger.info("Expiry scheduler stopped")
