"""
Nalid24 - Push notification relay.

Runs next to the shared store (the role a cloud function plays in a hosted
deployment): when a new message record appears it looks up the
recipient's published notification handle, sends a push that reveals
nothing about the content, and on success marks the message delivered.

The push transport is an opaque channel; ``LoggingPushChannel`` is the
default when no real provider is configured.
"""

import abc
import logging
from typing import Dict, List, Optional, Tuple

from .chat import peer_of
from .constants import USERS_ROOT
from .errors import NalidError
from .message import MessageStatus
from .realtime import SERVER_TIMESTAMP, DataSnapshot, RealtimeStore, Subscription
from .sync import advance_message_status, message_path, messages_path
from .utils import coerce_timestamp, now_ms

logger = logging.getLogger(__name__)

PUSH_BODY = "New message"
PUSH_FALLBACK_TITLE = "Someone"


class PushChannel(abc.ABC):
    """Opaque push transport."""

    @abc.abstractmethod
    async def send_push(self, handle: str, title: str, body: str, data: Dict[str, str]) -> bool:
        """Deliver a push to ``handle``. Returns True if the provider accepted it."""


class LoggingPushChannel(PushChannel):
    """Push channel that only logs; keeps a history of what it was asked to send."""

    def __init__(self):
        self.sent: List[Tuple[str, str, str, Dict[str, str]]] = []

    async def send_push(self, handle: str, title: str, body: str, data: Dict[str, str]) -> bool:
        self.sent.append((handle, title, body, dict(data)))
        logger.info(f"Push to {handle[:8]}...: {title}: {body}")
        return True


class NotificationRelay:
    """Turns new message records into push notifications."""

    def __init__(self, store: RealtimeStore, channel: Optional[PushChannel] = None, clock=None):
        self.store = store
        self.channel = channel or LoggingPushChannel()
        self.clock = clock or now_ms
        self._watches: Dict[str, Subscription] = {}

    async def _username(self, user_id: str) -> Optional[str]:
        record = (await self.store.get(f"{USERS_ROOT}/{user_id}")).val()
        if isinstance(record, dict):
            return record.get("username")
        return None

    async def handle_message_created(self, chat_id: str, message_id: str) -> bool:
        """
        Notify the recipient of one message.

        Returns True if a push was sent and the message marked delivered.
        Failures are logged, never raised.
        """
        path = message_path(chat_id, message_id)
        try:
            record = (await self.store.get(path)).val()
            if not isinstance(record, dict) or not record.get("senderId"):
                logger.debug(f"Message {message_id} vanished before notification")
                return False

            sender_id = record["senderId"]
            try:
                recipient_id = peer_of(chat_id, sender_id)
            except ValueError as e:
                logger.error(f"Cannot resolve recipient of {message_id}: {e}")
                return False

            recipient = (await self.store.get(f"{USERS_ROOT}/{recipient_id}")).val()
            handle = recipient.get("notificationHandle") if isinstance(recipient, dict) else None
            if not handle:
                logger.info(f"No notification handle for recipient {recipient_id}")
                return False

            title = await self._username(sender_id) or PUSH_FALLBACK_TITLE
            data = {
                "chatId": chat_id,
                "messageId": message_id,
                "senderId": sender_id,
                "type": "message",
            }
            if not await self.channel.send_push(handle, title, PUSH_BODY, data):
                logger.warning(f"Push provider rejected notification for {message_id}")
                return False

            await advance_message_status(
                self.store, path, MessageStatus.DELIVERED, {"deliveredAt": SERVER_TIMESTAMP}
            )
            logger.debug(f"Notified {recipient_id} of {message_id}")
            return True
        except NalidError as e:
            logger.error(f"Error sending notification for {message_id}: {e.message}")
            return False

    def watch_chat(self, chat_id: str) -> Subscription:
        """
        Notify for every message created in ``chat_id`` from now on.

        Records older than the watch and records already past ``sent`` are
        ignored. Watching an already watched chat returns the existing
        subscription.
        """
        existing = self._watches.get(chat_id)
        if existing is not None and existing.active:
            return existing

        started_at = self.clock()

        async def handle(snapshot: DataSnapshot) -> None:
            record = snapshot.val()
            if not isinstance(record, dict):
                return
            created_at = coerce_timestamp(record.get("createdAt"))
            if created_at is None or created_at < started_at:
                return
            if MessageStatus.parse(record.get("status")) != MessageStatus.SENT:
                return
            await self.handle_message_created(chat_id, snapshot.key)

        subscription = self.store.on_child_added(messages_path(chat_id), handle)
        self._watches[chat_id] = subscription
        logger.info(f"Watching chat {chat_id} for notifications")
        return subscription

    def stop(self) -> None:
        """Cancel every chat watch."""
        for subscription in self._watches.values():
            subscription.cancel()
        self._watches.clear()

    def watched_chats(self) -> List[str]:
        return [cid for cid, sub in self._watches.items() if sub.active]

    def __repr__(self) -> str:
        return f"NotificationRelay(watches={len(self._watches)})"
