"""
Nalid24 - Presence tracking.

Publishes presence/{userId} = {status, lastSeen}. Whenever the store
connection comes up the user is marked online and a store-side
on-disconnect hook is armed that marks them offline, so a crash or network
loss still flips the status without any client code running. Foreground /
background transitions of the app update the status explicitly.
"""

import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .constants import PRESENCE_OFFLINE, PRESENCE_ONLINE, PRESENCE_ROOT
from .errors import RemoteError
from .realtime import SERVER_TIMESTAMP, DataSnapshot, RealtimeStore, Subscription
from .utils import coerce_timestamp, format_last_seen

logger = logging.getLogger(__name__)


class AppState(Enum):
    ACTIVE = "active"
    BACKGROUND = "background"
    INACTIVE = "inactive"


class AppLifecycle:
    """Foreground/background signal supplied by the host application."""

    def __init__(self, state: AppState = AppState.ACTIVE):
        self.state = state
        self._listeners: List[Callable[[AppState], Any]] = []

    def add_listener(self, callback: Callable[[AppState], Any]) -> Subscription:
        self._listeners.append(callback)
        return Subscription(lambda: self._listeners.remove(callback))

    async def transition(self, state: AppState) -> None:
        """Record a new app state and notify listeners in registration order."""
        if state == self.state:
            return
        self.state = state
        for callback in list(self._listeners):
            result = callback(state)
            if inspect.isawaitable(result):
                await result


class Presence:
    """A user's published presence."""

    def __init__(self, status: str, last_seen: Optional[int]):
        self.status = status
        self.last_seen = last_seen

    @property
    def online(self) -> bool:
        return self.status == PRESENCE_ONLINE

    def describe(self, current_ms: Optional[int] = None) -> str:
        if self.online:
            return "online"
        if self.last_seen is None:
            return "offline"
        return f"last seen {format_last_seen(self.last_seen, current_ms)}"

    @staticmethod
    def from_record(record: Dict[str, Any]) -> "Presence":
        status = record.get("status")
        if status not in (PRESENCE_ONLINE, PRESENCE_OFFLINE):
            status = PRESENCE_OFFLINE
        return Presence(status, coerce_timestamp(record.get("lastSeen")))

    def __repr__(self) -> str:
        return f"Presence(status={self.status!r}, last_seen={self.last_seen})"


def presence_path(user_id: str) -> str:
    return f"{PRESENCE_ROOT}/{user_id}"


def _presence_record(status: str) -> Dict[str, Any]:
    return {"status": status, "lastSeen": SERVER_TIMESTAMP}


class PresenceTracker:
    """Keeps the signed-in user's presence record current."""

    def __init__(self, store: RealtimeStore):
        self.store = store
        self.user_id: Optional[str] = None
        self._connection_subscription: Optional[Subscription] = None
        self._lifecycle_subscription: Optional[Subscription] = None

    async def initialize(self, user_id: str, lifecycle: Optional[AppLifecycle] = None) -> None:
        """
        Start tracking ``user_id``.

        Calling again with the same id does nothing; a different id tears
        down tracking of the previous user first.
        """
        if user_id == self.user_id:
            logger.debug(f"Presence already initialized for {user_id}")
            return

        if self.user_id is not None:
            await self.cleanup()

        self.user_id = user_id
        self._connection_subscription = self.store.on_connection_change(self._on_connection_change)
        if lifecycle is not None:
            self._lifecycle_subscription = lifecycle.add_listener(self.handle_app_state)
        logger.info(f"Presence tracking initialized for {user_id}")

    async def _on_connection_change(self, connected: bool) -> None:
        user_id = self.user_id
        if user_id is None:
            return
        if not connected:
            logger.info("Store disconnected")
            return
        await self._go_online(user_id)

    async def _go_online(self, user_id: str) -> None:
        try:
            await self.store.set(presence_path(user_id), _presence_record(PRESENCE_ONLINE))
            await self.store.on_disconnect(presence_path(user_id)).set(_presence_record(PRESENCE_OFFLINE))
            logger.debug(f"{user_id} online, offline hook armed")
        except RemoteError as e:
            logger.warning(f"Could not publish online presence: {e.message}")

    async def handle_app_state(self, state: AppState) -> None:
        """Foreground marks the user online (and re-arms the hook); background marks them offline."""
        if self.user_id is None:
            return
        if state == AppState.ACTIVE:
            await self._go_online(self.user_id)
        elif state == AppState.BACKGROUND:
            try:
                await self.store.set(presence_path(self.user_id), _presence_record(PRESENCE_OFFLINE))
                logger.debug(f"{self.user_id} offline (app in background)")
            except RemoteError as e:
                logger.warning(f"Could not publish offline presence: {e.message}")

    async def get_presence(self, user_id: str) -> Optional[Presence]:
        """Read a user's presence once. Returns None if unknown or unreadable."""
        try:
            snapshot = await self.store.get(presence_path(user_id))
        except RemoteError as e:
            logger.error(f"Error getting presence for {user_id}: {e.message}")
            return None
        record = snapshot.val()
        return Presence.from_record(record) if isinstance(record, dict) else None

    def listen_to_presence(self, user_id: str, callback: Callable[[Presence], Any]) -> Subscription:
        """Follow a user's presence; ``callback`` only fires while a record exists."""

        async def handle(snapshot: DataSnapshot) -> None:
            record = snapshot.val()
            if not isinstance(record, dict):
                return
            result = callback(Presence.from_record(record))
            if inspect.isawaitable(result):
                await result

        return self.store.on_value(presence_path(user_id), handle)

    async def set_user_offline(self, user_id: str) -> None:
        """Explicitly mark a user offline and disarm the disconnect hook."""
        try:
            await self.store.set(presence_path(user_id), _presence_record(PRESENCE_OFFLINE))
            await self.store.on_disconnect(presence_path(user_id)).cancel()
            logger.info(f"User set to offline: {user_id}")
        except RemoteError as e:
            logger.error(f"Error setting user offline: {e.message}")

    async def cleanup(self) -> None:
        """Stop tracking (logout). The offline write is best effort."""
        if self.user_id is None:
            return

        user_id = self.user_id
        if self.store.connected:
            await self.set_user_offline(user_id)

        if self._lifecycle_subscription is not None:
            self._lifecycle_subscription.cancel()
            self._lifecycle_subscription = None
        if self._connection_subscription is not None:
            self._connection_subscription.cancel()
            self._connection_subscription = None

        self.user_id = None
        logger.info(f"Presence tracking cleaned up for {user_id}")
