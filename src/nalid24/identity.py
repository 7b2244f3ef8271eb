"""
Nalid24 - Identity management.

One local user per installation. The user is created once at onboarding
and never written in full to the shared store; only id, username and
notification handle are published (see handshake.publish_user).
"""

import logging
from typing import Any, Dict, Optional

from . import crypto
from .constants import NOTIFICATION_HANDLE_STORAGE_KEY, USER_STORAGE_KEY
from .errors import ErrorCode, IdentityError
from .storage import LocalStore
from .utils import now_ms, validate_username

logger = logging.getLogger(__name__)


class User:
    """The local user of this installation."""

    def __init__(self, uid: str, username: str, created_at: Optional[int] = None):
        self.uid = uid
        self.username = username
        self.created_at = created_at if created_at is not None else now_ms()

    def to_dict(self) -> Dict[str, Any]:
        """Convert user to dictionary for storage."""
        return {
            "id": self.uid,
            "username": self.username,
            "createdAt": self.created_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "User":
        """Create user from dictionary."""
        return User(uid=data["id"], username=data["username"], created_at=data.get("createdAt"))

    def __repr__(self) -> str:
        return f"User(uid={self.uid!r}, username={self.username!r})"


class IdentityManager:
    """Creates, loads and clears the local user."""

    def __init__(self, store: LocalStore):
        self.store = store
        self._user: Optional[User] = None

    async def create_user(self, username: str) -> User:
        """
        Create the local user with a fresh UUID.

        Raises:
            IdentityError: If the username is blank or too long
        """
        if not validate_username(username):
            raise IdentityError(ErrorCode.E305_INVALID_IDENTITY, "Invalid username", {"username": username})

        user = User(crypto.generate_user_id(), username.strip())
        await self.store.set_item(USER_STORAGE_KEY, user.to_dict())
        self._user = user
        logger.info(f"User created: {user.username} ({user.uid})")
        return user

    async def get_user(self) -> Optional[User]:
        """Return the local user, or None before onboarding."""
        if self._user is not None:
            return self._user

        data = await self.store.get_item(USER_STORAGE_KEY)
        if not data:
            return None

        try:
            self._user = User.from_dict(data)
        except (KeyError, TypeError) as e:
            logger.error(f"Stored user record is malformed: {e}")
            return None
        return self._user

    async def require_user(self) -> User:
        """Return the local user or raise IdentityError."""
        user = await self.get_user()
        if user is None:
            raise IdentityError(ErrorCode.E301_IDENTITY_NOT_FOUND, "No local user; onboarding required")
        return user

    async def clear_user(self) -> None:
        """Delete the local user (logout / account deletion)."""
        await self.store.multi_remove([USER_STORAGE_KEY, NOTIFICATION_HANDLE_STORAGE_KEY])
        self._user = None
        logger.info("Local user cleared")

    def invalidate(self) -> None:
        """Drop the cached user so the next read goes to the store."""
        self._user = None

    async def get_notification_handle(self) -> Optional[str]:
        """Cached push notification handle for this device."""
        return await self.store.get_item(NOTIFICATION_HANDLE_STORAGE_KEY)

    async def set_notification_handle(self, handle: Optional[str]) -> None:
        """Cache a (possibly refreshed) push notification handle."""
        if handle:
            await self.store.set_item(NOTIFICATION_HANDLE_STORAGE_KEY, handle)
        else:
            await self.store.remove_item(NOTIFICATION_HANDLE_STORAGE_KEY)
