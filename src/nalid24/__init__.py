"""
Nalid24 - Ephemeral Two-Party Messenger Core

Contacts are exchanged by scanning QR codes, messages are encrypted on the
client and expire after 24 hours, with delivery/read receipts and presence
coordinated through a shared realtime store.
"""

__version__ = "1.0.0"

# Import core modules for easy access
from .chat import chat_id
from .client import ChatSession, MessengerClient
from .config import Config
from .constants import APP_NAME, VERSION
from .errors import (
    ConfigError,
    ContactError,
    CryptoError,
    DecryptionError,
    ErrorCode,
    IdentityError,
    IntegrityError,
    NalidError,
    NotFoundError,
    RemoteError,
    RemoteReadError,
    RemoteWriteError,
    StorageError,
)
from .message import Message, MessageStatus
from .notification import NotificationRelay, PushChannel
from .realtime import MemoryRealtimeServer, RealtimeStore
from .sync import MessageSyncEngine

__all__ = [
    "APP_NAME",
    "VERSION",
    "ChatSession",
    "Config",
    "ConfigError",
    "ContactError",
    "CryptoError",
    "DecryptionError",
    "ErrorCode",
    "IdentityError",
    "IntegrityError",
    "MemoryRealtimeServer",
    "Message",
    "MessageStatus",
    "MessageSyncEngine",
    "MessengerClient",
    "NalidError",
    "NotFoundError",
    "NotificationRelay",
    "PushChannel",
    "RealtimeStore",
    "RemoteError",
    "RemoteReadError",
    "RemoteWriteError",
    "StorageError",
    "__version__",
    "chat_id",
]
