"""
Nalid24 - Global Constants and Configuration Values

This module defines all constants used throughout the Nalid24 core.
All magic numbers and configuration defaults are centralized here.
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "Nalid24"

# Chat Addressing
CHAT_ID_SEPARATOR = "_"
SHARED_SECRET_SEPARATOR = "-"

# Message Lifecycle
MESSAGE_RETENTION_MS = 24 * 60 * 60 * 1000  # 24 hours
MESSAGE_EXPIRY_INTERVAL = 3600  # 1 hour in seconds
MESSAGE_ID_PREFIX = "msg"
MESSAGE_ID_RANDOM_BYTES = 6
CLEAR_RETRY_ATTEMPTS = 3
UNDECRYPTABLE_PLACEHOLDER = "[Unable to decrypt message]"

# Cryptography Constants
KEY_SIZE = 32  # 256 bits for AES-256-GCM
NONCE_SIZE = 12  # 96 bits for GCM
CIPHERTEXT_VERSION = 1
SALT_SIZE = 16  # 128 bits
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 1
PIN_LENGTH = 4

# Realtime Store Namespaces
CHATS_ROOT = "chats"
PRESENCE_ROOT = "presence"
CONTACT_REQUESTS_ROOT = "contactRequests"
USERS_ROOT = "users"

# Presence
PRESENCE_ONLINE = "online"
PRESENCE_OFFLINE = "offline"

# Local Storage Keys
STORAGE_KEY_PREFIX = "@Nalid24"
USER_STORAGE_KEY = f"{STORAGE_KEY_PREFIX}:User"
CONTACTS_STORAGE_KEY = f"{STORAGE_KEY_PREFIX}:Contacts"
MESSAGES_STORAGE_KEY = f"{STORAGE_KEY_PREFIX}:Messages"
PIN_STORAGE_KEY = f"{STORAGE_KEY_PREFIX}:PIN"
NOTIFICATION_HANDLE_STORAGE_KEY = f"{STORAGE_KEY_PREFIX}:NotificationHandle"

# QR Payload
QR_USERNAME_FALLBACK_PREFIX = "User_"
QR_USERNAME_FALLBACK_LENGTH = 8
MAX_USERNAME_LENGTH = 64

# File Paths
DEFAULT_DATA_DIR = "~/.nalid24"
STORE_FILENAME = "store.json"
CONFIG_FILENAME = "config.toml"
LOG_FILENAME = "nalid24.log"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5
