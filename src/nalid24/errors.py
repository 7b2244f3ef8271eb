"""
Nalid24 - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
the Nalid24 core. Each error has a unique code for logging and debugging.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all Nalid24 error codes."""

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E101_ENCRYPTION_FAILED = "E101"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY = "E103"

    # Remote Store Errors (E200-E299)
    E200_REMOTE_ERROR = "E200"
    E201_REMOTE_WRITE_FAILED = "E201"
    E202_REMOTE_READ_FAILED = "E202"
    E203_REMOTE_OFFLINE = "E203"

    # Identity Errors (E300-E399)
    E300_IDENTITY_ERROR = "E300"
    E301_IDENTITY_NOT_FOUND = "E301"
    E305_INVALID_IDENTITY = "E305"
    E306_INVALID_PIN = "E306"

    # Contact Errors (E400-E499)
    E400_CONTACT_ERROR = "E400"
    E401_CONTACT_NOT_FOUND = "E401"
    E405_INVALID_CONTACT = "E405"
    E406_SELF_CONTACT = "E406"
    E407_INVALID_QR_PAYLOAD = "E407"

    # Storage Errors (E500-E599)
    E500_STORAGE_ERROR = "E500"
    E501_STORAGE_READ_FAILED = "E501"
    E502_STORAGE_WRITE_FAILED = "E502"
    E503_STORAGE_CORRUPTED = "E503"

    # Message Errors (E600-E699)
    E601_MESSAGE_NOT_FOUND = "E601"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E702_CONFIG_SAVE_FAILED = "E702"
    E704_CONFIG_PARSE_ERROR = "E704"


class NalidError(Exception):
    """Base exception class for all Nalid24 errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(NalidError):
    """Exception raised for cryptographic operation failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class DecryptionError(CryptoError):
    """Raised when ciphertext was produced with another key or is corrupted.

    Subscriptions surface this as an unreadable message instead of
    propagating it.
    """

    def __init__(
        self,
        message: str = "Message could not be decrypted",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E102_DECRYPTION_FAILED, message, details)


IntegrityError = DecryptionError


class RemoteError(NalidError):
    """Exception raised for shared realtime store failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_REMOTE_ERROR,
        message: str = "Remote store operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class RemoteWriteError(RemoteError):
    """A set/update/remove against the shared store failed."""

    def __init__(
        self,
        message: str = "Remote write failed",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E201_REMOTE_WRITE_FAILED,
    ):
        super().__init__(code, message, details)


class RemoteReadError(RemoteError):
    """A read against the shared store failed."""

    def __init__(
        self,
        message: str = "Remote read failed",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E202_REMOTE_READ_FAILED,
    ):
        super().__init__(code, message, details)


class StorageError(NalidError):
    """Exception raised for local persistence I/O failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E500_STORAGE_ERROR,
        message: str = "Local storage operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class NotFoundError(NalidError):
    """Raised when operating on a contact or message that no longer exists."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E601_MESSAGE_NOT_FOUND,
        message: str = "Item not found",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class IdentityError(NalidError):
    """Exception raised for identity management failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_IDENTITY_ERROR,
        message: str = "Identity operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ContactError(NalidError):
    """Exception raised for contact management failures.

    This includes invalid QR payloads and attempts to add oneself.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E400_CONTACT_ERROR,
        message: str = "Contact operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(NalidError):
    """Exception raised for configuration failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
