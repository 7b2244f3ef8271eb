"""
Nalid24 - Utility functions.

Provides time helpers, formatting, validation and logging setup.
"""

import logging
import re
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional, Union

from rich.logging import RichHandler

from .constants import (
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    MAX_USERNAME_LENGTH,
)

logger = logging.getLogger(__name__)

_UID_PATTERN = re.compile(r"^[A-Za-z0-9\-]{1,128}$")


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def coerce_timestamp(value: Any) -> Optional[int]:
    """
    Interpret a stored timestamp as integer milliseconds.

    Returns None for missing or malformed values (including booleans).
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value))
        except ValueError:
            logger.debug(f"Unparseable timestamp '{value}'")
            return None
    return None


def format_last_seen(timestamp_ms: int, current_ms: Optional[int] = None) -> str:
    """
    Format a last-seen timestamp as relative time (e.g. '5 minutes ago').

    Args:
        timestamp_ms: Last seen time in milliseconds
        current_ms: Reference time in milliseconds (defaults to now)
    """
    current_ms = now_ms() if current_ms is None else current_ms
    diff = max(0, current_ms - timestamp_ms)

    if diff < 60 * 1000:
        return "just now"
    if diff < 60 * 60 * 1000:
        minutes = diff // (60 * 1000)
        return f'{minutes} minute{"s" if minutes != 1 else ""} ago'
    if diff < 24 * 60 * 60 * 1000:
        hours = diff // (60 * 60 * 1000)
        return f'{hours} hour{"s" if hours != 1 else ""} ago'
    days = diff // (24 * 60 * 60 * 1000)
    return f'{days} day{"s" if days != 1 else ""} ago'


def validate_uid(uid: str) -> bool:
    """
    Validate a user id.

    Ids are UUIDs in practice; any short token of letters, digits and
    hyphens is accepted. Underscores are rejected because they separate
    the participants of a chat id.
    """
    return isinstance(uid, str) and bool(_UID_PATTERN.match(uid))


def validate_username(username: str) -> bool:
    """Check a display name is non-blank and within the length limit."""
    return isinstance(username, str) and 0 < len(username.strip()) <= MAX_USERNAME_LENGTH


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, appending a suffix."""
    if len(text) <= max_length:
        return text
    return text[: max_length - len(suffix)] + suffix


def configure_logging(
    level: Union[int, str] = logging.INFO,
    log_file: Optional[Path] = None,
    console: bool = True,
) -> None:
    """
    Configure the ``nalid24`` logger hierarchy.

    Console output goes through rich; the optional file sink rotates at
    LOG_MAX_BYTES keeping LOG_BACKUP_COUNT files.
    """
    root = logging.getLogger("nalid24")
    root.setLevel(level if isinstance(level, int) else level.upper())

    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    if console:
        console_handler = RichHandler(rich_tracebacks=True, show_path=False)
        console_handler.setFormatter(logging.Formatter("%(message)s", datefmt=LOG_DATE_FORMAT))
        root.addHandler(console_handler)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
        root.addHandler(file_handler)

    if not root.handlers:
        root.addHandler(logging.NullHandler())
