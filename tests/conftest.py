"""
Pytest configuration and fixtures for Nalid24 tests.

Provides common fixtures and test utilities for unit and integration tests.
"""

import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from nalid24.config import Config
from nalid24.realtime import MemoryRealtimeServer

ALICE_ID = "11111111-aaaa-4aaa-8aaa-aaaaaaaaaaaa"
BOB_ID = "22222222-bbbb-4bbb-8bbb-bbbbbbbbbbbb"
CAROL_ID = "33333333-cccc-4ccc-8ccc-cccccccccccc"

HOUR_MS = 60 * 60 * 1000


class FakeClock:
    """Deterministic millisecond clock shared by the store and the engines."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="nalid24_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def server(clock: FakeClock) -> MemoryRealtimeServer:
    """In-process realtime store driven by the fake clock."""
    return MemoryRealtimeServer(clock=clock)


@pytest.fixture
def config(temp_dir: Path) -> Config:
    """Default configuration rooted in the temporary directory."""
    cfg = Config(temp_dir / "config.toml")
    cfg.set("storage", "data_dir", str(temp_dir))
    return cfg


@pytest.fixture
def sample_user_data() -> dict:
    return {
        "id": ALICE_ID,
        "username": "alice",
        "createdAt": 1_700_000_000_000,
    }


@pytest.fixture
def sample_contact_data() -> dict:
    return {
        "id": BOB_ID,
        "username": "bob",
        "notificationHandle": "bob-device-token",
        "addedAt": 1_700_000_000_000,
    }


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
