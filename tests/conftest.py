"""Pytest configuration and fixtures for diskstore.

Drivers that talk to remote services are tested against unittest.mock
clients; local storage uses pytest's tmp_path. All imports use diskstore.*.
"""

import pytest

from diskstore.core.config import get_settings
from diskstore.infrastructure.external.storage.buffer_storage import BufferStorageDriver
from diskstore.infrastructure.external.storage.local_storage import LocalStorageDriver
from diskstore.infrastructure.external.storage.temporary_links import TemporaryLinkStore


class FakeClock:
    """Settable clock in seconds since epoch, for TemporaryLinkStore."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """Each test sees settings built from its own environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def link_store(clock: FakeClock) -> TemporaryLinkStore:
    return TemporaryLinkStore(clock=clock)


@pytest.fixture
def buffer_driver() -> BufferStorageDriver:
    return BufferStorageDriver()


@pytest.fixture
def local_driver(tmp_path, link_store: TemporaryLinkStore) -> LocalStorageDriver:
    """Local driver rooted in a per-test temp dir with a public base URL."""
    return LocalStorageDriver(
        root=str(tmp_path / "disk"),
        base_public_url="https://files.example.com",
        link_store=link_store,
    )

