"""Shared test fixtures for nimble."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from nimble.config import Settings
from tests.helpers import TEST_BLOCK_SIZE, FakeTransport

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def settings() -> Settings:
    """Settings with tiny blocks and no backoff delays."""
    return Settings(
        _env_file=None,
        block_size=TEST_BLOCK_SIZE,
        hash_workers=2,
        max_concurrent_transfers=2,
        retry_attempts=3,
        retry_base_delay=0,
        retry_max_delay=0,
        request_timeout=5,
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def store(tmp_path: Path) -> Path:
    """An empty mod store directory."""
    root = tmp_path / "store"
    root.mkdir()
    return root
