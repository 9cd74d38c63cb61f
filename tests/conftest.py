"""Shared fixtures."""

from pathlib import Path

import pytest

from evidence.storage.backends import MemoryObjectStore
from evidence.storage.gateway import TempStorageGateway
from tests.fakes import jpeg_bytes


@pytest.fixture
def photo(tmp_path: Path) -> Path:
    path = tmp_path / "court.jpg"
    path.write_bytes(jpeg_bytes())
    return path


@pytest.fixture
def memory_store() -> MemoryObjectStore:
    return MemoryObjectStore(bucket="test-bucket")


@pytest.fixture
def gateway(memory_store) -> TempStorageGateway:
    return TempStorageGateway(memory_store, cleanup_delay_s=600)
