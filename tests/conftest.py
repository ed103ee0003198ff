"""Shared fixtures for backupagent tests."""

import os
from pathlib import Path

import pytest

from backupagent.core.chunking import ChunkParams
from backupagent.core.config import RetryPolicy, TransferConfig
from fakes import CountingVolume, FakeCatalog

# Small chunk bounds so tests run on kilobytes instead of megabytes
SMALL_CHUNKS = ChunkParams(min_size=1024, avg_size=2048, max_size=4096)


@pytest.fixture
def small_params() -> ChunkParams:
    return SMALL_CHUNKS


@pytest.fixture
def transfer_config() -> TransferConfig:
    """Transfer settings with a few workers and no retry delays."""
    return TransferConfig(
        upload_concurrency=4,
        download_concurrency=4,
        multipart_concurrency=3,
        part_size=1000,
        retry=RetryPolicy(max_retries=2, initial_backoff=0.0, max_backoff=0.0),
    )


@pytest.fixture
def volume(tmp_path: Path) -> CountingVolume:
    return CountingVolume(tmp_path / "volume")


@pytest.fixture
def catalog(volume: CountingVolume) -> FakeCatalog:
    return FakeCatalog(volume)


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    """Create a small source tree with nested and duplicate content."""
    root = tmp_path / "source"
    (root / "docs" / "nested").mkdir(parents=True)
    (root / "docs" / "readme.txt").write_bytes(b"hello backup\n")
    (root / "docs" / "nested" / "data.bin").write_bytes(os.urandom(20_000))
    (root / "empty.txt").write_bytes(b"")
    (root / "big.bin").write_bytes(os.urandom(30_000))
    return root
