"""Content-Defined Chunking (CDC) for BackupAgent.

This module provides CDC using the FastCDC algorithm for:
- Deduplication across runs and machines (same bytes, same cut points)
- Stable chunk boundaries (insertions don't affect distant chunks)
- Streaming: files are never read into memory in one piece

The chunk size constants are part of the storage format. Changing them
changes every cut point and breaks deduplication against chunks that
are already stored.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from fastcdc import fastcdc

from backupagent.core.hashing import get_chunk_hash

# Chunk size configuration (in bytes)
MIN_CHUNK_SIZE = 6 * 1024 * 1024   # 6 MB
AVG_CHUNK_SIZE = 8 * 1024 * 1024   # 8 MB
MAX_CHUNK_SIZE = 10 * 1024 * 1024  # 10 MB

# Number of max-size chunks held in the read window
WINDOW_CHUNKS = 4


@dataclass(frozen=True)
class ChunkParams:
    """Size bounds handed to FastCDC."""

    min_size: int = MIN_CHUNK_SIZE
    avg_size: int = AVG_CHUNK_SIZE
    max_size: int = MAX_CHUNK_SIZE

    def __post_init__(self) -> None:
        if not 0 < self.min_size <= self.avg_size <= self.max_size:
            raise ValueError(
                f"Invalid chunk sizes: min={self.min_size} "
                f"avg={self.avg_size} max={self.max_size}"
            )

    @property
    def window_size(self) -> int:
        """Bytes buffered from the stream before cut points are computed."""
        return self.max_size * WINDOW_CHUNKS


DEFAULT_CHUNK_PARAMS = ChunkParams()


@dataclass
class Chunk:
    """A content-defined byte range of a stream."""

    index: int
    offset: int
    data: bytes
    digest: str

    @property
    def length(self) -> int:
        """Return the size of this chunk in bytes."""
        return len(self.data)


def _cut(buffer: bytes, params: ChunkParams) -> list[tuple[int, int]]:
    return [
        (cdc_chunk.offset, cdc_chunk.length)
        for cdc_chunk in fastcdc(
            buffer,
            min_size=params.min_size,
            avg_size=params.avg_size,
            max_size=params.max_size,
        )
    ]


def chunk_stream(
    stream: BinaryIO,
    params: ChunkParams = DEFAULT_CHUNK_PARAMS,
) -> Iterator[Chunk]:
    """Split a binary stream into content-defined chunks.

    The stream is read in windows of ``params.window_size`` bytes. Every
    chunk of a window except the last is emitted; the last one may have
    been cut short by the window end, so its bytes are carried over and
    chunked again together with the next window. FastCDC only looks at
    bytes from the start of a chunk up to its cut point, so the result is
    identical to chunking the whole stream at once.

    Args:
        stream: Binary stream positioned at byte 0.
        params: Chunk size bounds.

    Yields:
        Chunk objects with index, offset, data, and digest.

    Raises:
        OSError: If reading the stream fails. Chunks already yielded
            remain valid.
    """
    buffer = b""
    base_offset = 0
    index = 0
    eof = False

    while True:
        while not eof and len(buffer) < params.window_size:
            block = stream.read(params.window_size - len(buffer))
            if not block:
                eof = True
            else:
                buffer += block

        if not buffer:
            return

        cuts = _cut(buffer, params)
        if not eof:
            cuts = cuts[:-1]

        consumed = 0
        for offset, length in cuts:
            data = buffer[offset : offset + length]
            yield Chunk(
                index=index,
                offset=base_offset + offset,
                data=data,
                digest=get_chunk_hash(data),
            )
            index += 1
            consumed = offset + length

        buffer = buffer[consumed:]
        base_offset += consumed


def chunk_bytes(
    data: bytes,
    params: ChunkParams = DEFAULT_CHUNK_PARAMS,
) -> Iterator[Chunk]:
    """Split in-memory data into content-defined chunks.

    Args:
        data: Raw bytes to chunk.
        params: Chunk size bounds.

    Yields:
        Chunk objects with index, offset, data, and digest.
    """
    if not data:
        return

    for index, (offset, length) in enumerate(_cut(data, params)):
        chunk_data = data[offset : offset + length]
        yield Chunk(
            index=index,
            offset=offset,
            data=chunk_data,
            digest=get_chunk_hash(chunk_data),
        )


def chunk_file(
    path: Path,
    params: ChunkParams = DEFAULT_CHUNK_PARAMS,
) -> Iterator[Chunk]:
    """Split a file into content-defined chunks.

    Args:
        path: Path to the file to chunk.
        params: Chunk size bounds.

    Yields:
        Chunk objects with index, offset, data, and digest.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    with open(path, "rb") as f:
        yield from chunk_stream(f, params)
