"""Content hashing for BackupAgent.

This module provides:
- SHA-256 chunk digests (the identity of every chunk written by this agent)
- MD5 legacy digests (what S3 reports as the ETag of a single-PUT object)
- ETag comparison accepting either digest
- File hashing with SHA-256
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from pathlib import Path

# Size of blocks read when hashing whole files
FILE_HASH_BLOCK_SIZE = 1024 * 1024


def get_chunk_hash(data: bytes) -> str:
    """Compute SHA-256 hash of data.

    Args:
        data: Raw bytes to hash.

    Returns:
        Hex-encoded SHA-256 hash string (64 characters).
    """
    return hashlib.sha256(data).hexdigest()


def get_legacy_hash(data: bytes) -> str:
    """Compute MD5 hash of data.

    Only used to recognise objects stored under the legacy digest and
    S3 ETags. Never used as the identity of a new chunk.

    Args:
        data: Raw bytes to hash.

    Returns:
        Hex-encoded MD5 hash string (32 characters).
    """
    return hashlib.md5(data, usedforsecurity=False).hexdigest()


def normalize_etag(etag: str | None) -> str:
    """Strip quotes, weak prefix and case from an ETag header value."""
    if not etag:
        return ""
    value = etag.strip()
    if value.startswith("W/"):
        value = value[2:]
    return value.strip('"').lower()


def etag_matches(etag: str | None, digests: Iterable[str]) -> bool:
    """Check whether a remote ETag contains one of the given digests.

    Args:
        etag: Raw ETag header value (may be quoted or None).
        digests: Candidate hex digests of the local content.

    Returns:
        True if any digest appears in the ETag.
    """
    value = normalize_etag(etag)
    if not value:
        return False
    return any(digest and digest.lower() in value for digest in digests)


def compute_file_hash(path: Path) -> str:
    """Compute SHA-256 hash of a file.

    Reads the file in blocks to handle large files efficiently.

    Args:
        path: Path to the file to hash.

    Returns:
        Hexadecimal SHA-256 hash string.
    """
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(FILE_HASH_BLOCK_SIZE), b""):
            hasher.update(block)
    return hasher.hexdigest()
