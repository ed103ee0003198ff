"""Shared types and dataclasses for backup operations.

This module provides:
- BackupError and its subclasses: Exception classes
- ChunkUploadResult, RestoreReport, BackupReport: Operation results
- RestoreSession: Short-lived restore credentials
- TransferProgress, ProgressCallback: Byte-level progress reporting
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field


class BackupError(Exception):
    """Base exception for backup and restore errors."""


class ScanError(BackupError):
    """Walking the source tree failed.

    Attributes:
        path: Entry that could not be read
        cause: Underlying OS error
    """

    def __init__(self, path: str, cause: BaseException) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"Cannot scan {path}: {cause}")


class UploadError(BackupError):
    """Failed to upload a file or object."""


class ChunkUploadError(UploadError):
    """A chunk could not be registered or stored after all retries.

    Attributes:
        path: File the chunk belongs to
        offset: Byte offset of the failed chunk
        cause: Last error raised for the chunk
    """

    def __init__(self, path: str, offset: int, cause: BaseException) -> None:
        self.path = path
        self.offset = offset
        self.cause = cause
        super().__init__(f"Chunk at offset {offset} of {path} failed: {cause}")


class MultipartUploadError(UploadError):
    """One or more parts of a multipart upload failed.

    Attributes:
        object_name: Object being uploaded
        errors: Every part failure, as (part_number, error) pairs
    """

    def __init__(self, object_name: str, errors: list[tuple[int, BaseException]]) -> None:
        self.object_name = object_name
        self.errors = errors
        details = "; ".join(f"part {number}: {error}" for number, error in errors)
        super().__init__(
            f"Multipart upload of {object_name} failed ({len(errors)} parts): {details}"
        )


class RestoreError(BackupError):
    """Restoring a file failed; the restore pass is aborted.

    Attributes:
        path: File being restored
        cause: Underlying error
    """

    def __init__(self, path: str, cause: BaseException) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"Restore of {path} failed: {cause}")


@dataclass
class RestoreSession:
    """Short-lived credentials for one restore session."""

    session_key: str
    created_at: str


@dataclass
class TransferProgress:
    """Progress of one file or object transfer.

    Reported after every chunk or part completes, from the worker thread
    that completed it. bytes_done never decreases between two reports
    of the same transfer.
    """

    path: str
    operation: str  # "upload", "multipart" or "restore"
    bytes_done: int
    total: int | None

    @property
    def percent(self) -> float | None:
        """Get progress percentage, or None when the total is unknown."""
        if self.total is None:
            return None
        if self.total == 0:
            return 100.0
        return (self.bytes_done / self.total) * 100


# Type alias for progress callback
ProgressCallback = Callable[[TransferProgress], None]


@dataclass
class ChunkUploadResult:
    """Result of uploading the chunks of one file."""

    path: str
    chunks: int = 0
    uploaded: int = 0
    deduplicated: int = 0
    bytes_uploaded: int = 0
    digests: list[str] = field(default_factory=list)


@dataclass
class RestoreReport:
    """Result of a restore pass."""

    files: list[str] = field(default_factory=list)
    empty_files: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    bytes_written: int = 0


@dataclass
class BackupReport:
    """Result of backing up a directory tree."""

    recovery_point_id: str
    referenced: list[str] = field(default_factory=list)
    metadata_updated: list[str] = field(default_factory=list)
    uploaded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    chunks_uploaded: int = 0
    chunks_deduplicated: int = 0
    bytes_uploaded: int = 0

    @property
    def has_failures(self) -> bool:
        """Check if any file failed."""
        return len(self.failed) > 0

    @property
    def files_processed(self) -> int:
        return (
            len(self.referenced)
            + len(self.metadata_updated)
            + len(self.uploaded)
            + len(self.failed)
        )
