"""Directory scanner producing file metadata records.

This module provides:
- FileRecord: Immutable metadata of one filesystem entry
- DirectoryScanner: Depth-first walk of a source tree

Directories are descended into but never reported. Symlinks are
recorded as they are (lstat) and never followed, so the scanner cannot
loop on a symlink cycle.
"""

from __future__ import annotations

import logging
import os
import stat
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from backupagent.client.backup.types import ScanError
from backupagent.core.types import ItemType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileRecord:
    """Metadata of a scanned filesystem entry.

    Attributes:
        path: POSIX path relative to the scan root
        size: Size in bytes (as reported by lstat)
        mode: Full st_mode (type and permission bits)
        modify_time: Content modification time, in nanoseconds
        change_time: Metadata change time, in nanoseconds
        item_type: Kind of entry
    """

    path: str
    size: int
    mode: int
    modify_time: int
    change_time: int
    item_type: ItemType

    @classmethod
    def from_stat(cls, path: str, st: os.stat_result) -> FileRecord:
        """Create from an lstat result."""
        if stat.S_ISREG(st.st_mode):
            item_type = ItemType.FILE
        elif stat.S_ISLNK(st.st_mode):
            item_type = ItemType.SYMLINK
        else:
            item_type = ItemType.OTHER
        return cls(
            path=path,
            size=st.st_size,
            mode=st.st_mode,
            modify_time=st.st_mtime_ns,
            change_time=st.st_ctime_ns,
            item_type=item_type,
        )

    @property
    def is_regular(self) -> bool:
        return self.item_type == ItemType.FILE

    @property
    def permissions(self) -> int:
        """Permission bits only."""
        return stat.S_IMODE(self.mode)


class DirectoryScanner:
    """Walks a directory tree and yields a FileRecord per non-directory entry.

    Entries are visited depth-first with each directory's entries sorted
    by name, so two scans of an unchanged tree yield the same order.

    By default the first unreadable entry aborts the walk with ScanError.
    With skip_unreadable=True such entries are logged and skipped; their
    paths are collected in ``skipped``.
    """

    def __init__(self, skip_unreadable: bool = False) -> None:
        """Initialize the scanner.

        Args:
            skip_unreadable: Skip entries that cannot be read instead of failing.
        """
        self._skip_unreadable = skip_unreadable
        self.skipped: list[str] = []

    def scan(self, root: Path) -> Iterator[FileRecord]:
        """Scan a directory tree.

        Args:
            root: Directory to scan.

        Yields:
            FileRecord objects in walk order.

        Raises:
            ScanError: If the root is not a readable directory, or an entry
                cannot be read and skipping is disabled.
        """
        root = Path(root)
        self.skipped = []
        if not root.is_dir():
            raise ScanError(str(root), NotADirectoryError(f"Not a directory: {root}"))

        logger.info(f"Scanning {root}")
        count = 0
        for record in self._walk(root, ""):
            count += 1
            yield record
        logger.info(f"Scanned {root}: {count} entries, {len(self.skipped)} skipped")

    def _walk(self, directory: Path, prefix: str) -> Iterator[FileRecord]:
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            if not prefix:
                raise ScanError(str(directory), e) from e
            self._unreadable(prefix, e)
            return

        for entry in entries:
            relative = f"{prefix}/{entry.name}" if prefix else entry.name
            try:
                st = entry.stat(follow_symlinks=False)
            except OSError as e:
                self._unreadable(relative, e)
                continue

            if stat.S_ISDIR(st.st_mode):
                yield from self._walk(Path(entry.path), relative)
                continue

            if stat.S_ISREG(st.st_mode) and not os.access(entry.path, os.R_OK):
                self._unreadable(relative, PermissionError(f"Permission denied: {entry.path}"))
                continue

            yield FileRecord.from_stat(relative, st)

    def _unreadable(self, path: str, error: OSError) -> None:
        if not self._skip_unreadable:
            raise ScanError(path, error) from error
        logger.warning(f"Skipping unreadable entry {path}: {error}")
        self.skipped.append(path)
