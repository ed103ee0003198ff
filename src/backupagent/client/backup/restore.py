"""Restore of recovery points from chunk storage.

This module provides:
- RestoreCoordinator: Rebuilds the files of a recovery point under a
  destination directory
- destination_path: Maps a recorded file name under the destination

Files are restored one after another. The chunks of a file are fetched
concurrently and each is written at its own offset, so the order in
which downloads finish does not matter.
"""

from __future__ import annotations

import logging
import os
import stat
import threading
import time
from collections.abc import Callable
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, TypeVar

from backupagent.client.backup.retry import is_transient_error, retry_with_backoff
from backupagent.client.backup.types import (
    ProgressCallback,
    RestoreError,
    RestoreReport,
    RestoreSession,
)
from backupagent.client.backup.workers import ConcurrencyLimiter, ProgressTracker, TransferGroup
from backupagent.core.config import TransferConfig
from backupagent.core.types import ItemType

if TYPE_CHECKING:
    from backupagent.client.api import CatalogClient, CatalogFile, DownloadInfo
    from backupagent.client.volume import StorageVolume

logger = logging.getLogger(__name__)

T = TypeVar("T")

FILE_MODE = 0o644


def destination_path(dest_dir: Path, real_name: str) -> Path:
    """Map a recorded file name to a path under dest_dir.

    Leading separators and drive letters are dropped. Names that would
    leave dest_dir are rejected.

    Raises:
        ValueError: If the name is empty or contains '..'.
    """
    parts = [
        part
        for part in PurePosixPath(real_name.replace("\\", "/")).parts
        if part not in ("/", "", ".")
    ]
    if parts and parts[0].endswith(":"):
        parts = parts[1:]
    if not parts:
        raise ValueError(f"Empty file name: {real_name!r}")
    if ".." in parts:
        raise ValueError(f"File name escapes destination: {real_name!r}")
    return dest_dir.joinpath(*parts)


class _PositionalWriter:
    """Writes byte ranges of one open file at explicit offsets.

    Offsets of concurrent writes must not overlap.
    """

    def __init__(self, fd: int) -> None:
        self._fd = fd
        self._lock = threading.Lock()

    def write_at(self, data: bytes, offset: int) -> int:
        view = memoryview(data)
        written = 0
        if hasattr(os, "pwrite"):
            while written < len(view):
                written += os.pwrite(self._fd, view[written:], offset + written)
            return written

        # No pwrite (Windows): seek and write must not interleave
        with self._lock:
            os.lseek(self._fd, offset, os.SEEK_SET)
            while written < len(view):
                written += os.write(self._fd, view[written:])
        return written


class RestoreCoordinator:
    """Restores every file of a recovery point.

    The concurrency limiter is created once per coordinator and shared by
    the downloads of every file.

    Usage:
        coordinator = RestoreCoordinator(catalog, TransferConfig())
        report = coordinator.restore(rp_id, dest_dir, volume, session)
    """

    def __init__(
        self,
        catalog: CatalogClient,
        config: TransferConfig | None = None,
        limiter: ConcurrencyLimiter | None = None,
        sleep: Callable[[float], None] = time.sleep,
        progress_callback: ProgressCallback | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            catalog: Catalog client used to list files and chunk locations.
            config: Concurrency and retry settings.
            limiter: Optional limiter. Defaults to one sized from
                config.download_concurrency.
            sleep: Sleep function used between retries.
            progress_callback: Optional callback for progress updates, called
                from worker threads as chunks are written.
        """
        self._catalog = catalog
        self._config = config or TransferConfig()
        self._limiter = limiter or ConcurrencyLimiter(self._config.download_concurrency)
        self._sleep = sleep
        self._progress_callback = progress_callback

    @property
    def limiter(self) -> ConcurrencyLimiter:
        return self._limiter

    def _retry(
        self,
        func: Callable[[], T],
        description: str,
        cancel_check: Callable[[], bool] | None = None,
    ) -> T:
        return retry_with_backoff(
            func,
            policy=self._config.retry,
            description=description,
            cancel_check=cancel_check,
            sleep=self._sleep,
            retry_if=is_transient_error,
        )

    def restore(
        self,
        recovery_point_id: str,
        dest_dir: Path,
        volume: StorageVolume,
        session: RestoreSession,
    ) -> RestoreReport:
        """Restore a recovery point into dest_dir.

        Entries that are not regular files, and files whose upload never
        completed, are not written; they are listed in report.skipped.

        Args:
            recovery_point_id: Recovery point to restore.
            dest_dir: Destination root; created if missing.
            volume: Volume the download URLs point into.
            session: Restore session credentials.

        Returns:
            RestoreReport listing the restored files.

        Raises:
            RestoreError: On the first file that cannot be restored.
                Files written before it stay on disk.
        """
        dest_dir = Path(dest_dir).resolve()
        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            files = self._retry(
                lambda: self._catalog.get_list_file_path(recovery_point_id),
                f"list files of {recovery_point_id}",
            )
        except Exception as e:
            raise RestoreError(str(dest_dir), e) from e

        logger.info(f"Restoring {len(files)} files of {recovery_point_id} into {dest_dir}")
        report = RestoreReport()
        for catalog_file in files:
            reason = self._skip_reason(catalog_file)
            if reason:
                logger.warning(f"Skipping {catalog_file.real_name}: {reason}")
                report.skipped[catalog_file.real_name] = reason
                continue
            self._restore_file(recovery_point_id, catalog_file, dest_dir, volume, session, report)

        logger.info(
            f"Restored {len(report.files)} files ({report.bytes_written} bytes) "
            f"of {recovery_point_id}, {len(report.skipped)} skipped"
        )
        return report

    @staticmethod
    def _skip_reason(catalog_file: CatalogFile) -> str | None:
        if catalog_file.item_type != ItemType.FILE.value:
            return f"{catalog_file.item_type.lower()} entries are not restored"
        if not catalog_file.complete:
            return "content upload never completed"
        return None

    def _restore_file(
        self,
        recovery_point_id: str,
        catalog_file: CatalogFile,
        dest_dir: Path,
        volume: StorageVolume,
        session: RestoreSession,
        report: RestoreReport,
    ) -> None:
        name = catalog_file.real_name
        try:
            target = destination_path(dest_dir, name)
            infos = self._retry(
                lambda: self._catalog.get_info_file_download(
                    recovery_point_id, catalog_file.id, session.session_key, session.created_at
                ),
                f"locate chunks of {name}",
            )
            target.parent.mkdir(parents=True, exist_ok=True)
            flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC | getattr(os, "O_BINARY", 0)
            fd = os.open(target, flags, FILE_MODE)
        except Exception as e:
            raise RestoreError(name, e) from e

        written = 0
        try:
            if infos:
                progress = ProgressTracker(
                    name, "restore", catalog_file.size, self._progress_callback
                )
                written = self._download_chunks(
                    name, infos, _PositionalWriter(fd), volume, progress
                )
        finally:
            os.close(fd)

        if catalog_file.mode is not None:
            try:
                os.chmod(target, stat.S_IMODE(catalog_file.mode))
            except OSError as e:
                raise RestoreError(name, e) from e

        report.files.append(name)
        if not infos:
            logger.info(f"{name} has no content to restore, created empty")
            report.empty_files.append(name)
            return
        report.bytes_written += written
        logger.info(f"Restored {name}: {len(infos)} chunks, {written} bytes")

    def _download_chunks(
        self,
        name: str,
        infos: list[DownloadInfo],
        writer: _PositionalWriter,
        volume: StorageVolume,
        progress: ProgressTracker,
    ) -> int:
        workers = self._limiter.limit
        group = TransferGroup(
            "restore",
            workers=workers,
            limiter=self._limiter,
            queue_size=self._config.queue_size_for(workers),
        )

        with group:
            for info in infos:

                def task(info: DownloadInfo = info) -> int:
                    data = self._retry(
                        lambda: volume.get_object(info.get),
                        f"download chunk at {info.offset} of {name}",
                        cancel_check=lambda: group.cancelled,
                    )
                    written = writer.write_at(data, info.offset)
                    progress.advance(written)
                    return written

                if not group.submit(info.offset, task):
                    break

        outcome = group.outcome
        if outcome.errors:
            offset, error = outcome.errors[0]
            logger.error(f"Restore of {name} failed at offset {offset}: {error}")
            raise RestoreError(name, error) from error
        return sum(written for _, written in outcome.results)
