"""Backup of a directory tree into a recovery point.

Architecture:
    DirectoryScanner → BackupPlanner → CatalogClient.save_file_info
                     → ChunkUploadCoordinator (FULL_UPLOAD regular files)

Files are processed one at a time in scan order; the chunks of each file
are uploaded concurrently. A file whose content is uploaded is saved as
incomplete and marked complete only once all of its chunks are stored,
so a failed file is uploaded again by the next run. A failure confined to one file is recorded in
the report and the run moves on. A scan failure ends the run.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from backupagent.client.api import CatalogError
from backupagent.client.backup.chunk_upload import ChunkUploadCoordinator
from backupagent.client.backup.planner import BackupPlanner
from backupagent.client.backup.retry import is_transient_error, retry_with_backoff
from backupagent.client.backup.scanner import DirectoryScanner, FileRecord
from backupagent.client.backup.types import BackupReport, ProgressCallback, UploadError
from backupagent.client.volume import VolumeError
from backupagent.core.chunking import DEFAULT_CHUNK_PARAMS, ChunkParams
from backupagent.core.config import AgentConfig, TransferConfig
from backupagent.core.types import BackupAction

if TYPE_CHECKING:
    from backupagent.client.api import CatalogClient
    from backupagent.client.volume import StorageVolume

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors that fail one file without ending the run
FILE_ERRORS = (UploadError, CatalogError, VolumeError, OSError)


class BackupRunner:
    """Runs one backup pass over a directory tree.

    Usage:
        runner = BackupRunner(catalog, volume, config)
        report = runner.backup(Path("/srv/data"), rp_id)
        if report.has_failures:
            ...
    """

    def __init__(
        self,
        catalog: CatalogClient,
        volume: StorageVolume,
        config: AgentConfig | TransferConfig | None = None,
        chunk_params: ChunkParams = DEFAULT_CHUNK_PARAMS,
        sleep: Callable[[float], None] = time.sleep,
        progress_callback: ProgressCallback | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            catalog: Catalog client.
            volume: Volume the chunk URLs point into.
            config: Agent or transfer configuration.
            chunk_params: Chunk size bounds.
            sleep: Sleep function used between retries.
            progress_callback: Optional callback for chunk upload progress.
        """
        if isinstance(config, AgentConfig):
            transfer = config.transfer
            skip_unreadable = config.skip_unreadable
        else:
            transfer = config or TransferConfig()
            skip_unreadable = False

        self._catalog = catalog
        self._volume = volume
        self._transfer = transfer
        self._sleep = sleep
        self._scanner = DirectoryScanner(skip_unreadable=skip_unreadable)
        self._planner = BackupPlanner()
        self._uploader = ChunkUploadCoordinator(
            catalog,
            transfer,
            chunk_params=chunk_params,
            sleep=sleep,
            progress_callback=progress_callback,
        )

    @property
    def scanner(self) -> DirectoryScanner:
        return self._scanner

    def _retry(self, func: Callable[[], T], description: str) -> T:
        return retry_with_backoff(
            func,
            policy=self._transfer.retry,
            description=description,
            sleep=self._sleep,
            retry_if=is_transient_error,
        )

    def backup(self, root: Path, recovery_point_id: str) -> BackupReport:
        """Back up every entry under root.

        Args:
            root: Directory to back up.
            recovery_point_id: Recovery point being written.

        Returns:
            BackupReport with per-action file lists and chunk statistics.

        Raises:
            ScanError: If the tree cannot be walked.
        """
        root = Path(root)
        report = BackupReport(recovery_point_id=recovery_point_id)
        start = time.monotonic()
        logger.info(f"Backup of {root} into {recovery_point_id} started")

        for record in self._scanner.scan(root):
            try:
                self._backup_file(root, record, recovery_point_id, report)
            except FILE_ERRORS as e:
                logger.error(f"Backup of {record.path} failed: {e}")
                report.failed[record.path] = str(e)

        logger.info(
            f"Backup of {root} finished in {time.monotonic() - start:.1f}s: "
            f"{len(report.uploaded)} uploaded, {len(report.metadata_updated)} metadata only, "
            f"{len(report.referenced)} unchanged, {len(report.failed)} failed"
        )
        return report

    def _backup_file(
        self,
        root: Path,
        record: FileRecord,
        recovery_point_id: str,
        report: BackupReport,
    ) -> None:
        previous = self._retry(
            lambda: self._catalog.get_item_latest(recovery_point_id, record.path),
            f"look up {record.path}",
        )
        plan = self._planner.plan(record, previous)
        logger.debug(f"{record.path}: {plan.action.value}")

        saved = self._retry(
            lambda: self._catalog.save_file_info(recovery_point_id, plan.item_info),
            f"save {record.path}",
        )

        if plan.action == BackupAction.REFERENCE_ONLY:
            report.referenced.append(record.path)
            return
        if plan.action == BackupAction.METADATA_UPDATE:
            report.metadata_updated.append(record.path)
            return

        # Symlinks and special files carry no content
        if record.is_regular:
            result = self._uploader.upload(
                recovery_point_id,
                saved.id,
                root / record.path,
                self._volume,
                relative_path=record.path,
            )
            self._retry(
                lambda: self._catalog.complete_file(recovery_point_id, saved.id),
                f"complete {record.path}",
            )
            report.chunks_uploaded += result.uploaded
            report.chunks_deduplicated += result.deduplicated
            report.bytes_uploaded += result.bytes_uploaded
        report.uploaded.append(record.path)
