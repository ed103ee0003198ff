"""Chunked file upload with deduplication.

This module provides:
- ChunkUploadCoordinator: Chunks a file, registers every chunk with the
  catalog and stores the chunks the volume does not already hold

A single producer (the calling thread) reads and chunks the file and
feeds a bounded worker group; each worker registers one chunk, checks
the volume with HEAD and only PUTs when the stored ETag does not match
the chunk's digest.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from backupagent.client.backup.retry import is_transient_error, retry_with_backoff
from backupagent.client.backup.types import (
    ChunkUploadError,
    ChunkUploadResult,
    ProgressCallback,
    UploadError,
)
from backupagent.client.backup.workers import ConcurrencyLimiter, ProgressTracker, TransferGroup
from backupagent.core.chunking import DEFAULT_CHUNK_PARAMS, Chunk, ChunkParams, chunk_file
from backupagent.core.config import TransferConfig
from backupagent.core.hashing import etag_matches, get_legacy_hash

if TYPE_CHECKING:
    from backupagent.client.api import CatalogClient
    from backupagent.client.volume import StorageVolume

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _ChunkOutcome:
    offset: int
    length: int
    digest: str
    uploaded: bool


class ChunkUploadCoordinator:
    """Uploads the content of one file as deduplicated chunks.

    Usage:
        coordinator = ChunkUploadCoordinator(catalog, TransferConfig())
        result = coordinator.upload(rp_id, item.id, local_path, volume)
    """

    def __init__(
        self,
        catalog: CatalogClient,
        config: TransferConfig | None = None,
        chunk_params: ChunkParams = DEFAULT_CHUNK_PARAMS,
        limiter: ConcurrencyLimiter | None = None,
        sleep: Callable[[float], None] = time.sleep,
        progress_callback: ProgressCallback | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            catalog: Catalog client used to register chunks.
            config: Concurrency, queue and retry settings.
            chunk_params: Chunk size bounds.
            limiter: Limiter shared across files. Defaults to one sized
                from config.upload_concurrency.
            sleep: Sleep function used between retries.
            progress_callback: Optional callback for progress updates, called
                from worker threads as chunks complete.
        """
        self._catalog = catalog
        self._config = config or TransferConfig()
        self._chunk_params = chunk_params
        self._limiter = limiter or ConcurrencyLimiter(self._config.upload_concurrency)
        self._sleep = sleep
        self._progress_callback = progress_callback

    @property
    def limiter(self) -> ConcurrencyLimiter:
        return self._limiter

    def upload(
        self,
        recovery_point_id: str,
        item_id: str,
        local_path: Path,
        volume: StorageVolume,
        relative_path: str | None = None,
    ) -> ChunkUploadResult:
        """Chunk a file and upload the chunks missing from the volume.

        Args:
            recovery_point_id: Recovery point being written.
            item_id: Catalog id of the file's item.
            local_path: Absolute path to the local file.
            volume: Volume the presigned URLs point into.
            relative_path: Path used in logs and errors.

        Returns:
            ChunkUploadResult with chunk and dedup counts.

        Raises:
            ChunkUploadError: If reading the file fails, or a chunk still
                fails after all retries. Chunks stored before the failure
                stay in the volume.
        """
        path = relative_path or str(local_path)
        logger.info(f"Uploading {path}")

        workers = self._config.upload_concurrency
        group = TransferGroup(
            "chunk-upload",
            workers=workers,
            limiter=self._limiter,
            queue_size=self._config.queue_size_for(workers),
        )

        seen: set[str] = set()
        next_offset = 0
        try:
            progress = ProgressTracker(
                path, "upload", local_path.stat().st_size, self._progress_callback
            )
            with group:
                for chunk in chunk_file(local_path, self._chunk_params):
                    register_only = chunk.digest in seen
                    seen.add(chunk.digest)
                    next_offset = chunk.offset + chunk.length

                    def task(
                        chunk: Chunk = chunk, register_only: bool = register_only
                    ) -> _ChunkOutcome:
                        result = self._upload_chunk(
                            recovery_point_id, item_id, chunk, volume, register_only,
                            cancel_check=lambda: group.cancelled,
                        )
                        progress.advance(chunk.length)
                        return result

                    if not group.submit(chunk.offset, task):
                        logger.info(f"Upload of {path} cancelled after a chunk failure")
                        break
        except OSError as e:
            raise ChunkUploadError(path, next_offset, e) from e

        outcome = group.outcome
        if outcome.errors:
            offset, error = min(outcome.errors, key=lambda item: item[0])
            logger.error(
                f"Upload of {path} failed: {len(outcome.errors)} chunks failed, "
                f"{len(outcome.skipped)} skipped"
            )
            raise ChunkUploadError(path, offset, error) from error

        chunks = sorted((value for _, value in outcome.results), key=lambda c: c.offset)
        result = ChunkUploadResult(
            path=path,
            chunks=len(chunks),
            uploaded=sum(1 for c in chunks if c.uploaded),
            deduplicated=sum(1 for c in chunks if not c.uploaded),
            bytes_uploaded=sum(c.length for c in chunks if c.uploaded),
            digests=[c.digest for c in chunks],
        )
        logger.info(
            f"Uploaded {path}: {result.chunks} chunks, "
            f"{result.uploaded} stored, {result.deduplicated} already present"
        )
        return result

    def _upload_chunk(
        self,
        recovery_point_id: str,
        item_id: str,
        chunk: Chunk,
        volume: StorageVolume,
        register_only: bool,
        cancel_check: Callable[[], bool],
    ) -> _ChunkOutcome:
        """Register one chunk and store it unless the volume already has it."""
        short = chunk.digest[:8]

        def retry(func: Callable[[], T], description: str) -> T:
            return retry_with_backoff(
                func,
                policy=self._config.retry,
                description=f"{description} chunk {short}",
                cancel_check=cancel_check,
                sleep=self._sleep,
                retry_if=is_transient_error,
            )

        record = retry(
            lambda: self._catalog.save_chunk(
                recovery_point_id, item_id, chunk.offset, chunk.length, chunk.digest
            ),
            "register",
        )

        if register_only:
            logger.debug(f"Chunk {short}... repeats an earlier chunk of the file")
            return _ChunkOutcome(chunk.offset, chunk.length, chunk.digest, uploaded=False)

        if record.presigned_head:
            head = retry(lambda: volume.head_object(record.presigned_head), "check")
            digests = (chunk.digest, get_legacy_hash(chunk.data))
            if head.exists and etag_matches(head.etag, digests):
                logger.debug(f"Chunk {short}... already exists in volume")
                return _ChunkOutcome(chunk.offset, chunk.length, chunk.digest, uploaded=False)

        if not record.presigned_put:
            raise UploadError(f"Catalog returned no upload URL for chunk {short}")

        retry(lambda: volume.put_object(record.presigned_put, chunk.data), "store")
        logger.debug(f"Stored chunk {short}... ({chunk.length} bytes at {chunk.offset})")
        return _ChunkOutcome(chunk.offset, chunk.length, chunk.digest, uploaded=True)
