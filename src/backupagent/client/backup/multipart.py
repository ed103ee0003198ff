"""Whole-object upload through the catalog.

This module provides:
- MultipartUploadCoordinator: Uploads a stream as one object, either in
  a single request (small objects) or as concurrently uploaded parts

This path skips chunk-level deduplication. Parts are numbered from 1 by
the single producer that reads the stream, so part numbers follow read
order even though parts finish in any order.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from typing import TYPE_CHECKING, BinaryIO, TypeVar

from backupagent.client.backup.retry import is_transient_error, retry_with_backoff
from backupagent.client.backup.types import MultipartUploadError, ProgressCallback
from backupagent.client.backup.workers import ConcurrencyLimiter, ProgressTracker, TransferGroup
from backupagent.core.config import MULTIPART_UPLOAD_LOWER_BOUND, TransferConfig

if TYPE_CHECKING:
    from backupagent.client.api import CatalogClient, CatalogFile, Multipart, Part

logger = logging.getLogger(__name__)

T = TypeVar("T")


def read_parts(stream: BinaryIO, part_size: int) -> Iterator[bytes]:
    """Read a stream as consecutive parts of part_size bytes.

    Short reads are completed before a part is emitted, so only the
    final part can be smaller than part_size. An empty stream yields a
    single empty part.
    """
    emitted = False
    while True:
        buf = bytearray()
        while len(buf) < part_size:
            block = stream.read(part_size - len(buf))
            if not block:
                break
            buf += block
        if not buf:
            if not emitted:
                yield b""
            return
        emitted = True
        yield bytes(buf)
        if len(buf) < part_size:
            return


class MultipartUploadCoordinator:
    """Uploads streams as whole objects.

    Usage:
        coordinator = MultipartUploadCoordinator(catalog, TransferConfig())
        coordinator.upload_object(rp_id, "db.dump", stream, size)
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
            catalog: Catalog client receiving the parts.
            config: Concurrency, part size and retry settings.
            limiter: Optional shared limiter. Defaults to one sized from
                config.multipart_concurrency.
            sleep: Sleep function used between retries.
            progress_callback: Optional callback for progress updates, called
                from worker threads as parts complete.
        """
        self._catalog = catalog
        self._config = config or TransferConfig()
        self._limiter = limiter or ConcurrencyLimiter(self._config.multipart_concurrency)
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

    def upload_object(
        self,
        recovery_point_id: str,
        name: str,
        stream: BinaryIO,
        size: int | None = None,
    ) -> CatalogFile | None:
        """Upload a stream, choosing single-request or multipart by size.

        Args:
            recovery_point_id: Recovery point being written.
            name: Object name.
            stream: Binary stream positioned at byte 0.
            size: Stream size if known. Unknown sizes go multipart.

        Returns:
            The stored file entry for single-request uploads, None for
            multipart uploads.

        Raises:
            MultipartUploadError: If a multipart upload fails.
            CatalogError: If a single-request upload fails after retries.
        """
        if size is not None and size < MULTIPART_UPLOAD_LOWER_BOUND:
            data = stream.read()
            logger.info(f"Uploading {name} ({len(data)} bytes) in one request")
            stored = self._retry(
                lambda: self._catalog.upload_file(recovery_point_id, name, data),
                f"upload {name}",
            )
            progress = ProgressTracker(name, "upload", len(data), self._progress_callback)
            progress.advance(len(data))
            return stored
        self.upload_multipart(recovery_point_id, name, stream, size=size)
        return None

    def upload_multipart(
        self,
        recovery_point_id: str,
        name: str,
        stream: BinaryIO,
        size: int | None = None,
    ) -> list[Part]:
        """Upload a stream as concurrently uploaded parts.

        Args:
            recovery_point_id: Recovery point being written.
            name: Object name.
            stream: Binary stream positioned at byte 0.
            size: Stream size if known, reported as the progress total.

        Returns:
            The uploaded parts, ordered by part number.

        Raises:
            MultipartUploadError: Listing every failed part. The session
                is aborted and never completed.
        """
        session = self._retry(
            lambda: self._catalog.init_multipart(recovery_point_id, name),
            f"init multipart {name}",
        )
        logger.info(f"Multipart upload of {name} started (upload id {session.upload_id})")

        workers = self._config.multipart_concurrency
        group = TransferGroup(
            "multipart",
            workers=workers,
            limiter=self._limiter,
            queue_size=self._config.queue_size_for(workers),
        )

        progress = ProgressTracker(name, "multipart", size, self._progress_callback)
        part_number = 0
        try:
            with group:
                for data in read_parts(stream, self._config.part_size):
                    part_number += 1

                    def task(number: int = part_number, data: bytes = data) -> Part:
                        part = self._upload_part(
                            recovery_point_id, session, name, number, data,
                            cancel_check=lambda: group.cancelled,
                        )
                        progress.advance(len(data))
                        return part

                    if not group.submit(part_number, task):
                        break
        except OSError as e:
            self._abort(recovery_point_id, session)
            raise MultipartUploadError(name, [(part_number + 1, e)]) from e

        outcome = group.outcome
        if outcome.errors:
            errors = sorted(outcome.errors, key=lambda item: item[0])
            logger.error(f"Multipart upload of {name} failed: {len(errors)} parts failed")
            self._abort(recovery_point_id, session)
            raise MultipartUploadError(name, errors) from errors[0][1]

        parts = sorted((part for _, part in outcome.results), key=lambda p: p.part_number)
        self._retry(
            lambda: self._catalog.complete_multipart(recovery_point_id, session.upload_id, parts),
            f"complete multipart {name}",
        )
        logger.info(f"Multipart upload of {name} completed: {len(parts)} parts")
        return parts

    def _upload_part(
        self,
        recovery_point_id: str,
        session: Multipart,
        name: str,
        part_number: int,
        data: bytes,
        cancel_check: Callable[[], bool],
    ) -> Part:
        part = self._retry(
            lambda: self._catalog.upload_part(
                recovery_point_id, session.upload_id, part_number, name, data
            ),
            f"upload part {part_number} of {name}",
            cancel_check=cancel_check,
        )
        logger.debug(f"Uploaded part {part_number} of {name} ({len(data)} bytes)")
        return part

    def _abort(self, recovery_point_id: str, session: Multipart) -> None:
        """Abort a failed session; failures are logged, not raised."""
        try:
            self._catalog.abort_multipart(recovery_point_id, session.upload_id)
        except Exception as e:
            logger.warning(f"Could not abort multipart upload {session.upload_id}: {e}")
