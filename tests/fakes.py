"""In-memory catalog and instrumented volumes for coordinator tests."""

import itertools
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from backupagent.client.api import (
    CatalogFile,
    CatalogTransportError,
    ChunkRecord,
    DownloadInfo,
    ItemInfoLatest,
    Multipart,
    NotFoundError,
    Part,
    parse_mode,
)
from backupagent.client.backup.planner import ItemInfo
from backupagent.client.volume import HeadResult, LocalFSVolume, VolumeError
from backupagent.core.hashing import get_legacy_hash


@dataclass
class StoredItem:
    """Item saved in the fake catalog."""

    id: str
    recovery_point_id: str
    info: ItemInfo
    chunks: list[tuple[int, int, str]] = field(default_factory=list)

    @property
    def path(self) -> str:
        return self.info.attributes["item_name"]


class FakeCatalog:
    """Thread-safe stand-in for CatalogClient.

    Chunk URLs point into the given LocalFSVolume under ``chunks/<digest>``.
    Items without chunks of their own resolve their content through
    parent_item_id, as the catalog server does for unchanged content.
    Failures can be injected per method name with fail().
    """

    def __init__(self, volume: LocalFSVolume) -> None:
        self.volume = volume
        self.items: dict[str, StoredItem] = {}
        self.calls: list[str] = []
        self.parts: dict[str, dict[int, bytes]] = {}
        self.completed: dict[str, list[Part]] = {}
        self.aborted: list[str] = []
        self.uploaded_files: dict[str, bytes] = {}
        self._failures: dict[str, int] = defaultdict(int)
        self._fail_parts: set[int] = set()
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def fail(self, method: str, times: int = 1) -> None:
        """Make the next `times` calls of a method raise a transport error."""
        self._failures[method] += times

    def fail_parts(self, *part_numbers: int) -> None:
        """Make every upload of the given part numbers fail."""
        self._fail_parts.update(part_numbers)

    def _record(self, method: str) -> None:
        with self._lock:
            self.calls.append(method)
            if self._failures[method] > 0:
                self._failures[method] -= 1
                raise CatalogTransportError(f"{method}: injected failure")

    def _next_id(self, prefix: str) -> str:
        with self._lock:
            return f"{prefix}-{next(self._ids)}"

    def chunk_url(self, digest: str) -> str:
        return self.volume.url_for(f"chunks/{digest}")

    def count(self, method: str) -> int:
        return self.calls.count(method)

    # === Items ===

    def save_file_info(self, recovery_point_id: str, item: ItemInfo) -> CatalogFile:
        self._record("save_file_info")
        stored = StoredItem(self._next_id("item"), recovery_point_id, item)
        with self._lock:
            self.items[stored.id] = stored
        return CatalogFile(
            id=stored.id,
            real_name=stored.path,
            size=item.attributes["size"],
            item_type=item.item_type.value,
        )

    def get_item_latest(self, recovery_point_id: str, path: str) -> ItemInfoLatest | None:
        self._record("get_item_latest")
        with self._lock:
            candidates = [
                item
                for item in self.items.values()
                if item.path == path and item.recovery_point_id != recovery_point_id
            ]
        if not candidates:
            return None
        latest = candidates[-1]
        return ItemInfoLatest(
            id=latest.id,
            item_name=latest.path,
            change_time=latest.info.attributes["change_time"],
            modify_time=latest.info.attributes["modify_time"],
            size=latest.info.attributes["size"],
            complete=latest.info.complete,
        )

    def complete_file(self, recovery_point_id: str, item_id: str) -> None:
        self._record("complete_file")
        with self._lock:
            if item_id not in self.items:
                raise NotFoundError(f"Item {item_id} not found", status_code=404)
            self.items[item_id].info.complete = True

    def items_in(self, recovery_point_id: str) -> list[StoredItem]:
        with self._lock:
            return [i for i in self.items.values() if i.recovery_point_id == recovery_point_id]

    def item_for(self, recovery_point_id: str, path: str) -> StoredItem:
        return next(i for i in self.items_in(recovery_point_id) if i.path == path)

    def get_list_file_path(self, recovery_point_id: str) -> list[CatalogFile]:
        self._record("get_list_file_path")
        return [
            CatalogFile(
                id=item.id,
                real_name=item.path,
                size=item.info.attributes["size"],
                item_type=item.info.item_type.value,
                mode=parse_mode(item.info.attributes.get("mode")),
                complete=item.info.complete,
            )
            for item in self.items_in(recovery_point_id)
        ]

    # === Chunks ===

    def save_chunk(
        self, recovery_point_id: str, item_id: str, offset: int, length: int, digest: str
    ) -> ChunkRecord:
        self._record("save_chunk")
        with self._lock:
            if item_id not in self.items:
                raise NotFoundError(f"Item {item_id} not found", status_code=404)
            self.items[item_id].chunks.append((offset, length, digest))
        url = self.chunk_url(digest)
        return ChunkRecord(
            id=self._next_id("chunk"),
            offset=offset,
            length=length,
            etag=digest,
            uri=f"chunks/{digest}",
            presigned_head=url,
            presigned_put=url,
        )

    def _content_item(self, item: StoredItem) -> StoredItem:
        while not item.chunks and item.info.parent_item_id:
            parent = self.items[item.info.parent_item_id]
            unchanged = item.info.attributes["modify_time"] == parent.info.attributes["modify_time"]
            if not (item.info.chunk_reference or unchanged):
                break
            item = parent
        return item

    def get_info_file_download(
        self, recovery_point_id: str, item_id: str, session_key: str, created_at: str
    ) -> list[DownloadInfo]:
        self._record("get_info_file_download")
        with self._lock:
            item = self._content_item(self.items[item_id])
            chunks = list(item.chunks)
        return [DownloadInfo(get=self.chunk_url(digest), offset=offset) for offset, _, digest in chunks]

    # === Objects ===

    def upload_file(self, recovery_point_id: str, name: str, data: bytes) -> CatalogFile:
        self._record("upload_file")
        with self._lock:
            self.uploaded_files[name] = data
        return CatalogFile(id=self._next_id("file"), real_name=name, size=len(data))

    def init_multipart(self, recovery_point_id: str, name: str) -> Multipart:
        self._record("init_multipart")
        upload_id = self._next_id("upload")
        with self._lock:
            self.parts[upload_id] = {}
        return Multipart(upload_id=upload_id, file_name=name)

    def upload_part(
        self, recovery_point_id: str, upload_id: str, part_number: int, name: str, data: bytes
    ) -> Part:
        self._record("upload_part")
        if part_number in self._fail_parts:
            raise CatalogTransportError(f"part {part_number}: injected failure")
        with self._lock:
            self.parts[upload_id][part_number] = data
        return Part(part_number=part_number, size=len(data), etag=get_legacy_hash(data))

    def complete_multipart(self, recovery_point_id: str, upload_id: str, parts: list[Part]) -> None:
        self._record("complete_multipart")
        with self._lock:
            self.completed[upload_id] = list(parts)

    def abort_multipart(self, recovery_point_id: str, upload_id: str) -> None:
        self._record("abort_multipart")
        with self._lock:
            self.aborted.append(upload_id)

    def assembled(self, upload_id: str) -> bytes:
        """Return the object a completed session would produce."""
        parts = self.parts[upload_id]
        return b"".join(parts[p.part_number] for p in self.completed[upload_id])


class CountingVolume(LocalFSVolume):
    """LocalFSVolume recording every operation.

    Args:
        fail_puts: Number of PUTs to fail before succeeding.
        fail_gets: Number of GETs to fail before succeeding.
        delay: Seconds each PUT and GET sleeps, to overlap workers.
    """

    def __init__(
        self, base_path: Any, fail_puts: int = 0, fail_gets: int = 0, delay: float = 0.0
    ) -> None:
        super().__init__(base_path)
        self.puts: list[str] = []
        self.gets: list[str] = []
        self.heads: list[str] = []
        self.fail_puts = fail_puts
        self.fail_gets = fail_gets
        self.delay = delay
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def _enter(self) -> None:
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        if self.delay:
            time.sleep(self.delay)

    def _leave(self) -> None:
        with self._lock:
            self.active -= 1

    def put_object(self, url: str, data: bytes) -> str:
        self._enter()
        try:
            with self._lock:
                self.puts.append(url)
                if self.fail_puts > 0:
                    self.fail_puts -= 1
                    raise VolumeError("PUT failed", url=url, status_code=503)
            return super().put_object(url, data)
        finally:
            self._leave()

    def get_object(self, url: str) -> bytes:
        self._enter()
        try:
            with self._lock:
                self.gets.append(url)
                if self.fail_gets > 0:
                    self.fail_gets -= 1
                    raise VolumeError("GET failed", url=url, status_code=503)
            return super().get_object(url)
        finally:
            self._leave()

    def head_object(self, url: str) -> HeadResult:
        with self._lock:
            self.heads.append(url)
        return super().head_object(url)
