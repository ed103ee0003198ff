"""HTTP client for the backup catalog API.

This module provides:
- CatalogClient: HTTP client for communicating with the catalog
- Recovery point item operations (save, latest lookup, listing)
- Chunk registration and download descriptor lookup
- Whole-object and multipart upload endpoints
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from backupagent.client.backup.planner import ItemInfo
    from backupagent.core.config import ServerConfig

logger = logging.getLogger(__name__)


class CatalogError(Exception):
    """Base exception for catalog API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(CatalogError):
    """Authentication failed."""


class NotFoundError(CatalogError):
    """Resource not found."""


class CatalogTransportError(CatalogError):
    """The request never got a response (connection, timeout, DNS)."""


def parse_mode(value: Any) -> int | None:
    """Parse a recorded st_mode ("0o100644", "33188" or an int)."""
    if value is None or value == "":
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value), 0)
    except ValueError:
        return None


@dataclass
class CatalogFile:
    """File entry of a recovery point.

    An incomplete entry was saved but its content upload never finished.
    """

    id: str
    real_name: str
    size: int = 0
    item_type: str = "FILE"
    mode: int | None = None
    complete: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CatalogFile:
        """Create from API response dictionary."""
        attributes = data.get("attributes") or {}
        return cls(
            id=str(data["id"]),
            real_name=data.get("real_name") or data.get("item_name", ""),
            size=int(data.get("size", 0)),
            item_type=data.get("item_type", "FILE"),
            mode=parse_mode(data.get("mode", attributes.get("mode"))),
            complete=bool(data.get("complete", True)),
        )


@dataclass
class ItemInfoLatest:
    """Most recent catalog item recorded for a path."""

    id: str
    item_name: str
    change_time: str
    modify_time: str
    size: int = 0
    complete: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ItemInfoLatest:
        """Create from API response dictionary."""
        return cls(
            id=str(data["id"]),
            item_name=data.get("item_name", ""),
            change_time=str(data.get("change_time", "")),
            modify_time=str(data.get("modify_time", "")),
            size=int(data.get("size", 0)),
            complete=bool(data.get("complete", True)),
        )


@dataclass
class ChunkRecord:
    """Chunk registered with the catalog.

    The presigned URLs are short-lived and valid for one volume
    operation each.
    """

    id: str
    offset: int
    length: int
    etag: str
    uri: str = ""
    presigned_head: str | None = None
    presigned_put: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChunkRecord:
        """Create from API response dictionary."""
        presigned = data.get("presigned_url") or {}
        return cls(
            id=str(data["id"]),
            offset=int(data["offset"]),
            length=int(data["length"]),
            etag=data.get("etag", ""),
            uri=data.get("uri", ""),
            presigned_head=presigned.get("head") or None,
            presigned_put=presigned.get("put") or None,
        )


@dataclass
class DownloadInfo:
    """Where to fetch one chunk of a file and where to write it."""

    get: str
    offset: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DownloadInfo:
        """Create from API response dictionary."""
        return cls(get=data["get"], offset=int(data["offset"]))


@dataclass
class Multipart:
    """Multipart upload session."""

    upload_id: str
    file_name: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Multipart:
        """Create from API response dictionary."""
        return cls(upload_id=data["upload_id"], file_name=data.get("file_name", ""))


@dataclass
class Part:
    """Uploaded part of a multipart session."""

    part_number: int
    size: int
    etag: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Part:
        """Create from API response dictionary."""
        return cls(
            part_number=int(data["part_number"]),
            size=int(data.get("size", 0)),
            etag=data.get("etag", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"part_number": self.part_number, "size": self.size, "etag": self.etag}


class CatalogClient:
    """HTTP client for the backup catalog API."""

    def __init__(self, config: ServerConfig) -> None:
        """Initialize the catalog client.

        Args:
            config: Server connection settings.
        """
        self._config = config
        self._client = httpx.Client(
            base_url=config.api_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            auth=(config.access_key, config.secret_key),
            headers={"X-Machine-ID": config.machine_id},
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> CatalogClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request and raise typed errors for failures."""
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            raise CatalogTransportError(f"{method} {url} failed: {e}") from e
        return self._handle_response(response)

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code == 401:
            raise AuthenticationError("Invalid access or secret key", 401)
        if response.status_code == 404:
            raise NotFoundError("Resource not found", 404)
        if response.status_code >= 400:
            raise CatalogError(self._detail(response), response.status_code)
        return response

    @staticmethod
    def _detail(response: httpx.Response) -> str:
        try:
            return str(response.json().get("detail", "Unknown error"))
        except ValueError:
            return response.text or f"HTTP {response.status_code}"

    @staticmethod
    def _rp(recovery_point_id: str) -> str:
        return f"/agent/recovery-points/{recovery_point_id}"

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the catalog is reachable.

        Returns:
            True if the catalog answered with 200.
        """
        try:
            response = self._client.get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === Recovery point items ===

    def save_file_info(self, recovery_point_id: str, item: ItemInfo) -> CatalogFile:
        """Attach an item to a recovery point.

        Args:
            recovery_point_id: Recovery point being written.
            item: Item description produced by the planner.

        Returns:
            The stored file entry (with its catalog id).
        """
        response = self._request(
            "POST", f"{self._rp(recovery_point_id)}/file", json=item.to_dict()
        )
        return CatalogFile.from_dict(response.json())

    def complete_file(self, recovery_point_id: str, item_id: str) -> None:
        """Mark an item's content as fully uploaded.

        Items saved for a content upload stay incomplete until this call,
        so a failed upload is never mistaken for unchanged content.

        Args:
            recovery_point_id: Recovery point being written.
            item_id: Catalog id of the item.
        """
        self._request(
            "PATCH",
            f"{self._rp(recovery_point_id)}/file/{item_id}",
            json={"complete": True},
        )

    def get_item_latest(self, recovery_point_id: str, path: str) -> ItemInfoLatest | None:
        """Get the most recent item recorded for a path.

        Args:
            recovery_point_id: Recovery point being written.
            path: Path of the file relative to the backup root.

        Returns:
            The previous item, or None if the path was never backed up.
        """
        try:
            response = self._request(
                "GET", f"{self._rp(recovery_point_id)}/path", params={"path": path}
            )
        except NotFoundError:
            return None
        data = response.json()
        if not data or not data.get("id"):
            return None
        return ItemInfoLatest.from_dict(data)

    def get_list_file_path(self, recovery_point_id: str) -> list[CatalogFile]:
        """List the files of a recovery point.

        Args:
            recovery_point_id: Recovery point to list.

        Returns:
            Files in catalog order.
        """
        response = self._request("GET", f"{self._rp(recovery_point_id)}/path")
        return [CatalogFile.from_dict(f) for f in response.json().get("files", [])]

    # === Chunks ===

    def save_chunk(
        self,
        recovery_point_id: str,
        item_id: str,
        offset: int,
        length: int,
        digest: str,
    ) -> ChunkRecord:
        """Register a chunk of an item.

        Args:
            recovery_point_id: Recovery point being written.
            item_id: Catalog id of the file the chunk belongs to.
            offset: Byte offset of the chunk in the file.
            length: Chunk size in bytes.
            digest: SHA-256 hex digest of the chunk.

        Returns:
            Chunk record with presigned HEAD/PUT URLs.
        """
        response = self._request(
            "POST",
            f"{self._rp(recovery_point_id)}/file/{item_id}/chunks",
            json={"offset": offset, "length": length, "etag": digest},
        )
        return ChunkRecord.from_dict(response.json())

    def get_info_file_download(
        self,
        recovery_point_id: str,
        item_id: str,
        session_key: str,
        created_at: str,
    ) -> list[DownloadInfo]:
        """Get download descriptors for every chunk of a file.

        Args:
            recovery_point_id: Recovery point being restored.
            item_id: Catalog id of the file.
            session_key: Restore session key.
            created_at: Restore session creation timestamp.

        Returns:
            One descriptor per chunk, in no particular order.
        """
        response = self._request(
            "GET",
            f"{self._rp(recovery_point_id)}/file/{item_id}/download",
            params={"session_key": session_key, "created_at": created_at},
        )
        return [DownloadInfo.from_dict(i) for i in response.json().get("info") or []]

    # === Whole-object upload ===

    def upload_file(self, recovery_point_id: str, name: str, data: bytes) -> CatalogFile:
        """Upload a small object in a single request.

        Args:
            recovery_point_id: Recovery point being written.
            name: Object name.
            data: Object content.

        Returns:
            The stored file entry.
        """
        response = self._request(
            "POST",
            f"{self._rp(recovery_point_id)}/upload",
            files={"data": (name, data)},
        )
        return CatalogFile.from_dict(response.json())

    def init_multipart(self, recovery_point_id: str, name: str) -> Multipart:
        """Open a multipart upload session."""
        response = self._request(
            "POST", f"{self._rp(recovery_point_id)}/multipart", json={"file_name": name}
        )
        return Multipart.from_dict(response.json())

    def upload_part(
        self,
        recovery_point_id: str,
        upload_id: str,
        part_number: int,
        name: str,
        data: bytes,
    ) -> Part:
        """Upload one part of a multipart session.

        Args:
            recovery_point_id: Recovery point being written.
            upload_id: Session id from init_multipart.
            part_number: 1-based part number in stream order.
            name: Object name.
            data: Part content.

        Returns:
            The stored part.
        """
        response = self._request(
            "PUT",
            f"{self._rp(recovery_point_id)}/multipart",
            params={"part_number": str(part_number), "upload_id": upload_id},
            files={"data": (f"{name}-{part_number}", data)},
        )
        body = response.json() if response.content else {}
        return Part(
            part_number=part_number,
            size=len(data),
            etag=body.get("etag", "") if isinstance(body, dict) else "",
        )

    def complete_multipart(
        self,
        recovery_point_id: str,
        upload_id: str,
        parts: list[Part],
    ) -> None:
        """Finalize a multipart session."""
        self._request(
            "POST",
            f"{self._rp(recovery_point_id)}/multipart/complete",
            params={"upload_id": upload_id},
            json={"parts": [p.to_dict() for p in parts]},
        )

    def abort_multipart(self, recovery_point_id: str, upload_id: str) -> None:
        """Abandon a multipart session so its parts can be collected."""
        self._request(
            "DELETE",
            f"{self._rp(recovery_point_id)}/multipart",
            params={"upload_id": upload_id},
        )
