"""Object storage volumes addressed by presigned URLs.

This module provides:
- Abstract interface for a storage volume
- S3Volume for S3-compatible stores (AWS, MinIO, Ceph RGW)
- LocalFSVolume for development and testing
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

import httpx

from backupagent.core.hashing import get_legacy_hash

logger = logging.getLogger(__name__)


class VolumeError(Exception):
    """A volume operation failed."""

    def __init__(self, message: str, url: str = "", status_code: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class ObjectNotFoundError(VolumeError):
    """Raised when an object is not found in the volume."""


class VolumeTransportError(VolumeError):
    """The request never got a response (connection, timeout, DNS)."""


@dataclass
class HeadResult:
    """Response of a HEAD request against an object."""

    status_code: int
    etag: str | None = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def exists(self) -> bool:
        return self.status_code == 200


class StorageVolume(ABC):
    """Abstract interface for object storage."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Return a human-readable description of the volume."""

    @abstractmethod
    def put_object(self, url: str, data: bytes) -> str:
        """Store an object.

        Args:
            url: Presigned PUT URL (or key) of the object.
            data: Object content.

        Returns:
            ETag reported by the volume.

        Raises:
            VolumeError: If the volume rejects the upload.
        """

    @abstractmethod
    def get_object(self, url: str) -> bytes:
        """Retrieve an object.

        Args:
            url: Presigned GET URL (or key) of the object.

        Returns:
            Object content.

        Raises:
            ObjectNotFoundError: If the object doesn't exist.
            VolumeError: For any other failure.
        """

    @abstractmethod
    def head_object(self, url: str) -> HeadResult:
        """Fetch object metadata without its content.

        A missing object is reported through the status code, not raised.

        Args:
            url: Presigned HEAD URL (or key) of the object.
        """

    @abstractmethod
    def set_credential(self, token: str) -> None:
        """Install a session credential for subsequent requests."""


class S3Volume(StorageVolume):
    """S3-compatible storage accessed through presigned URLs."""

    def __init__(
        self,
        name: str = "s3",
        bucket: str = "",
        timeout: float = 60.0,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize S3 volume.

        Args:
            name: Volume name (for logs).
            bucket: Bucket the presigned URLs point into (for logs).
            timeout: Request timeout in seconds.
            client: Optional preconfigured httpx client.
        """
        self._name = name
        self._bucket = bucket
        self._client = client or httpx.Client(timeout=timeout)
        self._credential: str | None = None

    @property
    def location(self) -> str:
        """Return the S3 bucket location."""
        if self._bucket:
            return f"S3: {self._name} (s3://{self._bucket})"
        return f"S3: {self._name}"

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def _headers(self) -> dict[str, str]:
        if self._credential:
            return {"X-Amz-Security-Token": self._credential}
        return {}

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.RequestError as e:
            raise VolumeTransportError(f"{method} failed: {e}", url=url) from e
        logger.debug(f"{method} {response.request.url.path} -> {response.status_code}")
        return response

    def put_object(self, url: str, data: bytes) -> str:
        """Store an object."""
        response = self._send("PUT", url, content=data)
        if response.status_code >= 400:
            raise VolumeError(
                f"PUT rejected with HTTP {response.status_code}",
                url=url,
                status_code=response.status_code,
            )
        return response.headers.get("ETag", "")

    def get_object(self, url: str) -> bytes:
        """Retrieve an object."""
        response = self._send("GET", url)
        if response.status_code == 404:
            raise ObjectNotFoundError("Object not found", url=url, status_code=404)
        if response.status_code >= 400:
            raise VolumeError(
                f"GET rejected with HTTP {response.status_code}",
                url=url,
                status_code=response.status_code,
            )
        return response.content

    def head_object(self, url: str) -> HeadResult:
        """Fetch object metadata."""
        response = self._send("HEAD", url)
        return HeadResult(
            status_code=response.status_code,
            etag=response.headers.get("ETag"),
            headers=dict(response.headers),
        )

    def set_credential(self, token: str) -> None:
        """Send a session token with every request."""
        self._credential = token


class LocalFSVolume(StorageVolume):
    """Local filesystem volume for development and testing.

    Objects are addressed either by ``file://`` URLs or by keys relative
    to the base directory.
    """

    def __init__(self, base_path: Path | str) -> None:
        """Initialize local volume.

        Args:
            base_path: Base directory for object storage.
        """
        self._base_path = Path(base_path).resolve()
        self._base_path.mkdir(parents=True, exist_ok=True)
        self._credential: str | None = None

    @property
    def location(self) -> str:
        """Return the local storage path."""
        return f"Local filesystem: {self._base_path}"

    @property
    def credential(self) -> str | None:
        return self._credential

    def url_for(self, key: str) -> str:
        """Return the file:// URL of a key."""
        return (self._base_path / key).as_uri()

    def _object_path(self, url: str) -> Path:
        parsed = urlparse(url)
        if parsed.scheme == "file":
            path = Path(unquote(parsed.path)).resolve()
        else:
            path = (self._base_path / url).resolve()
        if not path.is_relative_to(self._base_path):
            raise VolumeError("Object outside of volume", url=url)
        return path

    def put_object(self, url: str, data: bytes) -> str:
        """Store an object."""
        path = self._object_path(url)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return f'"{get_legacy_hash(data)}"'

    def get_object(self, url: str) -> bytes:
        """Retrieve an object."""
        path = self._object_path(url)
        if not path.is_file():
            raise ObjectNotFoundError("Object not found", url=url, status_code=404)
        return path.read_bytes()

    def head_object(self, url: str) -> HeadResult:
        """Fetch object metadata."""
        path = self._object_path(url)
        if not path.is_file():
            return HeadResult(status_code=404)
        return HeadResult(status_code=200, etag=f'"{get_legacy_hash(path.read_bytes())}"')

    def set_credential(self, token: str) -> None:
        """Record the credential; local storage does not check it."""
        self._credential = token


def create_volume(config: dict[str, str | None]) -> StorageVolume:
    """Factory function to create a volume from configuration.

    Args:
        config: Volume configuration dict with keys:
            - type: "s3" or "local"
            - For local: local_path
            - For S3: name, bucket

    Returns:
        Configured StorageVolume instance.

    Raises:
        ValueError: If volume type is unknown.
    """
    volume_type = config.get("type") or "s3"

    if volume_type == "local":
        return LocalFSVolume(config.get("local_path") or "./volume")

    if volume_type == "s3":
        return S3Volume(
            name=config.get("name") or "s3",
            bucket=config.get("bucket") or "",
        )

    raise ValueError(f"Unknown volume type: {volume_type}")
