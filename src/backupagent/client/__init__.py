"""Client module - Catalog API client, storage volumes and backup operations."""

from backupagent.client.api import (
    AuthenticationError,
    CatalogClient,
    CatalogError,
    CatalogFile,
    CatalogTransportError,
    ChunkRecord,
    DownloadInfo,
    ItemInfoLatest,
    Multipart,
    NotFoundError,
    Part,
)
from backupagent.client.volume import (
    HeadResult,
    LocalFSVolume,
    ObjectNotFoundError,
    S3Volume,
    StorageVolume,
    VolumeError,
    VolumeTransportError,
    create_volume,
)

__all__ = [
    # Catalog
    "AuthenticationError",
    "CatalogClient",
    "CatalogError",
    "CatalogFile",
    "CatalogTransportError",
    "ChunkRecord",
    "DownloadInfo",
    "ItemInfoLatest",
    "Multipart",
    "NotFoundError",
    "Part",
    # Volumes
    "HeadResult",
    "LocalFSVolume",
    "ObjectNotFoundError",
    "S3Volume",
    "StorageVolume",
    "VolumeError",
    "VolumeTransportError",
    "create_volume",
]
