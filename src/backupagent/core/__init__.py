"""Core module - Chunking, hashing, configuration and shared types."""

from backupagent.core.chunking import (
    AVG_CHUNK_SIZE,
    DEFAULT_CHUNK_PARAMS,
    MAX_CHUNK_SIZE,
    MIN_CHUNK_SIZE,
    Chunk,
    ChunkParams,
    chunk_bytes,
    chunk_file,
    chunk_stream,
)
from backupagent.core.config import (
    AgentConfig,
    RetryPolicy,
    ServerConfig,
    TransferConfig,
    load_config,
)
from backupagent.core.hashing import (
    compute_file_hash,
    etag_matches,
    get_chunk_hash,
    get_legacy_hash,
)
from backupagent.core.log import setup_logging
from backupagent.core.types import BackupAction, ItemType

__all__ = [
    # Chunking
    "AVG_CHUNK_SIZE",
    "Chunk",
    "ChunkParams",
    "DEFAULT_CHUNK_PARAMS",
    "MAX_CHUNK_SIZE",
    "MIN_CHUNK_SIZE",
    "chunk_bytes",
    "chunk_file",
    "chunk_stream",
    # Config
    "AgentConfig",
    "RetryPolicy",
    "ServerConfig",
    "TransferConfig",
    "load_config",
    # Hashing
    "compute_file_hash",
    "etag_matches",
    "get_chunk_hash",
    "get_legacy_hash",
    # Logging
    "setup_logging",
    # Types
    "BackupAction",
    "ItemType",
]
