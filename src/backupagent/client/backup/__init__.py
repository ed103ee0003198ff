"""Backup and restore operations.

Architecture:
    DirectoryScanner → BackupPlanner → ChunkUploadCoordinator → volume

Components:
- **DirectoryScanner**: Walks the source tree and yields FileRecords
- **BackupPlanner**: Compares each record with its previous catalog item
- **ChunkUploadCoordinator**: Chunks, deduplicates and stores file content
- **MultipartUploadCoordinator**: Uploads whole objects in parts
- **RestoreCoordinator**: Rebuilds files from their chunks
- **BackupRunner**: Drives a full backup pass
- **TransferGroup**: Bounded worker group shared by the coordinators
"""

from backupagent.client.backup.chunk_upload import ChunkUploadCoordinator
from backupagent.client.backup.multipart import MultipartUploadCoordinator, read_parts
from backupagent.client.backup.planner import (
    BackupPlanner,
    ItemInfo,
    Plan,
    plan,
    render_timestamp,
)
from backupagent.client.backup.restore import RestoreCoordinator, destination_path
from backupagent.client.backup.retry import (
    DEFAULT_RETRY_POLICY,
    is_transient_error,
    retry_with_backoff,
)
from backupagent.client.backup.runner import BackupRunner
from backupagent.client.backup.scanner import DirectoryScanner, FileRecord
from backupagent.client.backup.types import (
    BackupError,
    BackupReport,
    ChunkUploadError,
    ChunkUploadResult,
    MultipartUploadError,
    ProgressCallback,
    RestoreError,
    RestoreReport,
    RestoreSession,
    ScanError,
    TransferProgress,
    UploadError,
)
from backupagent.client.backup.workers import (
    ConcurrencyLimiter,
    GroupOutcome,
    GroupState,
    ProgressTracker,
    TransferGroup,
)

__all__ = [
    # Retry
    "DEFAULT_RETRY_POLICY",
    "is_transient_error",
    "retry_with_backoff",
    # Errors
    "BackupError",
    "ChunkUploadError",
    "MultipartUploadError",
    "RestoreError",
    "ScanError",
    "UploadError",
    # Results
    "BackupReport",
    "ChunkUploadResult",
    "RestoreReport",
    "RestoreSession",
    # Progress
    "ProgressCallback",
    "ProgressTracker",
    "TransferProgress",
    # Scanning and planning
    "BackupPlanner",
    "DirectoryScanner",
    "FileRecord",
    "ItemInfo",
    "Plan",
    "plan",
    "render_timestamp",
    # Coordinators
    "BackupRunner",
    "ChunkUploadCoordinator",
    "MultipartUploadCoordinator",
    "RestoreCoordinator",
    "destination_path",
    "read_parts",
    # Workers
    "ConcurrencyLimiter",
    "GroupOutcome",
    "GroupState",
    "TransferGroup",
]
