"""Shared types for backupagent.

This module defines enums used by the planner, the scanner and the
catalog client.
"""

from __future__ import annotations

from enum import Enum


class ItemType(str, Enum):
    """Kind of filesystem entry recorded in a recovery point."""

    FILE = "FILE"
    SYMLINK = "SYMLINK"
    OTHER = "OTHER"


class BackupAction(str, Enum):
    """What the planner decided to do with a scanned file.

    FULL_UPLOAD: content must be chunked and uploaded.
    REFERENCE_ONLY: unchanged, point at the previous item's chunks.
    METADATA_UPDATE: attributes changed, content assumed unchanged.
    """

    FULL_UPLOAD = "full_upload"
    REFERENCE_ONLY = "reference_only"
    METADATA_UPDATE = "metadata_update"
