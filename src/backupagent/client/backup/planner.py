"""Incremental backup decisions.

Compares a scanned file with the item recorded for the same path in the
previous recovery point and decides how much work the file needs.

Table (first matching row wins):
| Previous item | change_time | modify_time | Action          | Parent |
|---------------|-------------|-------------|-----------------|--------|
| absent        | -           | -           | FULL_UPLOAD     | no     |
| incomplete    | *           | *           | FULL_UPLOAD     | no     |
| present       | equal       | equal       | REFERENCE_ONLY  | yes    |
| present       | differs     | equal       | METADATA_UPDATE | yes    |
| present       | *           | differs     | FULL_UPLOAD     | yes    |

Timestamps are compared in their rendered form (UTC, nanosecond
precision). A previous item whose timestamps are not in that form is
treated as changed: the file is uploaded again rather than skipped.

An item saved for a content upload is incomplete until the upload
finishes. An incomplete previous item has missing chunks, so it is
never referenced and never used as a parent.
The planner does no I/O; the caller fetches the previous item.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from backupagent.core.types import BackupAction, ItemType

if TYPE_CHECKING:
    from backupagent.client.api import ItemInfoLatest
    from backupagent.client.backup.scanner import FileRecord

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

TIMESTAMP_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\.\d{9} \+0000$")


def render_timestamp(ns: int) -> str:
    """Render a nanosecond timestamp as 'YYYY-MM-DD HH:MM:SS.nnnnnnnnn +0000'."""
    seconds, nanos = divmod(ns, 1_000_000_000)
    moment = EPOCH + timedelta(seconds=seconds)
    return f"{moment:%Y-%m-%d %H:%M:%S}.{nanos:09d} +0000"


def is_rendered_timestamp(value: str) -> bool:
    """Check that a catalog timestamp is in rendered form."""
    return bool(TIMESTAMP_PATTERN.match(value))


@dataclass
class ItemInfo:
    """Catalog description of a file within a recovery point.

    Attributes:
        item_type: Kind of entry
        parent_item_id: Item of a previous recovery point this one derives from
        chunk_reference: True when the content is exactly the parent's
            content and no chunks are stored for this item
        attributes: Metadata derived from the scanned FileRecord
        complete: False while the item's content is still to be uploaded
    """

    item_type: ItemType
    parent_item_id: str | None = None
    chunk_reference: bool = False
    attributes: dict[str, Any] = field(default_factory=dict)
    complete: bool = True

    @classmethod
    def from_record(
        cls,
        record: FileRecord,
        parent_item_id: str | None = None,
        chunk_reference: bool = False,
        complete: bool = True,
    ) -> ItemInfo:
        """Create from a scanned file record."""
        return cls(
            item_type=record.item_type,
            parent_item_id=parent_item_id,
            chunk_reference=chunk_reference,
            complete=complete,
            attributes={
                "item_name": record.path,
                "size": record.size,
                "mode": oct(record.mode),
                "modify_time": render_timestamp(record.modify_time),
                "change_time": render_timestamp(record.change_time),
            },
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON body sent to the catalog."""
        return {
            "item_type": self.item_type.value,
            "parent_item_id": self.parent_item_id,
            "chunk_reference": self.chunk_reference,
            "complete": self.complete,
            "attributes": dict(self.attributes),
        }


@dataclass
class Plan:
    """Decision for one file."""

    action: BackupAction
    item_info: ItemInfo

    @property
    def needs_upload(self) -> bool:
        """Check whether the file content must be chunked and uploaded."""
        return self.action == BackupAction.FULL_UPLOAD


class BackupPlanner:
    """Classifies scanned files against their previous catalog item."""

    def plan(self, current: FileRecord, previous: ItemInfoLatest | None) -> Plan:
        """Decide what to do with a scanned file.

        Args:
            current: File as scanned now.
            previous: Latest catalog item for the same path, if any.

        Returns:
            The action and the ItemInfo to save for the file.
        """
        if previous is None or not previous.complete:
            return self._full_upload(current, None)

        if not (
            is_rendered_timestamp(previous.change_time)
            and is_rendered_timestamp(previous.modify_time)
        ):
            return self._full_upload(current, previous.id)

        same_ctime = render_timestamp(current.change_time) == previous.change_time
        same_mtime = render_timestamp(current.modify_time) == previous.modify_time

        if same_ctime and same_mtime:
            return Plan(
                BackupAction.REFERENCE_ONLY,
                ItemInfo.from_record(current, parent_item_id=previous.id, chunk_reference=True),
            )
        if same_mtime:
            return Plan(
                BackupAction.METADATA_UPDATE,
                ItemInfo.from_record(current, parent_item_id=previous.id),
            )
        return self._full_upload(current, previous.id)

    @staticmethod
    def _full_upload(current: FileRecord, parent_item_id: str | None) -> Plan:
        # Regular files stay incomplete until their chunks are stored
        return Plan(
            BackupAction.FULL_UPLOAD,
            ItemInfo.from_record(
                current, parent_item_id=parent_item_id, complete=not current.is_regular
            ),
        )


def plan(current: FileRecord, previous: ItemInfoLatest | None) -> Plan:
    """Quick decision lookup."""
    return BackupPlanner().plan(current, previous)
