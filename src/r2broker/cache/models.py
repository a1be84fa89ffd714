"""Data model types for the persisted listing snapshot.

These dataclasses represent the rows of the snapshot table and the result
container returned by a reconciliation pass.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from r2broker.sizes import format_size


@dataclass
class FileRecord:
    """One remote object as mirrored in the snapshot.

    Attributes:
        object_key: The full remote key (unique).
        file_name: Last path segment of the key.
        file_size: Size in bytes.
        mime_type: MIME type guessed from the file name.
        last_modified: ISO 8601 last-modified timestamp from the store.
        folder_path: Every path segment of the key except the last ("" at root).
        cached_at: ISO 8601 time the row was last written.
    """

    object_key: str
    file_name: str
    file_size: int = 0
    mime_type: str = "application/octet-stream"
    last_modified: str = ""
    folder_path: str = ""
    cached_at: str = ""

    @property
    def file_size_formatted(self) -> str:
        return format_size(self.file_size)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["file_size_formatted"] = self.file_size_formatted
        return data


@dataclass
class SyncResult:
    """Outcome of one reconciliation pass.

    Attributes:
        success: False when the remote listing failed or the call was refused.
        synced: Records inserted.
        updated: Records that already existed and were rewritten.
        deleted: Records purged because the key vanished remotely.
        total: Non-folder-marker keys seen in the remote listing.
        message: Human-readable summary.
    """

    success: bool = True
    synced: int = 0
    updated: int = 0
    deleted: int = 0
    total: int = 0
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
