"""Data models returned by the object store client."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class ObjectSummary:
    """One entry of a remote object listing."""

    key: str
    size: int = 0
    last_modified: datetime | None = None
    etag: str = ""

    @property
    def is_folder_marker(self) -> bool:
        """Zero-byte keys ending in ``/`` that only represent a folder."""
        return self.key.endswith("/")

    @classmethod
    def from_listing(cls, item: dict[str, Any]) -> "ObjectSummary":
        """Build from a ``list_objects_v2`` ``Contents`` entry."""
        last_modified = item.get("LastModified")
        if isinstance(last_modified, str):
            last_modified = datetime.fromisoformat(last_modified.replace("Z", "+00:00"))
        return cls(
            key=item["Key"],
            size=int(item.get("Size", 0) or 0),
            last_modified=last_modified,
            etag=str(item.get("ETag", "")).strip('"'),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "size": self.size,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
            "etag": self.etag,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ObjectSummary":
        last_modified = data.get("last_modified")
        return cls(
            key=data["key"],
            size=int(data.get("size", 0)),
            last_modified=datetime.fromisoformat(last_modified) if last_modified else None,
            etag=data.get("etag", ""),
        )
