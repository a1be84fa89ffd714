"""Folder decomposition of object keys and the cached folder tree."""

import json
import logging
import os
import time
import uuid
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SEPARATOR = "/"

FolderTree = dict[str, Any]


def folder_path_of(key: str) -> str:
    """Return every path segment of ``key`` except the last ("" at root).

    >>> folder_path_of("docs/2024/report.pdf")
    'docs/2024'
    """
    head, sep, _ = key.rpartition(SEPARATOR)
    return head if sep else ""


def file_name_of(key: str) -> str:
    """Return the last path segment of ``key``."""
    return key.rpartition(SEPARATOR)[2]


def folders_for_key(key: str) -> list[str]:
    """Return the cumulative folder paths a key contributes to the tree.

    A folder marker (``a/b/``) contributes its own path and every parent;
    an ordinary key (``a/b/c.zip``) contributes its parents only.
    """
    if key.endswith(SEPARATOR):
        path = key.strip(SEPARATOR)
    else:
        path = folder_path_of(key).strip(SEPARATOR)
    if not path:
        return []
    parts = [p for p in path.split(SEPARATOR) if p]
    return [SEPARATOR.join(parts[: i + 1]) for i in range(len(parts))]


def build_folder_tree(keys: Iterable[str]) -> FolderTree:
    """Build a nested ``{name: {child: {...}}}`` mapping from object keys."""
    folders: set[str] = set()
    for key in keys:
        folders.update(folders_for_key(key))

    tree: FolderTree = {}
    for folder in sorted(folders):
        node = tree
        for part in folder.split(SEPARATOR):
            node = node.setdefault(part, {})
    return tree


class FolderTreeCache:
    """Single JSON file holding the last built folder tree.

    Freshness is judged from the file's mtime, with its own TTL (one hour by
    default) independent of the listing cache.
    """

    FILE_NAME = "r2_folder_tree.json"

    def __init__(
        self,
        cache_dir: str | Path,
        ttl: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(cache_dir) / self.FILE_NAME
        self.ttl = ttl
        self._clock = clock

    def load(self) -> FolderTree | None:
        """Return the cached tree, or None when absent, stale or unreadable."""
        try:
            if self._clock() - self.path.stat().st_mtime >= self.ttl:
                return None
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable folder tree cache: %s", exc)
            return None
        return data if isinstance(data, dict) else None

    def store(self, tree: FolderTree) -> None:
        parent = self.path.parent
        if not parent.exists():
            parent.mkdir(parents=True, exist_ok=True)
            os.chmod(parent, 0o700)
        tmp = self.path.with_name(f"{self.path.name}.tmp.{uuid.uuid4().hex[:8]}")
        try:
            tmp.write_text(json.dumps(tree), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            logger.warning("Failed to write folder tree cache: %s", exc)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
