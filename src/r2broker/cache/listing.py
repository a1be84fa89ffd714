"""File-backed fast-tier cache for object listings.

One JSON file per cache key, named by the MD5 of the key, under a private
cache directory. Freshness is judged from the file's mtime at read time;
an expired entry is deleted by the read that finds it.

Writes use the temp-file-then-rename pattern so readers never observe a
partially written entry. Concurrent writers of the same key simply
overwrite each other.
"""

import hashlib
import json
import logging
import os
import time
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_SUFFIX = ".cache"


class FileListingCache:
    """TTL cache persisted as one file per key.

    Attributes:
        cache_dir: Directory holding the ``*.cache`` files.
        default_ttl: Max age in seconds used when ``get`` is not given one.
    """

    def __init__(
        self,
        cache_dir: str | Path,
        default_ttl: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.default_ttl = default_ttl
        self._clock = clock

    def _ensure_dir(self) -> None:
        if not self.cache_dir.exists():
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(self.cache_dir, 0o700)

    def _path(self, key: str) -> Path:
        digest = hashlib.md5(key.encode("utf-8")).hexdigest()
        return self.cache_dir / f"{digest}{_SUFFIX}"

    def _is_expired(self, path: Path, max_age: int) -> bool:
        return self._clock() - path.stat().st_mtime > max_age

    def get(self, key: str, max_age: int | None = None) -> Any | None:
        """Return the cached value, or None on a miss.

        Args:
            key: The cache key.
            max_age: Maximum age in seconds (default: ``default_ttl``).
        """
        path = self._path(key)
        if max_age is None:
            max_age = self.default_ttl

        try:
            if self._is_expired(path, max_age):
                path.unlink(missing_ok=True)
                return None
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable cache entry %s", path.name)
            path.unlink(missing_ok=True)
            return None

    def set(self, key: str, value: Any) -> bool:
        """Store ``value`` (JSON-serializable) under ``key``.

        Returns:
            True on success, False if the entry could not be written.
        """
        self._ensure_dir()
        path = self._path(key)
        tmp = path.with_name(f"{path.name}.tmp.{uuid.uuid4().hex[:8]}")
        try:
            tmp.write_text(json.dumps(value, default=str), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            logger.warning("Failed to write cache entry: %s", exc)
            return False
        return True

    def delete(self, key: str) -> bool:
        """Remove a single entry. Missing entries count as deleted."""
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to delete cache entry: %s", exc)
            return False
        return True

    def _entries(self) -> list[Path]:
        if not self.cache_dir.exists():
            return []
        return sorted(self.cache_dir.glob(f"*{_SUFFIX}"))

    def clear_all(self) -> bool:
        """Remove every cache entry."""
        for path in self._entries():
            path.unlink(missing_ok=True)
        return True

    def clear_expired(self) -> int:
        """Remove entries older than ``default_ttl``.

        Returns:
            The number of entries deleted.
        """
        deleted = 0
        for path in self._entries():
            try:
                if self._is_expired(path, self.default_ttl):
                    path.unlink()
                    deleted += 1
            except FileNotFoundError:
                continue
        return deleted

    def stats(self) -> dict[str, int]:
        """Return ``{"file_count": ..., "total_size": ...}``."""
        entries = self._entries()
        total = 0
        for path in entries:
            try:
                total += path.stat().st_size
            except FileNotFoundError:
                continue
        return {"file_count": len(entries), "total_size": total}
