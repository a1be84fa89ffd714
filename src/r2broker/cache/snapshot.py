"""SQLite-backed snapshot of the remote bucket's object listing.

The snapshot is the queryable tier of the listing cache: one row per remote
object key, with the folder path precomputed so search and browse never
touch the remote store. Rows are only written by reconciliation; every
write is a single statement scoped to ``object_key``.
"""

import asyncio
import json
import logging
import mimetypes
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timezone

import aiosqlite

from r2broker.cache.folders import file_name_of, folder_path_of
from r2broker.cache.models import FileRecord
from r2broker.storage.models import ObjectSummary

logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_COLUMNS = (
    "object_key, file_name, file_size, mime_type, last_modified, folder_path, cached_at"
)


def _to_iso(ts: float) -> str:
    """Format an epoch timestamp as a fixed-width, sortable UTC ISO string."""
    return datetime.fromtimestamp(ts, timezone.utc).strftime(_TS_FORMAT)


def _from_iso(value: str) -> float:
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc).timestamp()


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_record(row: aiosqlite.Row) -> FileRecord:
    return FileRecord(
        object_key=row["object_key"],
        file_name=row["file_name"],
        file_size=row["file_size"],
        mime_type=row["mime_type"],
        last_modified=row["last_modified"],
        folder_path=row["folder_path"],
        cached_at=row["cached_at"],
    )


class SQLiteSnapshotStore:
    """Persisted mirror of the remote object set.

    Attributes:
        db_path: Path to the SQLite database file.
        _db: The aiosqlite connection, set after init_db().
        _write_lock: Serializes upserts and purges issued on the shared
            connection, so each write batch sees a consistent key set.
    """

    def __init__(self, db_path: str, clock: Callable[[], float] = time.time) -> None:
        """Initialize the snapshot store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Use ':memory:' for an in-memory database (useful in tests).
            clock: Returns the current epoch time; used for ``cached_at``.
        """
        self.db_path = db_path
        self._clock = clock
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def init_db(self) -> None:
        """Open the database and create the table and indexes if missing."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.execute("PRAGMA synchronous = NORMAL")
        await self._db.execute("PRAGMA busy_timeout = 5000")

        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS file_cache (
                id             INTEGER PRIMARY KEY AUTOINCREMENT,
                object_key     TEXT NOT NULL UNIQUE,
                file_name      TEXT NOT NULL,
                file_size      INTEGER NOT NULL DEFAULT 0,
                mime_type      TEXT NOT NULL DEFAULT 'application/octet-stream',
                last_modified  TEXT NOT NULL DEFAULT '',
                folder_path    TEXT NOT NULL DEFAULT '',
                cached_at      TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_file_cache_folder_path
                ON file_cache(folder_path);
            CREATE INDEX IF NOT EXISTS idx_file_cache_file_name
                ON file_cache(file_name);
            CREATE INDEX IF NOT EXISTS idx_file_cache_last_modified
                ON file_cache(last_modified);
            CREATE INDEX IF NOT EXISTS idx_file_cache_cached_at
                ON file_cache(cached_at);
        """)
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    # -- Writes ----------------------------------------------------------------

    async def upsert_objects(self, objects: Iterable[ObjectSummary]) -> tuple[int, int]:
        """Insert new keys and refresh existing ones.

        Folder markers (keys ending in ``/``) are skipped.

        Returns:
            ``(inserted, updated)`` counts.
        """
        assert self._db is not None
        async with self._write_lock:
            return await self._upsert(objects)

    async def _upsert(self, objects: Iterable[ObjectSummary]) -> tuple[int, int]:
        assert self._db is not None
        inserted = updated = 0
        now = _to_iso(self._clock())

        for obj in objects:
            if obj.is_folder_marker:
                continue
            async with self._db.execute(
                "SELECT 1 FROM file_cache WHERE object_key = ?", (obj.key,)
            ) as cursor:
                existed = await cursor.fetchone() is not None

            file_name = file_name_of(obj.key)
            await self._db.execute(
                f"""
                INSERT INTO file_cache ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(object_key) DO UPDATE SET
                    file_size = excluded.file_size,
                    last_modified = excluded.last_modified,
                    folder_path = excluded.folder_path,
                    cached_at = excluded.cached_at
                """,
                (
                    obj.key,
                    file_name,
                    obj.size,
                    mimetypes.guess_type(file_name)[0] or "application/octet-stream",
                    obj.last_modified.isoformat() if obj.last_modified else "",
                    folder_path_of(obj.key),
                    now,
                ),
            )
            if existed:
                updated += 1
            else:
                inserted += 1

        await self._db.commit()
        return inserted, updated

    async def delete_missing(self, keys: Iterable[str]) -> int:
        """Delete every row whose key is not in ``keys``.

        An empty ``keys`` empties the snapshot.

        Returns:
            The number of rows deleted.
        """
        assert self._db is not None
        # The key set travels with the statement.
        key_set = json.dumps(list(keys))
        async with self._write_lock:
            cursor = await self._db.execute(
                "DELETE FROM file_cache "
                "WHERE object_key NOT IN (SELECT value FROM json_each(?))",
                (key_set,),
            )
            deleted = cursor.rowcount
            await self._db.commit()
        return deleted

    async def clear_expired(self, lifetime: int) -> int:
        """Delete rows written more than ``lifetime`` seconds ago."""
        assert self._db is not None
        cutoff = _to_iso(self._clock() - lifetime)
        cursor = await self._db.execute(
            "DELETE FROM file_cache WHERE cached_at < ?", (cutoff,)
        )
        await self._db.commit()
        return cursor.rowcount

    async def clear_all(self) -> int:
        assert self._db is not None
        cursor = await self._db.execute("DELETE FROM file_cache")
        await self._db.commit()
        return cursor.rowcount

    # -- Reads -----------------------------------------------------------------

    async def latest_cached_at(self) -> float | None:
        """Return the newest ``cached_at`` as epoch seconds, or None when empty."""
        assert self._db is not None
        async with self._db.execute("SELECT MAX(cached_at) FROM file_cache") as cursor:
            row = await cursor.fetchone()
        if row is None or row[0] is None:
            return None
        return _from_iso(row[0])

    async def count(self) -> int:
        assert self._db is not None
        async with self._db.execute("SELECT COUNT(*) FROM file_cache") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def is_empty(self) -> bool:
        return await self.count() == 0

    async def get(self, object_key: str) -> FileRecord | None:
        assert self._db is not None
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM file_cache WHERE object_key = ?", (object_key,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_record(row) if row else None

    async def keys(self) -> list[str]:
        assert self._db is not None
        async with self._db.execute(
            "SELECT object_key FROM file_cache ORDER BY object_key"
        ) as cursor:
            rows = await cursor.fetchall()
        return [r[0] for r in rows]

    async def search(
        self, term: str, folder_path: str | None = None, limit: int = 50
    ) -> list[FileRecord]:
        """Substring search on file name, ordered by name.

        Args:
            term: Substring to look for ("" matches every name).
            folder_path: Exact folder to restrict to ("" is the root folder);
                None searches every folder.
            limit: Maximum number of records returned.
        """
        assert self._db is not None
        sql = f"SELECT {_COLUMNS} FROM file_cache WHERE file_name LIKE ? ESCAPE '\\'"
        params: list[object] = [f"%{_escape_like(term)}%"]
        if folder_path is not None:
            sql += " AND folder_path = ?"
            params.append(folder_path)
        sql += " ORDER BY file_name LIMIT ?"
        params.append(limit)

        async with self._db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_record(r) for r in rows]

    async def files_in_folder(self, folder_path: str, limit: int | None = None) -> list[FileRecord]:
        """Return the records directly inside ``folder_path``, ordered by name."""
        assert self._db is not None
        sql = f"SELECT {_COLUMNS} FROM file_cache WHERE folder_path = ? ORDER BY file_name"
        params: list[object] = [folder_path]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        async with self._db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_record(r) for r in rows]
