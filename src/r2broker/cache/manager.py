"""Reconciliation, folder tree and search over the listing snapshot."""

import logging
import time
from collections.abc import Callable

from r2broker import metrics
from r2broker.cache.folders import FolderTree, FolderTreeCache, build_folder_tree
from r2broker.cache.models import FileRecord, SyncResult
from r2broker.cache.snapshot import SQLiteSnapshotStore
from r2broker.errors import ListFailed
from r2broker.storage.client import ObjectStoreClient

logger = logging.getLogger(__name__)


class FileCacheManager:
    """Keeps the snapshot tier in step with the remote bucket.

    Attributes:
        lifetime: Seconds after the newest write before the snapshot is stale.
        max_keys: Upper bound on keys fetched by one reconciliation.
        search_limit: Maximum records returned by :meth:`search_files`.
    """

    def __init__(
        self,
        client: ObjectStoreClient,
        snapshot: SQLiteSnapshotStore,
        tree_cache: FolderTreeCache,
        lifetime: int = 300,
        max_keys: int = 10000,
        search_limit: int = 50,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.snapshot = snapshot
        self.tree_cache = tree_cache
        self.lifetime = lifetime
        self.max_keys = max_keys
        self.search_limit = search_limit
        self._clock = clock

    async def is_cache_expired(self) -> bool:
        """True when the snapshot is empty or older than ``lifetime``."""
        latest = await self.snapshot.latest_cached_at()
        if latest is None:
            return True
        return self._clock() - latest > self.lifetime

    async def sync_r2_files(self, force: bool = False) -> SyncResult:
        """Reconcile the snapshot with a full remote listing.

        Unless ``force`` is set, a fresh snapshot is left alone. After the
        pass the snapshot holds exactly the remote non-folder-marker keys.
        A listing failure is reported through ``success=False``.
        """
        if not force and not await self.is_cache_expired():
            return SyncResult(message="Cache is still fresh, no sync needed")

        try:
            objects = await self.client.list_objects(
                prefix="", max_keys=self.max_keys, use_cache=False
            )
        except ListFailed as exc:
            logger.error(
                "Snapshot sync failed: could not list remote objects",
                extra={"context": {"error": exc.message}},
            )
            return SyncResult(success=False, message="Failed to list R2 objects")

        files = [o for o in objects if not o.is_folder_marker]
        inserted, updated = await self.snapshot.upsert_objects(files)
        deleted = await self.snapshot.delete_missing(o.key for o in files)

        result = SyncResult(
            synced=inserted,
            updated=updated,
            deleted=deleted,
            total=len(files),
            message=f"Synced {inserted} new files, updated {updated}, removed {deleted}",
        )
        metrics.set_snapshot_objects(len(files))
        logger.info("Snapshot sync completed", extra={"context": result.to_dict()})
        return result

    async def get_folder_tree(self) -> FolderTree:
        """Return the nested folder tree, rebuilding it on a cache miss.

        An empty tree (empty bucket or failed enumeration) is not cached.
        """
        cached = self.tree_cache.load()
        if cached is not None:
            return cached

        try:
            keys = await self.client.list_all_keys()
        except ListFailed as exc:
            logger.error(
                "Failed to build folder tree",
                extra={"context": {"error": exc.message}},
            )
            return {}

        tree = build_folder_tree(keys)
        if tree:
            self.tree_cache.store(tree)
        return tree

    async def search_files(
        self, term: str, folder_path: str | None = None
    ) -> list[FileRecord]:
        """Search the snapshot by file-name substring. Never hits the store."""
        return await self.snapshot.search(term, folder_path, self.search_limit)

    async def files_in_folder(self, folder_path: str) -> list[FileRecord]:
        return await self.snapshot.files_in_folder(folder_path)

    async def clear_expired_cache(self) -> int:
        return await self.snapshot.clear_expired(self.lifetime)

    async def clear_all_cache(self) -> int:
        """Drop the snapshot, the folder tree and every cached listing."""
        deleted = await self.snapshot.clear_all()
        self.tree_cache.clear()
        self.client.clear_all_cache()
        return deleted
