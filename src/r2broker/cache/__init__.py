"""Listing cache tiers for r2broker."""

from r2broker.cache.folders import FolderTreeCache, build_folder_tree
from r2broker.cache.listing import FileListingCache
from r2broker.cache.models import FileRecord, SyncResult

__all__ = [
    "build_folder_tree",
    "FileListingCache",
    "FileRecord",
    "FolderTreeCache",
    "SyncResult",
]
