"""Download broker: the single entry point used by storefront glue.

Wires the credential cipher, object store client, listing cache tiers,
pointer resolver and rate limiter together, and turns their typed failures
into outcomes the caller can present without leaking internal detail.
"""

import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Protocol

from r2broker import metrics
from r2broker.cache.folders import FolderTree, FolderTreeCache
from r2broker.cache.listing import FileListingCache
from r2broker.cache.manager import FileCacheManager
from r2broker.cache.models import FileRecord, SyncResult
from r2broker.cache.snapshot import SQLiteSnapshotStore
from r2broker.config import BrokerConfig
from r2broker.credentials import resolve_credentials
from r2broker.crypto import CredentialCipher
from r2broker.errors import StoreError, UploadFailed, ValidationError
from r2broker.pointer import PointerResolver, ResolutionContext, parse
from r2broker.ratelimit import FixedWindowRateLimiter, MemoryCounterStore, SQLiteCounterStore
from r2broker.storage.client import ObjectStoreClient, UploadSource
from r2broker.validation import build_object_key, validate_upload

logger = logging.getLogger(__name__)

DENIED_MESSAGE = "You do not have permission to download this file."
DOWNLOAD_FAILED_MESSAGE = "Failed to generate download URL. Please contact support."
UPLOAD_FAILED_MESSAGE = "Upload failed. Please try again."
UPLOAD_LIMIT_MESSAGE = "Upload limit exceeded. Please try again later."
SYNC_LIMIT_MESSAGE = "Sync limit exceeded. Please try again later."


@dataclass(frozen=True)
class Requester:
    """Who is asking for a download.

    Attributes:
        identity: Storefront identity passed to the entitlement check.
        privileged: Operators may see error detail.
    """

    identity: str
    privileged: bool = False


class EntitlementChecker(Protocol):
    """Storefront collaborator deciding who may download what."""

    async def is_requester_authorized(self, requester_identity: str, resource: str) -> bool: ...


class AllowAll:
    """Entitlement checker that authorizes everyone (operator tooling)."""

    async def is_requester_authorized(self, requester_identity: str, resource: str) -> bool:
        return True


DownloadStatus = Literal["granted", "denied", "invalid", "error"]


@dataclass
class DownloadOutcome:
    """Result of :meth:`DownloadBroker.resolve_download`.

    Attributes:
        status: granted, denied, invalid or error.
        url: The download URL when granted.
        filename: Display name for the download when granted.
        message: Message safe to show to the requester.
        detail: Internal detail, only filled for privileged requesters.
    """

    status: DownloadStatus
    url: str = ""
    filename: str = ""
    message: str = ""
    detail: str = ""

    @property
    def granted(self) -> bool:
        return self.status == "granted"

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v != ""}


@dataclass
class UploadOutcome:
    """Result of :meth:`DownloadBroker.upload_file`."""

    success: bool
    object_key: str = ""
    url: str = ""
    message: str = ""
    code: str = ""
    sync: SyncResult | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "object_key": self.object_key,
            "url": self.url,
            "message": self.message,
        }
        if self.code:
            data["code"] = self.code
        if self.sync is not None:
            data["sync"] = self.sync.to_dict()
        return data


def _source_size(source: UploadSource) -> int:
    if isinstance(source, (bytes, bytearray)):
        return len(source)
    if isinstance(source, (str, Path)):
        return os.path.getsize(source)
    pos = source.tell()
    size = source.seek(0, os.SEEK_END) - pos
    source.seek(pos)
    return size


class DownloadBroker:
    """Facade over the credential, store, cache, pointer and rate limit parts."""

    def __init__(
        self,
        config: BrokerConfig,
        client: ObjectStoreClient,
        cache: FileCacheManager,
        resolver: PointerResolver,
        limiter: FixedWindowRateLimiter,
        entitlements: EntitlementChecker,
    ) -> None:
        self.config = config
        self.client = client
        self.cache = cache
        self.resolver = resolver
        self.limiter = limiter
        self.entitlements = entitlements

    async def resolve_download(
        self,
        pointer_text: str,
        requester: Requester,
        context: ResolutionContext | None = None,
    ) -> DownloadOutcome:
        """Resolve a file pointer into a download URL for ``requester``.

        When permission checks are enabled, the entitlement collaborator is
        consulted before any signed URL is minted. The resource it is asked
        about is the object key, prefixed with "<bucket>/" when the pointer
        overrides the bucket. Public pointers served through the custom
        domain need no entitlement.
        """
        if context is None:
            context = ResolutionContext(privileged=requester.privileged)

        try:
            pointer = parse(pointer_text)
        except ValidationError as exc:
            return DownloadOutcome(
                status="invalid",
                message=exc.user_message,
                detail=exc.message if requester.privileged else "",
            )
        if pointer is None:
            return DownloadOutcome(status="invalid", message="The download reference is not valid.")

        if self.config.download.check_permissions and not self.resolver.uses_public_url(pointer):
            resource = (
                f"{pointer.bucket}/{pointer.object_key}" if pointer.bucket else pointer.object_key
            )
            authorized = await self.entitlements.is_requester_authorized(
                requester.identity, resource
            )
            if not authorized:
                logger.info(
                    "Download denied",
                    extra={"context": {"requester": requester.identity, "object": resource}},
                )
                return DownloadOutcome(status="denied", message=DENIED_MESSAGE)

        try:
            url = await self.resolver.resolve_url(pointer, context)
        except StoreError as exc:
            logger.error(
                "Download URL generation failed",
                extra={"context": {"object": pointer.object_key, "error": exc.message}},
            )
            return DownloadOutcome(
                status="error",
                message=DOWNLOAD_FAILED_MESSAGE,
                detail=exc.message if requester.privileged else "",
            )

        return DownloadOutcome(
            status="granted", url=url, filename=self.resolver.resolve_name(pointer)
        )

    async def upload_file(
        self,
        actor_id: str,
        filename: str,
        source: UploadSource,
        folder_path: str = "",
        content_type: str | None = None,
    ) -> UploadOutcome:
        """Rate-limit, validate, upload and then force a snapshot sync."""
        limits = self.config.rate_limit
        if not await self.limiter.check_and_increment(
            actor_id, "upload", limits.upload_limit, limits.upload_window
        ):
            return UploadOutcome(False, message=UPLOAD_LIMIT_MESSAGE, code="RateLimited")

        try:
            size = _source_size(source)
        except OSError as exc:
            logger.error("Upload source unreadable", extra={"context": {"error": str(exc)}})
            return UploadOutcome(False, message=UPLOAD_FAILED_MESSAGE, code=UploadFailed.code)

        try:
            validate_upload(filename, size, self.config.upload)
            key = build_object_key(folder_path, filename)
        except ValidationError as exc:
            logger.warning(
                "Upload rejected",
                extra={"context": {"actor": actor_id, "reason": exc.message}},
            )
            return UploadOutcome(False, message=exc.user_message, code=exc.code)

        try:
            url = await self.client.upload(source, key, content_type=content_type)
        except UploadFailed as exc:
            return UploadOutcome(False, object_key=key, message=UPLOAD_FAILED_MESSAGE, code=exc.code)

        self.cache.tree_cache.clear()
        sync = await self.cache.sync_r2_files(force=True)
        logger.info(
            "Upload completed",
            extra={"context": {"actor": actor_id, "object": key}},
        )
        return UploadOutcome(True, object_key=key, url=url, message="File uploaded successfully", sync=sync)

    async def sync_r2_files(self, force: bool = False, actor_id: str | None = None) -> SyncResult:
        """Reconcile the snapshot; forced syncs by an actor are rate limited."""
        if force and actor_id is not None:
            limits = self.config.rate_limit
            if not await self.limiter.check_and_increment(
                actor_id, "sync", limits.sync_limit, limits.sync_window
            ):
                return SyncResult(success=False, message=SYNC_LIMIT_MESSAGE)
        return await self.cache.sync_r2_files(force=force)

    async def get_folder_tree(self) -> FolderTree:
        return await self.cache.get_folder_tree()

    async def search_files(self, term: str, folder: str | None = None) -> list[FileRecord]:
        return await self.cache.search_files(term, folder)

    async def files_in_folder(self, folder: str) -> list[FileRecord]:
        return await self.cache.files_in_folder(folder)

    async def close(self) -> None:
        await self.client.close()
        await self.cache.snapshot.close()
        await self.limiter.close()


def _ensure_parent(db_path: str) -> None:
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)


async def create_broker(
    config: BrokerConfig,
    entitlements: EntitlementChecker,
    environ: Mapping[str, str] | None = None,
    clock: Callable[[], float] = time.time,
) -> DownloadBroker:
    """Build and initialize a broker from configuration.

    Raises:
        ConfigurationError: If the store endpoint, bucket or keys are missing.
    """
    if config.observability.metrics:
        metrics.init_metrics()

    cipher = CredentialCipher.from_config(config.security, environ)
    credentials = resolve_credentials(config.store.credentials, cipher, environ)

    listing_cache = FileListingCache(config.cache.cache_dir, config.cache.list_ttl, clock=clock)
    client = ObjectStoreClient(config.store, credentials, listing_cache)
    await client.init()

    _ensure_parent(config.cache.snapshot_path)
    snapshot = SQLiteSnapshotStore(config.cache.snapshot_path, clock=clock)
    await snapshot.init_db()

    manager = FileCacheManager(
        client,
        snapshot,
        FolderTreeCache(config.cache.cache_dir, config.cache.folder_tree_ttl, clock=clock),
        lifetime=config.cache.snapshot_lifetime,
        max_keys=config.cache.sync_max_keys,
        search_limit=config.cache.search_limit,
        clock=clock,
    )

    if config.rate_limit.engine == "sqlite":
        _ensure_parent(config.rate_limit.sqlite_path)
        counter_store = SQLiteCounterStore(config.rate_limit.sqlite_path)
        await counter_store.init_db()
    else:
        counter_store = MemoryCounterStore()
    limiter = FixedWindowRateLimiter(counter_store, scope=config.rate_limit.scope, clock=clock)

    resolver = PointerResolver(client, config.download, config.store.custom_domain)

    logger.info(
        "Download broker ready",
        extra={"context": {"bucket": config.store.bucket_name, "rate_limit": config.rate_limit.engine}},
    )
    return DownloadBroker(config, client, manager, resolver, limiter, entitlements)
