"""S3-compatible object store client for r2broker.

Thin wrapper over an aiobotocore S3 client that issues listing, presigning,
upload, head and delete calls against any S3-compatible endpoint (Cloudflare
R2 by default). Every remote call is bounded by a timeout and every failure
surfaces as a typed :class:`~r2broker.errors.StoreError` subclass. Nothing
is retried here: botocore's own retries are disabled and retry policy is
left to the caller.

Listings can be served from a :class:`~r2broker.cache.listing.FileListingCache`
keyed by ``(bucket, prefix, max_keys)``.
"""

import asyncio
import hashlib
import logging
import mimetypes
import os
import urllib.parse
from pathlib import Path
from typing import IO, Any, Union

from aiobotocore.session import AioSession
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from r2broker import metrics
from r2broker.cache.listing import FileListingCache
from r2broker.config import StoreConfig
from r2broker.credentials import Credentials
from r2broker.errors import (
    ConfigurationError,
    DeleteFailed,
    ExistsCheckFailed,
    ListFailed,
    PresignFailed,
    UploadFailed,
)
from r2broker.storage.models import ObjectSummary

logger = logging.getLogger(__name__)

# S3 caps a single ListObjectsV2 page at 1000 keys.
_PAGE_SIZE = 1000
# SigV4 query-string auth allows at most 7 days.
MAX_PRESIGN_EXPIRES = 604800

_REMOTE_ERRORS = (ClientError, BotoCoreError, asyncio.TimeoutError, OSError)

UploadSource = Union[bytes, bytearray, str, Path, IO[bytes]]


def custom_domain_url(custom_domain: str, key: str) -> str:
    """Build ``https://{custom_domain}/{key}`` for a public object.

    A scheme already present on ``custom_domain`` is kept.
    """
    domain = custom_domain.strip().rstrip("/")
    if "://" not in domain:
        domain = f"https://{domain}"
    return f"{domain}/{urllib.parse.quote(key.lstrip('/'), safe='/~')}"


def _error_code(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "")
    return ""


class ObjectStoreClient:
    """Client for a single bucket on an S3-compatible store.

    Attributes:
        bucket_name: The default bucket.
        endpoint_url: The resolved endpoint URL.
        region: The signing region ("auto" for R2).
        custom_domain: Public custom domain, if configured.
        timeout: Default per-call timeout in seconds.
    """

    def __init__(
        self,
        config: StoreConfig,
        credentials: Credentials,
        listing_cache: FileListingCache | None = None,
    ) -> None:
        """Validate configuration and prepare (but do not open) the client.

        Raises:
            ConfigurationError: If endpoint, bucket or either key is missing.
        """
        endpoint = config.resolved_endpoint()
        missing = []
        if not endpoint:
            missing.append("endpoint")
        if not config.bucket_name:
            missing.append("bucket_name")
        if not credentials.access_key:
            missing.append("access_key_id")
        if not credentials.secret_key:
            missing.append("secret_access_key")
        if missing:
            logger.error(
                "Object store client is not configured",
                extra={"context": {"missing": missing}},
            )
            raise ConfigurationError(
                f"Object store is not configured: missing {', '.join(missing)}"
            )

        self.bucket_name = config.bucket_name
        self.endpoint_url = endpoint
        self.region = config.region
        self.use_path_style = config.use_path_style
        self.custom_domain = config.custom_domain
        self.public_url_template = config.public_url_template
        self.timeout = config.timeout_seconds
        self._credentials = credentials
        self._cache = listing_cache
        self._session = AioSession()
        self._client = None
        self._client_ctx = None

    async def init(self) -> None:
        """Open the underlying aiobotocore client. Performs no network I/O."""
        if self._client is not None:
            return
        boto_config = BotoConfig(
            signature_version="s3v4",
            s3={"addressing_style": "path" if self.use_path_style else "virtual"},
            connect_timeout=self.timeout,
            read_timeout=self.timeout,
            retries={"max_attempts": 1, "mode": "standard"},
        )
        self._client_ctx = self._session.create_client(
            "s3",
            region_name=self.region,
            endpoint_url=self.endpoint_url,
            aws_access_key_id=self._credentials.access_key,
            aws_secret_access_key=self._credentials.secret_key,
            config=boto_config,
        )
        self._client = await self._client_ctx.__aenter__()
        logger.debug(
            "Object store client initialized: endpoint=%s bucket=%s region=%s",
            self.endpoint_url,
            self.bucket_name,
            self.region,
        )

    async def close(self) -> None:
        """Close the aiobotocore client session."""
        if self._client_ctx is not None:
            await self._client_ctx.__aexit__(None, None, None)
            self._client = None
            self._client_ctx = None

    async def __aenter__(self) -> "ObjectStoreClient":
        await self.init()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _call(self, coro: Any, timeout: float | None) -> Any:
        return await asyncio.wait_for(coro, timeout if timeout is not None else self.timeout)

    # -- Listing ---------------------------------------------------------------

    def _list_cache_key(self, prefix: str, max_keys: int) -> str:
        digest = hashlib.md5(f"{prefix}_{max_keys}".encode("utf-8")).hexdigest()
        return f"list_objects_{self.bucket_name}_{digest}"

    async def _paginate(
        self, prefix: str, limit: int | None, timeout: float | None
    ) -> list[ObjectSummary]:
        """Follow continuation tokens until ``limit`` keys or the end."""
        objects: list[ObjectSummary] = []
        token: str | None = None
        while limit is None or len(objects) < limit:
            page_size = _PAGE_SIZE if limit is None else min(_PAGE_SIZE, limit - len(objects))
            params: dict[str, Any] = {"Bucket": self.bucket_name, "MaxKeys": page_size}
            if prefix:
                params["Prefix"] = prefix
            if token:
                params["ContinuationToken"] = token

            resp = await self._call(self._client.list_objects_v2(**params), timeout)
            for item in resp.get("Contents", []) or []:
                objects.append(ObjectSummary.from_listing(item))

            token = resp.get("NextContinuationToken") if resp.get("IsTruncated") else None
            if not token:
                break

        return objects if limit is None else objects[:limit]

    async def list_objects(
        self,
        prefix: str = "",
        max_keys: int = 1000,
        use_cache: bool = True,
        cache_ttl: int | None = None,
        timeout: float | None = None,
    ) -> list[ObjectSummary]:
        """List up to ``max_keys`` objects under ``prefix``.

        Args:
            prefix: Key prefix filter ("" for the whole bucket).
            max_keys: Maximum number of objects to return.
            use_cache: Consult and populate the listing cache.
            cache_ttl: Max cache age in seconds (default: the cache's TTL).
            timeout: Per-page timeout override.

        Raises:
            ListFailed: On any remote or timeout failure.
        """
        cache_key = self._list_cache_key(prefix, max_keys)
        if use_cache and self._cache is not None:
            cached = self._cache.get(cache_key, cache_ttl)
            if cached is not None:
                metrics.record_cache_lookup(hit=True)
                logger.debug(
                    "List objects from cache",
                    extra={"context": {"prefix": prefix, "count": len(cached)}},
                )
                return [ObjectSummary.from_dict(d) for d in cached]
            metrics.record_cache_lookup(hit=False)

        logger.debug(
            "Listing objects from store",
            extra={"context": {"prefix": prefix, "max_keys": max_keys}},
        )
        try:
            objects = await self._paginate(prefix, max_keys, timeout)
        except _REMOTE_ERRORS as exc:
            metrics.record_store_operation("list", "error")
            logger.error(
                "Failed to list objects",
                extra={"context": {"prefix": prefix, "error": str(exc) or type(exc).__name__}},
            )
            raise ListFailed(prefix, exc) from exc

        metrics.record_store_operation("list", "success")
        logger.debug("Objects listed successfully", extra={"context": {"count": len(objects)}})

        if use_cache and self._cache is not None:
            self._cache.set(cache_key, [o.to_dict() for o in objects])
        return objects

    async def list_all_keys(self, prefix: str = "", timeout: float | None = None) -> list[str]:
        """Enumerate every key under ``prefix`` (no cache, no limit).

        Raises:
            ListFailed: On any remote or timeout failure.
        """
        try:
            objects = await self._paginate(prefix, None, timeout)
        except _REMOTE_ERRORS as exc:
            metrics.record_store_operation("list", "error")
            logger.error(
                "Failed to enumerate objects",
                extra={"context": {"prefix": prefix, "error": str(exc) or type(exc).__name__}},
            )
            raise ListFailed(prefix, exc) from exc
        metrics.record_store_operation("list", "success")
        return [o.key for o in objects]

    def clear_list_cache(self, prefix: str = "", max_keys: int = 1000) -> bool:
        """Drop the cached listing for one ``(prefix, max_keys)`` query."""
        if self._cache is None:
            return False
        return self._cache.delete(self._list_cache_key(prefix, max_keys))

    def clear_all_cache(self) -> bool:
        """Drop every cached listing."""
        if self._cache is None:
            return False
        return self._cache.clear_all()

    # -- Presigning ------------------------------------------------------------

    async def get_presigned_url(
        self,
        key: str,
        expiration_seconds: int = 3600,
        bucket: str | None = None,
        timeout: float | None = None,
    ) -> str:
        """Return a SigV4 query-string signed GET URL for ``key``.

        The URL is valid for exactly ``expiration_seconds`` from issuance.
        Signing is local computation; no request is sent.

        Raises:
            PresignFailed: On an out-of-range expiry or a signing failure.
        """
        logger.debug(
            "Generating presigned URL",
            extra={"context": {"object": key, "expiration": expiration_seconds}},
        )
        if not 1 <= expiration_seconds <= MAX_PRESIGN_EXPIRES:
            raise PresignFailed(
                key,
                ValueError(
                    f"expiration must be between 1 and {MAX_PRESIGN_EXPIRES} seconds, "
                    f"got {expiration_seconds}"
                ),
            )

        try:
            url = await self._call(
                self._client.generate_presigned_url(
                    "get_object",
                    Params={"Bucket": bucket or self.bucket_name, "Key": key},
                    ExpiresIn=expiration_seconds,
                ),
                timeout,
            )
        except _REMOTE_ERRORS as exc:
            metrics.record_store_operation("presign", "error")
            logger.error(
                "Failed to generate presigned URL",
                extra={"context": {"object": key, "error": str(exc) or type(exc).__name__}},
            )
            raise PresignFailed(key, exc) from exc

        metrics.record_store_operation("presign", "success")
        logger.debug("Presigned URL generated successfully", extra={"context": {"object": key}})
        return url

    # -- Upload / head / delete ------------------------------------------------

    async def upload(
        self,
        source: UploadSource,
        key: str,
        content_type: str | None = None,
        timeout: float | None = None,
    ) -> str:
        """Upload bytes, a local file path or a binary file object to ``key``.

        Returns:
            The public object URL (see :meth:`object_url`).

        Raises:
            UploadFailed: On a missing local file, a remote failure or timeout.
        """
        if content_type is None:
            content_type = mimetypes.guess_type(key)[0]

        params: dict[str, Any] = {"Bucket": self.bucket_name, "Key": key}
        if content_type:
            params["ContentType"] = content_type

        logger.debug("Uploading object", extra={"context": {"object": key}})
        try:
            if isinstance(source, (str, Path)):
                path = Path(source)
                size = os.path.getsize(path)
                with open(path, "rb") as fh:
                    await self._call(
                        self._client.put_object(Body=fh, ContentLength=size, **params), timeout
                    )
            else:
                body = bytes(source) if isinstance(source, bytearray) else source
                size = len(body) if isinstance(body, bytes) else None
                await self._call(self._client.put_object(Body=body, **params), timeout)
        except _REMOTE_ERRORS as exc:
            metrics.record_store_operation("upload", "error")
            logger.error(
                "Upload failed",
                extra={"context": {"object": key, "error": str(exc) or type(exc).__name__}},
            )
            raise UploadFailed(key, exc) from exc

        metrics.record_store_operation("upload", "success")
        logger.info("File uploaded successfully", extra={"context": {"object": key, "size": size}})
        self.clear_all_cache()
        return self.object_url(key)

    async def exists(self, key: str, timeout: float | None = None) -> bool:
        """Return True if ``key`` exists.

        Raises:
            ExistsCheckFailed: On any failure other than 404 / NoSuchKey.
        """
        try:
            await self._call(self._client.head_object(Bucket=self.bucket_name, Key=key), timeout)
        except ClientError as exc:
            if _error_code(exc) in ("404", "NoSuchKey", "NotFound"):
                return False
            logger.error("Existence check failed", extra={"context": {"object": key}})
            raise ExistsCheckFailed(key, exc) from exc
        except _REMOTE_ERRORS as exc:
            logger.error("Existence check failed", extra={"context": {"object": key}})
            raise ExistsCheckFailed(key, exc) from exc
        return True

    async def head(self, key: str, timeout: float | None = None) -> dict[str, Any]:
        """Return object metadata (``head_object`` response without transport data).

        Raises:
            ExistsCheckFailed: If the object is missing or the call fails.
        """
        try:
            resp = await self._call(
                self._client.head_object(Bucket=self.bucket_name, Key=key), timeout
            )
        except _REMOTE_ERRORS as exc:
            logger.error("Failed to get object metadata", extra={"context": {"object": key}})
            raise ExistsCheckFailed(key, exc) from exc
        return {k: v for k, v in resp.items() if k != "ResponseMetadata"}

    async def delete(self, key: str, timeout: float | None = None) -> None:
        """Delete ``key``. Deleting a missing key is not an error in S3.

        Raises:
            DeleteFailed: On a remote failure or timeout.
        """
        logger.debug("Deleting object", extra={"context": {"object": key}})
        try:
            await self._call(
                self._client.delete_object(Bucket=self.bucket_name, Key=key), timeout
            )
        except _REMOTE_ERRORS as exc:
            metrics.record_store_operation("delete", "error")
            logger.error("Delete failed", extra={"context": {"object": key}})
            raise DeleteFailed(key, exc) from exc
        metrics.record_store_operation("delete", "success")
        logger.info("File deleted successfully", extra={"context": {"object": key}})
        self.clear_all_cache()

    async def test_connection(self) -> tuple[bool, str]:
        """Check the bucket with a one-key listing.

        Returns:
            ``(True, "Connection successful!")`` or ``(False, reason)``.
        """
        try:
            await self._call(
                self._client.list_objects_v2(Bucket=self.bucket_name, MaxKeys=1), None
            )
        except _REMOTE_ERRORS as exc:
            return False, f"Connection failed: {str(exc) or type(exc).__name__}"
        return True, "Connection successful!"

    # -- Public URLs -----------------------------------------------------------

    def object_url(self, key: str) -> str:
        """Return the public URL for ``key`` without any network call.

        Uses the custom domain when configured, otherwise
        ``public_url_template`` (``{bucket}`` and ``{key}`` placeholders).
        """
        if self.custom_domain:
            return custom_domain_url(self.custom_domain, key)
        return self.public_url_template.format(
            bucket=self.bucket_name,
            key=urllib.parse.quote(key.lstrip("/"), safe="/~"),
        )
