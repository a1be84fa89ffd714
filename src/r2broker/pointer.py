"""File pointer parsing and resolution.

A file pointer is a bracketed tag embedded in caller content, for example::

    [cloudflare_r2 object="path/to/file.zip" filename="Download.zip" expires="7200"]
    [amazon_s3 bucket="other-bucket" object="path/to/file.zip"]

``amazon_s3`` is accepted as a legacy alias of ``cloudflare_r2``. Parsing is
pure; resolution mints a presigned URL (or builds a public custom-domain
URL) and memoizes the result in a per-request :class:`ResolutionContext`.
"""

import html
import logging
import re
from dataclasses import dataclass, field
from typing import Literal

from r2broker.config import DownloadConfig
from r2broker.errors import InvalidPointer, StoreError
from r2broker.storage.client import ObjectStoreClient, custom_domain_url

logger = logging.getLogger(__name__)

PRIMARY_TAG = "cloudflare_r2"
LEGACY_TAG = "amazon_s3"

_POINTER_RE = re.compile(
    r"\[(?:" + PRIMARY_TAG + "|" + LEGACY_TAG + r")\s+([^\]]+)\]"
)
_ATTR_RE = re.compile(r'(\w+)="([^"]*)"')

ReturnMode = Literal["url", "name"]


@dataclass(frozen=True)
class FilePointer:
    """Structured attributes of one file pointer.

    Attributes:
        object_key: The remote object key (required).
        bucket: Bucket override, or "" for the configured bucket.
        filename: Display name override, or "".
        expires: Expiry override in seconds, or None for the default.
        public: Serve through the public custom domain when one is configured.
        return_mode: "url" (default) or "name".
    """

    object_key: str
    bucket: str = ""
    filename: str = ""
    expires: int | None = None
    public: bool = False
    return_mode: ReturnMode = "url"

    @property
    def display_name(self) -> str:
        return self.filename or self.object_key.rpartition("/")[2]


@dataclass
class ResolutionContext:
    """Per-request resolution state.

    Attributes:
        privileged: Whether the viewer may see error detail.
        memo: Resolved URLs keyed by normalized pointer attributes.
    """

    privileged: bool = False
    memo: dict[tuple, str] = field(default_factory=dict)


def _parse_attributes(body: str) -> dict[str, str]:
    return {name.lower(): value for name, value in _ATTR_RE.findall(body)}


def _build_pointer(attrs: dict[str, str]) -> FilePointer:
    object_key = html.unescape(attrs.get("object", "")).strip()
    if not object_key:
        raise InvalidPointer("missing required attribute 'object'")

    expires: int | None = None
    raw_expires = attrs.get("expires", "").strip()
    if raw_expires:
        try:
            expires = int(raw_expires)
        except ValueError:
            raise InvalidPointer(f"expires must be an integer, got {raw_expires!r}") from None
        if expires <= 0:
            raise InvalidPointer(f"expires must be positive, got {expires}")

    return FilePointer(
        object_key=object_key,
        bucket=attrs.get("bucket", "").strip(),
        filename=html.unescape(attrs.get("filename", "")).strip(),
        expires=expires,
        public=attrs.get("public", "").strip().lower() == "true",
        return_mode="name" if attrs.get("return", "").strip().lower() == "name" else "url",
    )


def parse(text: str) -> FilePointer | None:
    """Parse the first file pointer found in ``text``.

    Returns:
        The pointer, or None if ``text`` contains no pointer tag.

    Raises:
        InvalidPointer: If the tag lacks ``object`` or has a bad ``expires``.
    """
    match = _POINTER_RE.search(text)
    if match is None:
        return None
    return _build_pointer(_parse_attributes(match.group(1)))


def _memo_key(pointer: FilePointer) -> tuple:
    return (
        pointer.object_key,
        pointer.bucket,
        pointer.expires,
        pointer.public,
    )


class PointerResolver:
    """Turns file pointers into download URLs or display names."""

    def __init__(
        self,
        client: ObjectStoreClient,
        download: DownloadConfig,
        custom_domain: str = "",
    ) -> None:
        self.client = client
        self.download = download
        self.custom_domain = custom_domain

    def uses_public_url(self, pointer: FilePointer) -> bool:
        """True when the pointer resolves to an unsigned custom-domain URL."""
        return pointer.public and bool(self.custom_domain)

    def resolve_name(self, pointer: FilePointer) -> str:
        if self.download.use_generic_download_name:
            return self.download.generic_download_name
        return pointer.display_name

    async def resolve_url(
        self, pointer: FilePointer, context: ResolutionContext | None = None
    ) -> str:
        """Return the download URL for ``pointer``, memoized in ``context``.

        Raises:
            PresignFailed: If a signed URL could not be minted.
        """
        key = _memo_key(pointer)
        if context is not None and key in context.memo:
            return context.memo[key]

        if self.uses_public_url(pointer):
            url = custom_domain_url(self.custom_domain, pointer.object_key)
        else:
            url = await self.client.get_presigned_url(
                pointer.object_key,
                expiration_seconds=pointer.expires or self.download.url_expiration_seconds,
                bucket=pointer.bucket or None,
            )

        if context is not None:
            context.memo[key] = url
        return url

    async def resolve(
        self,
        pointer: FilePointer,
        mode: ReturnMode | None = None,
        context: ResolutionContext | None = None,
    ) -> str:
        """Resolve ``pointer`` for embedding in content.

        Signing failures do not raise: privileged viewers get an
        ``[R2 Error: ...]`` marker, everyone else an empty string.
        """
        if (mode or pointer.return_mode) == "name":
            return self.resolve_name(pointer)

        try:
            return await self.resolve_url(pointer, context)
        except StoreError as exc:
            logger.error(
                "Failed to resolve file pointer",
                extra={"context": {"object": pointer.object_key, "error": exc.message}},
            )
            if context is not None and context.privileged:
                return f"[R2 Error: {exc.message}]"
            return ""

    async def expand(self, text: str, context: ResolutionContext | None = None) -> str:
        """Replace every pointer tag in ``text`` with its resolved value.

        Invalid tags are replaced like failed resolutions.
        """
        if context is None:
            context = ResolutionContext()

        parts: list[str] = []
        pos = 0
        for match in _POINTER_RE.finditer(text):
            parts.append(text[pos:match.start()])
            try:
                pointer = _build_pointer(_parse_attributes(match.group(1)))
            except InvalidPointer as exc:
                parts.append(f"[R2 Error: {exc.message}]" if context.privileged else "")
            else:
                parts.append(await self.resolve(pointer, context=context))
            pos = match.end()
        parts.append(text[pos:])
        return "".join(parts)
