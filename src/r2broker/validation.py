"""Upload input validation helpers for r2broker.

These functions run before any remote call. Each raises a
:class:`~r2broker.errors.ValidationError` subclass carrying a user-facing
message distinct from the internal detail.
"""

import re
import unicodedata

from r2broker.config import UploadConfig
from r2broker.errors import DisallowedFileType, FileTooLarge, InvalidObjectKey

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_MAX_KEY_BYTES = 1024

# Anything outside letters, digits, dot, underscore and hyphen becomes "-".
_UNSAFE_CHARS_RE = re.compile(r"[^\w.\-]+")
_DASH_RUN_RE = re.compile(r"-{2,}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def file_extension(filename: str) -> str:
    """Return the lowercase extension of ``filename`` without the dot."""
    _, dot, ext = filename.rpartition(".")
    return ext.lower() if dot else ""


def validate_upload(filename: str, size: int, config: UploadConfig) -> None:
    """Check an upload against the extension allowlist and the size cap.

    Args:
        filename: The client-supplied file name.
        size: Size of the upload in bytes.
        config: Upload settings.

    Raises:
        DisallowedFileType: If the extension is not allowed.
        FileTooLarge: If ``size`` exceeds ``config.max_size``.
    """
    allowed = {ext.lower().lstrip(".") for ext in config.allowed_extensions}
    if file_extension(filename) not in allowed:
        raise DisallowedFileType(filename)

    if size > config.max_size:
        raise FileTooLarge(size, config.max_size)


def sanitize_file_name(name: str) -> str:
    """Reduce a client-supplied file name to a safe single path segment.

    Directory components are dropped, unsafe characters collapse to ``-``
    and leading dots are removed so the result can never be hidden or
    traverse upwards.

    Raises:
        InvalidObjectKey: If nothing usable is left.
    """
    name = unicodedata.normalize("NFC", name)
    name = re.split(r"[\\/]", name)[-1].strip()
    name = _UNSAFE_CHARS_RE.sub("-", name)
    name = _DASH_RUN_RE.sub("-", name).strip("-").lstrip(".")
    if not name:
        raise InvalidObjectKey("file name is empty after sanitizing")
    return name


def validate_object_key(key: str) -> None:
    """Validate an object key.

    Raises:
        InvalidObjectKey: If the key is empty or exceeds 1024 bytes when
            UTF-8 encoded.
    """
    if not key:
        raise InvalidObjectKey("object key is empty")
    if len(key.encode("utf-8")) > _MAX_KEY_BYTES:
        raise InvalidObjectKey(f"object key exceeds {_MAX_KEY_BYTES} bytes")


def build_object_key(folder: str, filename: str) -> str:
    """Join an upload folder and a sanitized file name into an object key.

    >>> build_object_key("/docs/2024/", "My Report.pdf")
    'docs/2024/My-Report.pdf'
    """
    folder = folder.strip().strip("/")
    key = f"{folder}/{sanitize_file_name(filename)}" if folder else sanitize_file_name(filename)
    validate_object_key(key)
    return key
