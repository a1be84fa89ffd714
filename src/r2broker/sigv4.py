"""Local verification of SigV4 query-string signed (presigned) URLs.

Recomputes the canonical request, string to sign and HMAC-SHA256 chain for
a presigned URL and compares the result with the ``X-Amz-Signature`` it
carries. This lets operators and tests prove that an issued URL covers the
intended host, bucket, key and expiry without contacting the store.

References:
    - https://docs.aws.amazon.com/AmazonS3/latest/API/sigv4-query-string-auth.html
"""

import hashlib
import hmac
import logging
import urllib.parse
from datetime import datetime, timezone

from r2broker.credentials import Credentials
from r2broker.errors import ExpiredPresignedUrl, PresignedUrlError, SignatureMismatch

logger = logging.getLogger(__name__)

ALGORITHM = "AWS4-HMAC-SHA256"
KEY_PREFIX = "AWS4"
SCOPE_TERMINATOR = "aws4_request"
SERVICE_NAME = "s3"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
MAX_PRESIGNED_EXPIRES = 604800  # 7 days in seconds

_REQUIRED_PARAMS = (
    "X-Amz-Algorithm",
    "X-Amz-Credential",
    "X-Amz-Date",
    "X-Amz-Expires",
    "X-Amz-SignedHeaders",
    "X-Amz-Signature",
)


def verify_presigned_url(
    url: str,
    credentials: Credentials,
    method: str = "GET",
    now: datetime | None = None,
) -> dict[str, str | int]:
    """Verify a presigned URL against the given credentials.

    Args:
        url: The full presigned URL.
        credentials: The key pair the URL should have been signed with.
        method: HTTP method the URL is meant for.
        now: Verification time (default: current UTC time).

    Returns:
        A dict with ``access_key``, ``region``, ``signed_at`` (epoch seconds)
        and ``expires`` (seconds).

    Raises:
        PresignedUrlError: On missing or malformed signing parameters.
        ExpiredPresignedUrl: If ``now`` is past ``X-Amz-Date + X-Amz-Expires``.
        SignatureMismatch: If anything covered by the signature was altered.
    """
    parts = urllib.parse.urlsplit(url)
    params = dict(urllib.parse.parse_qsl(parts.query, keep_blank_values=True))

    for name in _REQUIRED_PARAMS:
        if name not in params:
            raise PresignedUrlError(message=f"Missing query parameter {name}.")

    if params["X-Amz-Algorithm"] != ALGORITHM:
        raise PresignedUrlError(message=f"Unsupported algorithm: {params['X-Amz-Algorithm']}")

    credential_parts = params["X-Amz-Credential"].split("/")
    if len(credential_parts) != 5:
        raise PresignedUrlError(message="Invalid Credential format.")
    access_key, credential_date, region, service, terminator = credential_parts
    if terminator != SCOPE_TERMINATOR or service != SERVICE_NAME:
        raise PresignedUrlError(message="Invalid credential scope.")

    amz_date = params["X-Amz-Date"]
    if amz_date[:8] != credential_date:
        raise PresignedUrlError(
            message=f"Date in Credential scope ({credential_date}) does not match "
            f"X-Amz-Date ({amz_date[:8]})."
        )

    try:
        expires_seconds = int(params["X-Amz-Expires"])
        signed_at = datetime.strptime(amz_date, "%Y%m%dT%H%M%SZ").replace(tzinfo=timezone.utc)
    except ValueError:
        raise PresignedUrlError(message="Invalid X-Amz-Date or X-Amz-Expires value.") from None
    if expires_seconds < 1 or expires_seconds > MAX_PRESIGNED_EXPIRES:
        raise PresignedUrlError(
            message=f"X-Amz-Expires must be between 1 and {MAX_PRESIGNED_EXPIRES} seconds."
        )

    if now is None:
        now = datetime.now(timezone.utc)
    if now.timestamp() > signed_at.timestamp() + expires_seconds:
        raise ExpiredPresignedUrl()

    if access_key != credentials.access_key:
        raise SignatureMismatch()

    signed_headers = sorted(params["X-Amz-SignedHeaders"].split(";"))
    headers = {"host": _host_header(parts)}

    canonical_request = build_canonical_request(
        method=method.upper(),
        path=parts.path,
        query=parts.query,
        headers=headers,
        signed_headers=signed_headers,
    )
    scope = f"{credential_date}/{region}/{service}/{SCOPE_TERMINATOR}"
    string_to_sign = build_string_to_sign(amz_date, scope, canonical_request)
    signing_key = derive_signing_key(credentials.secret_key, credential_date, region, service)
    expected = hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    if not hmac.compare_digest(expected, params["X-Amz-Signature"]):
        logger.debug("Presigned signature mismatch for %s", parts.path)
        raise SignatureMismatch()

    return {
        "access_key": access_key,
        "region": region,
        "signed_at": int(signed_at.timestamp()),
        "expires": expires_seconds,
    }


def build_canonical_request(
    method: str,
    path: str,
    query: str,
    headers: dict[str, str],
    signed_headers: list[str],
) -> str:
    """Build the canonical request for query-string auth.

    ``X-Amz-Signature`` is excluded from the canonical query and the payload
    hash is always ``UNSIGNED-PAYLOAD``.
    """
    canonical_headers = "".join(f"{name}:{headers.get(name, '').strip()}\n" for name in signed_headers)
    return "\n".join([
        method,
        _uri_encode_path(path),
        _canonical_query_string(query),
        canonical_headers,
        ";".join(signed_headers),
        UNSIGNED_PAYLOAD,
    ])


def build_string_to_sign(timestamp: str, scope: str, canonical_request: str) -> str:
    canonical_hash = hashlib.sha256(canonical_request.encode("utf-8")).hexdigest()
    return f"{ALGORITHM}\n{timestamp}\n{scope}\n{canonical_hash}"


def derive_signing_key(secret_key: str, date: str, region: str, service: str) -> bytes:
    """Derive the SigV4 signing key via the HMAC-SHA256 chain.

    Args:
        secret_key: The secret access key.
        date: Date string (YYYYMMDD).
        region: Signing region.
        service: Service name.

    Returns:
        The 32-byte signing key.
    """
    k_date = hmac.new(
        (KEY_PREFIX + secret_key).encode("utf-8"),
        date.encode("utf-8"),
        hashlib.sha256,
    ).digest()
    k_region = hmac.new(k_date, region.encode("utf-8"), hashlib.sha256).digest()
    k_service = hmac.new(k_region, service.encode("utf-8"), hashlib.sha256).digest()
    return hmac.new(k_service, SCOPE_TERMINATOR.encode("utf-8"), hashlib.sha256).digest()


def _host_header(parts: urllib.parse.SplitResult) -> str:
    """Host header value as signed by clients: default ports are dropped."""
    host = parts.hostname or ""
    port = parts.port
    if port is None or (parts.scheme, port) in (("http", 80), ("https", 443)):
        return host
    return f"{host}:{port}"


def _uri_encode(s: str, encode_slash: bool = True) -> str:
    """S3-compatible URI encoding.

    Characters A-Z, a-z, 0-9, '-', '_', '.', '~' are not encoded.
    All other characters are percent-encoded with uppercase hex.
    """
    safe = "-_.~" if encode_slash else "-_.~/"
    return urllib.parse.quote(s, safe=safe)


def _uri_encode_path(path: str) -> str:
    """Decode then re-encode each path segment, preserving slashes."""
    if not path:
        return "/"
    segments = [_uri_encode(urllib.parse.unquote(seg), encode_slash=False) for seg in path.split("/")]
    result = "/".join(segments)
    if not result.startswith("/"):
        result = "/" + result
    return result


def _canonical_query_string(query: str) -> str:
    """Sort decoded parameters by name then value and re-encode them."""
    params: list[tuple[str, str]] = []
    for pair in query.split("&"):
        if not pair:
            continue
        name, _, value = pair.partition("=")
        decoded_name = urllib.parse.unquote_plus(name)
        if decoded_name == "X-Amz-Signature":
            continue
        params.append((decoded_name, urllib.parse.unquote_plus(value)))
    params.sort()
    return "&".join(f"{_uri_encode(n)}={_uri_encode(v)}" for n, v in params)
