"""Error definitions for r2broker."""

from r2broker.sizes import format_size


class BrokerError(Exception):
    """Base error with a stable code and a human-readable message.

    Attributes:
        code: Short machine-readable error code (e.g. "ListFailed").
        message: Human-readable error description.
    """

    def __init__(self, code: str, message: str) -> None:
        """Initialize the error.

        Args:
            code: Error code.
            message: Error description.
        """
        super().__init__(message)
        self.code = code
        self.message = message


class ConfigurationError(BrokerError):
    """Required configuration (endpoint, keys, bucket) is missing or invalid."""

    def __init__(self, message: str) -> None:
        super().__init__(code="ConfigurationError", message=message)


class EncryptionUnavailable(BrokerError):
    """Credential encryption cannot be performed on this deployment."""

    def __init__(self, message: str = "Credential encryption is unavailable.") -> None:
        super().__init__(code="EncryptionUnavailable", message=message)


# -- Remote store failures -----------------------------------------------------


class StoreError(BrokerError):
    """A remote object store call failed.

    Attributes:
        operation: The store operation that failed (list, presign, ...).
        key: The object key or prefix involved, if any.
        cause: The underlying exception, if any.
    """

    code = "StoreError"

    def __init__(
        self,
        operation: str,
        key: str = "",
        cause: BaseException | None = None,
        message: str = "",
    ) -> None:
        if not message:
            message = f"Object store {operation} failed"
            if key:
                message += f" for '{key}'"
            if cause is not None:
                message += f": {cause}"
        super().__init__(code=type(self).code, message=message)
        self.operation = operation
        self.key = key
        self.cause = cause


class ListFailed(StoreError):
    """Listing objects from the remote store failed."""

    code = "ListFailed"

    def __init__(self, prefix: str = "", cause: BaseException | None = None) -> None:
        super().__init__(operation="list", key=prefix, cause=cause)


class PresignFailed(StoreError):
    """Generating a presigned URL failed."""

    code = "PresignFailed"

    def __init__(self, key: str = "", cause: BaseException | None = None) -> None:
        super().__init__(operation="presign", key=key, cause=cause)


class UploadFailed(StoreError):
    """Uploading an object failed."""

    code = "UploadFailed"

    def __init__(self, key: str = "", cause: BaseException | None = None) -> None:
        super().__init__(operation="upload", key=key, cause=cause)


class ExistsCheckFailed(StoreError):
    """A HEAD request against an object failed for a reason other than 404."""

    code = "ExistsCheckFailed"

    def __init__(self, key: str = "", cause: BaseException | None = None) -> None:
        super().__init__(operation="head", key=key, cause=cause)


class DeleteFailed(StoreError):
    """Deleting an object failed."""

    code = "DeleteFailed"

    def __init__(self, key: str = "", cause: BaseException | None = None) -> None:
        super().__init__(operation="delete", key=key, cause=cause)


# -- Validation failures -------------------------------------------------------


class ValidationError(BrokerError):
    """Input rejected before any remote call.

    Attributes:
        user_message: Message safe to show to the end user.
    """

    def __init__(self, code: str, user_message: str, detail: str = "") -> None:
        super().__init__(code=code, message=detail or user_message)
        self.user_message = user_message


class InvalidPointer(ValidationError):
    """A file pointer is missing a required attribute or has a bad value."""

    def __init__(self, detail: str) -> None:
        super().__init__(
            code="InvalidPointer",
            user_message="The download reference is not valid.",
            detail=detail,
        )


class DisallowedFileType(ValidationError):
    """The uploaded file's type is not on the allowlist."""

    def __init__(self, filename: str = "") -> None:
        super().__init__(
            code="DisallowedFileType",
            user_message="File type not allowed. Please upload a valid file.",
            detail=f"File type not allowed: {filename}" if filename else "",
        )


class FileTooLarge(ValidationError):
    """The uploaded file exceeds the configured maximum size."""

    def __init__(self, size: int, max_size: int) -> None:
        super().__init__(
            code="FileTooLarge",
            user_message=f"File too large. Maximum size: {format_size(max_size)}",
            detail=f"Upload of {size} bytes exceeds limit of {max_size} bytes",
        )
        self.size = size
        self.max_size = max_size


class InvalidObjectKey(ValidationError):
    """The object key is empty or too long."""

    def __init__(self, detail: str) -> None:
        super().__init__(
            code="InvalidObjectKey",
            user_message="The file name or folder is not valid.",
            detail=detail,
        )


# -- Presigned URL verification ------------------------------------------------


class PresignedUrlError(BrokerError):
    """A presigned URL did not pass local verification."""

    def __init__(self, code: str = "PresignedUrlError", message: str = "Invalid presigned URL.") -> None:
        super().__init__(code=code, message=message)


class SignatureMismatch(PresignedUrlError):
    """The recomputed signature does not match the one in the URL."""

    def __init__(
        self,
        message: str = "The request signature we calculated does not match the signature you provided.",
    ) -> None:
        super().__init__(code="SignatureDoesNotMatch", message=message)


class ExpiredPresignedUrl(PresignedUrlError):
    """The presigned URL is past its expiry."""

    def __init__(self, message: str = "Request has expired.") -> None:
        super().__init__(code="AccessDenied", message=message)
