"""Configuration loading and Pydantic models for r2broker."""

from pathlib import Path
from typing import Annotated, Any, Literal, Union

import yaml
from pydantic import BaseModel, Field

_DEFAULT_ALLOWED_EXTENSIONS = [
    "zip", "rar", "7z", "gz", "tar", "tgz",
    "pdf", "epub", "mobi", "txt", "csv", "json",
    "doc", "docx", "xls", "xlsx", "ppt", "pptx", "odt", "ods",
    "jpg", "jpeg", "png", "gif", "webp", "svg", "psd", "ai",
    "mp3", "wav", "flac", "ogg", "m4a",
    "mp4", "mov", "avi", "mkv", "webm",
    "ttf", "otf", "woff", "woff2",
]


class DatabaseCredentials(BaseModel):
    """Credentials stored in the configuration itself.

    Values are normally ``v1::`` envelopes produced by the credential
    cipher; legacy plaintext values are accepted and passed through.
    """

    mode: Literal["database"] = "database"
    access_key_id: str = ""
    secret_access_key: str = ""


class EnvironmentCredentials(BaseModel):
    """Credentials read from deployment environment variables."""

    mode: Literal["environment"]
    access_key_env: str = "R2BROKER_ACCESS_KEY_ID"
    secret_key_env: str = "R2BROKER_SECRET_ACCESS_KEY"


CredentialSource = Annotated[
    Union[DatabaseCredentials, EnvironmentCredentials],
    Field(discriminator="mode"),
]


class StoreConfig(BaseModel):
    """Remote S3-compatible object store configuration."""

    endpoint: str = ""
    account_id: str = ""
    bucket_name: str = ""
    region: str = "auto"
    use_path_style: bool = False
    custom_domain: str = ""
    public_url_template: str = "https://{bucket}.r2.dev/{key}"
    timeout_seconds: float = Field(default=30.0, gt=0)
    credentials: CredentialSource = Field(default_factory=DatabaseCredentials)

    def resolved_endpoint(self) -> str:
        """Return the endpoint URL, deriving it from ``account_id`` if unset."""
        if self.endpoint:
            return self.endpoint
        if self.account_id:
            return f"https://{self.account_id}.r2.cloudflarestorage.com"
        return ""


class SecurityConfig(BaseModel):
    """Where the deployment secret used for key derivation comes from."""

    secret_env: str = "R2BROKER_SECRET"
    secret: str = ""


class DownloadConfig(BaseModel):
    """Download URL issuance settings."""

    url_expiration_hours: int = Field(default=24, ge=1, le=720)
    check_permissions: bool = True
    use_generic_download_name: bool = False
    generic_download_name: str = "Download"

    @property
    def url_expiration_seconds(self) -> int:
        return self.url_expiration_hours * 3600


class CacheConfig(BaseModel):
    """Listing cache (fast tier), snapshot tier and folder tree settings."""

    cache_dir: str = "./data/cache"
    list_ttl: int = Field(default=300, ge=0)
    folder_tree_ttl: int = Field(default=3600, ge=0)
    snapshot_path: str = "./data/snapshot.db"
    snapshot_lifetime: int = Field(default=300, ge=0)
    sync_max_keys: int = Field(default=10000, ge=1)
    search_limit: int = Field(default=50, ge=1)


class RateLimitConfig(BaseModel):
    """Fixed-window limits for mutating operations."""

    engine: Literal["memory", "sqlite"] = "memory"
    sqlite_path: str = "./data/ratelimit.db"
    scope: str = ""
    upload_limit: int = Field(default=20, ge=1)
    upload_window: int = Field(default=3600, ge=1)
    sync_limit: int = Field(default=10, ge=1)
    sync_window: int = Field(default=3600, ge=1)


class UploadConfig(BaseModel):
    """Upload validation settings."""

    max_size: int = Field(default=100 * 1024 * 1024, ge=1)
    allowed_extensions: list[str] = Field(
        default_factory=lambda: list(_DEFAULT_ALLOWED_EXTENSIONS)
    )


class LoggingConfig(BaseModel):
    """Log level and format."""

    level: str = "INFO"
    format: Literal["text", "json"] = "text"


class ObservabilityConfig(BaseModel):
    """Metrics toggle."""

    metrics: bool = True


class BrokerConfig(BaseModel):
    """Top-level r2broker configuration."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    download: DownloadConfig = Field(default_factory=DownloadConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    upload: UploadConfig = Field(default_factory=UploadConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def _parse_store(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the store section from YAML data.

    Handles the nested credentials section: store.credentials.mode selects
    between database-held (encrypted) and environment-held credentials.
    """
    if data is None:
        return {}
    result = {k: v for k, v in data.items() if k != "credentials"}
    creds = data.get("credentials")
    if isinstance(creds, dict):
        mode = creds.get("mode", "database")
        if mode == "environment":
            result["credentials"] = {
                "mode": "environment",
                "access_key_env": creds.get("access_key_env", "R2BROKER_ACCESS_KEY_ID"),
                "secret_key_env": creds.get("secret_key_env", "R2BROKER_SECRET_ACCESS_KEY"),
            }
        else:
            result["credentials"] = {
                "mode": "database",
                "access_key_id": str(creds.get("access_key_id", "") or ""),
                "secret_access_key": str(creds.get("secret_access_key", "") or ""),
            }
    return result


def _parse_cache(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the cache section from YAML data.

    Handles nested structure: cache.snapshot.path -> snapshot_path,
    cache.snapshot.lifetime -> snapshot_lifetime.
    """
    if data is None:
        return {}
    result = {k: v for k, v in data.items() if k != "snapshot"}
    snapshot = data.get("snapshot")
    if isinstance(snapshot, dict):
        if "path" in snapshot:
            result["snapshot_path"] = snapshot["path"]
        if "lifetime" in snapshot:
            result["snapshot_lifetime"] = snapshot["lifetime"]
        if "max_keys" in snapshot:
            result["sync_max_keys"] = snapshot["max_keys"]
    return result


def _parse_rate_limit(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the rate_limit section from YAML data.

    Handles nested structure: rate_limit.upload.{limit,window} and
    rate_limit.sync.{limit,window}.
    """
    if data is None:
        return {}
    result = {k: v for k, v in data.items() if k not in ("upload", "sync", "sqlite")}
    for op in ("upload", "sync"):
        section = data.get(op)
        if isinstance(section, dict):
            if "limit" in section:
                result[f"{op}_limit"] = section["limit"]
            if "window" in section:
                result[f"{op}_window"] = section["window"]
    sqlite_section = data.get("sqlite")
    if isinstance(sqlite_section, dict):
        result["sqlite_path"] = sqlite_section.get("path", "./data/ratelimit.db")
    return result


def _section(data: dict[str, Any] | None) -> dict[str, Any]:
    """Return a flat section as-is, or an empty dict when absent."""
    return dict(data) if isinstance(data, dict) else {}


def load_config(path: Path) -> BrokerConfig:
    """Load a BrokerConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A fully populated BrokerConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        pydantic.ValidationError: If a value is out of range.
    """
    with open(path, "r") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    return BrokerConfig(
        store=StoreConfig(**_parse_store(raw.get("store"))),
        security=SecurityConfig(**_section(raw.get("security"))),
        download=DownloadConfig(**_section(raw.get("download"))),
        cache=CacheConfig(**_parse_cache(raw.get("cache"))),
        rate_limit=RateLimitConfig(**_parse_rate_limit(raw.get("rate_limit"))),
        upload=UploadConfig(**_section(raw.get("upload"))),
        logging=LoggingConfig(**_section(raw.get("logging"))),
        observability=ObservabilityConfig(**_section(raw.get("observability"))),
    )
