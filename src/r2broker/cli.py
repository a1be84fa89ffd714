"""CLI entry point for r2broker.

Operator commands for the download broker. Every command prints JSON on
stdout and exits with status 1 on failure.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import yaml

from r2broker.broker import AllowAll, DownloadBroker, Requester, create_broker
from r2broker.config import BrokerConfig, load_config
from r2broker.credentials import resolve_credentials
from r2broker.crypto import CredentialCipher
from r2broker.errors import BrokerError
from r2broker.logging_config import configure_logging
from r2broker.sigv4 import verify_presigned_url

logger = logging.getLogger("r2broker")

_CREDENTIAL_FIELDS = ("access_key_id", "secret_access_key")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        prog="r2broker",
        description="r2broker - signed download URLs for S3-compatible stores",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("r2broker.yaml"),
        help="Path to YAML configuration file (default: r2broker.yaml)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config, default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        default=None,
        choices=["text", "json"],
        help="Log format: 'text' (human-readable) or 'json' (structured)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser(
        "encrypt-credentials",
        help="Encrypt plaintext store credentials in the config file in place",
    )

    sync_parser = subparsers.add_parser("sync", help="Reconcile the snapshot with the bucket")
    sync_parser.add_argument("--force", action="store_true", help="Sync even if the snapshot is fresh")

    subparsers.add_parser("tree", help="Print the folder tree")

    search_parser = subparsers.add_parser("search", help="Search the snapshot by file name")
    search_parser.add_argument("term", help="Substring to match against file names")
    search_parser.add_argument(
        "--folder", default=None,
        help="Exact folder path to search in (\"\" for the root; default: all folders)",
    )

    resolve_parser = subparsers.add_parser("resolve", help="Resolve a file pointer to a URL")
    resolve_parser.add_argument("pointer", help='Pointer text, e.g. [cloudflare_r2 object="a.zip"]')
    resolve_parser.add_argument(
        "--privileged", action="store_true", help="Show error detail in the output"
    )

    upload_parser = subparsers.add_parser("upload", help="Upload a local file")
    upload_parser.add_argument("path", type=Path, help="Local file to upload")
    upload_parser.add_argument("--folder", default="", help="Destination folder in the bucket")
    upload_parser.add_argument("--actor", default="cli", help="Actor id used for rate limiting")

    verify_parser = subparsers.add_parser(
        "verify", help="Check a presigned URL against the configured credentials"
    )
    verify_parser.add_argument("url", help="Presigned URL to verify")
    verify_parser.add_argument("--method", default="GET", help="HTTP method the URL was signed for")

    return parser.parse_args(argv)


def encrypt_credentials(config_path: Path, cipher: CredentialCipher) -> list[str]:
    """Rewrite the store credential fields of a YAML config through the cipher.

    Returns:
        The names of the fields that changed.
    """
    with open(config_path) as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    creds = raw.get("store", {}).get("credentials")
    if not isinstance(creds, dict) or creds.get("mode", "database") != "database":
        return []

    changed = []
    for name in _CREDENTIAL_FIELDS:
        value = str(creds.get(name, "") or "")
        stored = cipher.sanitize_for_storage(value)
        if stored != value:
            creds[name] = stored
            changed.append(name)

    if changed:
        with open(config_path, "w") as fh:
            yaml.safe_dump(raw, fh, sort_keys=False)
    return changed


def verify_url(url: str, config: BrokerConfig, method: str = "GET") -> dict[str, Any]:
    """Verify a presigned URL with the configured store credentials.

    Raises:
        PresignedUrlError: If the URL is malformed, expired or tampered with.
    """
    cipher = CredentialCipher.from_config(config.security)
    credentials = resolve_credentials(config.store.credentials, cipher)
    info = verify_presigned_url(url, credentials, method=method)
    return {"valid": True, **info}


async def _run(args: argparse.Namespace, config: BrokerConfig) -> dict[str, Any]:
    broker: DownloadBroker = await create_broker(config, AllowAll())
    try:
        if args.command == "sync":
            return (await broker.sync_r2_files(force=args.force)).to_dict()
        if args.command == "tree":
            return {"tree": await broker.get_folder_tree()}
        if args.command == "search":
            records = await broker.search_files(args.term, args.folder)
            return {"results": [r.to_dict() for r in records]}
        if args.command == "resolve":
            outcome = await broker.resolve_download(
                args.pointer, Requester("cli", privileged=args.privileged)
            )
            return outcome.to_dict()
        if args.command == "upload":
            outcome = await broker.upload_file(
                args.actor, args.path.name, args.path, folder_path=args.folder
            )
            return outcome.to_dict()
        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await broker.close()


def _succeeded(command: str, result: dict[str, Any]) -> bool:
    if command == "resolve":
        return result.get("status") == "granted"
    return bool(result.get("success", True))


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the r2broker CLI.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].
    """
    args = parse_args(argv)

    logging.basicConfig(level=logging.INFO, stream=sys.stderr)

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        logger.error("Config file not found: %s", args.config)
        sys.exit(1)
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        sys.exit(1)

    if args.log_level is not None:
        config.logging.level = args.log_level
    if args.log_format is not None:
        config.logging.format = args.log_format
    configure_logging(level=config.logging.level, fmt=config.logging.format)

    try:
        if args.command == "encrypt-credentials":
            cipher = CredentialCipher.from_config(config.security)
            result: dict[str, Any] = {"encrypted": encrypt_credentials(args.config, cipher)}
        elif args.command == "verify":
            result = verify_url(args.url, config, method=args.method)
        else:
            result = asyncio.run(_run(args, config))
    except BrokerError as exc:
        print(json.dumps({"error": exc.code, "message": exc.message}))
        sys.exit(1)

    print(json.dumps(result, indent=2, default=str))
    if not _succeeded(args.command, result):
        sys.exit(1)


if __name__ == "__main__":
    main()
