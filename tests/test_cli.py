"""Tests for the r2broker CLI."""

import json
from pathlib import Path

import pytest
import yaml

from conftest import ACCESS_KEY, SECRET_KEY
from r2broker.cli import _succeeded, encrypt_credentials, main, parse_args, verify_url
from r2broker.config import load_config
from r2broker.crypto import CredentialCipher, is_encrypted
from r2broker.errors import PresignedUrlError
from r2broker.storage.client import ObjectStoreClient


class TestParseArgs:
    """parse_args()."""

    def test_defaults(self):
        args = parse_args(["sync"])
        assert args.config == Path("r2broker.yaml")
        assert args.log_level is None
        assert args.command == "sync"
        assert args.force is False

    def test_search_folder(self):
        args = parse_args(["--config", "x.yaml", "search", "report", "--folder", ""])
        assert args.config == Path("x.yaml")
        assert args.term == "report"
        assert args.folder == ""

    def test_search_any_folder(self):
        assert parse_args(["search", "report"]).folder is None

    def test_upload(self):
        args = parse_args(["upload", "a.zip", "--folder", "docs", "--actor", "ops"])
        assert args.path == Path("a.zip")
        assert args.folder == "docs"
        assert args.actor == "ops"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            parse_args([])

    def test_invalid_log_level(self):
        with pytest.raises(SystemExit):
            parse_args(["--log-level", "LOUD", "tree"])


class TestEncryptCredentials:
    """encrypt_credentials() rewrites the config in place."""

    def _write(self, tmp_path: Path, creds: dict) -> Path:
        path = tmp_path / "r2broker.yaml"
        path.write_text(yaml.safe_dump({"store": {"bucket_name": "downloads", "credentials": creds}}))
        return path

    def test_encrypts_plaintext(self, tmp_path):
        cipher = CredentialCipher("deploy-secret")
        path = self._write(
            tmp_path, {"mode": "database", "access_key_id": "AK", "secret_access_key": "SK"}
        )

        changed = encrypt_credentials(path, cipher)

        assert changed == ["access_key_id", "secret_access_key"]
        creds = yaml.safe_load(path.read_text())["store"]["credentials"]
        assert is_encrypted(creds["access_key_id"])
        assert cipher.decrypt(creds["access_key_id"]) == "AK"
        assert cipher.decrypt(creds["secret_access_key"]) == "SK"

    def test_idempotent(self, tmp_path):
        cipher = CredentialCipher("deploy-secret")
        path = self._write(tmp_path, {"access_key_id": "AK", "secret_access_key": ""})
        assert encrypt_credentials(path, cipher) == ["access_key_id"]
        before = path.read_text()
        assert encrypt_credentials(path, cipher) == []
        assert path.read_text() == before

    def test_environment_mode_untouched(self, tmp_path):
        path = self._write(tmp_path, {"mode": "environment"})
        assert encrypt_credentials(path, CredentialCipher("deploy-secret")) == []


class TestMain:
    """main() exit codes and output."""

    def test_missing_config(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(tmp_path / "absent.yaml"), "tree"])
        assert exc_info.value.code == 1

    def test_encrypt_command(self, tmp_path, capsys, monkeypatch):
        monkeypatch.setenv("R2BROKER_SECRET", "deploy-secret")
        path = tmp_path / "r2broker.yaml"
        path.write_text(yaml.safe_dump({
            "store": {"credentials": {"access_key_id": "AK", "secret_access_key": "SK"}},
        }))

        main(["--config", str(path), "encrypt-credentials"])

        output = json.loads(capsys.readouterr().out)
        assert output == {"encrypted": ["access_key_id", "secret_access_key"]}

    def test_unconfigured_store_fails(self, tmp_path, capsys):
        path = tmp_path / "r2broker.yaml"
        path.write_text(yaml.safe_dump({
            "store": {"bucket_name": "downloads"},
            "cache": {"cache_dir": str(tmp_path / "cache")},
            "observability": {"metrics": False},
        }))
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(path), "tree"])
        assert exc_info.value.code == 1
        output = json.loads(capsys.readouterr().out)
        assert output["error"] == "ConfigurationError"


class TestSucceeded:
    """_succeeded()."""

    def test_resolve(self):
        assert _succeeded("resolve", {"status": "granted"})
        assert not _succeeded("resolve", {"status": "denied"})

    def test_sync(self):
        assert _succeeded("sync", {"success": True})
        assert not _succeeded("sync", {"success": False})

    def test_tree(self):
        assert _succeeded("tree", {"tree": {}})


class TestVerify:
    """The verify command checks presigned URLs with the configured keys."""

    async def _signed_url(self, store_config, credentials, expires: int = 3600) -> str:
        client = ObjectStoreClient(store_config, credentials)
        await client.init()
        try:
            return await client.get_presigned_url("docs/a.zip", expiration_seconds=expires)
        finally:
            await client.close()

    def _config(self, tmp_path: Path, monkeypatch) -> Path:
        monkeypatch.setenv("R2BROKER_ACCESS_KEY_ID", ACCESS_KEY)
        monkeypatch.setenv("R2BROKER_SECRET_ACCESS_KEY", SECRET_KEY)
        path = tmp_path / "r2broker.yaml"
        path.write_text(yaml.safe_dump({
            "store": {
                "endpoint": "http://localhost:9000",
                "bucket_name": "downloads",
                "credentials": {"mode": "environment"},
            },
        }))
        return path

    def test_parse_args(self):
        args = parse_args(["verify", "https://example.com/a?x=1", "--method", "HEAD"])
        assert args.url == "https://example.com/a?x=1"
        assert args.method == "HEAD"

    async def test_valid_url(self, tmp_path, monkeypatch, capsys, store_config, credentials):
        path = self._config(tmp_path, monkeypatch)
        url = await self._signed_url(store_config, credentials)

        main(["--config", str(path), "verify", url])

        output = json.loads(capsys.readouterr().out)
        assert output["valid"] is True
        assert output["access_key"] == ACCESS_KEY
        assert output["expires"] == 3600

    async def test_tampered_url(self, tmp_path, monkeypatch, capsys, store_config, credentials):
        path = self._config(tmp_path, monkeypatch)
        url = await self._signed_url(store_config, credentials)

        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(path), "verify", url.replace("docs/a.zip", "docs/b.zip")])

        assert exc_info.value.code == 1
        assert json.loads(capsys.readouterr().out)["error"] == "SignatureDoesNotMatch"

    def test_verify_url_wrong_keys(self, tmp_path, monkeypatch):
        path = self._config(tmp_path, monkeypatch)
        monkeypatch.setenv("R2BROKER_SECRET_ACCESS_KEY", "other-secret")
        url = (
            "http://localhost:9000/downloads/a.zip?X-Amz-Algorithm=AWS4-HMAC-SHA256"
            "&X-Amz-Credential=SOMEONEELSE%2F20240101%2Fauto%2Fs3%2Faws4_request"
            "&X-Amz-Date=20240101T000000Z&X-Amz-Expires=60&X-Amz-SignedHeaders=host"
            "&X-Amz-Signature=" + "0" * 64
        )
        with pytest.raises(PresignedUrlError):
            verify_url(url, load_config(path))
