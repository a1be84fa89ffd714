"""Authenticated encryption of stored credentials.

Credentials are sealed with AES-256-GCM under a key derived (HKDF-SHA256)
from a deployment-wide secret. The key itself is never persisted.

Envelope format::

    v1::base64(nonce[12] || tag[16] || ciphertext)

Decryption fails closed: anything that is not a valid envelope for the
current key comes back unchanged instead of raising.
"""

import base64
import binascii
import hashlib
import logging
import os
import re
from collections.abc import Mapping

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from r2broker.config import SecurityConfig
from r2broker.errors import EncryptionUnavailable

logger = logging.getLogger(__name__)

VERSION_TAG = "v1::"
KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16

# Fixed per-project salt and purpose binding for the HKDF derivation.
_KDF_SALT = hashlib.sha256(b"r2broker_encryption_v1").digest()
_KDF_INFO = b"r2broker-object-store-credentials"

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")


def derive_key(deployment_secret: str | bytes) -> bytes:
    """Derive the 32-byte credential key from the deployment secret.

    Deterministic for a given secret (HKDF extract-then-expand with a fixed
    salt and info string).

    Raises:
        EncryptionUnavailable: If the secret is empty.
    """
    material = (
        deployment_secret.encode("utf-8")
        if isinstance(deployment_secret, str)
        else deployment_secret
    )
    if not material:
        raise EncryptionUnavailable("No deployment secret is configured for credential encryption.")
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=_KDF_SALT,
        info=_KDF_INFO,
    )
    return hkdf.derive(material)


def is_encrypted(value: str) -> bool:
    """Return True if ``value`` carries the current envelope version tag."""
    return value.startswith(VERSION_TAG)


class CredentialCipher:
    """Encrypts and decrypts credential strings for storage.

    Attributes:
        _secret: The deployment secret; the derived key is computed on first
            use and held only in memory.
    """

    def __init__(self, deployment_secret: str | bytes) -> None:
        self._secret = deployment_secret
        self._key: bytes | None = None

    @classmethod
    def from_config(
        cls, config: SecurityConfig, environ: Mapping[str, str] | None = None
    ) -> "CredentialCipher":
        """Build a cipher from the security config.

        An explicit ``secret`` wins; otherwise the environment variable named
        by ``secret_env`` is read.
        """
        env = os.environ if environ is None else environ
        secret = config.secret or env.get(config.secret_env, "")
        return cls(secret)

    def _get_key(self) -> bytes:
        if self._key is None:
            self._key = derive_key(self._secret)
        return self._key

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a credential.

        Empty or whitespace-only input returns ``""``, the marker for "no
        credential configured".

        Raises:
            EncryptionUnavailable: If no secret is configured or the crypto
                backend does not support AES-GCM.
        """
        if not plaintext.strip():
            return ""

        key = self._get_key()
        nonce = os.urandom(NONCE_LENGTH)
        try:
            sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
        except UnsupportedAlgorithm as exc:
            logger.error("AES-GCM is not available in the crypto backend")
            raise EncryptionUnavailable("AES-256-GCM is not supported by the crypto backend.") from exc

        # AESGCM appends the tag; the envelope stores it ahead of the ciphertext.
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        envelope = VERSION_TAG + base64.b64encode(nonce + tag + ciphertext).decode("ascii")
        logger.debug("Credential encrypted successfully")
        return envelope

    def decrypt(self, value: str) -> str:
        """Decrypt a stored credential, failing closed.

        * empty / whitespace-only -> ``""``
        * no version tag -> returned unchanged (legacy plaintext)
        * bad base64, truncated envelope, wrong key, tampered data ->
          the original ``value`` unchanged
        """
        if not value.strip():
            return ""

        if not is_encrypted(value):
            logger.debug("Credential is not encrypted (plain text)")
            return value

        try:
            data = base64.b64decode(value[len(VERSION_TAG):], validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Failed to decode encrypted credential")
            return value

        if len(data) < NONCE_LENGTH + TAG_LENGTH:
            logger.warning("Encrypted credential data is malformed")
            return value

        nonce = data[:NONCE_LENGTH]
        tag = data[NONCE_LENGTH:NONCE_LENGTH + TAG_LENGTH]
        ciphertext = data[NONCE_LENGTH + TAG_LENGTH:]

        try:
            plaintext = AESGCM(self._get_key()).decrypt(nonce, ciphertext + tag, None)
        except EncryptionUnavailable as exc:
            logger.error("Cannot decrypt credential: %s", exc.message)
            return value
        except InvalidTag:
            logger.error("Failed to decrypt credential (authentication failed)")
            return value
        except UnsupportedAlgorithm:
            logger.error("AES-GCM is not available in the crypto backend")
            return value

        try:
            result = plaintext.decode("utf-8")
        except UnicodeDecodeError:
            logger.error("Decrypted credential is not valid UTF-8")
            return value

        logger.debug("Credential decrypted successfully")
        return result

    def is_encrypted(self, value: str) -> bool:
        return is_encrypted(value)

    def sanitize_for_storage(self, value: str) -> str:
        """Prepare a submitted credential for persistence.

        Trims and strips control characters, never double-encrypts an
        existing envelope, and falls back to storing the plaintext (logged at
        error level) if encryption is unavailable.
        """
        value = _CONTROL_CHARS_RE.sub("", value).strip()

        if is_encrypted(value):
            return value

        if not value:
            return ""

        try:
            return self.encrypt(value)
        except EncryptionUnavailable as exc:
            logger.error(
                "Failed to encrypt credential during save; storing plaintext",
                extra={"context": {"reason": exc.message}},
            )
            return value
