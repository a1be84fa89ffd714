"""Resolution of the configured credential source into usable keys."""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from r2broker.config import CredentialSource, DatabaseCredentials, EnvironmentCredentials
from r2broker.crypto import CredentialCipher
from r2broker.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    """Plain access/secret key pair for the object store client."""

    access_key: str
    secret_key: str = field(repr=False)


def resolve_credentials(
    source: CredentialSource,
    cipher: CredentialCipher,
    environ: Mapping[str, str] | None = None,
) -> Credentials:
    """Turn a credential source into a plain key pair.

    Database-held values are decrypted (legacy plaintext passes through);
    environment-held values are read verbatim. Missing values resolve to
    ``""``; the client rejects incomplete credentials at construction.
    """
    if isinstance(source, EnvironmentCredentials):
        env = os.environ if environ is None else environ
        logger.debug(
            "Using credentials from environment",
            extra={"context": {"variables": [source.access_key_env, source.secret_key_env]}},
        )
        return Credentials(
            access_key=env.get(source.access_key_env, ""),
            secret_key=env.get(source.secret_key_env, ""),
        )

    if not isinstance(source, DatabaseCredentials):
        raise ConfigurationError(f"Unknown credential source: {type(source).__name__}")
    return Credentials(
        access_key=cipher.decrypt(source.access_key_id),
        secret_key=cipher.decrypt(source.secret_access_key),
    )
