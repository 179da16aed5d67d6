"""Master key sources.

A key source turns a key identifier into raw master-key bytes. The plugin
calls ``fetch`` on every request and never caches the result, so rotation or
revocation at the custody service takes effect on the next call.

Implementations must be safe to share between concurrent request threads.
"""
from __future__ import annotations

import logging
from typing import Dict, Optional, Protocol

from google.api_core import exceptions as gapi_exceptions
from google.auth import exceptions as gauth_exceptions
from google.cloud import secretmanager
from keyring.errors import KeyringError

from kmsplugin.core.config import KEY_SOURCE_KEYRING, KEY_SOURCE_SECRET_MANAGER, PluginConfig
from kmsplugin.core.exceptions import ConfigurationError, KeySourceError
from .keystore import KEYRING_SERVICE, assess_keyring_backend, load_key

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 10.0


class KeySource(Protocol):
    def fetch(self, key_id: str) -> bytes:
        ...


class SecretManagerKeySource:
    """
    Reads the master key from a Google Cloud Secret Manager secret version.

    ``key_id`` is a full resource name, ``projects/*/secrets/*/versions/*``.
    Failures are not retried here; the caller (the API server) owns retry policy.
    """

    def __init__(self, client, timeout: float = DEFAULT_FETCH_TIMEOUT):
        self._client = client
        self._timeout = timeout

    @classmethod
    def from_credentials_file(cls, credentials_file: str, timeout: float = DEFAULT_FETCH_TIMEOUT) -> "SecretManagerKeySource":
        try:
            client = secretmanager.SecretManagerServiceClient.from_service_account_file(credentials_file)
        except (OSError, ValueError, gauth_exceptions.GoogleAuthError) as e:
            raise ConfigurationError(f"failed to init secret manager client: {e}") from e
        return cls(client, timeout=timeout)

    def fetch(self, key_id: str) -> bytes:
        try:
            response = self._client.access_secret_version(
                request={"name": key_id},
                retry=None,
                timeout=self._timeout,
            )
        except (gapi_exceptions.GoogleAPIError, gauth_exceptions.GoogleAuthError) as e:
            raise KeySourceError(f"failed to access secret version {key_id}: {e}") from e

        data = response.payload.data
        if not data:
            raise KeySourceError(f"secret version {key_id} has an empty payload")
        return data

    def close(self) -> None:
        transport = getattr(self._client, "transport", None)
        if transport is not None:
            transport.close()


class KeyringKeySource:
    """Development source: master keys kept in the local OS keystore."""

    def __init__(self, service: str = KEYRING_SERVICE):
        self._service = service
        secure, msg = assess_keyring_backend()
        if not secure:
            logger.warning("keyring key source is not suitable for production: %s", msg)

    def fetch(self, key_id: str) -> bytes:
        try:
            key = load_key(self._service, key_id)
        except KeyringError as e:
            raise KeySourceError(f"keyring lookup failed for {key_id}: {e}") from e
        if not key:
            raise KeySourceError(f"no usable key stored in keyring for {self._service}/{key_id}")
        return key


class StaticKeySource:
    """In-memory map of key id to key bytes, for tests and local experiments."""

    def __init__(self, keys: Optional[Dict[str, bytes]] = None):
        self._keys = dict(keys or {})

    def fetch(self, key_id: str) -> bytes:
        key = self._keys.get(key_id)
        if not key:
            raise KeySourceError(f"unknown key {key_id}")
        return bytes(key)


def build_key_source(config: PluginConfig) -> KeySource:
    """Construct the key source named by ``config.key_source``."""
    if config.key_source == KEY_SOURCE_SECRET_MANAGER:
        source = SecretManagerKeySource.from_credentials_file(config.credentials_file)
    elif config.key_source == KEY_SOURCE_KEYRING:
        source = KeyringKeySource()
    else:
        raise ConfigurationError(f"unsupported key source {config.key_source!r}")
    logger.info("Using %s key source for key %s", config.key_source, config.key_uri)
    return source
