"""Immutable runtime configuration for the KMS plugin.

A single ``PluginConfig`` is built once at startup (see ``kmsplugin.cli.main``)
and handed explicitly to the key source and the server. Nothing reads process
globals after that point.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

from .exceptions import ConfigurationError

DEFAULT_UNIX_SOCKET = "/var/run/k8splugin.sock"
DEFAULT_MAX_WORKERS = 10
DEFAULT_SHUTDOWN_GRACE = 30.0

KEY_SOURCE_SECRET_MANAGER = "secretmanager"
KEY_SOURCE_KEYRING = "keyring"
KEY_SOURCES = (KEY_SOURCE_SECRET_MANAGER, KEY_SOURCE_KEYRING)

# projects/*/secrets/*/versions/*
_KEY_URI_PATTERN = re.compile(r"^projects/[^/]+/secrets/[^/]+/versions/[^/]+$")


def is_abstract_socket(path: str) -> bool:
    """Return True if ``path`` names a Linux abstract socket (leading ``@``)."""
    return path.startswith("@")


@dataclass(frozen=True)
class PluginConfig:
    """Validated startup settings: where the key lives and where to listen."""

    key_uri: str
    credentials_file: str = ""
    unix_socket: str = DEFAULT_UNIX_SOCKET
    key_source: str = KEY_SOURCE_SECRET_MANAGER
    max_workers: int = DEFAULT_MAX_WORKERS
    shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE

    def validate(self) -> "PluginConfig":
        """Check the settings and return ``self``; raise ConfigurationError otherwise."""
        if not self.unix_socket:
            raise ConfigurationError("unix socket path must not be empty")

        if is_abstract_socket(self.unix_socket):
            if len(self.unix_socket) == 1:
                raise ConfigurationError("abstract socket name must follow the '@' prefix")
        else:
            socket_dir = Path(self.unix_socket).parent
            if not socket_dir.is_dir():
                raise ConfigurationError(
                    f"Directory {str(socket_dir)!r} portion of unix socket path "
                    f"{self.unix_socket!r} does not seem to exist"
                )

        if self.key_source not in KEY_SOURCES:
            raise ConfigurationError(
                f"unsupported key source {self.key_source!r} (expected one of {', '.join(KEY_SOURCES)})"
            )

        if not self.key_uri:
            raise ConfigurationError("key uri must not be empty")

        if self.key_source == KEY_SOURCE_SECRET_MANAGER:
            if not _KEY_URI_PATTERN.match(self.key_uri):
                raise ConfigurationError(
                    f"key uri {self.key_uri!r} must look like projects/*/secrets/*/versions/*"
                )
            if not self.credentials_file:
                raise ConfigurationError("credentials file is required for the secretmanager key source")
            if not os.path.isfile(self.credentials_file):
                raise ConfigurationError(f"credentials file {self.credentials_file!r} does not exist")

        if self.max_workers < 1:
            raise ConfigurationError("max workers must be at least 1")
        if self.shutdown_grace <= 0:
            raise ConfigurationError("shutdown grace must be a positive number of seconds")

        return self
