"""
Local gRPC server for the KMS plugin.

- Listens on a unix domain socket, or a Linux abstract socket when the
  configured path starts with "@" (no file on disk, nothing to clean up)
- Serves v1beta1.KeyManagementService through kmsplugin.network.service
- Each call runs on its own worker thread; shutdown drains in-flight calls

Lifecycle (one direction only, no restart in place):

    UNINITIALIZED -> INITIALIZED -> SERVING -> DRAINING -> STOPPED
"""

from __future__ import annotations

import logging
import os
import stat
import threading
from concurrent import futures
from enum import Enum
from typing import Optional

import grpc

from kmsplugin.core.config import PluginConfig, is_abstract_socket
from kmsplugin.core.exceptions import TransportError
from kmsplugin.security.keysource import KeySource, build_key_source
from .service import PluginService

logger = logging.getLogger(__name__)


class ServerState(Enum):
    UNINITIALIZED = 0
    INITIALIZED = 1
    SERVING = 2
    DRAINING = 3
    STOPPED = 4


def grpc_address(path: str) -> str:
    """gRPC target for a socket path: ``unix:/path`` or ``unix-abstract:name``."""
    if is_abstract_socket(path):
        return f"unix-abstract:{path[1:]}"
    return f"unix:{path}"


class UnixSocketListener:
    """The socket endpoint the gRPC server binds to."""

    def __init__(self, path: str):
        self.path = path
        self.port: Optional[int] = None

    @property
    def abstract(self) -> bool:
        return is_abstract_socket(self.path)

    @property
    def address(self) -> str:
        return grpc_address(self.path)

    def clean(self) -> None:
        """Remove a stale socket file left behind by a previous run."""
        if self.abstract:
            return
        try:
            mode = os.lstat(self.path).st_mode
        except FileNotFoundError:
            return
        except OSError as e:
            raise TransportError(f"failed to inspect socket path {self.path}: {e}") from e
        if stat.S_ISDIR(mode):
            raise TransportError(f"socket path {self.path} is a directory")
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("failed to delete the socket file, error: %s", e)
            raise TransportError(f"failed to delete socket file {self.path}: {e}") from e

    def bind(self, server: grpc.Server) -> int:
        try:
            port = server.add_insecure_port(self.address)
        except RuntimeError as e:
            raise TransportError(f"failed to bind {self.address}: {e}") from e
        # older grpcio releases report bind failure as port 0 instead of raising
        if not port:
            raise TransportError(f"failed to bind {self.address}")
        self.port = port
        return port

    def close(self) -> None:
        if self.abstract:
            return
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("could not remove socket file %s: %s", self.path, e)


class PluginServer:
    """
    Owns the plugin process lifecycle.

    ``listener`` and ``server`` are plain fields so their lifecycles can be
    inspected and tested on their own.
    """

    def __init__(self, config: PluginConfig, key_source: Optional[KeySource] = None):
        self.config = config
        self.key_source = key_source
        self.service: Optional[PluginService] = None
        self.listener: Optional[UnixSocketListener] = None
        self.server: Optional[grpc.Server] = None
        self.state = ServerState.UNINITIALIZED
        self._state_lock = threading.RLock()
        self._key_source_closed = False

    def _advance(self, target: ServerState) -> None:
        with self._state_lock:
            if target.value <= self.state.value:
                raise TransportError(
                    f"illegal lifecycle transition {self.state.name} -> {target.name}"
                )
            logger.debug("plugin server %s -> %s", self.state.name, target.name)
            self.state = target

    def init(self) -> "PluginServer":
        """Construct the key source client (if not injected) and the service."""
        if self.state is not ServerState.UNINITIALIZED:
            raise TransportError(f"init() called in state {self.state.name}")
        if self.key_source is None:
            self.key_source = build_key_source(self.config)
        self.service = PluginService(self.key_source, self.config.key_uri)
        self._advance(ServerState.INITIALIZED)
        return self

    def serve(self) -> "PluginServer":
        """Bind the socket and start accepting calls; returns without blocking."""
        if self.state is not ServerState.INITIALIZED:
            raise TransportError(f"serve() called in state {self.state.name}")

        self.listener = UnixSocketListener(self.config.unix_socket)
        self.server = grpc.server(
            futures.ThreadPoolExecutor(
                max_workers=self.config.max_workers,
                thread_name_prefix="kms-rpc",
            )
        )
        self.server.add_generic_rpc_handlers((self.service.rpc_handler(),))

        try:
            self.listener.clean()
            self.listener.bind(self.server)
            try:
                self.server.start()
            except RuntimeError as e:
                raise TransportError(f"failed to start server on {self.listener.address}: {e}") from e
        except TransportError:
            logger.error("Failed to start listener on %s", self.config.unix_socket)
            self.server.stop(None)
            self._close_key_source()
            self._advance(ServerState.STOPPED)
            raise

        self._advance(ServerState.SERVING)
        logger.info("Listening on unix domain socket: %s", self.config.unix_socket)
        return self

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the server terminates; returns False on timeout."""
        if self.server is None:
            return True
        # grpc reports True when the wait timed out
        return not self.server.wait_for_termination(timeout=timeout)

    def stop(self, grace: Optional[float] = None) -> None:
        """Stop accepting calls, drain in-flight ones for up to ``grace`` seconds, release resources."""
        with self._state_lock:
            if self.state in (ServerState.DRAINING, ServerState.STOPPED):
                return
            serving = self.state is ServerState.SERVING
            self._advance(ServerState.DRAINING if serving else ServerState.STOPPED)

        if serving:
            grace = self.config.shutdown_grace if grace is None else grace
            logger.info("Draining in-flight calls (grace %.1fs)", grace)
            self.server.stop(grace).wait()
            self.listener.close()

        self._close_key_source()
        if serving:
            self._advance(ServerState.STOPPED)
        logger.info("Plugin server stopped.")

    def _close_key_source(self) -> None:
        if self._key_source_closed:
            return
        self._key_source_closed = True
        close = getattr(self.key_source, "close", None)
        if callable(close):
            close()
