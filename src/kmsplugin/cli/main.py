"""
Process entry point for the KMS plugin.

Usage:
    kmsplugin --credentials /etc/kms/sa.json \
        --key-uri projects/p/secrets/kms-master/versions/1 \
        --unix-socket /var/run/k8splugin.sock

Exit status: 0 after a SIGINT/SIGTERM triggered drain, 1 on configuration,
key source initialization or listener errors, 2 for command line usage errors.
"""
from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import Optional

from kmsplugin.core.config import (
    DEFAULT_MAX_WORKERS,
    DEFAULT_SHUTDOWN_GRACE,
    DEFAULT_UNIX_SOCKET,
    KEY_SOURCE_SECRET_MANAGER,
    KEY_SOURCES,
    PluginConfig,
)
from kmsplugin.core.exceptions import ConfigurationError, KMSPluginError, TransportError
from kmsplugin.network.server import PluginServer
from .logging_config import configure_logging

logger = logging.getLogger(__name__)

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kmsplugin",
        description="Kubernetes KMS plugin backed by Google Cloud Secret Manager",
    )
    parser.add_argument(
        "--credentials",
        dest="credentials_file",
        default="",
        help="Path to GCP Secret Manager service account credentials JSON file",
    )
    parser.add_argument(
        "--key-uri",
        default="",
        help="Resource ID of the secret in the format projects/*/secrets/*/versions/*",
    )
    parser.add_argument(
        "--unix-socket",
        default=DEFAULT_UNIX_SOCKET,
        help="Full path to the unix socket used by the API server, or a Linux abstract socket name starting with @",
    )
    parser.add_argument("--key-source", choices=KEY_SOURCES, default=KEY_SOURCE_SECRET_MANAGER)
    parser.add_argument("--max-workers", type=int, default=DEFAULT_MAX_WORKERS)
    parser.add_argument(
        "--shutdown-grace",
        type=float,
        default=DEFAULT_SHUTDOWN_GRACE,
        help="Seconds to let in-flight calls finish after a stop signal",
    )
    parser.add_argument("--log-level", type=str.upper, choices=LOG_LEVELS, default="INFO")
    return parser


def config_from_args(args: argparse.Namespace) -> PluginConfig:
    return PluginConfig(
        key_uri=args.key_uri,
        credentials_file=args.credentials_file,
        unix_socket=args.unix_socket,
        key_source=args.key_source,
        max_workers=args.max_workers,
        shutdown_grace=args.shutdown_grace,
    )


def run(server: PluginServer, stop_event: Optional[threading.Event] = None) -> int:
    """Serve until a stop signal arrives, then drain. Returns the process exit status."""
    stop_event = stop_event or threading.Event()
    received = []

    def _on_signal(signum, frame):
        received.append(signum)
        stop_event.set()

    previous = {sig: signal.signal(sig, _on_signal) for sig in STOP_SIGNALS}
    try:
        try:
            server.serve()
        except TransportError as e:
            logger.error("kms-plugin listener failed: %s", e)
            return 1

        # short waits keep the main thread responsive to signals
        while not stop_event.wait(1.0):
            pass

        if received:
            logger.info("Captured %s, shutting down kms-plugin", signal.Signals(received[0]).name)
        else:
            logger.info("Stop requested, shutting down kms-plugin")
        return 0
    finally:
        server.stop()
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = config_from_args(args).validate()
    except ConfigurationError as e:
        logger.error("invalid configuration: %s", e)
        return 1
    logger.info("Communication between KUBE API and the KMS plugin will be via %r", config.unix_socket)

    server = PluginServer(config)
    try:
        server.init()
    except KMSPluginError as e:
        logger.error("failed to instantiate key source client: %s", e)
        return 1

    return run(server)
