"""Lightweight logging setup for the plugin process."""

import logging
import sys


def configure_logging(level: int | str = logging.INFO) -> None:
    # Configure root logger once; the API server host usually collects stderr.
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logging.basicConfig(
        level=level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
