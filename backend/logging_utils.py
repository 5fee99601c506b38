"""
Logging setup for the chat backend.

Every module logs through ``logging.getLogger(__name__)``; this module wires the root
logger to stdout once per process. ``TURN_LOG_LEVEL`` sets the level (default ``INFO``)
and ``TURN_LOG_FORMAT`` overrides the line format.
"""

import logging
import os
import sys

DEFAULT_FORMAT = os.environ.get(
    "TURN_LOG_FORMAT",
    "%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"
_CONFIGURED = False


def _resolve_level(name) -> int:
    if not name:
        return logging.INFO
    return getattr(logging, name.strip().upper(), logging.INFO)


def configure_logging(force: bool = False) -> None:
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    root_logger = logging.getLogger()
    if force:
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)

    level = _resolve_level(os.environ.get("TURN_LOG_LEVEL"))
    root_logger.setLevel(level)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=DEFAULT_FORMAT, datefmt=DEFAULT_DATEFMT))
    root_logger.addHandler(handler)

    # httpx logs every request line at INFO.
    logging.getLogger("httpx").setLevel(max(logging.WARNING, level))

    _CONFIGURED = True
