"""Logging setup for drivers embedding slabstruct."""

from __future__ import annotations

import logging
import sys
from typing import Optional, TextIO

LOGGER_NAME = "slabstruct"


def configure_logging(verbosity: int = 0, stream: Optional[TextIO] = None) -> logging.Logger:
    """Set up the ``slabstruct`` logger.

    Parameters
    ----------
    verbosity:
        0 → WARNING, 1 → INFO, 2+ → DEBUG.
    stream:
        Destination of log records; ``sys.stderr`` by default so that
        reports written to stdout stay clean.
    """
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)-5.5s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    root = logging.getLogger(LOGGER_NAME)
    root.setLevel(level)
    for old in list(root.handlers):
        if getattr(old, "_slabstruct", False):
            root.removeHandler(old)
    handler._slabstruct = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    return root
