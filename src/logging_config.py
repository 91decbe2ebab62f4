from __future__ import annotations

import logging
import sys

from config import settings


def configure_logging(level: str | None = None) -> None:
    """Route all logging to stderr with a single handler.

    Library code only creates module loggers; the process that composes
    the pipeline calls this once.  Later calls only adjust the level.
    """
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())
    if root.handlers:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    root.addHandler(handler)
