"""
Logging setup shared by the CLI, headless and TUI front ends.
"""

import logging
import sys

from .config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str | None = None, logfile: str | None = None) -> logging.Logger:
    """Configure the ``swarmcast`` logger tree.

    Logs go to stdout unless *logfile* is given (the TUI owns the terminal,
    so it sends records to a file instead). Calling this twice is harmless.
    """
    level_name = (level or LOG_LEVEL).upper()
    numeric = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger("swarmcast")
    root.setLevel(numeric)

    if root.handlers:
        return root

    if logfile:
        handler: logging.Handler = logging.FileHandler(logfile, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    root.addHandler(handler)
    root.propagate = False
    return root
