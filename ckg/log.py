"""
Opt-in file logging for the ``ckg`` logger hierarchy.

Modules only ever call ``logging.getLogger(__name__)``; nothing is
configured at import time.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime


def setup_logger(log_dir: str = ".ckg/logs", level: int = logging.DEBUG) -> logging.Logger:
    """Attach a timestamped file handler to the ``ckg`` logger and return it."""
    os.makedirs(log_dir, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(log_dir, f"ckg_{timestamp}.log")

    logger = logging.getLogger("ckg")
    logger.setLevel(level)

    # Re-running setup must not stack handlers on the same file
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(log_file):
            return logger

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(level)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%H:%M:%S"
    ))
    logger.addHandler(fh)

    return logger
