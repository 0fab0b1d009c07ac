"""
logging_setup.py
================
Configures the root logger with a console handler and a rotating file
handler (1 MB, 2 backups).

Call :func:`setup_logging` once at startup, before the server or bridge
begins emitting records. Library modules only ever call
``logging.getLogger(__name__)``.
"""

import logging
from logging.handlers import RotatingFileHandler

from drivewatch import config


def setup_logging(level: int | str = config.LOG_LEVEL, log_file: str | None = config.LOG_FILE) -> None:
    """Apply a unified log format to console and (optionally) file output.

    Parameters
    ----------
    level : int or str
        Minimum severity level (e.g. ``logging.DEBUG`` or ``"INFO"``).
    log_file : str or None
        Path of the rotating log file. Empty or ``None`` disables it.
    """
    root = logging.getLogger()
    root.setLevel(level)

    fmt = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
    )

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)

    root.handlers.clear()
    root.addHandler(ch)

    if log_file:
        fh = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=2)
        fh.setFormatter(fmt)
        root.addHandler(fh)
