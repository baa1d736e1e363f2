"""
logger.py
---------
Process logging for the migrator CLI and library.

Every module logs through a child of the "migrator" logger, so a host
application can silence or redirect the whole tool with one name. Console
output goes to stderr, keeping stdout free for the DDL and summaries that
``main.py`` prints; LOG_FILE adds a verbose file copy. A run's own event log
(``core.context.MigrationContext``) is separate and travels with the
report; ``level_for`` maps its info/warn/error levels onto this hierarchy
when entries are mirrored here.
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path

from config import CONFIG, get_log_level

_ROOT_LOGGER_NAME = "migrator"
_CONSOLE_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)s: %(message)s"
_FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_configured = False


def _configure_root_logger() -> None:
    """One-time setup of the root 'migrator' logger and its handlers."""
    global _configured
    if _configured:
        return
    _configured = True

    root = logging.getLogger(_ROOT_LOGGER_NAME)
    root.setLevel(get_log_level())

    # --- Console handler ---
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(get_log_level())
    console_handler.setFormatter(
        logging.Formatter(fmt=_CONSOLE_FORMAT, datefmt=_DATE_FORMAT)
    )
    root.addHandler(console_handler)

    # --- Optional file handler ---
    if CONFIG.migration.log_file:
        log_path = Path(CONFIG.migration.log_file)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path, encoding="utf-8")
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(
                logging.Formatter(fmt=_FILE_FORMAT, datefmt=_DATE_FORMAT)
            )
            root.addHandler(file_handler)
        except OSError as exc:
            root.warning("Could not create log file '%s': %s", log_path, exc)


_configure_root_logger()


def get_logger(name: str) -> logging.Logger:
    """
    Return a child logger scoped to the given name.

    Args:
        name: Typically ``__name__`` of the calling module.

    Returns:
        A :class:`logging.Logger` instance under the 'migrator' hierarchy.

    Example::

        log = get_logger(__name__)
        log.info("Writing %d rows into %s", count, table)
    """
    return logging.getLogger(f"{_ROOT_LOGGER_NAME}.{name}")


def level_for(name: str) -> int:
    """Map a run-log level name (``info``/``warn``/``error``) to a logging level."""
    return _LEVELS.get(name.lower(), logging.INFO)
