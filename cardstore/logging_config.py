"""
Logging setup for the cardstore CLI and embedding applications.

Library modules only create named loggers under ``cardstore``; handlers
are attached here.
"""

import logging
import os
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPS_LOG_FILENAME = "cardstore-ops.log"
OPS_LOG_MAX_BYTES = 1_000_000
OPS_LOG_BACKUPS = 3

PACKAGE_LOGGER = "cardstore"


def configure_quiet_mode(quiet: bool = True):
    """
    Keep console output to warnings and errors.

    Args:
        quiet: If True, raise the package logger to WARNING and silence
            Python warnings. If False, leave logging untouched.
    """
    if not quiet:
        return
    warnings.filterwarnings("ignore")
    logging.getLogger(PACKAGE_LOGGER).setLevel(logging.WARNING)


def _has_stderr_handler(logger: logging.Logger) -> bool:
    return any(
        isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
        for h in logger.handlers
    )


def enable_debug_mode():
    """Send DEBUG output from every logger to stderr."""
    warnings.filterwarnings("default")

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    if not _has_stderr_handler(root):
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(logging.DEBUG)
        console.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S",
        ))
        root.addHandler(console)

    logging.getLogger(PACKAGE_LOGGER).setLevel(logging.DEBUG)


def configure_from_env():
    """Debug mode when CARDSTORE_VERBOSE=1, quiet mode otherwise."""
    if os.environ.get("CARDSTORE_VERBOSE") == "1":
        enable_debug_mode()
    else:
        configure_quiet_mode(quiet=True)


def configure_ops_log(store_path) -> logging.Handler:
    """
    Attach the persistent operations log of a store.

    Migrations, tag-index rebuilds and deletes are logged at INFO to
    ``<store>/cardstore-ops.log`` (rotating) even when the console is
    quiet. Calling it again for the same store reuses the existing
    handler.
    """
    log_path = (Path(store_path) / OPS_LOG_FILENAME).resolve()
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for existing in package_logger.handlers:
        if isinstance(existing, RotatingFileHandler) and Path(existing.baseFilename) == log_path:
            return existing

    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path), maxBytes=OPS_LOG_MAX_BYTES, backupCount=OPS_LOG_BACKUPS,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s", datefmt="%Y-%m-%d %H:%M:%S",
    ))
    package_logger.addHandler(handler)
    # The file must see INFO even when the console is held at WARNING
    if package_logger.level == logging.NOTSET or package_logger.level > logging.INFO:
        package_logger.setLevel(logging.INFO)
    return handler


def remove_ops_log(handler: logging.Handler) -> None:
    """Detach and close a handler returned by configure_ops_log()."""
    logging.getLogger(PACKAGE_LOGGER).removeHandler(handler)
    handler.close()
