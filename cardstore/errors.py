"""
Exceptions and the CLI error log.

Write paths let ``sqlite3.Error`` propagate after rolling back so callers
see the real cause. ``search`` wraps storage failures in ``SearchError``
so request handlers get a generic failure instead of database details.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

ERROR_LOG_FILENAME = "cardstore-errors.log"


class CardStoreError(Exception):
    """Base class for cardstore errors."""


class StorageError(CardStoreError):
    """The embedded database rejected an operation."""


class SearchError(StorageError):
    """A search could not be completed."""

    def __init__(self, message: str = "Card search failed"):
        super().__init__(message)


class ConfigError(CardStoreError):
    """The store configuration is missing or invalid."""


def error_log_path(store_path: Optional[Union[str, Path]] = None) -> Path:
    """Error log inside the store: explicit path, else CARDSTORE_PATH, else ~/.cardstore."""
    if store_path is None:
        env = os.environ.get("CARDSTORE_PATH")
        store_path = Path(env) if env else Path.home() / ".cardstore"
    return Path(store_path).expanduser() / ERROR_LOG_FILENAME


def _format_entry(exc: BaseException, context: str) -> str:
    header = f"[{datetime.now(timezone.utc).isoformat()}]"
    if context:
        header += f" {context}"
    trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return f"\n{'=' * 60}\n{header}\n{trace}"


def log_exception(
    exc: BaseException,
    context: str = "",
    store_path: Optional[Union[str, Path]] = None,
) -> Path:
    """
    Append an exception's full traceback to the store's error log.

    The file is created owner-only (0600). Failure to write is ignored so
    error reporting never masks the original error.

    Returns:
        Path to the error log file
    """
    log_path = error_log_path(store_path)
    entry = _format_entry(exc, context)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as f:
            f.write(entry)
    except OSError:
        pass  # unwritable log; the caller still reports the error
    return log_path
