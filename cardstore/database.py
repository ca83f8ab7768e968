"""
SQLite connection and schema management.

The card store keeps two persistent tables:

- ``cards``: one row per card, with the denormalized comma-joined
  ``topics`` field
- ``card_tags``: the normalized (card, tag) index used by tag filters

Connections run in autocommit mode; every mutation goes through
``transaction()``, which issues an explicit ``BEGIN IMMEDIATE`` so the
write lock is taken up front rather than upgraded mid-transaction.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union

from .types import FEATURE_FLAGS, TOKEN_COUNT_COLUMNS

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

CARDS_TABLE = "cards"
CARD_TAGS_TABLE = "card_tags"

# Every column of the cards table, in insert order
CARD_COLUMNS = (
    "id", "author", "name", "tagline", "description", "topics", "tokenCount",
    *TOKEN_COUNT_COLUMNS,
    "lastModified", "createdAt", "firstDownloadedAt",
    "nChats", "nMessages", "n_favorites", "starCount",
    "ratingsEnabled", "rating", "ratingCount", "ratings",
    "fullPath", "favorited", "language", "visibility",
    *FEATURE_FLAGS, "isFuzzed",
    "source", "sourceId", "sourcePath", "sourceUrl",
)

_CREATE_CARDS = """
    CREATE TABLE IF NOT EXISTS cards (
        id INTEGER PRIMARY KEY,
        author TEXT,
        name TEXT,
        tagline TEXT,
        description TEXT,
        topics TEXT,
        tokenCount INTEGER,
        tokenDescriptionCount INTEGER,
        tokenPersonalityCount INTEGER,
        tokenScenarioCount INTEGER,
        tokenMesExampleCount INTEGER,
        tokenFirstMessageCount INTEGER,
        tokenSystemPromptCount INTEGER,
        tokenPostHistoryCount INTEGER,
        lastModified TEXT,
        createdAt TEXT,
        firstDownloadedAt TEXT,
        nChats INTEGER,
        nMessages INTEGER,
        n_favorites INTEGER,
        starCount INTEGER,
        ratingsEnabled INTEGER,
        rating REAL,
        ratingCount INTEGER,
        ratings TEXT,
        fullPath TEXT,
        favorited INTEGER DEFAULT 0,
        language TEXT DEFAULT 'unknown',
        visibility TEXT DEFAULT 'unknown',
        hasAlternateGreetings INTEGER DEFAULT 0,
        hasLorebook INTEGER DEFAULT 0,
        hasEmbeddedLorebook INTEGER DEFAULT 0,
        hasLinkedLorebook INTEGER DEFAULT 0,
        hasExampleDialogues INTEGER DEFAULT 0,
        hasSystemPrompt INTEGER DEFAULT 0,
        hasGallery INTEGER DEFAULT 0,
        hasEmbeddedImages INTEGER DEFAULT 0,
        hasExpressions INTEGER DEFAULT 0,
        isFuzzed INTEGER DEFAULT 0,
        source TEXT DEFAULT 'chub',
        sourceId TEXT,
        sourcePath TEXT,
        sourceUrl TEXT
    )
"""

_CREATE_CARD_TAGS = """
    CREATE TABLE IF NOT EXISTS card_tags (
        cardId INTEGER NOT NULL,
        tag TEXT NOT NULL,
        normalizedTag TEXT NOT NULL,
        PRIMARY KEY (cardId, normalizedTag),
        FOREIGN KEY (cardId) REFERENCES cards(id) ON DELETE CASCADE
    )
"""

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_topics ON cards(topics)",
    "CREATE INDEX IF NOT EXISTS idx_author ON cards(author)",
    "CREATE INDEX IF NOT EXISTS idx_name ON cards(name)",
    "CREATE INDEX IF NOT EXISTS idx_language ON cards(language)",
    "CREATE INDEX IF NOT EXISTS idx_favorited ON cards(favorited)",
    "CREATE INDEX IF NOT EXISTS idx_visibility ON cards(visibility)",
    "CREATE INDEX IF NOT EXISTS idx_first_downloaded ON cards(firstDownloadedAt)",
    "CREATE INDEX IF NOT EXISTS idx_card_tags_normalized ON card_tags(normalizedTag)",
    "CREATE INDEX IF NOT EXISTS idx_card_tags_card ON card_tags(cardId)",
)

# Columns added after the first schema, with their definitions
_ADDED_COLUMNS = (
    *((flag, "INTEGER DEFAULT 0") for flag in FEATURE_FLAGS),
    ("isFuzzed", "INTEGER DEFAULT 0"),
    *((column, "INTEGER") for column in TOKEN_COUNT_COLUMNS),
    ("firstDownloadedAt", "TEXT"),
    ("source", "TEXT DEFAULT 'chub'"),
    ("sourceId", "TEXT"),
    ("sourcePath", "TEXT"),
    ("sourceUrl", "TEXT"),
)


def connect(db_path: Union[str, Path]) -> sqlite3.Connection:
    """
    Open a tuned connection to the card database.

    ``":memory:"`` is accepted for tests; any other path has its parent
    directory created.
    """
    in_memory = str(db_path) == ":memory:"
    if not in_memory:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    if not in_memory:
        conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA cache_size = -64000")
    conn.execute("PRAGMA temp_store = MEMORY")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    Run a block inside one write transaction.

    Commits on normal exit; rolls back and re-raises on any exception so
    no partial write is ever visible.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        # SQLite may already have rolled back on some errors
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


@contextmanager
def read_snapshot(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run several reads against one consistent snapshot of the database."""
    conn.execute("BEGIN DEFERRED")
    try:
        yield conn
    finally:
        if conn.in_transaction:
            conn.execute("COMMIT")


def table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}


def add_column_if_missing(conn: sqlite3.Connection, table: str, column: str, definition: str) -> bool:
    """Add a column to an existing table. Returns True if it was added."""
    if column in table_columns(conn, table):
        return False
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
    return True


def ensure_schema(conn: sqlite3.Connection) -> int:
    """
    Create or migrate the schema to SCHEMA_VERSION.

    Version 0 -> 1 creates the tables; 1 -> 2 adds the columns introduced
    after the first release and backfills ``source``. Databases created
    before versioning (user_version 0 but a populated ``cards`` table) go
    through the same path since every step is idempotent.

    Returns the schema version found before migrating.
    """
    version = conn.execute("PRAGMA user_version").fetchone()[0]
    if version >= SCHEMA_VERSION:
        return version

    logger.info("Migrating card database schema v%d -> v%d", version, SCHEMA_VERSION)
    with transaction(conn):
        conn.execute(_CREATE_CARDS)
        conn.execute(_CREATE_CARD_TAGS)
        added = [
            column for column, definition in _ADDED_COLUMNS
            if add_column_if_missing(conn, CARDS_TABLE, column, definition)
        ]
        if added:
            logger.info("Added cards columns: %s", ", ".join(added))
        for statement in _INDEXES:
            conn.execute(statement)
        conn.execute("UPDATE cards SET source = 'chub' WHERE source IS NULL OR source = ''")
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
    return version
