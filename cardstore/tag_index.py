"""
Normalized tag index.

``card_tags`` holds one row per (card, normalized tag) and must agree with
each card's comma-joined ``topics`` field. Upserts keep it in sync row by
row; ``needs_rebuild()`` detects drift after bulk writes that bypassed it,
and ``rebuild()`` regenerates the whole table through a staging table so
the live index is only ever replaced in one short transaction.
"""

import logging
import sqlite3
import threading
from typing import Any, Iterable

from .database import CARD_TAGS_TABLE, transaction
from .types import RebuildCheck
from .tags import split_topics, unique_normalized

logger = logging.getLogger(__name__)

STAGING_TABLE = "card_tags_staging"
STAGED_TOPICS_TABLE = "card_tags_staged_topics"

# Rows per multi-value INSERT statement
INSERT_CHUNK_SIZE = 100

DEFAULT_BATCH_SIZE = 500

_TAGGED_FILTER = "topics IS NOT NULL AND TRIM(topics) <> ''"


def escape_like(value: str) -> str:
    """Escape LIKE wildcards for use with ``ESCAPE '\\'``."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class TagIndex:
    """
    Maintains and queries the ``card_tags`` table.

    The connection may be shared between threads, so every statement and
    transaction on it runs under ``lock``. Rebuilds on one connection are
    serialized because they share its TEMP staging table.
    """

    def __init__(self, conn: sqlite3.Connection, lock=None):
        self._conn = conn
        self._lock = lock or threading.RLock()
        self._rebuild_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def replace_tags(
        self,
        conn: sqlite3.Connection,
        card_id: int,
        tags: Iterable[Any],
        table: str = CARD_TAGS_TABLE,
    ) -> int:
        """
        Replace every index row of a card.

        Must run inside the caller's transaction. Tags are trimmed,
        lowercased and de-duplicated (first display spelling wins); an empty
        list leaves the card with no rows.

        Returns:
            Number of rows written
        """
        conn.execute(f"DELETE FROM {table} WHERE cardId = ?", (card_id,))
        unique = list(unique_normalized(tags or []).items())
        for start in range(0, len(unique), INSERT_CHUNK_SIZE):
            chunk = unique[start:start + INSERT_CHUNK_SIZE]
            placeholders = ", ".join("(?, ?, ?)" for _ in chunk)
            params: list[Any] = []
            for normalized, display in chunk:
                params.extend((card_id, display, normalized))
            conn.execute(
                f"INSERT OR REPLACE INTO {table} (cardId, tag, normalizedTag) VALUES {placeholders}",
                params,
            )
        return len(unique)

    def replace(self, card_id: int, tags: Iterable[Any]) -> int:
        """replace_tags() in its own transaction."""
        with self._lock, transaction(self._conn) as conn:
            return self.replace_tags(conn, card_id, tags)

    # -------------------------------------------------------------------------
    # Consistency
    # -------------------------------------------------------------------------

    def _counts(self) -> tuple[int, int]:
        with self._lock:
            tagged = self._conn.execute(
                f"SELECT COUNT(*) FROM cards WHERE {_TAGGED_FILTER}"
            ).fetchone()[0]
            indexed = self._conn.execute(
                f"SELECT COUNT(DISTINCT cardId) FROM {CARD_TAGS_TABLE}"
            ).fetchone()[0]
        return tagged or 0, indexed or 0

    def needs_rebuild(self) -> RebuildCheck:
        """
        Compare tagged cards against indexed cards.

        This is a count comparison: an index whose per-card tag sets are
        stale but whose card count matches is reported as consistent.
        """
        try:
            tagged, indexed = self._counts()
        except sqlite3.Error as e:
            logger.warning("card_tags consistency check failed: %s", e)
            return RebuildCheck(True, "consistency check failed")

        if tagged == 0:
            return RebuildCheck(False, "no tagged records", tagged, indexed)
        if indexed == 0:
            return RebuildCheck(True, "no indexed tags", tagged, indexed)
        if indexed != tagged:
            return RebuildCheck(
                True, f"count mismatch: indexed={indexed} tagged={tagged}", tagged, indexed
            )
        return RebuildCheck(False, "counts match", tagged, indexed)

    def rebuild(self, batch_size: int = DEFAULT_BATCH_SIZE) -> int:
        """
        Regenerate the whole index from ``cards.topics``.

        Tagged cards are processed in id order, ``batch_size`` per
        transaction, into a temporary staging table. Once every batch has
        succeeded the live table is emptied and refilled from staging in a
        single transaction, which also re-indexes any card whose topics
        changed after its batch was staged. The staging tables are dropped
        whatever happens; if any step fails the live table keeps its
        previous contents and the error propagates.

        Other writers on the same connection may run between batches; a
        second rebuild on the same connection waits for this one.

        Returns:
            Number of cards indexed
        """
        with self._rebuild_lock:
            return self._rebuild(max(1, int(batch_size)))

    def _rebuild(self, batch_size: int) -> int:
        conn = self._conn
        with self._lock:
            total = conn.execute(f"SELECT COUNT(*) FROM cards WHERE {_TAGGED_FILTER}").fetchone()[0]
            logger.info("Rebuilding card_tags (staged swap): %d cards in batches of %d", total, batch_size)
            self._drop_staging()
            conn.execute(f"""
                CREATE TEMP TABLE {STAGING_TABLE} (
                    cardId INTEGER NOT NULL,
                    tag TEXT NOT NULL,
                    normalizedTag TEXT NOT NULL,
                    PRIMARY KEY (cardId, normalizedTag)
                )
            """)
            # topics each staged card was indexed from
            conn.execute(f"""
                CREATE TEMP TABLE {STAGED_TOPICS_TABLE} (
                    cardId INTEGER PRIMARY KEY,
                    topics TEXT
                )
            """)
        try:
            processed = 0
            last_id = None
            while True:
                with self._lock, transaction(conn):
                    if last_id is None:
                        rows = conn.execute(
                            f"SELECT id, topics FROM cards WHERE {_TAGGED_FILTER} ORDER BY id LIMIT ?",
                            (batch_size,),
                        ).fetchall()
                    else:
                        rows = conn.execute(
                            f"SELECT id, topics FROM cards WHERE {_TAGGED_FILTER} AND id > ? "
                            "ORDER BY id LIMIT ?",
                            (last_id, batch_size),
                        ).fetchall()
                    for row in rows:
                        self.replace_tags(conn, row["id"], split_topics(row["topics"]), table=STAGING_TABLE)
                    conn.executemany(
                        f"INSERT OR REPLACE INTO temp.{STAGED_TOPICS_TABLE} (cardId, topics) VALUES (?, ?)",
                        [(row["id"], row["topics"]) for row in rows],
                    )
                if not rows:
                    break
                last_id = rows[-1]["id"]
                processed += len(rows)
                logger.info("Processed %d/%d cards", processed, total)

            logger.info("Swapping rebuilt card_tags snapshot into place")
            with self._lock, transaction(conn):
                conn.execute(f"DELETE FROM {CARD_TAGS_TABLE}")
                # Cards deleted while the rebuild ran are left out
                conn.execute(f"""
                    INSERT INTO {CARD_TAGS_TABLE} (cardId, tag, normalizedTag)
                    SELECT s.cardId, s.tag, s.normalizedTag FROM temp.{STAGING_TABLE} s
                    WHERE EXISTS (SELECT 1 FROM cards c WHERE c.id = s.cardId)
                """)
                # Cards written after their batch was staged are re-indexed
                # from their current topics
                changed = conn.execute(f"""
                    SELECT c.id, c.topics FROM cards c
                    LEFT JOIN temp.{STAGED_TOPICS_TABLE} t ON t.cardId = c.id
                    WHERE (t.cardId IS NULL AND c.topics IS NOT NULL AND TRIM(c.topics) <> '')
                       OR (t.cardId IS NOT NULL AND c.topics IS NOT t.topics)
                """).fetchall()
                for row in changed:
                    self.replace_tags(conn, row["id"], split_topics(row["topics"]))
            if changed:
                logger.info("Re-indexed %d cards changed during the rebuild", len(changed))
            logger.info("card_tags rebuild complete")
            return processed
        finally:
            try:
                with self._lock:
                    self._drop_staging()
            except sqlite3.Error as e:
                logger.warning("Failed to drop staging table %s: %s", STAGING_TABLE, e)

    def _drop_staging(self) -> None:
        self._conn.execute(f"DROP TABLE IF EXISTS temp.{STAGING_TABLE}")
        self._conn.execute(f"DROP TABLE IF EXISTS temp.{STAGED_TOPICS_TABLE}")

    def ensure_consistent(self, batch_size: int = DEFAULT_BATCH_SIZE) -> RebuildCheck:
        """Check the index and rebuild it when it has drifted (startup hook)."""
        check = self.needs_rebuild()
        if check.needs_rebuild:
            logger.info("Rebuilding card_tags table (%s)", check.reason)
            self.rebuild(batch_size)
        else:
            logger.info("card_tags table in sync (%s), skipping rebuild", check.reason)
        return check

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def tags_for(self, card_id: int) -> set[str]:
        """Normalized tags indexed for one card."""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT normalizedTag FROM {CARD_TAGS_TABLE} WHERE cardId = ?", (card_id,)
            ).fetchall()
        return {row["normalizedTag"] for row in rows}

    def snapshot(self) -> set[tuple[int, str, str]]:
        """Every (cardId, tag, normalizedTag) row."""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT cardId, tag, normalizedTag FROM {CARD_TAGS_TABLE}"
            ).fetchall()
        return {(row["cardId"], row["tag"], row["normalizedTag"]) for row in rows}

    def search_tags(self, query: str = "", limit: int = 20) -> list[str]:
        """
        Tag autocomplete.

        Prefix matches rank ahead of substring matches. When the index has
        no match (e.g. it is being rebuilt) the denormalized topics field is
        scanned instead.
        """
        needle = (query or "").strip().lower()
        with self._lock:
            if not needle:
                rows = self._conn.execute(
                    f"SELECT MIN(tag) AS tag FROM {CARD_TAGS_TABLE} GROUP BY normalizedTag "
                    "ORDER BY tag COLLATE NOCASE LIMIT ?",
                    (limit,),
                ).fetchall()
                return [row["tag"] for row in rows]

            escaped = escape_like(needle)
            rows = self._conn.execute(
                f"""
                SELECT MIN(tag) AS tag FROM {CARD_TAGS_TABLE}
                WHERE normalizedTag LIKE ? ESCAPE '\\'
                GROUP BY normalizedTag
                ORDER BY CASE WHEN normalizedTag LIKE ? ESCAPE '\\' THEN 0 ELSE 1 END, normalizedTag
                LIMIT ?
                """,
                (f"%{escaped}%", f"{escaped}%", limit),
            ).fetchall()
            if rows:
                return [row["tag"] for row in rows]
            topics = self._conn.execute(
                "SELECT topics FROM cards WHERE topics IS NOT NULL"
            ).fetchall()

        found: set[str] = set()
        for row in topics:
            for tag in split_topics(row["topics"]):
                if needle in tag.lower():
                    found.add(tag)
        return sorted(found, key=str.casefold)[:limit]

    def random_tags(self, count: int = 10) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT MIN(tag) AS tag FROM {CARD_TAGS_TABLE} GROUP BY normalizedTag "
                "ORDER BY RANDOM() LIMIT ?",
                (count,),
            ).fetchall()
        return [row["tag"] for row in rows]
