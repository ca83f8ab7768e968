"""
Card catalog repository.

The repository is the only writer of the ``cards`` table and keeps the
``card_tags`` index in step with it: every upsert writes the card row and
its index rows in one transaction. Reads go through ``QueryBuilder`` so
listings, counts and tag filters share one code path.

Producers (scrapers, importers) call ``upsert()`` and ``delete()``;
consumers call ``search()``; maintenance code calls ``needs_rebuild()`` and
``rebuild_tag_index()``.
"""

import dataclasses
import logging
import math
import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Union

from .aliases import AliasTable
from .config import CatalogConfig
from .database import CARD_COLUMNS, connect, ensure_schema, read_snapshot, transaction
from .errors import SearchError
from .filters import SearchFilters
from .language import detect_language, language_name
from .query_builder import QueryBuilder
from .sources import resolve_source_url, versioned_image_path
from .tag_index import DEFAULT_BATCH_SIZE, TagIndex
from .tags import TagExpander, split_topics
from .types import (
    FEATURE_FLAGS,
    TOKEN_COUNT_COLUMNS,
    CardRecord,
    CardView,
    RebuildCheck,
    SearchPage,
    ToggleResult,
    date_part,
    to_db_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

# Bound parameters per id lookup statement
_ID_CHUNK_SIZE = 500

_UPSERT_SQL = (
    f"INSERT INTO cards ({', '.join(CARD_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in CARD_COLUMNS)}) "
    "ON CONFLICT(id) DO UPDATE SET "
    + ", ".join(f"{c} = excluded.{c}" for c in CARD_COLUMNS if c != "id")
)


class CatalogRepository:
    """
    SQLite-backed card catalog with alias-aware tag search.

    Args:
        db_path: Database file (or ":memory:")
        expander: Tag expander shared by every query; defaults to one
            without aliases (exact tag matching)
        static_dir: Directory holding card images, for versioned paths
        followed_creators: Authors matched by the followed-only filter
        rebuild_batch_size: Cards per transaction during index rebuilds
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        expander: Optional[TagExpander] = None,
        static_dir: Optional[Union[str, Path]] = None,
        followed_creators: Optional[Iterable[str]] = None,
        rebuild_batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self._db_path = db_path
        self.expander = expander or TagExpander()
        self.static_dir = static_dir
        self.followed_creators = list(followed_creators or [])
        self.rebuild_batch_size = rebuild_batch_size
        # One connection shared by every thread using this repository
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = connect(db_path)
        ensure_schema(self._conn)
        self.tag_index = TagIndex(self._conn, lock=self._lock)

    @classmethod
    def from_config(cls, config: CatalogConfig, ensure_index: bool = False) -> "CatalogRepository":
        """
        Open the store described by a config, loading its alias file.

        With ``ensure_index`` the tag index is checked and rebuilt if it
        has drifted before the repository is returned.
        """
        aliases = AliasTable.load(config.aliases_path)
        repo = cls(
            config.database_path,
            expander=TagExpander(aliases),
            static_dir=config.static_path,
            followed_creators=config.followed_creators,
            rebuild_batch_size=config.rebuild_batch_size,
        )
        if ensure_index:
            repo.ensure_tag_index()
        return repo

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def upsert(self, record: Union[CardRecord, Mapping[str, Any]]) -> CardRecord:
        """
        Insert or fully replace a card and its tag index rows.

        On update the stored favorite flag and first-seen time are kept.
        Author, language and source URL are derived when not supplied. The
        card row and its tag rows are written in one transaction; a failure
        in either rolls back both. A ``CardRecord`` passed in is not
        modified.

        Returns:
            The record as stored (with derived fields filled in)
        """
        if isinstance(record, CardRecord):
            record = dataclasses.replace(record, token_counts=dict(record.token_counts))
        else:
            record = CardRecord.from_mapping(record)

        if isinstance(record.topics, (list, tuple)):
            topics = ",".join(t for t in record.topics if isinstance(t, str))
        else:
            topics = record.topics or ""
        # Indexed from the stored string so a rebuild reproduces the same rows
        tags = split_topics(topics)

        if not record.author and record.fullPath:
            record.author = record.fullPath.split("/")[0]
        if not record.language:
            record.language = detect_language(f"{record.description or ''} {record.tagline or ''}")
        record.sourceId = record.sourceId or str(record.id)
        record.sourcePath = record.sourcePath or record.fullPath or ""
        record.sourceUrl = resolve_source_url(
            source=record.source or "chub",
            source_url=record.sourceUrl,
            source_path=record.sourcePath,
            source_id=record.sourceId,
            full_path=record.fullPath,
        )

        with self._lock, transaction(self._conn) as conn:
            existing = conn.execute(
                "SELECT favorited, firstDownloadedAt FROM cards WHERE id = ?", (record.id,)
            ).fetchone()
            if existing is not None:
                favorited = 1 if existing["favorited"] else 0
                first_seen = existing["firstDownloadedAt"] or utc_now()
            else:
                favorited = 1 if record.favorited else 0
                first_seen = utc_now()

            values = self._column_values(record, topics, favorited, first_seen)
            conn.execute(_UPSERT_SQL, [values[c] for c in CARD_COLUMNS])
            self.tag_index.replace_tags(conn, record.id, tags)

        record.favorited = bool(favorited)
        logger.debug(
            "Upserted card %s: stars=%s favs=%s tags=%d",
            record.id, record.starCount, record.n_favorites, len(tags),
        )
        return record

    def _column_values(self, record: CardRecord, topics: str, favorited: int, first_seen: str) -> dict[str, Any]:
        values: dict[str, Any] = {
            "id": record.id,
            "author": record.author or "",
            "name": record.name or "",
            "tagline": record.tagline or "",
            "description": record.description or "",
            "topics": topics,
            "tokenCount": record.nTokens or 0,
            "lastModified": to_db_timestamp(record.lastActivityAt),
            "createdAt": to_db_timestamp(record.createdAt),
            "firstDownloadedAt": first_seen,
            "nChats": record.nChats or 0,
            "nMessages": record.nMessages or 0,
            "n_favorites": record.n_favorites or 0,
            "starCount": record.starCount or 0,
            "ratingsEnabled": 1 if record.ratingsEnabled else 0,
            "rating": record.rating or 0.0,
            "ratingCount": record.ratingCount or 0,
            "ratings": record.ratings or "{}",
            "fullPath": record.fullPath or "",
            "favorited": favorited,
            "language": record.language,
            "visibility": record.visibility or "unknown",
            "isFuzzed": 1 if record.isFuzzed else 0,
            "source": record.source or "chub",
            "sourceId": record.sourceId,
            "sourcePath": record.sourcePath,
            "sourceUrl": record.sourceUrl,
        }
        for column in TOKEN_COUNT_COLUMNS:
            values[column] = record.token_counts.get(column)
        for flag in FEATURE_FLAGS:
            values[flag] = 1 if getattr(record, flag) else 0
        return values

    def toggle_favorite(self, card_id: int) -> ToggleResult:
        """Flip a card's favorite flag."""
        with self._lock, transaction(self._conn) as conn:
            row = conn.execute("SELECT favorited FROM cards WHERE id = ?", (card_id,)).fetchone()
            if row is None:
                return ToggleResult(False, message="Card not found")
            new_status = 0 if row["favorited"] else 1
            conn.execute("UPDATE cards SET favorited = ? WHERE id = ?", (new_status, card_id))
        return ToggleResult(True, favorited=new_status)

    def delete(self, card_id: int) -> bool:
        """
        Delete a card and its tag index rows.

        Returns:
            True if the card existed
        """
        with self._lock, transaction(self._conn) as conn:
            conn.execute("DELETE FROM card_tags WHERE cardId = ?", (card_id,))
            cursor = conn.execute("DELETE FROM cards WHERE id = ?", (card_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted card %s", card_id)
        return deleted

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def query_builder(self) -> QueryBuilder:
        """A fresh builder wired to this repository's tag expander."""
        return QueryBuilder(self.expander)

    def build_query(self, filters: SearchFilters) -> QueryBuilder:
        """Translate search filters into a configured builder."""
        limit = max(1, int(filters.limit))
        builder = (
            self.query_builder()
            .match_mode(filters.tag_match_mode)
            .include_tags(filters.include)
            .search(filters.query, filters.search_type)
            .exclude_tags(filters.exclude)
            .min_tokens(filters.min_tokens)
            .language(filters.language)
            .source(filters.source)
            .favorite_filter(filters.favorite_filter)
            .feature_flags(**{k: v for k, v in filters.flags.items() if k in FEATURE_FLAGS})
            .allowed_ids(filters.allowed_ids)
            .sort(filters.sort)
            .paginate(filters.page, limit)
        )
        if filters.followed_only:
            builder.followed_creators(self.followed_creators)
        return builder

    def search(self, filters: Optional[SearchFilters] = None) -> SearchPage:
        """
        One page of cards matching the filters, plus the total match count.

        Both statements run against the same snapshot. An empty allow-list
        (or followed-only with no followed creators) returns an empty page
        without querying.

        Raises:
            SearchError: If the database fails; details are logged
        """
        filters = filters or SearchFilters()
        page = max(1, int(filters.page))
        limit = max(1, int(filters.limit))
        built = self.build_query(filters).build()
        if built.is_empty:
            return SearchPage.empty(page, limit)

        try:
            with self._lock, read_snapshot(self._conn) as conn:
                total = conn.execute(built.count_sql, built.count_params).fetchone()["count"]
                rows = conn.execute(built.sql, built.params).fetchall()
        except sqlite3.Error as e:
            logger.error("Card search failed: %s", e)
            raise SearchError() from e

        return SearchPage(
            records=[self._row_to_view(row) for row in rows],
            total_count=total,
            page=page,
            total_pages=math.ceil(total / limit),
            limit=limit,
        )

    def get(self, card_id: int) -> Optional[CardView]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM cards WHERE id = ?", (card_id,)).fetchone()
        return self._row_to_view(row) if row is not None else None

    def get_by_ids_ordered(self, ids: Iterable[Any]) -> list[CardView]:
        """
        Cards for the given ids, in the order given.

        Ids are compared as ASCII digit strings; anything else, repeated or
        unknown is dropped.
        """
        ordered: list[str] = []
        seen: set[str] = set()
        for value in ids or []:
            text = str(value).strip()
            if text.isascii() and text.isdigit() and text not in seen:
                seen.add(text)
                ordered.append(text)
        if not ordered:
            return []

        rows: dict[str, sqlite3.Row] = {}
        for start in range(0, len(ordered), _ID_CHUNK_SIZE):
            chunk = [int(i) for i in ordered[start:start + _ID_CHUNK_SIZE]]
            placeholders = ", ".join("?" for _ in chunk)
            with self._lock:
                found = self._conn.execute(
                    f"SELECT * FROM cards WHERE id IN ({placeholders})", chunk
                ).fetchall()
            for row in found:
                rows[str(row["id"])] = row
        return [self._row_to_view(rows[i]) for i in ordered if i in rows]

    def get_all_languages(self) -> dict[str, str]:
        """Languages present in the catalog: code -> display name."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT DISTINCT language FROM cards WHERE language IS NOT NULL ORDER BY language"
            ).fetchall()
        return {row["language"]: language_name(row["language"]) for row in rows}

    def count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM cards").fetchone()[0]

    def _row_to_view(self, row: sqlite3.Row) -> CardView:
        card_id = str(row["id"])
        topics = list(dict.fromkeys(row["topics"].split(","))) if row["topics"] else []
        image_path, image_version = versioned_image_path(self.static_dir, card_id)
        source = row["source"] or "chub"
        source_path = row["sourcePath"] or row["fullPath"] or ""
        return CardView(
            id=card_id,
            id_prefix=card_id[:2],
            author=row["author"] or "",
            name=row["name"] or "",
            tagline=row["tagline"] or "",
            description=row["description"] or "",
            topics=topics,
            imagePath=image_path,
            imageVersion=image_version,
            tokenCount=row["tokenCount"] or 0,
            lastModified=date_part(row["lastModified"]),
            createdAt=date_part(row["createdAt"]),
            nChats=row["nChats"] or 0,
            nMessages=row["nMessages"] or 0,
            n_favorites=row["n_favorites"] or 0,
            starCount=row["starCount"] or 0,
            rating=row["rating"] or 0,
            ratingCount=row["ratingCount"] or 0,
            ratings=row["ratings"] or "{}",
            fullPath=row["fullPath"] or "",
            language=row["language"] or "unknown",
            favorited=row["favorited"] or 0,
            visibility=row["visibility"] or "unknown",
            source=source,
            sourceId=row["sourceId"] or "",
            sourcePath=source_path,
            sourceUrl=resolve_source_url(
                source=source,
                source_url=row["sourceUrl"] or "",
                source_path=source_path,
                source_id=row["sourceId"] or "",
                full_path=row["fullPath"] or "",
            ),
            flags={flag: bool(row[flag]) for flag in FEATURE_FLAGS},
        )

    # -------------------------------------------------------------------------
    # Tags
    # -------------------------------------------------------------------------

    def expand_tag(self, tag: str) -> set[str]:
        return self.expander.expand(tag)

    def alias_snapshot(self) -> dict[str, list[str]]:
        return self.expander.aliases.snapshot()

    def search_tags(self, query: str = "", limit: int = 20) -> list[str]:
        return self.tag_index.search_tags(query, limit)

    def random_tags(self, count: int = 10) -> list[str]:
        return self.tag_index.random_tags(count)

    def needs_rebuild(self) -> RebuildCheck:
        return self.tag_index.needs_rebuild()

    def rebuild_tag_index(self) -> int:
        """Staged rebuild of the tag index; returns cards indexed."""
        return self.tag_index.rebuild(self.rebuild_batch_size)

    def ensure_tag_index(self) -> RebuildCheck:
        """Startup hook: rebuild the tag index only if it has drifted."""
        return self.tag_index.ensure_consistent(self.rebuild_batch_size)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
