"""
Chainable construction of card listing queries.

A ``QueryBuilder`` collects filters, a sort order and paging, then emits a
page query and a count query that share the same WHERE clause and
parameter order::

    built = (QueryBuilder(expander)
             .full_text("vampire")
             .include_tags(["elf", "warrior"], mode="and")
             .exclude_tags(["nsfw"])
             .sort("engagement_desc")
             .paginate(page=2, limit=48)
             .build())

Every filter method ignores empty input so callers can pass request
parameters straight through.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from .predicates import (
    Equals,
    Flag,
    InList,
    NotFlag,
    NumericCompare,
    Predicate,
    SqliteCompiler,
    TagExists,
    TagNotExists,
    TextMatch,
)
from .tags import TagExpander, parse_tag_list
from .types import EPOCH_TIMESTAMP, FEATURE_FLAGS

logger = logging.getLogger(__name__)

FULL_TEXT_COLUMNS = ("name", "description", "tagline", "topics", "author")

SEARCH_TYPES = ("full", "title", "author", "tag")
TAG_MATCH_MODES = ("or", "and")
FAVORITE_FILTERS = ("fav", "not_fav", "shadowban", "deleted")

DEFAULT_SORT = "new"

# ---------------------------------------------------------------------------
# Sort expressions
# ---------------------------------------------------------------------------

_LAST_ACTIVITY = f"COALESCE(lastModified, createdAt, '{EPOCH_TIMESTAMP}')"
_ACTIVITY_DAYS = f"(julianday('now') - julianday({_LAST_ACTIVITY}))"
_ACTIVITY_AGE = f"MAX(1.0, {_ACTIVITY_DAYS})"
_CREATED_AGE = f"MAX(1.0, julianday('now') - julianday(COALESCE(createdAt, '{EPOCH_TIMESTAMP}')))"

_FRESHNESS_BONUS = (
    f"(CASE WHEN {_ACTIVITY_DAYS} <= 3 THEN 25.0"
    f" WHEN {_ACTIVITY_DAYS} <= 7 THEN 15.0"
    f" WHEN {_ACTIVITY_DAYS} <= 14 THEN 8.0"
    " ELSE 0.0 END)"
)


def _num(column: str) -> str:
    return f"CAST(COALESCE({column}, 0) AS REAL)"


_RATING_CONTRIBUTION = f"(MAX(0.0, {_num('rating')} - 3.0) * {_num('ratingCount')} * 0.2)"

OVERALL_RATING_EXPR = f"({_num('starCount')} * 1.0 + {_num('n_favorites')} * 2.0)"
TRENDING_EXPR = f"({OVERALL_RATING_EXPR} / {_CREATED_AGE})"
ENGAGEMENT_EXPR = (
    f"(({_num('nChats')} * 1.5) + ({_num('nMessages')} * 0.1)"
    f" + ({_num('n_favorites')} * 2.0) + ({_num('starCount')} * 0.5)"
    f" + {_RATING_CONTRIBUTION} + {_FRESHNESS_BONUS})"
)
FRESH_ENGAGEMENT_EXPR = f"({ENGAGEMENT_EXPR} / {_ACTIVITY_AGE})"

# name -> (expression, direction); every order gets an id tiebreaker
SORT_ORDERS: dict[str, tuple[str, str]] = {
    "new": ("lastModified", "DESC"),
    "old": ("lastModified", "ASC"),
    "create_new": ("createdAt", "DESC"),
    "create_old": ("createdAt", "ASC"),
    "recently_added": ("firstDownloadedAt", "DESC"),
    "oldest_added": ("firstDownloadedAt", "ASC"),
    "tokens_desc": ("tokenCount", "DESC"),
    "tokens_asc": ("tokenCount", "ASC"),
    "most_stars_desc": ("starCount", "DESC"),
    "most_stars_asc": ("starCount", "ASC"),
    "most_favs_desc": ("n_favorites", "DESC"),
    "most_favs_asc": ("n_favorites", "ASC"),
    "most_msgs_desc": ("nMessages", "DESC"),
    "most_msgs_asc": ("nMessages", "ASC"),
    "most_chats_desc": ("nChats", "DESC"),
    "most_chats_asc": ("nChats", "ASC"),
    "overall_rating_desc": (OVERALL_RATING_EXPR, "DESC"),
    "overall_rating_asc": (OVERALL_RATING_EXPR, "ASC"),
    "trending_desc": (TRENDING_EXPR, "DESC"),
    "trending_asc": (TRENDING_EXPR, "ASC"),
    "engagement_desc": (ENGAGEMENT_EXPR, "DESC"),
    "engagement_asc": (ENGAGEMENT_EXPR, "ASC"),
    "fresh_engagement_desc": (FRESH_ENGAGEMENT_EXPR, "DESC"),
    "fresh_engagement_asc": (FRESH_ENGAGEMENT_EXPR, "ASC"),
}


def order_by_clause(sort_key: Optional[str]) -> str:
    """ORDER BY body for a named sort; unknown names fall back to 'new'."""
    expression, direction = SORT_ORDERS.get(sort_key or DEFAULT_SORT, SORT_ORDERS[DEFAULT_SORT])
    return f"{expression} {direction}, id {direction}"


def _coerce_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    return int(text) if text.isascii() and text.isdigit() else None


@dataclass
class BuiltQuery:
    """Page and count statements sharing one WHERE clause."""
    sql: str
    params: list[Any]
    count_sql: str
    count_params: list[Any]
    is_empty: bool = False
    order_by: str = field(default="", repr=False)


class QueryBuilder:
    """
    Accumulates card filters and renders them to SQL.

    Tag filters resolve user tags through the injected ``TagExpander``,
    once per distinct tag, and test membership against the ``card_tags``
    index.
    """

    def __init__(
        self,
        expander: Optional[TagExpander] = None,
        compiler: Optional[SqliteCompiler] = None,
    ):
        self.expander = expander or TagExpander()
        self.compiler = compiler or SqliteCompiler()
        self.reset()

    def reset(self) -> "QueryBuilder":
        self._predicates: list[Predicate] = []
        self._include: list[str] = []
        self._exclude: list[str] = []
        self._tag_mode = "or"
        self._short_circuit = False
        self._sort_key = DEFAULT_SORT
        self._limit: Optional[int] = None
        self._offset: Optional[int] = None
        return self

    @property
    def is_empty(self) -> bool:
        """True when a filter guarantees zero results (empty allow-list)."""
        return self._short_circuit

    # -------------------------------------------------------------------------
    # Text
    # -------------------------------------------------------------------------

    def full_text(self, query: Optional[str]) -> "QueryBuilder":
        if query and query.strip():
            self._predicates.append(TextMatch(FULL_TEXT_COLUMNS, query))
        return self

    def title_search(self, query: Optional[str]) -> "QueryBuilder":
        if query and query.strip():
            self._predicates.append(TextMatch(("name",), query))
        return self

    def author_search(self, query: Optional[str]) -> "QueryBuilder":
        if query and query.strip():
            self._predicates.append(TextMatch(("author",), query))
        return self

    def search(self, query: Optional[str], search_type: str = "full") -> "QueryBuilder":
        """
        Dispatch a free-text query by search type.

        ``tag`` treats the query as a comma-separated tag list and merges it
        into the included tags.
        """
        if search_type == "tag":
            return self._add_include(parse_tag_list(query))
        if search_type == "title":
            return self.title_search(query)
        if search_type == "author":
            return self.author_search(query)
        return self.full_text(query)

    # -------------------------------------------------------------------------
    # Tags
    # -------------------------------------------------------------------------

    def _add_include(self, tags: list[str]) -> "QueryBuilder":
        for tag in tags:
            if tag not in self._include:
                self._include.append(tag)
        return self

    def match_mode(self, mode: Optional[str]) -> "QueryBuilder":
        """Set how included tags combine: 'or' (default) or 'and'."""
        self._tag_mode = "and" if mode == "and" else "or"
        return self

    def include_tags(self, tags: Any, mode: Optional[str] = None) -> "QueryBuilder":
        """
        Require tags (comma string or list).

        ``or``: the card needs any variant of any tag. ``and``: every tag
        must be matched, each by any of its own variants. Tags added through
        ``search(..., "tag")`` share the same mode.
        """
        if mode is not None:
            self.match_mode(mode)
        return self._add_include(parse_tag_list(tags))

    def exclude_tags(self, tags: Any) -> "QueryBuilder":
        """Drop cards carrying any variant of any of the given tags."""
        for tag in parse_tag_list(tags):
            if tag not in self._exclude:
                self._exclude.append(tag)
        return self

    def _variant_groups(self, tags: list[str]) -> list[tuple[str, ...]]:
        groups = []
        for tag in tags:
            variants = self.expander.expand_normalized(tag)
            if variants:
                groups.append(tuple(sorted(variants)))
        return groups

    def _tag_predicates(self) -> list[Predicate]:
        predicates: list[Predicate] = []
        include_groups = self._variant_groups(self._include)
        if include_groups:
            if self._tag_mode == "and":
                predicates.extend(TagExists(group) for group in include_groups)
            else:
                flattened = sorted({v for group in include_groups for v in group})
                predicates.append(TagExists(tuple(flattened)))
        predicates.extend(TagNotExists(group) for group in self._variant_groups(self._exclude))
        return predicates

    # -------------------------------------------------------------------------
    # Scalar filters
    # -------------------------------------------------------------------------

    def where(self, column: str, value: Any, op: str = "=") -> "QueryBuilder":
        if value is None or value == "":
            return self
        if op == "=":
            self._predicates.append(Equals(column, value))
        else:
            self._predicates.append(NumericCompare(column, op, value))
        return self

    def min_tokens(self, value: Any) -> "QueryBuilder":
        if isinstance(value, (int, float)) and not isinstance(value, bool) \
                and math.isfinite(value) and value > 0:
            self._predicates.append(NumericCompare("tokenCount", ">=", value))
        return self

    def language(self, code: Optional[str]) -> "QueryBuilder":
        return self.where("language", code)

    def source(self, name: Optional[str]) -> "QueryBuilder":
        if name and name != "all":
            self._predicates.append(Equals("source", name))
        return self

    def favorite_filter(self, value: Optional[str]) -> "QueryBuilder":
        """fav / not_fav on the favorite flag; shadowban / deleted on visibility."""
        if value == "fav":
            self._predicates.append(Flag("favorited"))
        elif value == "not_fav":
            self._predicates.append(NotFlag("favorited"))
        elif value in ("shadowban", "deleted"):
            self._predicates.append(Equals("visibility", value))
        return self

    def feature_flag(self, name: str, enabled: bool) -> "QueryBuilder":
        if name not in FEATURE_FLAGS:
            raise ValueError(f"Unknown feature flag: {name!r}")
        if enabled:
            self._predicates.append(Flag(name))
        return self

    def feature_flags(self, **flags: bool) -> "QueryBuilder":
        for name, enabled in flags.items():
            self.feature_flag(name, enabled)
        return self

    def allowed_ids(self, ids: Optional[Iterable[Any]]) -> "QueryBuilder":
        """
        Restrict to an id allow-list.

        None means no restriction. Non-numeric entries are dropped; if
        nothing remains the query matches no cards.
        """
        if ids is None:
            return self
        id_list = []
        for value in ids:
            coerced = _coerce_id(value)
            if coerced is not None and coerced not in id_list:
                id_list.append(coerced)
        if not id_list:
            self._short_circuit = True
        else:
            self._predicates.append(InList("id", tuple(id_list)))
        return self

    def followed_creators(self, names: Optional[Iterable[str]]) -> "QueryBuilder":
        """
        Restrict to cards by the given authors (case-insensitive).

        None means no restriction; a list with no usable names matches no
        cards.
        """
        if names is None:
            return self
        authors = []
        for name in names:
            lowered = (name or "").strip().lower()
            if lowered and lowered not in authors:
                authors.append(lowered)
        if not authors:
            self._short_circuit = True
        else:
            self._predicates.append(InList("author", tuple(authors), lowercase=True))
        return self

    # -------------------------------------------------------------------------
    # Ordering and paging
    # -------------------------------------------------------------------------

    def sort(self, sort_key: Optional[str]) -> "QueryBuilder":
        if sort_key not in SORT_ORDERS:
            if sort_key:
                logger.debug("Unknown sort %r, using %r", sort_key, DEFAULT_SORT)
            sort_key = DEFAULT_SORT
        self._sort_key = sort_key
        return self

    def limit(self, value: int) -> "QueryBuilder":
        self._limit = int(value)
        return self

    def offset(self, value: int) -> "QueryBuilder":
        self._offset = int(value)
        return self

    def paginate(self, page: int, limit: int) -> "QueryBuilder":
        page = max(1, int(page))
        self._limit = int(limit)
        self._offset = (page - 1) * self._limit
        return self

    # -------------------------------------------------------------------------
    # Output
    # -------------------------------------------------------------------------

    def predicates(self) -> list[Predicate]:
        """All predicates in WHERE order: tags first, then scalar filters."""
        return self._tag_predicates() + list(self._predicates)

    def build(self, base_query: str = "SELECT * FROM cards") -> BuiltQuery:
        where, where_params = self.compiler.compile_all(self.predicates())
        order_by = order_by_clause(self._sort_key)

        sql = f"{base_query}{where} ORDER BY {order_by}"
        params = list(where_params)
        if self._limit is not None:
            sql += " LIMIT ?"
            params.append(self._limit)
            if self._offset is not None:
                sql += " OFFSET ?"
                params.append(self._offset)
        elif self._offset is not None:
            sql += " LIMIT -1 OFFSET ?"
            params.append(self._offset)

        count_sql = f"SELECT COUNT(*) AS count FROM {self.compiler.table}{where}"
        logger.debug("Sort %r -> ORDER BY %s", self._sort_key, order_by)
        return BuiltQuery(
            sql=sql,
            params=params,
            count_sql=count_sql,
            count_params=list(where_params),
            is_empty=self._short_circuit,
            order_by=order_by,
        )
