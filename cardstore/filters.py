"""
Search filter parameters.

``SearchFilters.from_params`` turns the free-form string parameters of a
listing request into typed filters, clamping paging values and dropping
anything it does not recognise.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from .sources import SOURCES
from .types import FEATURE_FLAGS

DEFAULT_LIMIT = 48
MAX_LIMIT = 200

_LEADING_INT_RE = re.compile(r"\s*([+-]?[0-9]+)")


def _parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    # Leading digits only: "20abc" -> 20
    match = _LEADING_INT_RE.match(str(value))
    return int(match.group(1)) if match else None


def _is_true(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true" if value is not None else False


def _text(value: Any) -> str:
    return "" if value is None else str(value)


@dataclass
class SearchFilters:
    """Everything a card listing can be filtered, sorted and paged by."""
    page: int = 1
    limit: int = DEFAULT_LIMIT
    query: str = ""
    search_type: str = "full"
    include: Any = ""
    exclude: Any = ""
    tag_match_mode: str = "or"
    sort: str = "new"
    language: Optional[str] = None
    favorite_filter: Optional[str] = None
    source: str = "all"
    min_tokens: Optional[int] = None
    flags: dict[str, bool] = field(default_factory=dict)
    allowed_ids: Optional[list[Any]] = None
    followed_only: bool = False

    @classmethod
    def from_params(
        cls,
        params: Mapping[str, Any],
        default_limit: int = DEFAULT_LIMIT,
        max_limit: int = MAX_LIMIT,
    ) -> "SearchFilters":
        """
        Parse request query-string parameters.

        Recognised keys: page, limit, query, type, include, exclude,
        tagMatchMode, sort, language, favorite, source, minTokens,
        followedOnly and the feature-flag names ('true' to enable).
        """
        page = _parse_int(params.get("page")) or 1
        raw_limit = _parse_int(params.get("limit"))
        limit = min(max(raw_limit, 1), max_limit) if raw_limit is not None else default_limit

        source = _text(params.get("source")) or "all"
        if source not in SOURCES:
            source = "all"

        min_tokens = _parse_int(params.get("minTokens"))
        if min_tokens is not None and min_tokens <= 0:
            min_tokens = None

        return cls(
            page=max(1, page),
            limit=limit,
            query=_text(params.get("query")),
            search_type=_text(params.get("type")) or "full",
            include=_text(params.get("include")),
            exclude=_text(params.get("exclude")),
            tag_match_mode=_text(params.get("tagMatchMode")) or "or",
            sort=_text(params.get("sort")) or "new",
            language=_text(params.get("language")) or None,
            favorite_filter=_text(params.get("favorite")) or None,
            source=source,
            min_tokens=min_tokens,
            flags={name: _is_true(params.get(name)) for name in FEATURE_FLAGS},
            followed_only=_is_true(params.get("followedOnly")),
        )

    @property
    def offset(self) -> int:
        return (max(1, self.page) - 1) * self.limit
