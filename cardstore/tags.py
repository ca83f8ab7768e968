"""
Tag normalization and alias expansion.
"""

from typing import Any, Iterable, Optional

from .aliases import AliasTable
from .fuzzy import FuzzyMatcher


def normalize_tag(value: Any) -> Optional[str]:
    """Index key for a tag: trimmed and lowercased, None when empty."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed.lower() if trimmed else None


def split_topics(topics: Any) -> list[str]:
    """Split the denormalized topics field into trimmed, non-empty tags."""
    if not topics:
        return []
    if isinstance(topics, (list, tuple)):
        return [t for t in topics if t]
    return [t.strip() for t in str(topics).split(",") if t.strip()]


def parse_tag_list(value: Any) -> list[str]:
    """User tag input (comma string or list) as trimmed, non-empty tags."""
    if not value:
        return []
    if isinstance(value, str):
        return split_topics(value)
    return [t.strip() for t in value if isinstance(t, str) and t.strip()]


def unique_normalized(tags: Iterable[Any]) -> dict[str, str]:
    """normalized -> display spelling, first spelling winning."""
    result: dict[str, str] = {}
    for raw in tags:
        normalized = normalize_tag(raw)
        if normalized and normalized not in result:
            result[normalized] = raw.strip()
    return result


class TagExpander:
    """
    Resolves a user tag to every spelling that should match it.

    Constructed once per process and handed to the query layer; lookups are
    pure given the alias table.
    """

    def __init__(self, aliases: Optional[AliasTable] = None):
        self.aliases = aliases if aliases is not None else AliasTable()
        self._fuzzy = FuzzyMatcher(self.aliases)

    def expand(self, tag: str) -> set[str]:
        """
        The input tag plus all variants of its alias group.

        Exact alias entries win; otherwise the closest group within the
        fuzzy threshold is used; otherwise the tag stands alone.
        """
        variants = {tag}
        normalized = tag.strip().lower()
        canonical = self.aliases.canonical_of(normalized)
        if canonical is None:
            canonical = self._fuzzy.best_match(normalized)
        if canonical is not None:
            variants.update(self.aliases.variants_of(canonical))
        return variants

    def expand_normalized(self, tag: str) -> set[str]:
        """expand() in index-key form (normalized, empties dropped)."""
        result = set()
        for variant in self.expand(tag):
            normalized = normalize_tag(variant)
            if normalized:
                result.add(normalized)
        return result
