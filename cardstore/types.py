"""
Data types for the card catalog.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Mapping, Optional


# Placeholder timestamp for records that arrive without dates
EPOCH_TIMESTAMP = "1970-01-01 00:00:00"

# Boolean feature flags carried on every card, in column order
FEATURE_FLAGS = (
    "hasAlternateGreetings",
    "hasLorebook",
    "hasEmbeddedLorebook",
    "hasLinkedLorebook",
    "hasExampleDialogues",
    "hasSystemPrompt",
    "hasGallery",
    "hasEmbeddedImages",
    "hasExpressions",
)

# Token breakdown columns (nullable: not every source reports them)
TOKEN_COUNT_COLUMNS = (
    "tokenDescriptionCount",
    "tokenPersonalityCount",
    "tokenScenarioCount",
    "tokenMesExampleCount",
    "tokenFirstMessageCount",
    "tokenSystemPromptCount",
    "tokenPostHistoryCount",
)


def utc_now() -> str:
    """Current UTC timestamp in ISO format (used for firstDownloadedAt)."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Handles the stored ``YYYY-MM-DD HH:MM:SS`` format as well as ISO
    strings with 'T', fractional seconds, 'Z' or '+00:00' suffixes.
    """
    ts = ts.strip().replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_db_timestamp(value: Optional[str]) -> str:
    """Convert an ISO timestamp to the stored ``YYYY-MM-DD HH:MM:SS`` form.

    Missing values become the epoch placeholder.
    """
    if not value:
        return EPOCH_TIMESTAMP
    return str(value).replace("T", " ").split(".")[0].rstrip("Z")


def date_part(value: Optional[str]) -> str:
    """Date portion of a stored timestamp, 'Unknown' when absent."""
    if not value:
        return "Unknown"
    return value.split(" ")[0]


@dataclass
class CardRecord:
    """
    A card as delivered by an ingestion producer.

    Field names follow the stored column names so that rows and producer
    payloads map one-to-one. ``topics`` may be a comma-joined string or a
    list of tags. ``language`` and ``sourceUrl`` are derived on upsert when
    left empty.
    """
    id: int
    name: str = ""
    tagline: str = ""
    description: str = ""
    author: str = ""
    topics: Any = ""
    nTokens: int = 0
    lastActivityAt: Optional[str] = None
    createdAt: Optional[str] = None
    nChats: int = 0
    nMessages: int = 0
    n_favorites: int = 0
    starCount: int = 0
    ratingsEnabled: bool = False
    rating: float = 0.0
    ratingCount: int = 0
    ratings: str = "{}"
    fullPath: str = ""
    favorited: Optional[bool] = None
    language: Optional[str] = None
    visibility: str = "unknown"
    hasAlternateGreetings: bool = False
    hasLorebook: bool = False
    hasEmbeddedLorebook: bool = False
    hasLinkedLorebook: bool = False
    hasExampleDialogues: bool = False
    hasSystemPrompt: bool = False
    hasGallery: bool = False
    hasEmbeddedImages: bool = False
    hasExpressions: bool = False
    isFuzzed: bool = False
    source: str = "chub"
    sourceId: str = ""
    sourcePath: str = ""
    sourceUrl: str = ""
    token_counts: dict[str, Optional[int]] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CardRecord":
        """Build a record from a producer payload, ignoring unknown keys.

        Accepts the legacy ``is_favorite`` key and per-section token counts
        given as top-level keys.
        """
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        if "favorited" not in kwargs and "is_favorite" in data:
            kwargs["favorited"] = data["is_favorite"]
        counts = dict(kwargs.pop("token_counts", None) or {})
        for column in TOKEN_COUNT_COLUMNS:
            if column in data:
                counts[column] = data[column]
        kwargs["token_counts"] = counts
        if kwargs.get("id") is None:
            raise ValueError("Card payload is missing 'id'")
        return cls(**kwargs)


@dataclass
class CardView:
    """Public shape of a card returned by searches."""
    id: str
    id_prefix: str
    author: str
    name: str
    tagline: str
    description: str
    topics: list[str]
    imagePath: str
    imageVersion: Optional[int]
    tokenCount: int
    lastModified: str
    createdAt: str
    nChats: int
    nMessages: int
    n_favorites: int
    starCount: int
    rating: float
    ratingCount: int
    ratings: str
    fullPath: str
    language: str
    favorited: int
    visibility: str
    source: str
    sourceId: str
    sourcePath: str
    sourceUrl: str
    flags: dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Flatten into a JSON-friendly dict (flags become top-level keys)."""
        d = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "flags"}
        d.update(self.flags)
        return d


@dataclass
class SearchPage:
    """One page of search results plus the total for the filter set."""
    records: list[CardView]
    total_count: int
    page: int
    total_pages: int
    limit: int

    @classmethod
    def empty(cls, page: int, limit: int) -> "SearchPage":
        return cls(records=[], total_count=0, page=page, total_pages=0, limit=limit)


@dataclass(frozen=True)
class RebuildCheck:
    """Outcome of a tag-index consistency check."""
    needs_rebuild: bool
    reason: str
    tagged: int = 0
    indexed: int = 0


@dataclass(frozen=True)
class ToggleResult:
    success: bool
    favorited: Optional[int] = None
    message: str = ""
