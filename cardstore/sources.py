"""
Per-source URL rules and static image paths.
"""

from pathlib import Path
from typing import Optional, Union

CT_BASE_URL = "https://character-tavern.com/character/"
CHUB_BASE_URL = "https://chub.ai/characters/"

SOURCES = ("chub", "ct", "risuai", "wyvern")


def _strip_path(value: Optional[str]) -> str:
    if not value or not isinstance(value, str):
        return ""
    return value.strip().lstrip("/")


def resolve_source_url(
    source: str = "chub",
    source_url: str = "",
    source_path: str = "",
    source_id: str = "",
    full_path: str = "",
) -> str:
    """
    Canonical link back to a card on its origin platform.

    Character Tavern cards are addressed by path (falling back to id); other
    sources keep the URL they were ingested with, or a Chub link built from
    the full path.
    """
    if source == "ct":
        path = _strip_path(source_path or full_path) or _strip_path(source_id)
        if path:
            return f"{CT_BASE_URL}{path}"
        if source_url and "character-tavern.com" in source_url:
            return source_url
    if source_url:
        return source_url
    if full_path:
        return f"{CHUB_BASE_URL}{full_path}"
    return ""


def image_version(static_dir: Optional[Union[str, Path]], card_id: str) -> Optional[int]:
    """Modification time (ms) of a card's PNG, or None when it is absent."""
    if not static_dir or not card_id:
        return None
    png = Path(static_dir) / card_id[:2] / f"{card_id}.png"
    try:
        return int(png.stat().st_mtime * 1000)
    except OSError:
        return None


def versioned_image_path(static_dir: Optional[Union[str, Path]], card_id: str) -> tuple[str, Optional[int]]:
    """URL path of a card's image with a cache-busting version when known."""
    base = f"/static/{card_id[:2]}/{card_id}.png"
    version = image_version(static_dir, card_id)
    if version is None:
        return base, None
    return f"{base}?v={version}", version
