"""
Tag alias table.

Maps a canonical tag name to the spellings that should be treated as
equivalent to it, e.g.::

    {"android": ["android", "robot", "cyborg"]}

The table is read once at startup from a JSON or YAML file and is
immutable afterwards. A reverse map (lowercased variant -> canonical)
gives O(1) exact lookups.
"""

import copy
import json
import logging
from pathlib import Path
from typing import Iterator, Mapping, Optional, Union

logger = logging.getLogger(__name__)

ALIASES_FILENAME = "tag-aliases.json"


class AliasTable:
    """Read-only canonical -> variants mapping with a reverse lookup."""

    def __init__(self, groups: Optional[Mapping[str, list[str]]] = None):
        self._groups: dict[str, tuple[str, ...]] = {}
        self._reverse: dict[str, str] = {}
        for canonical, variants in (groups or {}).items():
            if not isinstance(canonical, str) or not isinstance(variants, (list, tuple)):
                logger.debug("Skipping malformed alias group %r", canonical)
                continue
            clean = tuple(v for v in variants if isinstance(v, str))
            self._groups[canonical] = clean
            for variant in clean:
                self._reverse[variant.lower()] = canonical

    @classmethod
    def load(cls, path: Union[str, Path, None]) -> "AliasTable":
        """
        Load the alias table from a file.

        ``.yaml``/``.yml`` files are parsed with PyYAML, anything else as
        JSON. A missing or unreadable file yields an empty table: tag
        matching then falls back to exact strings.
        """
        if path is None:
            return cls()
        path = Path(path)
        if not path.exists():
            logger.warning("Tag aliases file not found at %s", path)
            return cls()
        try:
            with open(path, encoding="utf-8") as f:
                if path.suffix.lower() in (".yaml", ".yml"):
                    import yaml
                    data = yaml.safe_load(f)
                else:
                    data = json.load(f)
        except Exception as e:
            logger.warning("Failed to load tag aliases from %s: %s", path, e)
            return cls()
        if not isinstance(data, dict):
            logger.warning("Tag aliases file %s must contain a mapping", path)
            return cls()
        table = cls(data)
        logger.info("Loaded tag aliases: %d groups", len(table))
        return table

    def __len__(self) -> int:
        return len(self._groups)

    def snapshot(self) -> dict[str, list[str]]:
        """Deep copy of the table; mutating it does not affect lookups."""
        return copy.deepcopy({k: list(v) for k, v in self._groups.items()})

    def canonical_of(self, variant: str) -> Optional[str]:
        """Canonical group for an already-lowercased variant, or None."""
        return self._reverse.get(variant)

    def variants_of(self, canonical: str) -> tuple[str, ...]:
        return self._groups.get(canonical, ())

    def canonicals(self) -> Iterator[str]:
        return iter(self._groups)

    def reverse_items(self) -> Iterator[tuple[str, str]]:
        """(lowercased variant, canonical) pairs."""
        return iter(self._reverse.items())
