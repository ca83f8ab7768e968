"""
Shared pytest fixtures for cardstore tests.

Provides a small alias table and file-backed repositories so tests never
touch ~/.cardstore.
"""

from pathlib import Path
from typing import Any

import pytest

from cardstore.aliases import AliasTable
from cardstore.repository import CatalogRepository
from cardstore.tags import TagExpander


ALIAS_GROUPS = {
    "android": ["android", "robot", "cyborg"],
    "kitten": ["kitten", "kitty", "catgirl"],
    "elf": ["elf", "elves", "high elf"],
    "warrior": ["warrior", "fighter"],
    "dragon": ["dragon", "wyrm"],
}


def make_card(card_id: int, topics: Any = "", **overrides) -> dict[str, Any]:
    """Producer payload with a fixed language so detection never runs."""
    card = {
        "id": card_id,
        "name": f"Card {card_id}",
        "tagline": "",
        "description": "",
        "author": "tester",
        "topics": topics,
        "nTokens": 1000,
        "fullPath": f"tester/card-{card_id}",
        "language": "eng",
    }
    card.update(overrides)
    return card


@pytest.fixture
def alias_table() -> AliasTable:
    return AliasTable(ALIAS_GROUPS)


@pytest.fixture
def expander(alias_table) -> TagExpander:
    return TagExpander(alias_table)


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "cards.db"


@pytest.fixture
def repo(db_path, expander):
    """Repository on a fresh database with the test alias table."""
    repository = CatalogRepository(db_path, expander=expander, static_dir=db_path.parent / "static")
    yield repository
    repository.close()


@pytest.fixture
def card():
    """Factory for producer payloads: card(id, topics, **overrides)."""
    return make_card


@pytest.fixture
def seeded_repo(repo, card):
    """Repository holding the android / space opera / anime trio."""
    repo.upsert(card(1, "Android,Robot", name="Unit 7"))
    repo.upsert(card(2, "space opera", name="Captain Vex"))
    repo.upsert(card(3, "anime", name="Sakura"))
    return repo
