"""Tests for the cardstore CLI commands."""

import json
import sqlite3

import pytest
from typer.testing import CliRunner

from cardstore.cli import _format_page, app
from cardstore.config import load_or_create_config
from cardstore.repository import CatalogRepository
from cardstore.types import SearchPage


runner = CliRunner()


@pytest.fixture
def store(tmp_path):
    """Store directory with aliases and two cards."""
    (tmp_path / "tag-aliases.json").write_text(json.dumps({"android": ["android", "robot", "cyborg"]}))
    config = load_or_create_config(tmp_path)
    with CatalogRepository.from_config(config) as repo:
        repo.upsert({"id": 1, "name": "Unit 7", "topics": "Android,Robot", "language": "eng"})
        repo.upsert({"id": 2, "name": "Sakura", "topics": "anime", "language": "jpn"})
    return tmp_path


def _run(store, *args):
    return runner.invoke(app, ["--store", str(store), *args])


class TestCommands:
    def test_init(self, tmp_path):
        result = _run(tmp_path / "new", "init")
        assert result.exit_code == 0
        assert (tmp_path / "new" / "cardstore.toml").exists()

    def test_init_rebuilds_drifted_index(self, store):
        config = load_or_create_config(store)
        with sqlite3.connect(config.database_path) as conn:
            conn.execute("DELETE FROM card_tags")
        conn.close()
        result = _run(store, "init")
        assert result.exit_code == 0
        with CatalogRepository.from_config(config) as repo:
            assert repo.tag_index.tags_for(1) == {"android", "robot"}
            assert not repo.needs_rebuild().needs_rebuild

    def test_search_with_alias(self, store):
        result = _run(store, "--json", "search", "--include", "cyborg")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["total"] == 1
        assert data["cards"][0]["name"] == "Unit 7"

    def test_check_tags(self, store):
        result = _run(store, "--json", "check-tags")
        assert json.loads(result.output)["reason"] == "counts match"

    def test_rebuild_tags_forced(self, store):
        result = _run(store, "rebuild-tags", "--force")
        assert result.exit_code == 0
        assert "Rebuilt tag index for 2 cards" in result.output

    def test_expand(self, store):
        result = _run(store, "--json", "expand", "robot")
        assert json.loads(result.output) == ["android", "cyborg", "robot"]

    def test_languages(self, store):
        result = _run(store, "--json", "languages")
        assert json.loads(result.output) == {"eng": "English", "jpn": "Japanese"}

    def test_favorite_and_delete(self, store):
        assert "favorited" in _run(store, "favorite", "2").output
        assert _run(store, "delete", "2").exit_code == 0
        assert _run(store, "delete", "2").exit_code == 1


class TestFormatting:
    def test_empty_page(self):
        assert _format_page(SearchPage.empty(1, 10)) == "No cards found."
