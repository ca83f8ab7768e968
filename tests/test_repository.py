"""Tests for CatalogRepository writes, searches and lookups."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from cardstore.errors import SearchError
from cardstore.filters import SearchFilters
from cardstore.repository import CatalogRepository
from cardstore.sources import CHUB_BASE_URL, CT_BASE_URL
from cardstore.types import CardRecord


def _ids(page):
    return [int(card.id) for card in page.records]


def _raw(repo, card_id):
    return repo.tag_index._conn.execute("SELECT * FROM cards WHERE id = ?", (card_id,)).fetchone()


def _ago(days: float = 0.0, hours: float = 0.0) -> str:
    """ISO timestamp the given time before now."""
    moment = datetime.now(timezone.utc) - timedelta(days=days, hours=hours)
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


class TestUpsert:
    def test_insert_and_get(self, repo, card):
        repo.upsert(card(1, "elf,warrior", name="Aria", tagline="Blade dancer"))
        view = repo.get(1)
        assert view.name == "Aria"
        assert view.tagline == "Blade dancer"
        assert view.topics == ["elf", "warrior"]
        assert view.id_prefix == "1"

    def test_accepts_card_record(self, repo):
        repo.upsert(CardRecord(id=5, name="Typed", topics=["a", "b"], language="eng"))
        assert _raw(repo, 5)["topics"] == "a,b"

    def test_card_record_is_not_modified(self, repo):
        record = CardRecord(id=7, name="Typed", topics="a", fullPath="maker/typed")
        stored = repo.upsert(record)
        assert stored is not record
        assert stored.author == "maker"
        assert stored.sourceId == "7"
        assert stored.language == "unknown"
        assert (record.author, record.sourceId, record.sourceUrl) == ("", "", "")
        assert record.language is None
        assert record.favorited is None

    def test_missing_id_rejected(self, repo):
        with pytest.raises(ValueError):
            repo.upsert({"name": "nobody"})

    def test_update_replaces_fields(self, repo, card):
        repo.upsert(card(1, "elf", name="Old", starCount=1))
        repo.upsert(card(1, "elf", name="New", starCount=9))
        view = repo.get(1)
        assert view.name == "New"
        assert view.starCount == 9
        assert repo.count() == 1

    def test_favorite_honoured_on_insert(self, repo, card):
        repo.upsert(card(1, "elf", favorited=True))
        assert repo.get(1).favorited == 1

    def test_legacy_is_favorite_key(self, repo, card):
        repo.upsert(card(1, "elf", is_favorite=True))
        assert repo.get(1).favorited == 1

    def test_update_preserves_favorite_and_first_seen(self, repo, card):
        repo.upsert(card(1, "elf"))
        first_seen = _raw(repo, 1)["firstDownloadedAt"]
        repo.toggle_favorite(1)

        stored = repo.upsert(card(1, "elf", favorited=False, name="Renamed"))
        row = _raw(repo, 1)
        assert row["favorited"] == 1
        assert row["firstDownloadedAt"] == first_seen
        assert stored.favorited is True

    def test_author_from_full_path(self, repo, card):
        repo.upsert(card(1, "elf", author="", fullPath="alice/elf-queen"))
        assert repo.get(1).author == "alice"

    def test_timestamps_stored_without_fraction(self, repo, card):
        repo.upsert(card(1, "elf", lastActivityAt="2024-05-01T10:00:00.123Z", createdAt=None))
        row = _raw(repo, 1)
        assert row["lastModified"] == "2024-05-01 10:00:00"
        assert row["createdAt"] == "1970-01-01 00:00:00"
        view = repo.get(1)
        assert view.lastModified == "2024-05-01"
        assert view.createdAt == "1970-01-01"

    def test_chub_source_url(self, repo, card):
        repo.upsert(card(1, "elf", fullPath="alice/elf-queen"))
        assert repo.get(1).sourceUrl == f"{CHUB_BASE_URL}alice/elf-queen"

    def test_ct_source_url(self, repo, card):
        repo.upsert(card(1, "elf", source="ct", sourcePath="/bob/knight", fullPath="bob/knight"))
        view = repo.get(1)
        assert view.source == "ct"
        assert view.sourceUrl == f"{CT_BASE_URL}bob/knight"

    def test_flags_and_token_counts(self, repo, card):
        repo.upsert(card(1, "elf", hasLorebook=True, tokenScenarioCount=120))
        row = _raw(repo, 1)
        assert row["hasLorebook"] == 1
        assert row["hasGallery"] == 0
        assert row["tokenScenarioCount"] == 120
        assert repo.get(1).flags["hasLorebook"] is True

    def test_failed_tag_write_rolls_back_insert(self, repo, card, monkeypatch):
        def boom(*args, **kwargs):
            raise sqlite3.IntegrityError("constraint failed")

        monkeypatch.setattr(repo.tag_index, "replace_tags", boom)
        with pytest.raises(sqlite3.IntegrityError):
            repo.upsert(card(1, "elf"))
        assert repo.get(1) is None
        assert repo.tag_index.snapshot() == set()

    def test_failed_tag_write_rolls_back_update(self, repo, card, monkeypatch):
        repo.upsert(card(1, "elf", name="Before"))
        before = repo.tag_index.snapshot()

        def boom(*args, **kwargs):
            raise sqlite3.IntegrityError("constraint failed")

        monkeypatch.setattr(repo.tag_index, "replace_tags", boom)
        with pytest.raises(sqlite3.IntegrityError):
            repo.upsert(card(1, "dragon", name="After"))
        assert repo.get(1).name == "Before"
        assert repo.tag_index.snapshot() == before


class TestTagSearch:
    @pytest.fixture
    def fantasy(self, repo, card):
        repo.upsert(card(1, "elf"))
        repo.upsert(card(2, "warrior"))
        repo.upsert(card(3, "elf,warrior"))
        repo.upsert(card(4, "Elves,Fighter"))
        repo.upsert(card(5, "dragon"))
        return repo

    def test_alias_expansion(self, seeded_repo):
        """A card tagged Android,Robot is found by its alias cyborg."""
        page = seeded_repo.search(SearchFilters(include="cyborg"))
        assert _ids(page) == [1]
        assert page.total_count == 1

    def test_or_semantics(self, fantasy):
        page = fantasy.search(SearchFilters(include="elf,warrior"))
        assert sorted(_ids(page)) == [1, 2, 3, 4]

    def test_and_semantics(self, fantasy):
        page = fantasy.search(SearchFilters(include=["elf", "warrior"], tag_match_mode="and"))
        assert sorted(_ids(page)) == [3, 4]

    def test_exclusion_wins(self, fantasy):
        page = fantasy.search(SearchFilters(include="elf", exclude="warrior"))
        assert _ids(page) == [1]

    def test_exclusion_alone(self, fantasy):
        page = fantasy.search(SearchFilters(exclude="fighter"))
        assert sorted(_ids(page)) == [1, 5]

    def test_tag_search_type(self, fantasy):
        page = fantasy.search(SearchFilters(query="dragon", search_type="tag"))
        assert _ids(page) == [5]

    def test_fuzzy_tag_search(self, fantasy):
        page = fantasy.search(SearchFilters(include="warior"))
        assert sorted(_ids(page)) == [2, 3, 4]

    def test_case_insensitive(self, fantasy):
        page = fantasy.search(SearchFilters(include="DRAGON"))
        assert _ids(page) == [5]


class TestSearch:
    def test_pagination_is_stable(self, repo, card):
        for i in range(1, 26):
            repo.upsert(card(i, "common"))
        pages = [repo.search(SearchFilters(page=p, limit=10)) for p in (1, 2, 3)]
        assert [len(p.records) for p in pages] == [10, 10, 5]
        assert all(p.total_count == 25 and p.total_pages == 3 for p in pages)
        seen = [i for p in pages for i in _ids(p)]
        assert len(seen) == len(set(seen)) == 25

    def test_page_past_end(self, repo, card):
        repo.upsert(card(1, "a"))
        page = repo.search(SearchFilters(page=5, limit=10))
        assert page.records == []
        assert page.total_count == 1

    def test_count_matches_unpaged_results(self, repo, card):
        for i in range(1, 13):
            repo.upsert(card(i, "elf" if i % 3 else "dragon", nTokens=i * 100))
        filters = dict(include="elf", min_tokens=400)
        total = repo.search(SearchFilters(limit=5, **filters)).total_count
        everything = repo.search(SearchFilters(limit=1000, **filters))
        assert total == len(everything.records) == everything.total_count

    def test_full_text(self, seeded_repo):
        assert _ids(seeded_repo.search(SearchFilters(query="vex"))) == [2]

    def test_title_search_ignores_tags(self, seeded_repo):
        assert _ids(seeded_repo.search(SearchFilters(query="anime", search_type="title"))) == []

    def test_empty_allow_list(self, seeded_repo):
        # Answered without touching the database
        seeded_repo.tag_index._conn.close()
        page = seeded_repo.search(SearchFilters(allowed_ids=[]))
        assert page.records == []
        assert page.total_count == 0
        assert page.total_pages == 0

    def test_allow_list(self, seeded_repo):
        page = seeded_repo.search(SearchFilters(allowed_ids=["3", "1", "junk"]))
        assert sorted(_ids(page)) == [1, 3]

    def test_allow_list_drops_non_ascii_digits(self, seeded_repo):
        page = seeded_repo.search(SearchFilters(allowed_ids=["1", "²"]))
        assert _ids(page) == [1]
        assert seeded_repo.search(SearchFilters(allowed_ids=["²"])).total_count == 0

    def test_followed_only_without_followed_creators(self, seeded_repo):
        assert seeded_repo.search(SearchFilters(followed_only=True)).total_count == 0

    def test_followed_only(self, db_path, expander, card):
        with CatalogRepository(db_path, expander=expander, followed_creators=["Alice"]) as repo:
            repo.upsert(card(1, "a", author="alice"))
            repo.upsert(card(2, "a", author="bob"))
            assert _ids(repo.search(SearchFilters(followed_only=True))) == [1]

    def test_sort_by_stars(self, repo, card):
        repo.upsert(card(1, "a", starCount=5))
        repo.upsert(card(2, "a", starCount=50))
        repo.upsert(card(3, "a", starCount=5))
        page = repo.search(SearchFilters(sort="most_stars_desc"))
        assert _ids(page) == [2, 3, 1]

    def test_unknown_sort_uses_default(self, repo, card):
        repo.upsert(card(1, "a", lastActivityAt="2024-01-01T00:00:00Z"))
        repo.upsert(card(2, "a", lastActivityAt="2024-06-01T00:00:00Z"))
        assert _ids(repo.search(SearchFilters(sort="nonsense"))) == [2, 1]

    def test_engagement_freshness_steps(self, repo, card):
        repo.upsert(card(1, "a", lastActivityAt=_ago(days=3, hours=-2)))
        repo.upsert(card(2, "a", n_favorites=4, lastActivityAt=_ago(days=3, hours=2)))
        repo.upsert(card(3, "a", n_favorites=8, lastActivityAt=_ago(days=7, hours=2)))
        repo.upsert(card(4, "a", nChats=10, lastActivityAt=_ago(days=14, hours=2)))
        repo.upsert(card(5, "a", starCount=20, rating=5.0, ratingCount=100, lastActivityAt=_ago(days=60)))
        repo.upsert(card(6, "a", nMessages=245, lastActivityAt=_ago(days=100)))
        repo.upsert(card(7, "a", nChats=5, lastActivityAt=_ago(days=14, hours=-2)))
        # 5: 10 + 40 rating = 50; 1: 25 bonus; 6: 24.5; 3: 16 + 8; 2: 8 + 15;
        # 7: 7.5 + 8; 4: 15 + 0
        page = repo.search(SearchFilters(sort="engagement_desc"))
        assert _ids(page) == [5, 1, 6, 3, 2, 7, 4]
        page = repo.search(SearchFilters(sort="engagement_asc"))
        assert _ids(page) == [4, 7, 2, 3, 6, 1, 5]

    def test_fresh_engagement_floors_age_at_one_day(self, repo, card):
        repo.upsert(card(1, "a", nChats=2, lastActivityAt=_ago(days=0.9)))
        repo.upsert(card(2, "a", nChats=20, lastActivityAt=_ago(days=2.5)))
        repo.upsert(card(3, "a", nChats=100, lastActivityAt=_ago(days=10)))
        repo.upsert(card(4, "a", lastActivityAt=_ago(hours=12)))
        # 1: 28 / 1; 4: 25 / 1 (not 25 / 0.5); 2: 55 / 2.5; 3: 158 / 10
        page = repo.search(SearchFilters(sort="fresh_engagement_desc"))
        assert _ids(page) == [1, 4, 2, 3]

    def test_trending_divides_by_age(self, repo, card):
        repo.upsert(card(1, "a", starCount=100, createdAt=_ago(days=10)))
        repo.upsert(card(2, "a", starCount=12, createdAt=_ago(hours=12)))
        repo.upsert(card(3, "a", n_favorites=11, createdAt=_ago(days=2)))
        repo.upsert(card(4, "a", starCount=1000, createdAt=_ago(days=400)))
        # 2: 12 / 1; 3: 22 / 2; 1: 100 / 10; 4: 1000 / 400
        page = repo.search(SearchFilters(sort="trending_desc"))
        assert _ids(page) == [2, 3, 1, 4]

    def test_scalar_filters(self, repo, card):
        repo.upsert(card(1, "a", language="jpn", hasLorebook=True, nTokens=3000))
        repo.upsert(card(2, "a", language="eng", nTokens=3000))
        repo.upsert(card(3, "a", language="jpn", nTokens=100, source="ct"))
        assert _ids(repo.search(SearchFilters(language="jpn", min_tokens=1000))) == [1]
        assert _ids(repo.search(SearchFilters(flags={"hasLorebook": True}))) == [1]
        assert _ids(repo.search(SearchFilters(source="ct"))) == [3]

    def test_favorite_filter(self, repo, card):
        repo.upsert(card(1, "a", favorited=True))
        repo.upsert(card(2, "a"))
        assert _ids(repo.search(SearchFilters(favorite_filter="fav"))) == [1]
        assert _ids(repo.search(SearchFilters(favorite_filter="not_fav"))) == [2]

    def test_from_params(self, seeded_repo):
        filters = SearchFilters.from_params({"include": "cyborg", "limit": "5", "page": "1"})
        page = seeded_repo.search(filters)
        assert _ids(page) == [1]
        assert page.limit == 5

    def test_database_error_becomes_search_error(self, seeded_repo):
        seeded_repo.tag_index._conn.close()
        with pytest.raises(SearchError):
            seeded_repo.search(SearchFilters())


class TestLookups:
    def test_get_missing(self, repo):
        assert repo.get(42) is None

    def test_get_by_ids_ordered(self, seeded_repo):
        cards = seeded_repo.get_by_ids_ordered(["3", 1, "junk", "3", "99", " 2 "])
        assert [c.id for c in cards] == ["3", "1", "2"]

    def test_get_by_ids_ordered_empty(self, seeded_repo):
        assert seeded_repo.get_by_ids_ordered([]) == []
        assert seeded_repo.get_by_ids_ordered(["x"]) == []

    def test_get_by_ids_ordered_skips_non_ascii_digits(self, seeded_repo):
        cards = seeded_repo.get_by_ids_ordered(["3", "\u00b2", "\u0661", "1"])
        assert [c.id for c in cards] == ["3", "1"]

    def test_view_dedupes_topics(self, repo, card):
        repo.upsert(card(1, "a,a,b"))
        assert repo.get(1).topics == ["a", "b"]

    def test_image_path_without_file(self, repo, card):
        repo.upsert(card(1234, "a"))
        view = repo.get(1234)
        assert view.imagePath == "/static/12/1234.png"
        assert view.imageVersion is None

    def test_image_path_with_version(self, repo, card, db_path):
        png = db_path.parent / "static" / "12" / "1234.png"
        png.parent.mkdir(parents=True)
        png.write_bytes(b"\x89PNG")
        repo.upsert(card(1234, "a"))
        view = repo.get(1234)
        assert view.imageVersion is not None
        assert view.imagePath == f"/static/12/1234.png?v={view.imageVersion}"

    def test_to_dict_flattens_flags(self, repo, card):
        repo.upsert(card(1, "a", hasGallery=True))
        data = repo.get(1).to_dict()
        assert data["hasGallery"] is True
        assert "flags" not in data

    def test_languages(self, repo, card):
        repo.upsert(card(1, "a", language="jpn"))
        repo.upsert(card(2, "a", language="eng"))
        repo.upsert(card(3, "a", language="eng"))
        assert repo.get_all_languages() == {"eng": "English", "jpn": "Japanese"}


class TestFavoritesAndDelete:
    def test_toggle_favorite(self, repo, card):
        repo.upsert(card(1, "a"))
        first = repo.toggle_favorite(1)
        second = repo.toggle_favorite(1)
        assert (first.success, first.favorited) == (True, 1)
        assert (second.success, second.favorited) == (True, 0)

    def test_toggle_missing(self, repo):
        result = repo.toggle_favorite(99)
        assert not result.success
        assert result.message == "Card not found"

    def test_delete_removes_tag_rows(self, seeded_repo):
        assert seeded_repo.delete(1)
        assert seeded_repo.get(1) is None
        assert seeded_repo.tag_index.tags_for(1) == set()
        assert seeded_repo.search(SearchFilters(include="robot")).total_count == 0

    def test_delete_missing(self, repo):
        assert not repo.delete(99)


class TestAliasAccess:
    def test_expand_tag(self, repo):
        assert repo.expand_tag("robot") == {"robot", "android", "cyborg"}

    def test_alias_snapshot_is_a_copy(self, repo):
        snap = repo.alias_snapshot()
        snap["android"].clear()
        assert repo.expand_tag("robot") == {"robot", "android", "cyborg"}
