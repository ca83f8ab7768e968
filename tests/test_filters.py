"""Tests for parsing listing request parameters."""

from cardstore.filters import DEFAULT_LIMIT, MAX_LIMIT, SearchFilters


class TestFromParams:
    def test_defaults(self):
        f = SearchFilters.from_params({})
        assert f.page == 1
        assert f.limit == DEFAULT_LIMIT
        assert f.sort == "new"
        assert f.tag_match_mode == "or"
        assert f.source == "all"
        assert f.min_tokens is None
        assert f.allowed_ids is None
        assert not f.followed_only
        assert not any(f.flags.values())

    def test_limit_is_clamped(self):
        assert SearchFilters.from_params({"limit": "1000"}).limit == MAX_LIMIT
        assert SearchFilters.from_params({"limit": "0"}).limit == 1
        assert SearchFilters.from_params({"limit": "20abc"}).limit == 20
        assert SearchFilters.from_params({"limit": "abc"}).limit == DEFAULT_LIMIT

    def test_custom_limits(self):
        f = SearchFilters.from_params({"limit": "80"}, default_limit=10, max_limit=50)
        assert f.limit == 50
        assert SearchFilters.from_params({}, default_limit=10).limit == 10

    def test_page_is_at_least_one(self):
        assert SearchFilters.from_params({"page": "-3"}).page == 1
        assert SearchFilters.from_params({"page": "4"}).page == 4

    def test_unknown_source_means_all(self):
        assert SearchFilters.from_params({"source": "myspace"}).source == "all"
        assert SearchFilters.from_params({"source": "ct"}).source == "ct"

    def test_min_tokens(self):
        assert SearchFilters.from_params({"minTokens": "500"}).min_tokens == 500
        assert SearchFilters.from_params({"minTokens": "0"}).min_tokens is None
        assert SearchFilters.from_params({"minTokens": "lots"}).min_tokens is None
        assert SearchFilters.from_params({"minTokens": "\u0665\u0660\u0660"}).min_tokens is None

    def test_flags_need_literal_true(self):
        f = SearchFilters.from_params({"hasLorebook": "true", "hasGallery": "1"})
        assert f.flags["hasLorebook"] is True
        assert f.flags["hasGallery"] is False

    def test_text_fields(self):
        f = SearchFilters.from_params({
            "query": "vex",
            "type": "title",
            "include": "elf,warrior",
            "exclude": "nsfw",
            "tagMatchMode": "and",
            "language": "jpn",
            "favorite": "fav",
            "followedOnly": "true",
        })
        assert (f.query, f.search_type) == ("vex", "title")
        assert (f.include, f.exclude, f.tag_match_mode) == ("elf,warrior", "nsfw", "and")
        assert (f.language, f.favorite_filter) == ("jpn", "fav")
        assert f.followed_only

    def test_offset(self):
        assert SearchFilters(page=3, limit=10).offset == 20
