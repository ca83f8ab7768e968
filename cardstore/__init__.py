"""
cardstore: a character card catalog with alias-aware tag search.

Cards live in SQLite next to a normalized tag index. Tag filters expand
each requested tag through a curated alias table (with fuzzy fallback for
typos) and match the expanded set against the index.

Basic usage:

    from cardstore import CatalogRepository, SearchFilters, TagExpander, AliasTable

    repo = CatalogRepository("cards.db", expander=TagExpander(AliasTable.load("tag-aliases.json")))
    repo.upsert({"id": 1, "name": "Unit 7", "topics": "Android,Robot"})
    page = repo.search(SearchFilters(include="cyborg"))
"""

from .aliases import AliasTable
from .config import CatalogConfig, load_or_create_config
from .errors import CardStoreError, ConfigError, SearchError, StorageError
from .filters import SearchFilters
from .query_builder import BuiltQuery, QueryBuilder
from .repository import CatalogRepository
from .tag_index import TagIndex
from .tags import TagExpander
from .types import CardRecord, CardView, RebuildCheck, SearchPage, ToggleResult

__version__ = "0.3.0"
__all__ = [
    "AliasTable",
    "BuiltQuery",
    "CardRecord",
    "CardStoreError",
    "CardView",
    "CatalogConfig",
    "CatalogRepository",
    "ConfigError",
    "QueryBuilder",
    "RebuildCheck",
    "SearchError",
    "SearchFilters",
    "SearchPage",
    "StorageError",
    "TagExpander",
    "TagIndex",
    "ToggleResult",
    "load_or_create_config",
]
