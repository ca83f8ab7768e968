"""
Configuration management for card stores.

The configuration is stored as a TOML file in the store directory. It
names the database file, the tag alias file and the listing defaults.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w

from .errors import ConfigError
from .aliases import ALIASES_FILENAME
from .filters import DEFAULT_LIMIT, MAX_LIMIT
from .tag_index import DEFAULT_BATCH_SIZE


CONFIG_FILENAME = "cardstore.toml"
CONFIG_VERSION = 1
DATABASE_FILENAME = "cards.db"


@dataclass
class CatalogConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    database: str = DATABASE_FILENAME
    aliases: str = ALIASES_FILENAME
    static_dir: str = "static"
    followed_creators: list[str] = field(default_factory=list)
    default_limit: int = DEFAULT_LIMIT
    max_limit: int = MAX_LIMIT
    rebuild_batch_size: int = DEFAULT_BATCH_SIZE

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    def _resolve(self, value: str) -> Path:
        p = Path(value).expanduser()
        return p if p.is_absolute() else self.path / p

    @property
    def database_path(self) -> Path:
        return self._resolve(self.database)

    @property
    def aliases_path(self) -> Path:
        return self._resolve(self.aliases)

    @property
    def static_path(self) -> Path:
        return self._resolve(self.static_dir)

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def default_store_path() -> Path:
    """Store directory from CARDSTORE_PATH, else ~/.cardstore."""
    env = os.environ.get("CARDSTORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".cardstore"


def load_config(store_path: Path) -> CatalogConfig:
    """
    Load configuration from a store directory.

    Raises:
        ConfigError: If config doesn't exist or is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise ConfigError(f"Config not found: {config_path}")

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid config {config_path}: {e}") from e

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ConfigError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    paths = data.get("paths", {})
    search = data.get("search", {})
    tags = data.get("tags", {})

    followed = search.get("followed_creators", [])
    if not isinstance(followed, list):
        raise ConfigError("search.followed_creators must be a list")

    def _int(section: dict[str, Any], key: str, default: int) -> int:
        value = section.get(key, default)
        if not isinstance(value, int) or value < 1:
            raise ConfigError(f"{key} must be a positive integer, got {value!r}")
        return value

    return CatalogConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        database=paths.get("database", DATABASE_FILENAME),
        aliases=paths.get("aliases", ALIASES_FILENAME),
        static_dir=paths.get("static", "static"),
        followed_creators=[str(name) for name in followed],
        default_limit=_int(search, "default_limit", DEFAULT_LIMIT),
        max_limit=_int(search, "max_limit", MAX_LIMIT),
        rebuild_batch_size=_int(tags, "rebuild_batch_size", DEFAULT_BATCH_SIZE),
    )


def save_config(config: CatalogConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "paths": {
            "database": config.database,
            "aliases": config.aliases,
            "static": config.static_dir,
        },
        "search": {
            "default_limit": config.default_limit,
            "max_limit": config.max_limit,
            "followed_creators": list(config.followed_creators),
        },
        "tags": {
            "rebuild_batch_size": config.rebuild_batch_size,
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Optional[Path] = None) -> CatalogConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    store_path = store_path or default_store_path()
    if (store_path / CONFIG_FILENAME).exists():
        return load_config(store_path)
    config = CatalogConfig(path=store_path)
    save_config(config)
    return config
