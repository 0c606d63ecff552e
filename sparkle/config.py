"""
Sparkle Configuration

Configuration dataclasses for the store, search, listing and the MCP
server.  Includes load_config() for reading a JSON config file with
silent fallback to compiled defaults.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from sparkle.search import MAX_LIMIT

DEFAULT_DB_PATH = ".sparkle/sparkle.db"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and (not isinstance(value, typ) or isinstance(value, bool)):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    db_path: str = DEFAULT_DB_PATH
    wal_mode: bool = True
    rebuild_index_on_open: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if not isinstance(self.db_path, str) or not self.db_path.strip():
            errors.append("store.db_path: must be a non-empty string")
        return errors


@dataclass
class SearchConfig:
    """Full-text search configuration."""
    default_limit: int = 20

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "search.default_limit",
                     self.default_limit, 1, MAX_LIMIT, int)
        return errors


@dataclass
class ListConfig:
    """Listing defaults."""
    default_limit: int = 50
    default_sort: str = "created"
    default_order: str = "desc"

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "list.default_limit",
                     self.default_limit, 1, MAX_LIMIT, int)
        if self.default_sort not in ("created", "modified", "priority", "due"):
            errors.append(f"list.default_sort: unknown key {self.default_sort!r}")
        if self.default_order not in ("asc", "desc"):
            errors.append(f"list.default_order: unknown order {self.default_order!r}")
        return errors


@dataclass
class ServerConfig:
    """MCP server configuration."""
    name: str = "sparkle"
    audit_log: Optional[str] = None

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        return []


@dataclass
class SparkleConfig:
    """Top-level sparkle configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    list: ListConfig = field(default_factory=ListConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SparkleConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "search" in d:
            kwargs["search"] = SearchConfig(**d["search"])
        if "list" in d:
            kwargs["list"] = ListConfig(**d["list"])
        if "server" in d:
            kwargs["server"] = ServerConfig(**d["server"])
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.search.validate())
        errors.extend(self.list.validate())
        errors.extend(self.server.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> SparkleConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ConfigError on invalid config values.

    Raises:
        ConfigError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = SparkleConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = SparkleConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = SparkleConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ConfigError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
