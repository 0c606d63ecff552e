"""
sparkle — capture fleeting ideas and tasks, grow them into permanent notes.

One SQLite file holds every item; a trigram FTS5 index is kept in step by
triggers, and a small rule engine decides which status and fields each
kind of item may carry.
"""

__version__ = "0.1.0"

from sparkle.errors import InvalidTransition, NotFound, SparkleError, ValidationError
from sparkle.types import Item, ItemPage, SearchMeta
from sparkle.taxonomy import TaxonomyEngine
from sparkle.search import SearchIndex, build_match_query
from sparkle.store import ItemStore, SCHEMA_VERSION
from sparkle.session import ReferenceSession, SESSION_TTL_SECONDS
from sparkle.config import SparkleConfig

__all__ = [
    "__version__",
    "Item",
    "ItemPage",
    "SearchMeta",
    "TaxonomyEngine",
    "SearchIndex",
    "build_match_query",
    "ItemStore",
    "ReferenceSession",
    "SESSION_TTL_SECONDS",
    "SparkleConfig",
    "SparkleError",
    "ValidationError",
    "InvalidTransition",
    "NotFound",
    "SCHEMA_VERSION",
]
