"""
Search Index — FTS5 Trigram Retrieval

The index is an FTS5 external-content table over ``items(title, body)``
using the ``trigram`` tokenizer, so substring matches work for any script
(CJK included) without word segmentation.  Three triggers keep it in step
with ``items`` inside the writer's own transaction; there is no
asynchronous indexing.

Query routing (single entry point, ``SearchIndex.query``):

    len(text) >= 3   →  MATCH on the sanitized expression, ORDER BY rank
    len(text) <  3   →  LIKE scan over title/body, newest first
    blank input      →  []

Lengths are measured after stripping; a multi-word query containing a
token shorter than 3 characters also takes the LIKE path.

If the SQLite build has no FTS5 (or no trigram tokenizer) every query
goes through the LIKE path, one AND-ed condition per token.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from typing import List, Optional, Union

from sparkle.types import SearchMeta

logger = logging.getLogger(__name__)

TRIGRAM_MIN_LENGTH = 3
DEFAULT_LIMIT = 20
MAX_LIMIT = 100

# ---------------------------------------------------------------------------
# FTS5 Schema
# ---------------------------------------------------------------------------
# AFTER UPDATE issues the external-content 'delete' with the old values
# before inserting the new ones; the old rowid is unchanged by an UPDATE
# that does not touch it.
# ---------------------------------------------------------------------------

_FTS_SCHEMA_SQL = """
CREATE VIRTUAL TABLE IF NOT EXISTS items_fts USING fts5(
    title, body,
    content='items',
    content_rowid='rowid',
    tokenize='trigram'
);

CREATE TRIGGER IF NOT EXISTS items_fts_ai
AFTER INSERT ON items BEGIN
    INSERT INTO items_fts(rowid, title, body)
    VALUES (new.rowid, new.title, new.body);
END;

CREATE TRIGGER IF NOT EXISTS items_fts_ad
AFTER DELETE ON items BEGIN
    INSERT INTO items_fts(items_fts, rowid, title, body)
    VALUES ('delete', old.rowid, old.title, old.body);
END;

CREATE TRIGGER IF NOT EXISTS items_fts_au
AFTER UPDATE ON items BEGIN
    INSERT INTO items_fts(items_fts, rowid, title, body)
    VALUES ('delete', old.rowid, old.title, old.body);
    INSERT INTO items_fts(rowid, title, body)
    VALUES (new.rowid, new.title, new.body);
END;
"""

_FTS_TRIGGERS = ("items_fts_ai", "items_fts_ad", "items_fts_au")


# ---------------------------------------------------------------------------
# Query sanitizer
# ---------------------------------------------------------------------------

def build_match_query(text: str) -> str:
    """
    Turn free text into a safe FTS5 MATCH expression.

    Each whitespace-separated token becomes a quoted phrase (embedded
    double quotes doubled) and the phrases are AND-joined, so operator
    words, parentheses, colons and stray quotes are matched literally.
    Blank input yields ``'""'``, which matches nothing.  Never raises.
    """
    tokens = (text or "").split()
    if not tokens:
        return '""'
    escaped = ['"' + t.replace('"', '""') + '"' for t in tokens]
    return " AND ".join(escaped)


def _escape_like(term: str) -> str:
    """Escape LIKE wildcards so the term is matched literally."""
    return (
        term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    )


def clamp_limit(limit: Optional[int]) -> int:
    """Clamp a requested limit into 1..MAX_LIMIT."""
    if limit is None:
        return DEFAULT_LIMIT
    return max(1, min(int(limit), MAX_LIMIT))


# ---------------------------------------------------------------------------
# SearchIndex
# ---------------------------------------------------------------------------

class SearchIndex:
    """
    Trigram full-text index bound to the store's connection.

    Shares the store's connection and lock; never opens its own.
    ``last_meta`` records how the most recent query was resolved.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        lock: Union[threading.Lock, threading.RLock],
    ):
        self._conn = conn
        self._lock = lock
        self.available: bool = False
        self.last_meta: Optional[SearchMeta] = None

    # -- Setup ---------------------------------------------------------------

    def install(self) -> bool:
        """
        Create the FTS table and triggers, replacing a non-trigram index.

        Returns True when FTS5 with the trigram tokenizer is usable.  On
        builds without it, sets ``available = False`` and all queries use
        the LIKE path.
        """
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT sql FROM sqlite_master "
                    "WHERE type='table' AND name='items_fts'"
                ).fetchone()
                if row is not None and "trigram" not in (row[0] or ""):
                    logger.warning("items_fts is not a trigram index; recreating it")
                    self._drop()
                self._conn.executescript(_FTS_SCHEMA_SQL)
                self._conn.commit()
                self.available = True
            except sqlite3.OperationalError as exc:
                # "no such module: fts5" or "no such tokenizer: trigram"
                self._conn.rollback()
                self.available = False
                logger.info("FTS5 trigram not available, using LIKE search: %s", exc)
        return self.available

    def _drop(self) -> None:
        self._conn.execute("DROP TABLE IF EXISTS items_fts")
        for name in _FTS_TRIGGERS:
            self._conn.execute(f"DROP TRIGGER IF EXISTS {name}")

    def rebuild(self) -> int:
        """
        Repopulate the index from ``items``.

        Returns the number of indexed rows, or -1 when FTS5 is unavailable.
        """
        if not self.available:
            logger.warning("rebuild called but FTS5 trigram is not available")
            return -1
        with self._lock:
            self._conn.execute("INSERT INTO items_fts(items_fts) VALUES ('rebuild')")
            count = self._conn.execute("SELECT COUNT(*) AS cnt FROM items").fetchone()["cnt"]
            self._conn.execute(
                "INSERT OR REPLACE INTO schema_meta (key, value) "
                "VALUES ('fts_indexed_at', datetime('now'))",
            )
            self._conn.commit()
        logger.info("FTS index rebuilt: %d items", count)
        return count

    # -- Query ---------------------------------------------------------------

    def query(self, text: str, limit: int = DEFAULT_LIMIT) -> List[str]:
        """
        Return ids of items matching ``text``, best match first.

        Never raises on malformed input: grammar or database errors from
        MATCH are logged and yield an empty list.
        """
        limit = clamp_limit(limit)
        if not text or not text.strip():
            self.last_meta = SearchMeta(strategy="EMPTY", query=text or "")
            return []

        stripped = text.strip()
        if len(stripped) < TRIGRAM_MIN_LENGTH:
            ids = self._query_substring([stripped], limit)
            self.last_meta = SearchMeta(
                strategy="SUBSTRING", query=text, hits=len(ids),
            )
            logger.debug("[search] SUBSTRING(%r) → %d hits", text, len(ids))
            return ids

        # A phrase shorter than a trigram matches no rows in FTS5, so any
        # short token sends the whole query down the LIKE path.
        tokens = stripped.split()
        short = any(len(t) < TRIGRAM_MIN_LENGTH for t in tokens)
        if not self.available or short:
            ids = self._query_substring(tokens, limit)
            self.last_meta = SearchMeta(
                strategy="SUBSTRING", query=text, hits=len(ids),
            )
            return ids

        expr = build_match_query(text)
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT i.id FROM items_fts "
                    "JOIN items i ON i.rowid = items_fts.rowid "
                    "WHERE items_fts MATCH ? "
                    "ORDER BY rank LIMIT ?",
                    (expr, limit),
                ).fetchall()
        except (sqlite3.OperationalError, sqlite3.DatabaseError) as exc:
            logger.warning("FTS5 query failed for %r: %s", expr, exc)
            self.last_meta = SearchMeta(
                strategy="TRIGRAM", query=text, match_expr=expr, error=str(exc),
            )
            return []

        ids = [row["id"] for row in rows]
        self.last_meta = SearchMeta(
            strategy="TRIGRAM", query=text, match_expr=expr, hits=len(ids),
        )
        logger.debug("[search] TRIGRAM(%s) → %d hits", expr, len(ids))
        return ids

    def _query_substring(self, terms: List[str], limit: int) -> List[str]:
        """LIKE scan; every term must appear in title or body."""
        conditions: list = []
        params: list = []
        for term in terms:
            like = f"%{_escape_like(term)}%"
            conditions.append(
                "(title LIKE ? ESCAPE '\\' OR body LIKE ? ESCAPE '\\')"
            )
            params.extend([like, like])
        where = " AND ".join(conditions) if conditions else "1=1"
        with self._lock:
            rows = self._conn.execute(
                f"SELECT id FROM items WHERE {where} "
                "ORDER BY created DESC, rowid DESC LIMIT ?",
                params + [limit],
            ).fetchall()
        return [row["id"] for row in rows]
