"""
Item Store — SQLite Persistent Backend

Tables:
    items        - Canonical items (notes, tasks, scratch)
    share_links  - External share tokens (FK → items, ON DELETE CASCADE)
    items_fts    - FTS5 trigram index over items(title, body), trigger-synced
    schema_meta  - Schema version and index bookkeeping

Thread safety: one sqlite3 connection (check_same_thread=False) serialized
by a re-entrant lock.  Every public mutation runs as a single transaction;
derived fields are resolved in the same SELECT that loads the row.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import (
    Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Union,
)

from sparkle.errors import InvalidTransition, NotFound, ValidationError
from sparkle.search import DEFAULT_LIMIT, SearchIndex
from sparkle.taxonomy import TaxonomyEngine
from sparkle.types import (
    VALID_KINDS,
    VALID_ORDERS,
    VALID_SORT_KEYS,
    Item,
    ItemPage,
    SearchMeta,
    _generate_id,
    _now_iso,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

LIST_DEFAULT_LIMIT = 50
LIST_MAX_LIMIT = 100

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS items (
    id              TEXT PRIMARY KEY,
    kind            TEXT NOT NULL DEFAULT 'note'
                    CHECK(kind IN ('note','task','scratch')),
    title           TEXT NOT NULL,
    body            TEXT NOT NULL DEFAULT '',
    status          TEXT NOT NULL,
    priority        TEXT CHECK(priority IN ('low','medium','high')),
    due             TEXT,                           -- YYYY-MM-DD
    tags            TEXT NOT NULL DEFAULT '[]',     -- JSON array
    aliases         TEXT NOT NULL DEFAULT '[]',     -- JSON array
    linked_ref      TEXT REFERENCES items(id) ON DELETE SET NULL,  -- task → note
    origin          TEXT NOT NULL DEFAULT '',
    external_source TEXT,
    created         TEXT NOT NULL,
    modified        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS share_links (
    id          TEXT PRIMARY KEY,
    item_id     TEXT NOT NULL REFERENCES items(id) ON DELETE CASCADE,
    token       TEXT NOT NULL UNIQUE,
    visibility  TEXT NOT NULL DEFAULT 'unlisted'
                CHECK(visibility IN ('unlisted','public')),
    created     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_items_kind ON items(kind);
CREATE INDEX IF NOT EXISTS idx_items_status ON items(status);
CREATE INDEX IF NOT EXISTS idx_items_created ON items(created);
CREATE INDEX IF NOT EXISTS idx_items_linked_ref ON items(linked_ref);
CREATE INDEX IF NOT EXISTS idx_shares_item ON share_links(item_id);
"""

# Row + derived fields.  linked_task_count is 0 for anything but notes;
# a public share wins over an unlisted one.
_SELECT_ITEM_SQL = """
SELECT i.*,
    CASE WHEN i.kind = 'note' THEN (
        SELECT COUNT(*) FROM items t
        WHERE t.kind = 'task' AND t.linked_ref = i.id AND t.status != 'archived'
    ) ELSE 0 END AS linked_task_count,
    (SELECT n.title FROM items n WHERE n.id = i.linked_ref) AS linked_note_title,
    CASE
        WHEN EXISTS (SELECT 1 FROM share_links s
                     WHERE s.item_id = i.id AND s.visibility = 'public') THEN 'public'
        WHEN EXISTS (SELECT 1 FROM share_links s
                     WHERE s.item_id = i.id) THEN 'unlisted'
    END AS share_visibility
FROM items i
"""

_SORT_SQL = {
    "created": "i.created {o}, i.rowid {o}",
    "modified": "i.modified {o}, i.rowid {o}",
    "priority": (
        "CASE i.priority WHEN 'high' THEN 3 WHEN 'medium' THEN 2 "
        "WHEN 'low' THEN 1 ELSE 0 END {o}, i.rowid {o}"
    ),
    # Undated items always sort last
    "due": "(i.due IS NULL) ASC, i.due {o}, i.rowid {o}",
}

_JSON_FIELDS = ("tags", "aliases")

# Bulk actions → target status per kind (None = not applicable to that kind)
TRIAGE_ACTIONS: Dict[str, Dict[str, Optional[str]]] = {
    "archive": {"note": "archived", "task": "archived", "scratch": "archived"},
    "done": {"note": None, "task": "done", "scratch": None},
    "active": {"note": None, "task": "active", "scratch": None},
    "develop": {"note": "developing", "task": None, "scratch": None},
    "delete": {"note": None, "task": None, "scratch": None},
}


# ---------------------------------------------------------------------------
# ItemStore
# ---------------------------------------------------------------------------

class ItemStore:
    """
    SQLite-backed persistent store for items.

    Thread-safe via explicit lock.  All writes pass through TaxonomyEngine
    before any SQL runs, so a rejected write leaves the database untouched.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        wal_mode: bool = True,
        rebuild_index: bool = True,
    ):
        """Open (or create) the store, install the FTS index and rebuild it.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
            rebuild_index: Repopulate the FTS index from ``items`` on open.
        """
        self._db_path = db_path
        self._lock = threading.RLock()
        self.taxonomy = TaxonomyEngine()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if wal_mode and db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA_SQL)
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_at', datetime('now'))",
        )
        self._conn.commit()
        self.index = SearchIndex(self._conn, self._lock)
        self.index.install()
        if rebuild_index and self.index.available:
            self.index.rebuild()
        logger.info(
            "ItemStore initialized: %s (fts5_trigram=%s)",
            db_path, "yes" if self.index.available else "no",
        )

    @property
    def db_path(self) -> str:
        return self._db_path

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    # -- Transactions ------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one atomic unit: commit on success, roll back on error."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except BaseException:
                self._conn.rollback()
                raise

    def read_rows(
        self, sql: str, params: Union[Sequence[Any], Mapping[str, Any]] = (),
    ) -> List[sqlite3.Row]:
        """Run a read-only query under the store lock (positional or named params)."""
        if not isinstance(params, Mapping):
            params = tuple(params)
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # -- Write operations --------------------------------------------------

    def create(self, kind: str = "note", **fields: Any) -> Item:
        """
        Insert a new item and return it with derived fields.

        Raises ValidationError for malformed fields, InvalidTransition when an
        explicit status is not valid for the kind.
        """
        fields["kind"] = kind
        record = self.taxonomy.prepare_create(fields)
        item_id = _generate_id()
        now = _now_iso()
        with self.transaction() as conn:
            self._check_link(conn, record["linked_ref"])
            conn.execute(
                """INSERT INTO items
                   (id, kind, title, body, status, priority, due, tags,
                    aliases, linked_ref, origin, external_source,
                    created, modified)
                   VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)""",
                (
                    item_id, record["kind"], record["title"], record["body"],
                    record["status"], record["priority"], record["due"],
                    json.dumps(record["tags"], ensure_ascii=False),
                    json.dumps(record["aliases"], ensure_ascii=False),
                    record["linked_ref"], record["origin"],
                    record["external_source"], now, now,
                ),
            )
            item = self._fetch(conn, item_id)
        logger.debug("created %s %s (%s)", item.kind, item.id, item.status)
        return item

    def update(self, item_id: str, patch: Dict[str, Any]) -> Item:
        """
        Apply ``patch`` through the taxonomy and persist the changed keys.

        Raises NotFound for an unknown id; ValidationError/InvalidTransition
        before any write.  ``modified`` is stamped even when the resolved
        patch is empty.
        """
        with self.transaction() as conn:
            existing = self._fetch(conn, item_id)
            resolution = self.taxonomy.resolve_patch(existing, patch)
            changes = dict(resolution.changes)
            if changes.get("linked_ref") is not None:
                if changes["linked_ref"] == item_id:
                    raise ValidationError(
                        "linked_ref cannot point at the item itself", field="linked_ref",
                    )
                self._check_link(conn, changes["linked_ref"])
            changes["modified"] = _now_iso()
            assignments = []
            params: list = []
            for key, value in changes.items():
                if key in _JSON_FIELDS:
                    value = json.dumps(value, ensure_ascii=False)
                assignments.append(f"{key}=?")
                params.append(value)
            conn.execute(
                f"UPDATE items SET {', '.join(assignments)} WHERE id=?",
                params + [item_id],
            )
            item = self._fetch(conn, item_id)
        if resolution.converted:
            logger.info(
                "converted %s: %s → %s (status %s)",
                item_id, existing.kind, item.kind, item.status,
            )
        if resolution.reverted:
            logger.info("exported note %s edited; reverted to permanent", item_id)
        return item

    def delete(self, item_id: str) -> bool:
        """Hard-delete an item (share links cascade). Returns True if a row went."""
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM items WHERE id=?", (item_id,))
            deleted = cur.rowcount > 0
        if deleted:
            logger.debug("deleted %s", item_id)
        return deleted

    def advance(self, item_id: str, target: str) -> Item:
        """
        Move a note one step along fleeting → developing → permanent.

        Raises NotFound for an unknown id and ValidationError when the item
        is not a note or is not in the status that precedes ``target``.
        """
        with self._lock:
            existing = self.get(item_id)
            self.taxonomy.check_advance(existing, target)
            item = self.update(item_id, {"status": target})
        logger.info("advanced note %s: %s → %s", item_id, existing.status, target)
        return item

    def triage(self, item_ids: Iterable[str], action: str) -> Dict[str, Any]:
        """
        Apply a bulk action to several items.

        Each item is updated in its own transaction through ``update`` so the
        taxonomy still applies.  Items that do not exist or whose kind cannot
        take the action are skipped rather than failing the batch; ``develop``
        follows ``advance`` and skips notes that are not fleeting.
        """
        if action not in TRIAGE_ACTIONS:
            raise ValidationError(
                f"Invalid action: {action!r}. Must be one of {sorted(TRIAGE_ACTIONS)}",
                field="action",
            )
        targets = TRIAGE_ACTIONS[action]
        affected = 0
        skipped: List[str] = []
        for item_id in item_ids:
            if action == "delete":
                if self.delete(item_id):
                    affected += 1
                else:
                    skipped.append(item_id)
                continue
            try:
                if action == "develop":
                    self.advance(item_id, "developing")
                else:
                    existing = self.get(item_id)
                    status = targets[existing.kind]
                    if status is None:
                        raise InvalidTransition(existing.kind, action)
                    self.update(item_id, {"status": status})
                affected += 1
            except (NotFound, ValidationError) as exc:
                logger.debug("triage %s skipped %s: %s", action, item_id, exc)
                skipped.append(item_id)
        return {"affected": affected, "skipped": skipped}

    # -- Read operations ---------------------------------------------------

    def get(self, item_id: str) -> Item:
        """Return one item with derived fields, or raise NotFound."""
        with self._lock:
            return self._fetch(self._conn, item_id)

    def get_many(self, item_ids: Sequence[str]) -> List[Item]:
        """Return items in the order of ``item_ids``, silently skipping unknown ids."""
        if not item_ids:
            return []
        placeholders = ",".join("?" * len(item_ids))
        rows = self.read_rows(
            f"{_SELECT_ITEM_SQL} WHERE i.id IN ({placeholders})", item_ids,
        )
        by_id = {row["id"]: self._row_to_item(row) for row in rows}
        return [by_id[i] for i in item_ids if i in by_id]

    def list(
        self,
        status: Optional[str] = None,
        kind: Optional[str] = None,
        tag: Optional[str] = None,
        exclude_statuses: Optional[Iterable[str]] = None,
        sort: str = "created",
        order: str = "desc",
        limit: int = LIST_DEFAULT_LIMIT,
        offset: int = 0,
    ) -> ItemPage:
        """
        List items with optional filters.

        ``total`` counts every matching item regardless of limit/offset.
        """
        if sort not in VALID_SORT_KEYS:
            raise ValidationError(f"Invalid sort key: {sort!r}", field="sort")
        if order not in VALID_ORDERS:
            raise ValidationError(f"Invalid order: {order!r}", field="order")
        if kind is not None and kind not in VALID_KINDS:
            raise ValidationError(f"Invalid kind: {kind!r}", field="kind")
        if not isinstance(limit, int) or not 1 <= limit <= LIST_MAX_LIMIT:
            raise ValidationError(
                f"limit must be between 1 and {LIST_MAX_LIMIT}", field="limit",
            )
        if not isinstance(offset, int) or offset < 0:
            raise ValidationError("offset must be >= 0", field="offset")

        conditions: list = []
        params: list = []
        if status:
            conditions.append("i.status=?")
            params.append(status)
        if kind:
            conditions.append("i.kind=?")
            params.append(kind)
        excluded = sorted(set(exclude_statuses or ()))
        if excluded:
            conditions.append(f"i.status NOT IN ({','.join('?' * len(excluded))})")
            params.extend(excluded)
        if tag:
            conditions.append(
                "i.id IN (SELECT DISTINCT it.id FROM items it, json_each(it.tags) "
                "WHERE json_each.value = ?)"
            )
            params.append(tag)
        where = " AND ".join(conditions) if conditions else "1=1"
        order_by = _SORT_SQL[sort].format(o=order.upper())

        with self._lock:
            total = self._conn.execute(
                f"SELECT COUNT(*) AS cnt FROM items i WHERE {where}", params,
            ).fetchone()["cnt"]
            rows = self._conn.execute(
                f"{_SELECT_ITEM_SQL} WHERE {where} ORDER BY {order_by} LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
        return ItemPage(items=[self._row_to_item(r) for r in rows], total=total)

    def search(self, text: str, limit: int = DEFAULT_LIMIT) -> List[Item]:
        """Full-text search returning enriched items in ranked order."""
        with self._lock:
            ids = self.index.query(text, limit)
            return self.get_many(ids)

    @property
    def last_search_meta(self) -> Optional[SearchMeta]:
        return self.index.last_meta

    def all_tags(self) -> List[str]:
        """Distinct non-empty tags across all items, sorted."""
        rows = self.read_rows(
            "SELECT DISTINCT json_each.value AS tag FROM items, json_each(items.tags) "
            "WHERE json_each.value != '' ORDER BY tag"
        )
        return [row["tag"] for row in rows]

    def count_items(self) -> int:
        return self.read_rows("SELECT COUNT(*) AS cnt FROM items")[0]["cnt"]

    # -- Internal ----------------------------------------------------------

    @staticmethod
    def _check_link(conn: sqlite3.Connection, linked_ref: Optional[str]) -> None:
        """A task may only link to an existing note."""
        if linked_ref is None:
            return
        row = conn.execute(
            "SELECT kind FROM items WHERE id=?", (linked_ref,)
        ).fetchone()
        if row is None or row["kind"] != "note":
            raise ValidationError(
                f"linked_ref must name an existing note: {linked_ref!r}",
                field="linked_ref",
            )

    def _fetch(self, conn: sqlite3.Connection, item_id: str) -> Item:
        row = conn.execute(
            f"{_SELECT_ITEM_SQL} WHERE i.id=?", (item_id,)
        ).fetchone()
        if row is None:
            raise NotFound(item_id)
        return self._row_to_item(row)

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> Item:
        """Convert a SQLite Row (with derived columns) to Item."""
        return Item(
            id=row["id"],
            kind=row["kind"],
            title=row["title"],
            body=row["body"],
            status=row["status"],
            priority=row["priority"],
            due=row["due"],
            tags=json.loads(row["tags"]),
            aliases=json.loads(row["aliases"]),
            linked_ref=row["linked_ref"],
            origin=row["origin"],
            external_source=row["external_source"],
            created=row["created"],
            modified=row["modified"],
            linked_task_count=row["linked_task_count"],
            linked_note_title=row["linked_note_title"],
            share_visibility=row["share_visibility"],
        )
