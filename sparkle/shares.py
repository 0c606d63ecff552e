"""
Share Links — External tokens for published notes.

Rows live in ``share_links`` (created by ItemStore) and feed the derived
``share_visibility`` field.  Deleting an item removes its links through
the foreign key cascade; nothing here needs to clean up after deletes.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from sparkle.errors import ValidationError
from sparkle.store import ItemStore
from sparkle.types import VALID_VISIBILITIES, _generate_id, _now_iso

logger = logging.getLogger(__name__)

# 9 random bytes → 12 url-safe characters
TOKEN_BYTES = 9


@dataclass
class ShareLink:
    """One share token, optionally joined with its item's title."""
    id: str
    item_id: str
    token: str
    visibility: str
    created: str
    item_title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def generate_token() -> str:
    """Random 12-character url-safe token."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def _row_to_share(row) -> ShareLink:
    keys = row.keys()
    return ShareLink(
        id=row["id"],
        item_id=row["item_id"],
        token=row["token"],
        visibility=row["visibility"],
        created=row["created"],
        item_title=row["item_title"] if "item_title" in keys else None,
    )


def create_share(
    store: ItemStore, item_id: str, visibility: str = "unlisted",
) -> Optional[ShareLink]:
    """
    Create a share link for a note.

    Returns None when the item does not exist or is not a note.
    """
    if visibility not in VALID_VISIBILITIES:
        raise ValidationError(f"Invalid visibility: {visibility!r}", field="visibility")
    with store.transaction() as conn:
        row = conn.execute("SELECT kind FROM items WHERE id=?", (item_id,)).fetchone()
        if row is None or row["kind"] != "note":
            return None
        share = ShareLink(
            id=_generate_id(),
            item_id=item_id,
            token=generate_token(),
            visibility=visibility,
            created=_now_iso(),
        )
        conn.execute(
            "INSERT INTO share_links (id, item_id, token, visibility, created) "
            "VALUES (?,?,?,?,?)",
            (share.id, share.item_id, share.token, share.visibility, share.created),
        )
    logger.info("share %s created for %s (%s)", share.id, item_id, visibility)
    return share


def get_share_by_token(store: ItemStore, token: str) -> Optional[Dict[str, Any]]:
    """Resolve a token to its share plus the shared item, or None."""
    rows = store.read_rows(
        "SELECT s.*, i.title AS item_title FROM share_links s "
        "JOIN items i ON i.id = s.item_id WHERE s.token=?",
        (token,),
    )
    if not rows:
        return None
    share = _row_to_share(rows[0])
    return {"share": share.to_dict(), "item": store.get(share.item_id).to_dict()}


def list_shares(store: ItemStore, public_only: bool = False) -> List[ShareLink]:
    """All share links (or only public ones), newest first."""
    where = "WHERE s.visibility = 'public'" if public_only else ""
    rows = store.read_rows(
        "SELECT s.*, i.title AS item_title FROM share_links s "
        f"JOIN items i ON i.id = s.item_id {where} "
        "ORDER BY s.created DESC, s.rowid DESC"
    )
    return [_row_to_share(r) for r in rows]


def revoke_share(store: ItemStore, share_id: str) -> bool:
    """Delete one share link. Returns True if it existed."""
    with store.transaction() as conn:
        cur = conn.execute("DELETE FROM share_links WHERE id=?", (share_id,))
        return cur.rowcount > 0


def shares_for_item(store: ItemStore, item_id: str) -> List[ShareLink]:
    """Share links of one item, newest first."""
    rows = store.read_rows(
        "SELECT * FROM share_links WHERE item_id=? ORDER BY created DESC, rowid DESC",
        (item_id,),
    )
    return [_row_to_share(r) for r in rows]
