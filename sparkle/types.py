"""
Item Data Model — First-Class Objects

Defines the canonical item record (note, task, scratch), the derived
read-time fields, and the page/search metadata returned by the store.

Items are plain dataclasses; every rule about which fields a kind may
carry lives in sparkle.taxonomy, never here.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

Kind = Literal["note", "task", "scratch"]
Status = Literal[
    "fleeting", "developing", "permanent", "exported",
    "active", "done", "draft", "archived",
]
Priority = Literal["low", "medium", "high"]
SortKey = Literal["created", "modified", "priority", "due"]
SortOrder = Literal["asc", "desc"]
Visibility = Literal["unlisted", "public"]
SearchStrategy = Literal["TRIGRAM", "SUBSTRING", "EMPTY"]

# Valid values for runtime checks
VALID_KINDS: set = {"note", "task", "scratch"}
VALID_PRIORITIES: set = {"low", "medium", "high"}
VALID_SORT_KEYS: set = {"created", "modified", "priority", "due"}
VALID_ORDERS: set = {"asc", "desc"}
VALID_VISIBILITIES: set = {"unlisted", "public"}

# Fields a caller may write through create/update
WRITABLE_FIELDS = (
    "kind", "title", "body", "status", "priority", "due",
    "tags", "aliases", "linked_ref", "origin", "external_source",
)


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _generate_id() -> str:
    """Generate a unique item ID."""
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Item (canonical)
# ---------------------------------------------------------------------------

@dataclass
class Item:
    """
    Canonical item record with derived read-time fields.

    Stored fields:
    - due and linked_ref are meaningful for tasks only.
    - tags, aliases and priority for notes and tasks; scratch carries none.

    Derived fields (never persisted):
    - linked_task_count: non-archived tasks whose linked_ref is this note.
    - linked_note_title: title of the note a task references.
    - share_visibility: "public" if any public share link exists,
      "unlisted" if only unlisted ones exist, else None.
    """

    id: str = field(default_factory=_generate_id)
    kind: Kind = "note"
    title: str = ""
    body: str = ""
    status: Status = "fleeting"
    priority: Optional[Priority] = None
    due: Optional[str] = None  # YYYY-MM-DD
    tags: List[str] = field(default_factory=list)
    aliases: List[str] = field(default_factory=list)
    linked_ref: Optional[str] = None
    origin: str = ""
    external_source: Optional[str] = None
    created: str = field(default_factory=_now_iso)
    modified: str = field(default_factory=_now_iso)
    # Derived
    linked_task_count: int = 0
    linked_note_title: Optional[str] = None
    share_visibility: Optional[Visibility] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Item:
        """Deserialize from dict, ignoring unknown keys."""
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in d.items() if k in known})

    def to_json(self) -> str:
        """Serialize to indented JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)

    def stored_fields(self) -> Dict[str, Any]:
        """Writable stored fields only (no id, timestamps or derived values)."""
        return {name: getattr(self, name) for name in WRITABLE_FIELDS}

    def format_line(self) -> str:
        """One-line summary used by listings."""
        suffix = ""
        if self.due:
            suffix += f" (due {self.due})"
        if self.priority == "high":
            suffix += " !"
        return f"{self.title}{suffix}"


# ---------------------------------------------------------------------------
# Listing page
# ---------------------------------------------------------------------------

@dataclass
class ItemPage:
    """A page of listed items plus the total count ignoring limit/offset."""

    items: List[Item] = field(default_factory=list)
    total: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Serialize page to a plain dictionary."""
        return {"items": [it.to_dict() for it in self.items], "total": self.total}


# ---------------------------------------------------------------------------
# Search Metadata
# ---------------------------------------------------------------------------

@dataclass
class SearchMeta:
    """How the last query was resolved.

    Advisory only: TRIGRAM for indexed matches, SUBSTRING for the short
    query scan, EMPTY when the input had nothing to match.
    """

    strategy: SearchStrategy = "TRIGRAM"
    query: str = ""
    match_expr: Optional[str] = None
    hits: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict for MCP responses and audit."""
        return asdict(self)
