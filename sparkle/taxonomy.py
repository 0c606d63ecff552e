"""
Item Taxonomy — Kind/Status Rule Engine

Pure rule set, no I/O.  Every create and update passes through here
before the store touches SQLite:

    1. conversion  — kind change maps the current status through a fixed table
    2. masking     — fields the effective kind cannot carry are cleared or dropped
    3. revert      — an exported note whose title/body changes goes back to permanent

The three steps run on an in-memory copy of the requested patch; the
store only ever sees the final result.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sparkle.errors import InvalidTransition, ValidationError
from sparkle.types import VALID_KINDS, VALID_PRIORITIES, WRITABLE_FIELDS, Item

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Status sets
# ---------------------------------------------------------------------------

VALID_STATUSES: Dict[str, frozenset] = {
    "note": frozenset({"fleeting", "developing", "permanent", "exported", "archived"}),
    "task": frozenset({"active", "done", "archived"}),
    "scratch": frozenset({"draft", "archived"}),
}

DEFAULT_STATUS: Dict[str, str] = {
    "note": "fleeting",
    "task": "active",
    "scratch": "draft",
}

# (from_kind, to_kind) -> {current status -> mapped status}
CONVERSION_MAP: Dict[Tuple[str, str], Dict[str, str]] = {
    ("task", "note"): {
        "active": "fleeting", "done": "permanent", "archived": "archived",
    },
    ("note", "task"): {
        "fleeting": "active", "developing": "active", "permanent": "done",
        "exported": "done", "archived": "archived",
    },
    ("scratch", "note"): {"draft": "fleeting", "archived": "archived"},
    ("scratch", "task"): {"draft": "active", "archived": "archived"},
    ("note", "scratch"): {
        "fleeting": "draft", "developing": "draft", "permanent": "archived",
        "exported": "archived", "archived": "archived",
    },
    ("task", "scratch"): {
        "active": "draft", "done": "archived", "archived": "archived",
    },
}

# target status -> status a note must hold to advance into it
ADVANCE_FROM: Dict[str, str] = {
    "developing": "fleeting",
    "permanent": "developing",
}

# Fields a note never carries.  Tasks mask nothing: aliases and priority
# survive a note → task conversion.
NOTE_MASKED_FIELDS = ("linked_ref", "due")

# Fields a scratch item never carries
SCRATCH_MASKED_FIELDS = ("tags", "priority", "due", "aliases", "linked_ref")

_EMPTY: Dict[str, Any] = {
    "tags": [],
    "aliases": [],
    "priority": None,
    "due": None,
    "linked_ref": None,
}

_DUE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

MAX_TITLE_LENGTH = 500
MAX_BODY_LENGTH = 50000
MAX_TAG_LENGTH = 50
MAX_TAGS = 20


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

@dataclass
class PatchResolution:
    """Result of running a requested patch through the taxonomy."""

    changes: Dict[str, Any] = field(default_factory=dict)
    kind: str = "note"
    status: str = "fleeting"
    converted: bool = False
    reverted: bool = False
    dropped: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        """Return True if nothing would change on disk (besides modified)."""
        return not self.changes


# ---------------------------------------------------------------------------
# Field normalization
# ---------------------------------------------------------------------------

def normalize_due(value: Any) -> Optional[str]:
    """Return a YYYY-MM-DD string or None; raise ValidationError otherwise."""
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str) or not _DUE_PATTERN.match(value):
        raise ValidationError(f"due must be YYYY-MM-DD, got {value!r}", field="due")
    try:
        date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"due is not a calendar date: {value!r}", field="due")
    return value


def _normalize_str_list(name: str, value: Any, max_items: int) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, (list, tuple, set, frozenset)):
        raise ValidationError(f"{name} must be a list of strings", field=name)
    out: List[str] = []
    for v in value:
        if not isinstance(v, str):
            raise ValidationError(f"{name} must be a list of strings", field=name)
        v = v.strip()
        if not v or v in out:
            continue
        if len(v) > MAX_TAG_LENGTH:
            raise ValidationError(
                f"{name} entry too long ({len(v)} > {MAX_TAG_LENGTH})", field=name,
            )
        out.append(v)
    if len(out) > max_items:
        raise ValidationError(f"too many {name} ({len(out)} > {max_items})", field=name)
    return out


def normalize_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Validate and normalize a requested field set.

    Unknown keys, a bad kind, a bad priority or a malformed date raise
    ValidationError.  Status is only type-checked here; its validity
    depends on the resolved kind and is checked by the engine.
    """
    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if key not in WRITABLE_FIELDS:
            raise ValidationError(f"Unknown or read-only field: {key!r}", field=key)
        if key == "kind":
            if value not in VALID_KINDS:
                raise ValidationError(f"Invalid kind: {value!r}", field="kind")
        elif key == "status":
            if value is None:
                continue
            if not isinstance(value, str) or not value:
                raise ValidationError(f"Invalid status: {value!r}", field="status")
        elif key == "priority":
            if value == "":
                value = None
            if value is not None and value not in VALID_PRIORITIES:
                raise ValidationError(f"Invalid priority: {value!r}", field="priority")
        elif key == "due":
            value = normalize_due(value)
        elif key in ("tags", "aliases"):
            value = _normalize_str_list(key, value, MAX_TAGS)
        elif key == "title":
            if not isinstance(value, str) or not value.strip():
                raise ValidationError("title is required", field="title")
            if len(value) > MAX_TITLE_LENGTH:
                raise ValidationError("title too long", field="title")
        elif key == "body":
            value = value or ""
            if not isinstance(value, str) or len(value) > MAX_BODY_LENGTH:
                raise ValidationError("body must be a string up to 50000 chars", field="body")
        elif key in ("linked_ref", "external_source"):
            if value == "":
                value = None
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"{key} must be a string", field=key)
        elif key == "origin":
            value = value or ""
            if not isinstance(value, str):
                raise ValidationError("origin must be a string", field="origin")
        out[key] = value
    return out


# ---------------------------------------------------------------------------
# Taxonomy Engine
# ---------------------------------------------------------------------------

class TaxonomyEngine:
    """
    Kind-scoped status machine with cross-kind conversion.

    Rules:
    - status is always a member of VALID_STATUSES[kind]
    - a conversion-mapped status overrides any status requested in the same update
    - notes never carry linked_ref/due; scratch items never carry
      tags/priority/due/aliases/linked_ref
    - an exported note whose title or body changes reverts to permanent
    """

    def is_valid(self, kind: str, status: str) -> bool:
        """Membership test against the per-kind status sets."""
        return status in VALID_STATUSES.get(kind, ())

    def default_status(self, kind: str) -> str:
        """Initial status for a newly created item of this kind."""
        try:
            return DEFAULT_STATUS[kind]
        except KeyError:
            raise ValidationError(f"Invalid kind: {kind!r}", field="kind")

    def map_status_on_conversion(
        self, from_kind: str, to_kind: str, current_status: str,
    ) -> Optional[str]:
        """Mapped status for a kind change, or None when the kind is unchanged."""
        if from_kind == to_kind:
            return None
        table = CONVERSION_MAP.get((from_kind, to_kind))
        if table is None:
            raise ValidationError(
                f"No conversion from {from_kind!r} to {to_kind!r}", field="kind",
            )
        return table.get(current_status)

    def check_advance(self, item: Item, target: str) -> None:
        """
        Validate one step of the note maturity pipeline.

        Only fleeting → developing and developing → permanent are allowed.
        Raises ValidationError naming the offending field otherwise.
        """
        if target not in ADVANCE_FROM:
            raise ValidationError(
                f"Invalid target: {target!r}. Must be one of {sorted(ADVANCE_FROM)}",
                field="target",
            )
        if item.kind != "note":
            raise ValidationError(
                f"Item is a {item.kind}, not a note. Only notes can be advanced.",
                field="kind",
            )
        required = ADVANCE_FROM[target]
        if item.status != required:
            raise ValidationError(
                f"Note is {item.status!r}, but must be {required!r} "
                f"to advance to {target!r}",
                field="status",
            )

    # -- Create ------------------------------------------------------------

    def prepare_create(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Build the full stored field set for a new item.

        Applies the default status and the masking policy of the kind,
        then validates the kind/status pair.
        """
        record = normalize_fields(fields)
        kind = record.get("kind", "note")
        record["kind"] = kind
        if "title" not in record:
            raise ValidationError("title is required", field="title")
        status = record.get("status") or self.default_status(kind)
        record["status"] = status

        masked = ()
        if kind == "note":
            masked = NOTE_MASKED_FIELDS
        elif kind == "scratch":
            masked = SCRATCH_MASKED_FIELDS
        for name in masked:
            record[name] = _EMPTY[name]

        if not self.is_valid(kind, status):
            raise InvalidTransition(kind, status)

        base = Item(kind=kind, status=status).stored_fields()
        base.update(record)
        return base

    # -- Update ------------------------------------------------------------

    def resolve_patch(
        self, existing: Item, requested: Mapping[str, Any],
    ) -> PatchResolution:
        """
        Run a requested patch through conversion, masking and revert.

        Pure: neither ``existing`` nor ``requested`` is mutated.  Raises
        ValidationError for malformed fields and InvalidTransition when the
        resolved status is not valid for the resolved kind.  The returned
        ``changes`` holds only keys whose value differs from ``existing``.
        """
        proposed = normalize_fields(requested)
        old_kind = existing.kind
        kind = proposed.get("kind", old_kind)
        converted = kind != old_kind
        dropped: List[str] = []

        # (1) conversion
        if converted:
            mapped = self.map_status_on_conversion(old_kind, kind, existing.status)
            if mapped is None:
                raise InvalidTransition(kind, existing.status)
            proposed["status"] = mapped

        # (2) masking
        masked = ()
        if kind == "note":
            masked = NOTE_MASKED_FIELDS
        elif kind == "scratch":
            masked = SCRATCH_MASKED_FIELDS
        for name in masked:
            if converted:
                proposed[name] = _EMPTY[name]
            elif name in proposed:
                del proposed[name]
                dropped.append(name)

        # (3) export revert
        status = proposed.get("status", existing.status)
        reverted = False
        if kind == "note" and status == "exported":
            title_changed = "title" in proposed and proposed["title"] != existing.title
            body_changed = "body" in proposed and proposed["body"] != existing.body
            if title_changed or body_changed:
                status = "permanent"
                proposed["status"] = status
                reverted = True

        if not self.is_valid(kind, status):
            raise InvalidTransition(kind, status)

        changes = {
            k: v for k, v in proposed.items() if getattr(existing, k) != v
        }
        if dropped:
            logger.debug("item %s: dropped %s for kind=%s", existing.id, dropped, kind)
        return PatchResolution(
            changes=changes,
            kind=kind,
            status=status,
            converted=converted,
            reverted=reverted,
            dropped=dropped,
        )
