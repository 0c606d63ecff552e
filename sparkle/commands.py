"""
Chat Commands — Terse conversational front end over ItemStore.

One text message in, one text reply out.  Listing commands remember what
they showed in a ReferenceMap so a follow-up like ``!done 2`` can address
the second entry without its id.

Grammar (first word, case-insensitive):

    ? | help                    help text
    !find <keyword>             search
    !fleeting | !inbox          fleeting notes
    !notes  !todos  !active     notes / open tasks / active tasks
    !scratch                    scratch drafts
    !today                      focus list
    !stats                      counters
    !list <tag>                 items carrying a tag
    !detail N                   full view of entry N
    !done N  !archive N  !develop N  !permanent N
    !due N <date>               YYYY-MM-DD, M/D, today, tomorrow, none
    !tag N <tags...>  !untag N <tags...>
    !priority N high|medium|low|none
    anything else               capture (prefixes !todo, !tmp, !high)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, List, Optional, Sequence

from sparkle.errors import NotFound, ValidationError
from sparkle.session import ReferenceMap
from sparkle.stats import format_stats, get_focus_items, get_stats
from sparkle.store import ItemStore
from sparkle.types import Item

logger = logging.getLogger(__name__)

MAX_LISTED = 5
DETAIL_MAX_CHARS = 5000
CHAT_ORIGIN = "chat"

HELP_WORDS = frozenset({"?", "help", "說明"})
CLEAR_WORDS = frozenset({"none", "clear", "清除"})

# Commands that take no argument
_BARE = {
    "!fleeting": "fleeting",
    "!inbox": "fleeting",
    "!active": "active",
    "!notes": "notes",
    "!todos": "todos",
    "!scratch": "scratch",
    "!today": "today",
    "!stats": "stats",
}

# Commands that take only an index
_INDEXED = {
    "!detail": "detail",
    "!done": "done",
    "!archive": "archive",
    "!develop": "develop",
    "!permanent": "permanent",
}

_CAPTURE_PREFIX = re.compile(r"^!(todo|tmp|high)(?=\s|$)", re.IGNORECASE)
_ISO_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_MD_PATTERN = re.compile(r"^(\d{1,2})/(\d{1,2})$")

HELP_TEXT = """Sparkle commands

Plain text → saved as a fleeting note
!todo Buy milk → saved as a task
!high Urgent thing → high priority
!tmp Parking spot B3 → scratch draft
First line is the title, the rest is the body.

!find kw  !fleeting  !notes  !todos  !active  !scratch  !today  !stats
!list tag  !detail N  !done N  !archive N  !develop N  !permanent N
!due N date  !tag N tags  !untag N tags  !priority N level

N refers to the last list shown (valid for 10 minutes)."""

EXPIRED_HINT = "Reference #{n} is unknown or expired. List items again first."


# ---------------------------------------------------------------------------
# Parsed forms
# ---------------------------------------------------------------------------

@dataclass
class Capture:
    """A plain-text message to be saved as a new item."""
    title: str
    body: str = ""
    kind: str = "note"
    priority: Optional[str] = None


@dataclass
class Command:
    """One parsed chat message."""
    name: str
    index: Optional[int] = None
    keyword: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    date_input: Optional[str] = None
    priority: Optional[str] = None
    capture: Optional[Capture] = None


@dataclass
class DueParse:
    """Outcome of parsing a due-date argument."""
    ok: bool
    date: Optional[str] = None
    clear: bool = False


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _parse_index(token: str) -> Optional[int]:
    if not token.isdigit():
        return None
    n = int(token)
    return n if n >= 1 else None


def parse_capture(text: str) -> Capture:
    """Split a capture message into title/body and apply prefix flags."""
    trimmed = text.strip()
    first, _, body = trimmed.partition("\n")
    remaining = first.strip()
    kind = "note"
    priority = None
    while True:
        m = _CAPTURE_PREFIX.match(remaining)
        if m is None:
            break
        flag = m.group(1).lower()
        if flag == "todo":
            kind = "task"
        elif flag == "tmp":
            kind = "scratch"
        else:
            priority = "high"
        remaining = remaining[m.end():].lstrip()
    return Capture(title=remaining.strip(), body=body, kind=kind, priority=priority)


def parse_command(text: str) -> Command:
    """Parse one message. Anything unrecognized is ``Command("unknown")``."""
    trimmed = (text or "").strip()
    if not trimmed:
        return Command("unknown")
    if trimmed.lower() in HELP_WORDS:
        return Command("help")

    parts = trimmed.split()
    head = parts[0].lower()
    args = parts[1:]

    if head in _BARE and not args:
        return Command(_BARE[head])
    if head == "!find" and args:
        return Command("find", keyword=" ".join(args))
    if head == "!list" and len(args) == 1:
        return Command("list", keyword=args[0])
    if head in _INDEXED:
        if len(args) == 1 and _parse_index(args[0]) is not None:
            return Command(_INDEXED[head], index=_parse_index(args[0]))
        return Command("unknown")
    if head in ("!due", "!tag", "!untag", "!priority"):
        if len(args) < 2 or _parse_index(args[0]) is None:
            return Command("unknown")
        index = _parse_index(args[0])
        if head == "!due":
            return Command("due", index=index, date_input=" ".join(args[1:]))
        if head == "!priority":
            level = args[1].lower()
            if len(args) != 2:
                return Command("unknown")
            if level in CLEAR_WORDS:
                return Command("priority", index=index, priority=None)
            if level in ("high", "medium", "low"):
                return Command("priority", index=index, priority=level)
            return Command("unknown")
        return Command(head[1:], index=index, tags=list(args[1:]))

    if head.startswith("!") and not _CAPTURE_PREFIX.match(head):
        return Command("unknown")

    capture = parse_capture(trimmed)
    if not capture.title:
        return Command("unknown")
    return Command("save", capture=capture)


def parse_due(text: str, today: Optional[date] = None) -> DueParse:
    """Parse a due-date argument relative to ``today``."""
    value = (text or "").strip()
    if not value:
        return DueParse(False)
    lowered = value.lower()
    if lowered in CLEAR_WORDS:
        return DueParse(True, clear=True)
    today = today or date.today()
    if lowered in ("today", "今天"):
        return DueParse(True, date=today.isoformat())
    if lowered in ("tomorrow", "明天"):
        return DueParse(True, date=(today + timedelta(days=1)).isoformat())
    if _ISO_PATTERN.match(value):
        try:
            return DueParse(True, date=date.fromisoformat(value).isoformat())
        except ValueError:
            return DueParse(False)
    m = _MD_PATTERN.match(value)
    if m:
        try:
            d = date(today.year, int(m.group(1)), int(m.group(2)))
        except ValueError:
            return DueParse(False)
        return DueParse(True, date=d.isoformat())
    return DueParse(False)


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def format_numbered_list(header: str, items: Sequence[Item], total: int) -> str:
    """Header with count plus ``[i] title`` lines for the shown items."""
    shown = list(items)[:MAX_LISTED]
    if total > len(shown):
        count = f"{total} total, showing {len(shown)}"
    else:
        count = f"{total} total"
    lines = [f"{header} ({count})"]
    for i, item in enumerate(shown, start=1):
        lines.append(f"[{i}] {item.format_line()}")
    return "\n".join(lines)


def format_detail(item: Item) -> str:
    """Full single-item view, body truncated to fit a chat message."""
    lines = [item.title, f"kind: {item.kind}", f"status: {item.status}"]
    if item.priority:
        lines.append(f"priority: {item.priority}")
    if item.due:
        lines.append(f"due: {item.due}")
    if item.tags:
        lines.append("tags: " + ", ".join(item.tags))
    if item.linked_note_title:
        lines.append(f"linked note: {item.linked_note_title}")
    if item.linked_task_count:
        lines.append(f"linked tasks: {item.linked_task_count}")
    if item.origin:
        lines.append(f"origin: {item.origin}")
    if item.body:
        header = "\n".join(lines)
        room = DETAIL_MAX_CHARS - len(header) - 2
        if room > 50:
            body = item.body
            if len(body) > room:
                marker = "\n... (truncated)"
                body = body[: room - len(marker)] + marker
            lines.append("\n" + body)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------

class CommandHandler:
    """Execute parsed commands against a store and a reference map."""

    def __init__(
        self,
        store: ItemStore,
        sessions: ReferenceMap,
        today: Optional[Callable[[], date]] = None,
    ):
        self.store = store
        self.sessions = sessions
        self._today = today or date.today

    def handle(self, user_key: str, text: str) -> str:
        """Run one message for ``user_key`` and return the reply text."""
        cmd = parse_command(text)
        logger.debug("command %s from %s", cmd.name, user_key)
        method = getattr(self, f"_cmd_{cmd.name}")
        try:
            return method(user_key, cmd)
        except ValidationError as exc:
            return f"Error: {exc}"

    # -- Listings ------------------------------------------------------------

    def _show(self, user_key: str, header: str, items: List[Item], total: int) -> str:
        shown = items[:MAX_LISTED]
        self.sessions.set(user_key, [it.id for it in shown])
        if not shown:
            return f"{header}: nothing here."
        return format_numbered_list(header, shown, total)

    def _list(self, user_key: str, header: str, **filters) -> str:
        page = self.store.list(limit=MAX_LISTED, **filters)
        return self._show(user_key, header, page.items, page.total)

    def _cmd_fleeting(self, user_key: str, cmd: Command) -> str:
        return self._list(user_key, "Fleeting notes", kind="note", status="fleeting")

    def _cmd_active(self, user_key: str, cmd: Command) -> str:
        return self._list(user_key, "Active tasks", kind="task", status="active")

    def _cmd_notes(self, user_key: str, cmd: Command) -> str:
        return self._list(
            user_key, "Notes", kind="note", exclude_statuses={"archived"},
        )

    def _cmd_todos(self, user_key: str, cmd: Command) -> str:
        return self._list(
            user_key, "Open tasks", kind="task", status="active",
            sort="due", order="asc",
        )

    def _cmd_scratch(self, user_key: str, cmd: Command) -> str:
        return self._list(user_key, "Scratch", kind="scratch", status="draft")

    def _cmd_list(self, user_key: str, cmd: Command) -> str:
        return self._list(
            user_key, f"Tag {cmd.keyword}", tag=cmd.keyword,
            exclude_statuses={"archived"},
        )

    def _cmd_find(self, user_key: str, cmd: Command) -> str:
        results = self.store.search(cmd.keyword or "")
        return self._show(user_key, f"Search '{cmd.keyword}'", results, len(results))

    def _cmd_today(self, user_key: str, cmd: Command) -> str:
        items = get_focus_items(self.store, today=self._today())
        return self._show(user_key, "Focus today", items, len(items))

    def _cmd_stats(self, user_key: str, cmd: Command) -> str:
        return format_stats(get_stats(self.store))

    def _cmd_help(self, user_key: str, cmd: Command) -> str:
        return HELP_TEXT

    def _cmd_unknown(self, user_key: str, cmd: Command) -> str:
        return "Unrecognized command. Send ? for help."

    # -- Numbered references -------------------------------------------------

    def _resolve(self, user_key: str, index: int) -> Optional[Item]:
        item_id = self.sessions.resolve(user_key, index)
        if item_id is None:
            return None
        try:
            return self.store.get(item_id)
        except NotFound:
            return None

    def _with_item(self, user_key: str, cmd: Command, action) -> str:
        item = self._resolve(user_key, cmd.index)
        if item is None:
            return EXPIRED_HINT.format(n=cmd.index)
        return action(item)

    def _cmd_detail(self, user_key: str, cmd: Command) -> str:
        return self._with_item(user_key, cmd, format_detail)

    def _set_status(self, user_key: str, cmd: Command, kind: str, status: str) -> str:
        def act(item: Item) -> str:
            if item.kind != kind:
                return f"'{item.title}' is a {item.kind}; !{cmd.name} applies to {kind}s."
            updated = self.store.update(item.id, {"status": status})
            return f"{updated.title} → {updated.status}"
        return self._with_item(user_key, cmd, act)

    def _cmd_done(self, user_key: str, cmd: Command) -> str:
        return self._set_status(user_key, cmd, "task", "done")

    def _advance(self, user_key: str, cmd: Command, target: str) -> str:
        def act(item: Item) -> str:
            updated = self.store.advance(item.id, target)
            return f"{updated.title} → {updated.status}"
        return self._with_item(user_key, cmd, act)

    def _cmd_develop(self, user_key: str, cmd: Command) -> str:
        return self._advance(user_key, cmd, "developing")

    def _cmd_permanent(self, user_key: str, cmd: Command) -> str:
        return self._advance(user_key, cmd, "permanent")

    def _cmd_archive(self, user_key: str, cmd: Command) -> str:
        def act(item: Item) -> str:
            updated = self.store.update(item.id, {"status": "archived"})
            return f"{updated.title} → archived"
        return self._with_item(user_key, cmd, act)

    def _cmd_due(self, user_key: str, cmd: Command) -> str:
        parsed = parse_due(cmd.date_input or "", self._today())
        if not parsed.ok:
            return f"Cannot read date: {cmd.date_input}"

        def act(item: Item) -> str:
            if item.kind != "task":
                return "Only tasks carry a due date."
            updated = self.store.update(item.id, {"due": parsed.date})
            if parsed.clear:
                return f"{updated.title}: due date cleared"
            return f"{updated.title}: due {updated.due}"
        return self._with_item(user_key, cmd, act)

    def _cmd_tag(self, user_key: str, cmd: Command) -> str:
        def act(item: Item) -> str:
            if item.kind == "scratch":
                return "Scratch items cannot be tagged."
            merged = list(item.tags) + [t for t in cmd.tags if t not in item.tags]
            updated = self.store.update(item.id, {"tags": merged})
            return f"{updated.title}: tags {', '.join(updated.tags)}"
        return self._with_item(user_key, cmd, act)

    def _cmd_untag(self, user_key: str, cmd: Command) -> str:
        def act(item: Item) -> str:
            kept = [t for t in item.tags if t not in cmd.tags]
            if kept == item.tags:
                return f"{item.title}: no such tag"
            updated = self.store.update(item.id, {"tags": kept})
            return f"{updated.title}: tags {', '.join(updated.tags) or '(none)'}"
        return self._with_item(user_key, cmd, act)

    def _cmd_priority(self, user_key: str, cmd: Command) -> str:
        def act(item: Item) -> str:
            if item.kind == "scratch":
                return "Scratch items have no priority."
            updated = self.store.update(item.id, {"priority": cmd.priority})
            return f"{updated.title}: priority {updated.priority or 'cleared'}"
        return self._with_item(user_key, cmd, act)

    # -- Capture -------------------------------------------------------------

    def _cmd_save(self, user_key: str, cmd: Command) -> str:
        cap = cmd.capture
        item = self.store.create(
            kind=cap.kind,
            title=cap.title,
            body=cap.body,
            priority=cap.priority,
            origin=CHAT_ORIGIN,
        )
        flag = " [high]" if item.priority == "high" else ""
        return f"Saved ({item.kind}{flag}, {item.status})\n{item.title}"
