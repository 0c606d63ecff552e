"""
Tests for sparkle.commands — chat grammar, due-date parsing, handler flows.

Handler tests drive a real in-memory store and a ReferenceSession with a
fake clock, so numbered references and their expiry run end to end.
"""

from datetime import date

import pytest

from sparkle.commands import (
    EXPIRED_HINT,
    HELP_TEXT,
    MAX_LISTED,
    Command,
    CommandHandler,
    format_detail,
    format_numbered_list,
    parse_capture,
    parse_command,
    parse_due,
)
from sparkle.session import SESSION_TTL_SECONDS, ReferenceSession
from sparkle.store import ItemStore
from sparkle.types import Item


TODAY = date(2026, 3, 10)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def store():
    s = ItemStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def handler(store, clock):
    return CommandHandler(store, ReferenceSession(clock=clock), today=lambda: TODAY)


# ---------------------------------------------------------------------------
# parse_command
# ---------------------------------------------------------------------------


class TestParseCommand:
    @pytest.mark.parametrize("text", ["?", "help", "HELP", "說明"])
    def test_help(self, text):
        assert parse_command(text).name == "help"

    @pytest.mark.parametrize("text,name", [
        ("!inbox", "fleeting"),
        ("!fleeting", "fleeting"),
        ("!today", "today"),
        ("!stats", "stats"),
        ("!active", "active"),
        ("!notes", "notes"),
        ("!todos", "todos"),
        ("!scratch", "scratch"),
    ])
    def test_bare_commands(self, text, name):
        assert parse_command(text) == Command(name)

    def test_find(self):
        assert parse_command("!find Hono") == Command("find", keyword="Hono")

    def test_find_multiword(self):
        assert parse_command("!find foo bar").keyword == "foo bar"

    def test_list_tag(self):
        assert parse_command("!list 工作") == Command("list", keyword="工作")

    @pytest.mark.parametrize("text,name,index", [
        ("!detail 1", "detail", 1),
        ("!detail 3", "detail", 3),
        ("!done 3", "done", 3),
        ("!archive 2", "archive", 2),
        ("!develop 4", "develop", 4),
        ("!permanent 2", "permanent", 2),
    ])
    def test_indexed(self, text, name, index):
        assert parse_command(text) == Command(name, index=index)

    def test_due(self):
        assert parse_command("!due 1 明天") == Command("due", index=1, date_input="明天")
        assert parse_command("!due 2 2026-03-15") == Command(
            "due", index=2, date_input="2026-03-15",
        )

    def test_tag(self):
        assert parse_command("!tag 1 工作 重要") == Command("tag", index=1, tags=["工作", "重要"])
        assert parse_command("!tag 2 個人") == Command("tag", index=2, tags=["個人"])

    def test_untag(self):
        assert parse_command("!untag 1 work") == Command("untag", index=1, tags=["work"])
        assert parse_command("!untag 2 work urgent").tags == ["work", "urgent"]

    @pytest.mark.parametrize("level", ["high", "medium", "low"])
    def test_priority(self, level):
        assert parse_command(f"!priority 1 {level}") == Command("priority", index=1, priority=level)

    @pytest.mark.parametrize("word", ["none", "清除", "clear"])
    def test_priority_clear(self, word):
        cmd = parse_command(f"!priority 1 {word}")
        assert cmd.name == "priority"
        assert cmd.priority is None

    @pytest.mark.parametrize("text", [
        "",
        "   ",
        "!detail",
        "!due 1",
        "!tag 1",
        "!list",
        "!list a b",
        "!done",
        "!done abc",
        "!done 0",
        "!done -1",
        "!archive",
        "!permanent",
        "!priority",
        "!priority 1",
        "!priority 1 urgent",
        "!untag",
        "!untag 1",
        "!find",
        "!stats now",
        "!frobnicate",
        "!todo",
        "!high",
    ])
    def test_unknown(self, text):
        assert parse_command(text).name == "unknown"

    def test_plain_text_is_note_capture(self):
        cmd = parse_command("Hello world")
        assert cmd.name == "save"
        assert cmd.capture.kind == "note"
        assert cmd.capture.title == "Hello world"

    def test_todo_capture(self):
        cmd = parse_command("!todo Buy milk")
        assert cmd.name == "save"
        assert cmd.capture.kind == "task"
        assert cmd.capture.title == "Buy milk"


class TestParseCapture:
    def test_title_and_body(self):
        cap = parse_capture("Title line\nsecond\nthird")
        assert cap.title == "Title line"
        assert cap.body == "second\nthird"

    def test_stacked_prefixes(self):
        cap = parse_capture("!todo !high Fix the roof")
        assert cap.kind == "task"
        assert cap.priority == "high"
        assert cap.title == "Fix the roof"

    def test_tmp_is_scratch(self):
        assert parse_capture("!tmp Parking B3").kind == "scratch"

    def test_prefix_needs_word_boundary(self):
        cap = parse_capture("!todolist is a word")
        assert cap.kind == "note"
        assert cap.title == "!todolist is a word"


# ---------------------------------------------------------------------------
# parse_due
# ---------------------------------------------------------------------------


class TestParseDue:
    def test_iso(self):
        assert parse_due("2026-03-15", TODAY).date == "2026-03-15"

    def test_month_day_uses_current_year(self):
        assert parse_due("3/15", TODAY).date == "2026-03-15"

    @pytest.mark.parametrize("word", ["today", "今天", "Today"])
    def test_today(self, word):
        assert parse_due(word, TODAY).date == "2026-03-10"

    @pytest.mark.parametrize("word", ["tomorrow", "明天"])
    def test_tomorrow(self, word):
        assert parse_due(word, TODAY).date == "2026-03-11"

    @pytest.mark.parametrize("word", ["none", "clear", "清除"])
    def test_clear(self, word):
        parsed = parse_due(word, TODAY)
        assert parsed.ok and parsed.clear and parsed.date is None

    @pytest.mark.parametrize("text", ["", "2026-02-30", "13/1", "2/30", "next week", "2026/03/15"])
    def test_invalid(self, text):
        assert parse_due(text, TODAY).ok is False


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


class TestFormatting:
    def test_numbered_list_truncation_note(self):
        items = [Item(title=f"n{i}") for i in range(MAX_LISTED)]
        text = format_numbered_list("Notes", items, 12)
        lines = text.splitlines()
        assert lines[0] == f"Notes (12 total, showing {MAX_LISTED})"
        assert lines[1] == "[1] n0"
        assert len(lines) == MAX_LISTED + 1

    def test_numbered_list_markers(self):
        item = Item(kind="task", title="Pay", due="2026-03-15", priority="high")
        text = format_numbered_list("Tasks", [item], 1)
        assert text == "Tasks (1 total)\n[1] Pay (due 2026-03-15) !"

    def test_detail_truncates_body(self):
        item = Item(title="Long", body="x" * 10000)
        text = format_detail(item)
        assert len(text) <= 5000
        assert text.endswith("(truncated)")


# ---------------------------------------------------------------------------
# CommandHandler
# ---------------------------------------------------------------------------


class TestHandlerCapture:
    def test_save_note(self, handler, store):
        reply = handler.handle("u", "An idea\nwith details")
        assert reply == "Saved (note, fleeting)\nAn idea"
        item = store.list().items[0]
        assert item.body == "with details"
        assert item.origin == "chat"

    def test_save_high_task(self, handler, store):
        reply = handler.handle("u", "!todo !high Renew passport")
        assert reply.startswith("Saved (task [high], active)")

    def test_help_and_unknown(self, handler):
        assert handler.handle("u", "?") == HELP_TEXT
        assert "Send ?" in handler.handle("u", "!nope")


class TestHandlerReferences:
    def test_list_then_done(self, handler, store):
        store.create(kind="task", title="first")
        store.create(kind="task", title="second")
        listing = handler.handle("u", "!active")
        assert "[1] second" in listing
        reply = handler.handle("u", "!done 1")
        assert reply == "second → done"
        assert store.list(status="done").items[0].title == "second"

    def test_reference_without_listing(self, handler):
        assert handler.handle("u", "!done 1") == EXPIRED_HINT.format(n=1)

    def test_reference_expires(self, handler, store, clock):
        store.create(kind="task", title="t")
        handler.handle("u", "!todos")
        clock.now += SESSION_TTL_SECONDS + 1
        assert handler.handle("u", "!done 1") == EXPIRED_HINT.format(n=1)

    def test_references_are_per_user(self, handler, store):
        store.create(kind="task", title="t")
        handler.handle("alice", "!todos")
        assert handler.handle("bob", "!detail 1") == EXPIRED_HINT.format(n=1)
        assert handler.handle("alice", "!detail 1").startswith("t\nkind: task")

    def test_deleted_item_behaves_as_expired(self, handler, store):
        item = store.create(title="n")
        handler.handle("u", "!fleeting")
        store.delete(item.id)
        assert handler.handle("u", "!detail 1") == EXPIRED_HINT.format(n=1)

    def test_done_on_note_refused(self, handler, store):
        store.create(title="a note")
        handler.handle("u", "!fleeting")
        assert "applies to tasks" in handler.handle("u", "!done 1")

    def test_develop_note(self, handler, store):
        item = store.create(title="seed")
        handler.handle("u", "!fleeting")
        handler.handle("u", "!develop 1")
        assert store.get(item.id).status == "developing"

    def test_develop_then_permanent(self, handler, store):
        item = store.create(title="seed")
        handler.handle("u", "!fleeting")
        assert handler.handle("u", "!develop 1") == "seed → developing"
        assert handler.handle("u", "!permanent 1") == "seed → permanent"
        assert store.get(item.id).status == "permanent"

    def test_permanent_requires_developing(self, handler, store):
        item = store.create(title="seed")
        handler.handle("u", "!fleeting")
        reply = handler.handle("u", "!permanent 1")
        assert reply.startswith("Error:")
        assert "developing" in reply
        assert store.get(item.id).status == "fleeting"

    def test_develop_exported_note_refused(self, handler, store):
        item = store.create(title="out", status="exported")
        handler.handle("u", "!notes")
        assert handler.handle("u", "!develop 1").startswith("Error:")
        assert store.get(item.id).status == "exported"

    def test_develop_task_refused(self, handler, store):
        store.create(kind="task", title="t")
        handler.handle("u", "!todos")
        assert "not a note" in handler.handle("u", "!develop 1")

    def test_archive_scratch(self, handler, store):
        item = store.create(kind="scratch", title="tmp")
        handler.handle("u", "!scratch")
        assert handler.handle("u", "!archive 1") == "tmp → archived"
        assert store.get(item.id).status == "archived"

    def test_due_tomorrow(self, handler, store):
        item = store.create(kind="task", title="t")
        handler.handle("u", "!todos")
        assert handler.handle("u", "!due 1 明天") == "t: due 2026-03-11"
        assert store.get(item.id).due == "2026-03-11"
        handler.handle("u", "!due 1 none")
        assert store.get(item.id).due is None

    def test_due_on_note_refused(self, handler, store):
        store.create(title="n")
        handler.handle("u", "!notes")
        assert handler.handle("u", "!due 1 today") == "Only tasks carry a due date."

    def test_due_unreadable(self, handler, store):
        store.create(kind="task", title="t")
        handler.handle("u", "!todos")
        assert handler.handle("u", "!due 1 someday").startswith("Cannot read date")

    def test_tag_merge_and_untag(self, handler, store):
        item = store.create(title="n", tags=["a"])
        handler.handle("u", "!notes")
        handler.handle("u", "!tag 1 b a")
        assert store.get(item.id).tags == ["a", "b"]
        handler.handle("u", "!untag 1 a")
        assert store.get(item.id).tags == ["b"]
        assert handler.handle("u", "!untag 1 zzz") == "n: no such tag"

    def test_tag_scratch_refused(self, handler, store):
        store.create(kind="scratch", title="s")
        handler.handle("u", "!scratch")
        assert handler.handle("u", "!tag 1 x") == "Scratch items cannot be tagged."

    def test_priority_set_and_clear(self, handler, store):
        item = store.create(kind="task", title="t")
        handler.handle("u", "!todos")
        handler.handle("u", "!priority 1 high")
        assert store.get(item.id).priority == "high"
        assert handler.handle("u", "!priority 1 none") == "t: priority cleared"

    def test_list_by_tag_excludes_archived(self, handler, store):
        store.create(title="kept", tags=["work"])
        store.create(title="gone", tags=["work"], status="archived")
        reply = handler.handle("u", "!list work")
        assert "kept" in reply and "gone" not in reply

    def test_find(self, handler, store):
        store.create(title="Hono routing notes")
        reply = handler.handle("u", "!find Hono")
        assert "[1] Hono routing notes" in reply

    def test_empty_listing(self, handler):
        assert handler.handle("u", "!scratch") == "Scratch: nothing here."

    def test_listing_caps_at_max(self, handler, store):
        for i in range(MAX_LISTED + 2):
            store.create(title=f"n{i}")
        reply = handler.handle("u", "!fleeting")
        assert f"showing {MAX_LISTED}" in reply
        assert handler.handle("u", f"!detail {MAX_LISTED + 1}") == EXPIRED_HINT.format(
            n=MAX_LISTED + 1,
        )

    def test_today_and_stats(self, handler, store):
        store.create(kind="task", title="late", due="2026-03-01")
        assert "[1] late" in handler.handle("u", "!today")
        assert "Sparkle stats" in handler.handle("u", "!stats")
