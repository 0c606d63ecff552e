"""
Tests for sparkle.store — ItemStore CRUD, derived fields, listing, triage, schema.
"""

import sqlite3
import pytest

from sparkle.errors import InvalidTransition, NotFound, ValidationError
from sparkle.shares import create_share
from sparkle.store import SCHEMA_VERSION, ItemStore


@pytest.fixture
def store():
    """Create an in-memory store for testing."""
    s = ItemStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def disk_store(tmp_path):
    """Create a disk-backed store for testing."""
    db_path = str(tmp_path / "sub" / "test.db")
    s = ItemStore(db_path=db_path)
    yield s
    s.close()


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchema:
    def test_schema_version(self, store):
        rows = store.read_rows("SELECT value FROM schema_meta WHERE key='schema_version'")
        assert rows[0]["value"] == str(SCHEMA_VERSION)

    def test_tables_exist(self, store):
        tables = {
            r["name"] for r in store.read_rows(
                "SELECT name FROM sqlite_master WHERE type='table'"
            )
        }
        assert {"items", "share_links", "schema_meta"} <= tables

    def test_disk_store_creates_parent_dir(self, disk_store, tmp_path):
        assert (tmp_path / "sub" / "test.db").is_file()

    def test_wal_mode_on_disk(self, disk_store):
        mode = disk_store.read_rows("PRAGMA journal_mode")[0][0]
        assert mode.lower() == "wal"

    def test_kind_check_constraint(self, store):
        with pytest.raises(sqlite3.IntegrityError):
            with store.transaction() as conn:
                conn.execute(
                    "INSERT INTO items (id, kind, title, status, created, modified) "
                    "VALUES ('x', 'memo', 't', 'draft', 'now', 'now')"
                )

    def test_reopen_keeps_items(self, tmp_path):
        path = str(tmp_path / "re.db")
        s1 = ItemStore(path)
        item = s1.create(title="Persisted")
        s1.close()
        s2 = ItemStore(path)
        assert s2.get(item.id).title == "Persisted"
        assert s2.count_items() == 1
        s2.close()


# ---------------------------------------------------------------------------
# Create / get
# ---------------------------------------------------------------------------


class TestCreate:
    def test_defaults(self, store):
        item = store.create(title="Idea")
        assert item.kind == "note"
        assert item.status == "fleeting"
        assert item.created == item.modified
        assert item.id

    def test_task_with_fields(self, store):
        item = store.create(kind="task", title="Ship", priority="high",
                            due="2026-04-01", tags=["work"])
        fetched = store.get(item.id)
        assert fetched.priority == "high"
        assert fetched.due == "2026-04-01"
        assert fetched.tags == ["work"]

    def test_invalid_status_leaves_store_empty(self, store):
        with pytest.raises(ValidationError):
            store.create(kind="scratch", title="x", status="done")
        assert store.count_items() == 0

    def test_unique_ids(self, store):
        ids = {store.create(title=f"n{i}").id for i in range(10)}
        assert len(ids) == 10

    def test_get_missing(self, store):
        with pytest.raises(NotFound) as exc_info:
            store.get("nope")
        assert exc_info.value.item_id == "nope"

    def test_unicode_round_trip(self, store):
        item = store.create(title="靈感", tags=["日記"])
        assert store.get(item.id).tags == ["日記"]


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------


class TestUpdate:
    def test_task_to_scratch_scenario(self, store):
        task = store.create(kind="task", title="Pay rent", due="2026-04-01", priority="high")
        item = store.update(task.id, {"kind": "scratch"})
        assert item.kind == "scratch"
        assert item.status == "draft"
        assert item.due is None
        assert item.priority is None
        assert item.tags == []
        assert item.aliases == []
        assert item.linked_ref is None

    def test_exported_title_change_scenario(self, store):
        note = store.create(title="Old", status="exported")
        item = store.update(note.id, {"title": "New"})
        assert item.status == "permanent"
        assert item.title == "New"

    def test_exported_tag_change_keeps_status(self, store):
        note = store.create(title="Old", status="exported")
        item = store.update(note.id, {"tags": ["x"]})
        assert item.status == "exported"

    def test_scratch_update_persists_no_scoped_fields(self, store):
        s = store.create(kind="scratch", title="s")
        item = store.update(s.id, {"tags": ["a"], "priority": "low", "body": "b"})
        assert item.tags == []
        assert item.priority is None
        assert item.body == "b"

    def test_modified_is_stamped(self, store):
        note = store.create(title="A")
        item = store.update(note.id, {"title": "B"})
        assert item.modified >= note.modified
        assert item.created == note.created

    def test_rejected_update_writes_nothing(self, store):
        note = store.create(title="A")
        with pytest.raises(InvalidTransition):
            store.update(note.id, {"title": "B", "status": "done"})
        assert store.get(note.id).title == "A"

    def test_update_missing(self, store):
        with pytest.raises(NotFound):
            store.update("nope", {"title": "x"})

    def test_update_is_visible_to_search(self, store):
        note = store.create(title="alpha")
        store.update(note.id, {"title": "omega"})
        assert [i.id for i in store.search("omega")] == [note.id]
        assert store.search("alpha") == []


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


class TestDelete:
    def test_delete(self, store):
        note = store.create(title="gone")
        assert store.delete(note.id) is True
        with pytest.raises(NotFound):
            store.get(note.id)

    def test_delete_missing(self, store):
        assert store.delete("nope") is False

    def test_delete_cascades_shares(self, store):
        note = store.create(title="shared")
        create_share(store, note.id, "public")
        store.delete(note.id)
        rows = store.read_rows("SELECT COUNT(*) AS cnt FROM share_links")
        assert rows[0]["cnt"] == 0

    def test_delete_removes_from_index(self, store):
        note = store.create(title="vanishing act")
        store.delete(note.id)
        assert store.search("vanishing") == []


# ---------------------------------------------------------------------------
# Derived fields
# ---------------------------------------------------------------------------


class TestDerivedFields:
    def test_linked_task_count_excludes_archived(self, store):
        note = store.create(title="Project")
        store.create(kind="task", title="a", linked_ref=note.id)
        store.create(kind="task", title="b", linked_ref=note.id)
        store.create(kind="task", title="c", linked_ref=note.id, status="archived")
        assert store.get(note.id).linked_task_count == 2

    def test_linked_note_title(self, store):
        note = store.create(title="Project")
        task = store.create(kind="task", title="a", linked_ref=note.id)
        assert store.get(task.id).linked_note_title == "Project"

    def test_note_delete_clears_link(self, store):
        note = store.create(title="Project")
        task = store.create(kind="task", title="a", linked_ref=note.id)
        store.delete(note.id)
        item = store.get(task.id)
        assert item.linked_ref is None
        assert item.linked_note_title is None

    def test_task_count_zero_for_tasks(self, store):
        task = store.create(kind="task", title="t")
        assert store.get(task.id).linked_task_count == 0

    def test_share_visibility_public_wins(self, store):
        note = store.create(title="n")
        assert store.get(note.id).share_visibility is None
        create_share(store, note.id, "unlisted")
        assert store.get(note.id).share_visibility == "unlisted"
        create_share(store, note.id, "public")
        assert store.get(note.id).share_visibility == "public"


# ---------------------------------------------------------------------------
# List
# ---------------------------------------------------------------------------


class TestList:
    def test_tag_filter_with_total(self, store):
        for i in range(3):
            store.create(title=f"n{i}", tags=["x"])
        store.create(title="other", tags=["y"])
        page = store.list(kind="note", tag="x", limit=1, offset=0)
        assert len(page.items) == 1
        assert page.total == 3

    def test_tag_filter_is_exact(self, store):
        store.create(title="a", tags=["xy"])
        assert store.list(tag="x").total == 0

    def test_status_and_exclude(self, store):
        store.create(title="a")
        store.create(title="b", status="archived")
        store.create(kind="task", title="c")
        assert store.list(status="fleeting").total == 1
        assert store.list(exclude_statuses=["archived"]).total == 2
        assert store.list(kind="task").total == 1

    def test_default_order_newest_first(self, store):
        first = store.create(title="first")
        second = store.create(title="second")
        ids = [i.id for i in store.list().items]
        assert ids == [second.id, first.id]

    def test_offset(self, store):
        for i in range(5):
            store.create(title=f"n{i}")
        page = store.list(limit=2, offset=4)
        assert len(page.items) == 1
        assert page.total == 5

    def test_due_sort_puts_undated_last(self, store):
        late = store.create(kind="task", title="late", due="2026-05-01")
        none = store.create(kind="task", title="none")
        early = store.create(kind="task", title="early", due="2026-04-01")
        asc = [i.id for i in store.list(kind="task", sort="due", order="asc").items]
        assert asc == [early.id, late.id, none.id]
        desc = [i.id for i in store.list(kind="task", sort="due", order="desc").items]
        assert desc == [late.id, early.id, none.id]

    def test_priority_sort(self, store):
        low = store.create(kind="task", title="low", priority="low")
        high = store.create(kind="task", title="high", priority="high")
        mid = store.create(kind="task", title="mid", priority="medium")
        ids = [i.id for i in store.list(kind="task", sort="priority").items]
        assert ids == [high.id, mid.id, low.id]

    @pytest.mark.parametrize("kwargs", [
        {"sort": "title"},
        {"order": "up"},
        {"kind": "memo"},
        {"limit": 0},
        {"limit": 101},
        {"offset": -1},
    ])
    def test_invalid_arguments(self, store, kwargs):
        with pytest.raises(ValidationError):
            store.list(**kwargs)

    def test_list_items_have_derived_fields(self, store):
        note = store.create(title="Project")
        store.create(kind="task", title="t", linked_ref=note.id)
        page = store.list(kind="note")
        assert page.items[0].linked_task_count == 1


# ---------------------------------------------------------------------------
# Triage / tags
# ---------------------------------------------------------------------------


class TestTriage:
    def test_archive_any_kind(self, store):
        ids = [
            store.create(title="n").id,
            store.create(kind="task", title="t").id,
            store.create(kind="scratch", title="s").id,
        ]
        result = store.triage(ids, "archive")
        assert result == {"affected": 3, "skipped": []}
        assert all(store.get(i).status == "archived" for i in ids)

    def test_done_skips_notes_and_missing(self, store):
        note = store.create(title="n")
        task = store.create(kind="task", title="t")
        result = store.triage([note.id, task.id, "nope"], "done")
        assert result["affected"] == 1
        assert result["skipped"] == [note.id, "nope"]
        assert store.get(task.id).status == "done"
        assert store.get(note.id).status == "fleeting"

    def test_develop(self, store):
        note = store.create(title="n")
        store.triage([note.id], "develop")
        assert store.get(note.id).status == "developing"

    def test_develop_skips_notes_past_fleeting(self, store):
        fleeting = store.create(title="a")
        exported = store.create(title="b", status="exported")
        task = store.create(kind="task", title="t")
        result = store.triage([fleeting.id, exported.id, task.id], "develop")
        assert result == {"affected": 1, "skipped": [exported.id, task.id]}
        assert store.get(exported.id).status == "exported"

    def test_delete(self, store):
        note = store.create(title="n")
        result = store.triage([note.id, "nope"], "delete")
        assert result == {"affected": 1, "skipped": ["nope"]}

    def test_unknown_action(self, store):
        with pytest.raises(ValidationError):
            store.triage([], "explode")


class TestTags:
    def test_all_tags_distinct_sorted(self, store):
        store.create(title="a", tags=["b", "a"])
        store.create(kind="task", title="t", tags=["a", "c"])
        assert store.all_tags() == ["a", "b", "c"]

    def test_get_many_keeps_order(self, store):
        a = store.create(title="a")
        b = store.create(title="b")
        items = store.get_many([b.id, "missing", a.id])
        assert [i.id for i in items] == [b.id, a.id]


# ---------------------------------------------------------------------------
# Task → note links
# ---------------------------------------------------------------------------


class TestLinkIntegrity:
    def test_unknown_target_rejected(self, store):
        with pytest.raises(ValidationError) as exc_info:
            store.create(kind="task", title="t", linked_ref="no-such-id")
        assert exc_info.value.field == "linked_ref"
        assert store.count_items() == 0

    def test_non_note_target_rejected(self, store):
        other = store.create(kind="task", title="other")
        with pytest.raises(ValidationError):
            store.create(kind="task", title="t", linked_ref=other.id)

    def test_update_checks_target(self, store):
        task = store.create(kind="task", title="t")
        scratch = store.create(kind="scratch", title="s")
        with pytest.raises(ValidationError):
            store.update(task.id, {"linked_ref": "no-such-id"})
        with pytest.raises(ValidationError):
            store.update(task.id, {"linked_ref": scratch.id})
        assert store.get(task.id).linked_ref is None

    def test_update_links_and_unlinks(self, store):
        note = store.create(title="Project")
        task = store.create(kind="task", title="t")
        assert store.update(task.id, {"linked_ref": note.id}).linked_note_title == "Project"
        assert store.update(task.id, {"linked_ref": None}).linked_ref is None

    def test_note_converted_to_task_cannot_link_itself(self, store):
        note = store.create(title="n")
        with pytest.raises(ValidationError):
            store.update(note.id, {"kind": "task", "linked_ref": note.id})
        assert store.get(note.id).kind == "note"

    def test_delete_keeps_linked_tasks(self, store):
        note = store.create(title="Project")
        tasks = [store.create(kind="task", title=f"t{i}", linked_ref=note.id) for i in range(2)]
        store.delete(note.id)
        assert [store.get(t.id).linked_ref for t in tasks] == [None, None]

    def test_none_status_uses_default(self, store):
        assert store.create(kind="task", title="x", status=None).status == "active"


# ---------------------------------------------------------------------------
# Maturity advance
# ---------------------------------------------------------------------------


class TestAdvance:
    def test_full_pipeline(self, store):
        note = store.create(title="seed")
        assert store.advance(note.id, "developing").status == "developing"
        assert store.advance(note.id, "permanent").status == "permanent"

    def test_skip_refused(self, store):
        note = store.create(title="seed")
        with pytest.raises(ValidationError) as exc_info:
            store.advance(note.id, "permanent")
        assert exc_info.value.field == "status"
        assert store.get(note.id).status == "fleeting"

    def test_exported_note_refused(self, store):
        note = store.create(title="done", status="exported")
        with pytest.raises(ValidationError):
            store.advance(note.id, "developing")

    def test_task_refused(self, store):
        task = store.create(kind="task", title="t")
        with pytest.raises(ValidationError) as exc_info:
            store.advance(task.id, "developing")
        assert exc_info.value.field == "kind"
        assert store.get(task.id).status == "active"

    def test_missing(self, store):
        with pytest.raises(NotFound):
            store.advance("nope", "developing")
