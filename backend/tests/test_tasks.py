"""
Tests for tasks.py - item CRUD, completion, archive bookkeeping, forwarding and back-sync.
"""
import asyncio
import pytest
import sys
import os
from datetime import datetime

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import archive
from database import read_document, write_document
from errors import InvalidInputError, NotFoundError
from models import Attachment, ItemCreate, ItemUpdate, TaskStatus
from tasks import (
    add_note,
    create_item,
    delete_item,
    forward,
    items_key,
    list_items,
    set_completed,
    update_item,
)

NOW = datetime(2025, 1, 10, 12, 0)


def stored(department, collection):
    return read_document(items_key(department, collection), [])


def item(item_id, **fields):
    entry = {"id": item_id, "title": f"Item {item_id}", "status": "open", "completed": False}
    entry.update(fields)
    return entry


def recurring_item(item_id="r1", day="2025-01-10"):
    return item(
        item_id,
        instance_id=f"rec_tpl-1_{day}",
        template_id="tpl-1",
        from_recurring=True,
        due_date=f"{day} 09:00",
        created_at=f"{day}T08:00:00",
    )


class TestItemsKey:
    def test_known_collections(self):
        """tasks and meldungen map to department keys."""
        assert items_key("Technik", "tasks") == "Technik_tasks"
        assert items_key("Technik", "meldungen") == "Technik_meldungen"

    def test_unknown_collection(self):
        """Other collection names raise InvalidInputError."""
        with pytest.raises(InvalidInputError):
            items_key("Technik", "recurring")


class TestCreateAndDelete:
    """Tests for create_item and delete_item."""

    @pytest.mark.asyncio
    async def test_create_appends(self, data_dir):
        """New items are open, get an id and land at the end of the list."""
        write_document("Technik_meldungen", [item("a")])

        created = await create_item(
            "Technik",
            "meldungen",
            ItemCreate(title="Leak", category="Wartung", priority="high"),
            now=NOW,
        )

        assert created.status == TaskStatus.OPEN
        assert created.completed is False
        assert created.created_at == NOW.isoformat()
        assert [e["id"] for e in stored("Technik", "meldungen")] == ["a", created.id]

    @pytest.mark.asyncio
    async def test_create_in_unknown_collection(self, data_dir):
        """Creating in an unknown collection is rejected."""
        with pytest.raises(InvalidInputError):
            await create_item("Technik", "notes", ItemCreate(title="x"))

    @pytest.mark.asyncio
    async def test_delete_by_id(self, data_dir):
        """Deleting by id removes that item only."""
        write_document("Technik_tasks", [item("a"), item("b"), item("c")])

        deleted = await delete_item("Technik", "tasks", "b")

        assert deleted.id == "b"
        assert [e["id"] for e in stored("Technik", "tasks")] == ["a", "c"]

    @pytest.mark.asyncio
    async def test_delete_by_index(self, data_dir):
        """A numeric ref that matches no id is used as a list index."""
        write_document("Technik_tasks", [item("a"), item("b"), item("c")])

        await delete_item("Technik", "tasks", "1")

        assert [e["id"] for e in stored("Technik", "tasks")] == ["a", "c"]

    @pytest.mark.asyncio
    async def test_numeric_id_wins_over_index(self, data_dir):
        """An id match takes precedence over the index fallback."""
        write_document("Technik_tasks", [item("a"), item("0")])

        await delete_item("Technik", "tasks", "0")

        assert [e["id"] for e in stored("Technik", "tasks")] == ["a"]

    @pytest.mark.asyncio
    async def test_delete_missing(self, data_dir):
        """Unknown ids and out-of-range indexes raise NotFoundError."""
        write_document("Technik_tasks", [item("a")])
        with pytest.raises(NotFoundError):
            await delete_item("Technik", "tasks", "zzz")
        with pytest.raises(NotFoundError):
            await delete_item("Technik", "tasks", "5")
        assert len(stored("Technik", "tasks")) == 1


class TestListItems:
    """Tests for list_items filters and ordering."""

    @pytest.fixture
    def items(self, data_dir):
        write_document(
            "Technik_tasks",
            [
                item("today", created_at="2025-01-10T08:00:00"),
                item("yesterday", created_at="2025-01-09T08:00:00"),
                item("week", created_at="2025-01-05T08:00:00"),
                item("old", created_at="2025-01-01T08:00:00"),
                item(
                    "done-today",
                    created_at="2025-01-01T07:00:00",
                    status="done",
                    completed=True,
                    completed_at="2025-01-10T09:00:00",
                ),
                item("no-date"),
            ],
        )

    @pytest.mark.asyncio
    async def test_default_is_newest_first(self, items):
        """Items are sorted newest first by default."""
        listed = await list_items("Technik", "tasks")
        assert [i.id for i in listed] == ["today", "yesterday", "week", "old", "done-today", "no-date"]

    @pytest.mark.asyncio
    async def test_ascending(self, items):
        """sort=asc puts undated items first."""
        listed = await list_items("Technik", "tasks", sort="asc")
        assert [i.id for i in listed][:2] == ["no-date", "done-today"]
        assert [i.id for i in listed][-1] == "today"

    @pytest.mark.asyncio
    async def test_status_filter(self, items):
        """status filters open and done items."""
        assert [i.id for i in await list_items("Technik", "tasks", status="done")] == ["done-today"]
        assert "done-today" not in [i.id for i in await list_items("Technik", "tasks", status="open")]

    @pytest.mark.asyncio
    async def test_day_filters_use_creation_date(self, items):
        """Day windows apply to created_at by default."""
        today = await list_items("Technik", "tasks", day="today", now=NOW)
        yesterday = await list_items("Technik", "tasks", day="yesterday", now=NOW)
        week = await list_items("Technik", "tasks", day="last7days", now=NOW)

        assert [i.id for i in today] == ["today"]
        assert [i.id for i in yesterday] == ["yesterday"]
        assert [i.id for i in week] == ["today", "yesterday", "week"]

    @pytest.mark.asyncio
    async def test_last7_alias(self, items):
        """last7 behaves like last7days."""
        week = await list_items("Technik", "tasks", day="last7", now=NOW)
        assert [i.id for i in week] == ["today", "yesterday", "week"]

    @pytest.mark.asyncio
    async def test_done_items_filter_by_completion_date(self, items):
        """With status=done the day window applies to completed_at."""
        listed = await list_items("Technik", "tasks", status="done", day="today", now=NOW)
        assert [i.id for i in listed] == ["done-today"]

    @pytest.mark.asyncio
    async def test_explicit_date_by(self, items):
        """date_by=completed uses completed_at where present."""
        listed = await list_items("Technik", "tasks", day="today", date_by="completed", now=NOW)
        assert [i.id for i in listed] == ["done-today", "today"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "params",
        [{"status": "closed"}, {"day": "tomorrow"}, {"sort": "up"}, {"date_by": "due"}],
    )
    async def test_unknown_filter_values(self, items, params):
        """Unknown filter values raise InvalidInputError."""
        with pytest.raises(InvalidInputError):
            await list_items("Technik", "tasks", **params)

    @pytest.mark.asyncio
    async def test_malformed_entries_are_skipped(self, data_dir):
        """Entries that fail validation are left out."""
        write_document("Technik_tasks", [item("a"), "garbage", {"title": "no id"}])
        assert [i.id for i in await list_items("Technik", "tasks")] == ["a"]


class TestSetCompleted:
    """Tests for completing, reopening and toggling."""

    @pytest.mark.asyncio
    async def test_complete(self, data_dir):
        """Completing sets status, timestamp and actor."""
        write_document("Technik_tasks", [item("a")])

        done = await set_completed("Technik", "tasks", "a", completed=True, actor="alice", now=NOW)

        assert done.status == TaskStatus.DONE
        assert done.completed is True
        assert done.completed_at == NOW.isoformat()
        assert done.completed_by == "alice"
        entry = stored("Technik", "tasks")[0]
        assert entry["status"] == "done"
        assert entry["completed"] is True

    @pytest.mark.asyncio
    async def test_toggle(self, data_dir):
        """completed=None flips the state each time."""
        write_document("Technik_tasks", [item("a")])

        first = await set_completed("Technik", "tasks", "a", now=NOW)
        second = await set_completed("Technik", "tasks", "a", now=NOW)

        assert first.completed is True
        assert first.completed_by == "unknown"
        assert second.completed is False
        assert second.status == TaskStatus.OPEN
        assert second.completed_at is None

    @pytest.mark.asyncio
    async def test_missing_item(self, data_dir):
        """Completing a missing item raises NotFoundError."""
        write_document("Technik_tasks", [item("a")])
        with pytest.raises(NotFoundError):
            await set_completed("Technik", "tasks", "b", completed=True)

    @pytest.mark.asyncio
    async def test_plain_items_are_not_archived(self, data_dir):
        """Only recurring instances are archived."""
        write_document("Technik_tasks", [item("a")])
        await set_completed("Technik", "tasks", "a", completed=True, now=NOW)
        assert await archive.list_archive("Technik") == []

    @pytest.mark.asyncio
    async def test_recurring_completion_is_archived(self, data_dir):
        """Completing a recurring instance appends an archive record."""
        write_document("Technik_tasks", [recurring_item()])

        await set_completed("Technik", "tasks", "r1", completed=True, actor="alice", now=NOW)

        [record] = await archive.list_archive("Technik")
        assert record.id == "r1"
        assert record.instance_id == "rec_tpl-1_2025-01-10"
        assert record.completed_by == "alice"
        assert record.source_department == "Technik"
        assert record.day_key == "2025-01-10"

    @pytest.mark.asyncio
    async def test_reopen_removes_archive_record(self, data_dir):
        """Completing then reopening leaves the archive as it was."""
        write_document("Technik_tasks", [recurring_item("r1", "2025-01-09"), recurring_item("r2")])
        await set_completed("Technik", "tasks", "r1", completed=True, now=NOW)
        before = read_document("Technik_archive", [])

        await set_completed("Technik", "tasks", "r2", completed=True, now=NOW)
        await set_completed("Technik", "tasks", "r2", completed=False, now=NOW)

        assert read_document("Technik_archive", []) == before

    @pytest.mark.asyncio
    async def test_archive_failure_does_not_propagate(self, data_dir, monkeypatch):
        """The status change stands even when the archive cannot be written."""

        async def broken_append(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(archive, "append_record", broken_append)
        write_document("Technik_tasks", [recurring_item()])

        done = await set_completed("Technik", "tasks", "r1", completed=True, now=NOW)

        assert done.completed is True
        assert stored("Technik", "tasks")[0]["status"] == "done"

    @pytest.mark.asyncio
    async def test_concurrent_mutations_are_not_lost(self, data_dir):
        """Concurrent completions and creations on one collection all apply."""
        write_document("Technik_tasks", [item(str(n)) for n in range(10)])

        await asyncio.gather(
            *(set_completed("Technik", "tasks", str(n), completed=True, now=NOW) for n in range(10)),
            *(create_item("Technik", "tasks", ItemCreate(title=f"new {n}"), now=NOW) for n in range(5)),
        )

        entries = stored("Technik", "tasks")
        assert len(entries) == 15
        assert all(e["status"] == "done" for e in entries[:10])
        assert all(e["status"] == "open" for e in entries[10:])


class TestForward:
    """Tests for forwarding and the sync back to the original."""

    @pytest.mark.asyncio
    async def test_forward_creates_linked_copy(self, data_dir):
        """The copy links to the original and both get a system note."""
        write_document("Technik_meldungen", [item("m1", description="Pump leaks")])

        copy = await forward("Technik", "meldungen", "m1", "Leitstand", now=NOW)

        assert copy.id != "m1"
        assert copy.source_department == "Technik"
        assert copy.source_collection == "meldungen"
        assert copy.original_id == "m1"
        assert copy.description == "Pump leaks"
        assert copy.status == TaskStatus.OPEN
        assert copy.notes[-1].author == "System"
        assert copy.notes[-1].text == "Forwarded from Technik"

        [target] = stored("Leitstand", "tasks")
        assert target["id"] == copy.id
        original = stored("Technik", "meldungen")[0]
        assert original["notes"][-1]["text"] == "Forwarded to Leitstand"

    @pytest.mark.asyncio
    async def test_forwarded_recurring_copy_drops_recurring_link(self, data_dir):
        """A forwarded recurring instance is no longer tied to its template."""
        write_document("Technik_tasks", [recurring_item()])

        copy = await forward("Technik", "tasks", "r1", "Logistik", now=NOW)

        assert copy.from_recurring is False
        assert copy.instance_id is None
        assert copy.template_id is None

    @pytest.mark.asyncio
    async def test_forward_requires_target(self, data_dir):
        """A blank target department is rejected."""
        write_document("Technik_meldungen", [item("m1")])
        with pytest.raises(InvalidInputError):
            await forward("Technik", "meldungen", "m1", "  ")

    @pytest.mark.asyncio
    async def test_forward_task_to_own_department(self, data_dir):
        """Forwarding a task to its own department is rejected."""
        write_document("Technik_tasks", [item("a")])
        with pytest.raises(InvalidInputError):
            await forward("Technik", "tasks", "a", "Technik")
        assert len(stored("Technik", "tasks")) == 1

    @pytest.mark.asyncio
    async def test_forward_report_to_own_department(self, data_dir):
        """A report cannot be forwarded into its own department's tasks either."""
        write_document("Technik_meldungen", [item("m1")])

        with pytest.raises(InvalidInputError):
            await forward("Technik", "meldungen", "m1", " Technik ")

        assert stored("Technik", "tasks") == []
        assert stored("Technik", "meldungen") == [item("m1")]

    @pytest.mark.asyncio
    async def test_forward_missing_item(self, data_dir):
        """Forwarding a missing item raises NotFoundError and writes nothing."""
        with pytest.raises(NotFoundError):
            await forward("Technik", "meldungen", "nope", "Leitstand")
        assert stored("Leitstand", "tasks") == []

    @pytest.mark.asyncio
    async def test_completing_copy_completes_report(self, data_dir):
        """Report -> task: completing the copy marks the report done."""
        write_document("Technik_meldungen", [item("m1")])
        copy = await forward("Technik", "meldungen", "m1", "Leitstand", now=NOW)

        await set_completed("Leitstand", "tasks", copy.id, completed=True, actor="bob", now=NOW)

        original = stored("Technik", "meldungen")[0]
        assert original["status"] == "done"
        assert original["completed"] is True
        assert original["completed_by"] == "bob"
        assert original["completed_at"] == NOW.isoformat()

    @pytest.mark.asyncio
    async def test_completing_copy_of_task(self, data_dir):
        """Task -> task: the original in the source task collection follows."""
        write_document("Technik_tasks", [item("t1")])
        copy = await forward("Technik", "tasks", "t1", "Logistik", now=NOW)

        await set_completed("Logistik", "tasks", copy.id, completed=True, now=NOW)
        assert stored("Technik", "tasks")[0]["status"] == "done"

        await set_completed("Logistik", "tasks", copy.id, completed=False, now=NOW)
        original = stored("Technik", "tasks")[0]
        assert original["status"] == "open"
        assert original["completed_at"] is None

    @pytest.mark.asyncio
    async def test_missing_original_is_tolerated(self, data_dir):
        """Completing a copy whose original is gone still succeeds."""
        write_document("Technik_meldungen", [item("m1")])
        copy = await forward("Technik", "meldungen", "m1", "Leitstand", now=NOW)
        await delete_item("Technik", "meldungen", "m1")

        done = await set_completed("Leitstand", "tasks", copy.id, completed=True, now=NOW)

        assert done.completed is True
        assert stored("Technik", "meldungen") == []


class TestNotesAndUpdates:
    """Tests for add_note and update_item."""

    @pytest.mark.asyncio
    async def test_add_note(self, data_dir):
        """Notes get a trimmed author and a timestamp."""
        write_document("Technik_tasks", [item("a")])

        updated = await add_note("Technik", "tasks", "a", " alice ", "Checked valve", now=NOW)

        assert updated.notes[-1].author == "alice"
        assert updated.notes[-1].text == "Checked valve"
        assert stored("Technik", "tasks")[0]["notes"][-1]["timestamp"] == NOW.isoformat()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("author,text", [("", "text"), ("alice", ""), (None, "text"), ("alice", "   ")])
    async def test_add_note_requires_author_and_text(self, data_dir, author, text):
        """Blank author or text raises InvalidInputError."""
        write_document("Technik_tasks", [item("a")])
        with pytest.raises(InvalidInputError):
            await add_note("Technik", "tasks", "a", author, text)

    @pytest.mark.asyncio
    async def test_note_on_copy_reaches_original(self, data_dir):
        """A note on a forwarded copy is appended to the original."""
        write_document("Technik_meldungen", [item("m1")])
        copy = await forward("Technik", "meldungen", "m1", "Leitstand", now=NOW)

        await add_note("Leitstand", "tasks", copy.id, "carol", "On my way", now=NOW)

        notes = stored("Technik", "meldungen")[0]["notes"]
        assert [n["text"] for n in notes] == ["Forwarded to Leitstand", "On my way"]

    @pytest.mark.asyncio
    async def test_update_fields_and_attachments(self, data_dir):
        """Given fields are replaced and attachments appended."""
        write_document(
            "Technik_tasks",
            [item("a", attachments=[{"name": "a.png", "url": "/uploads/a.png", "mime_type": "image/png"}])],
        )

        updated = await update_item(
            "Technik",
            "tasks",
            "a",
            ItemUpdate(title="New title", attachments=[Attachment(name="b.pdf", url="/uploads/b.pdf")]),
        )

        assert updated.title == "New title"
        assert [a.name for a in updated.attachments] == ["a.png", "b.pdf"]
        assert stored("Technik", "tasks")[0]["title"] == "New title"

    @pytest.mark.asyncio
    async def test_description_change_reaches_original(self, data_dir):
        """A changed description is copied to the original; the title is not."""
        write_document("Technik_meldungen", [item("m1", description="old")])
        copy = await forward("Technik", "meldungen", "m1", "Leitstand", now=NOW)

        await update_item("Leitstand", "tasks", copy.id, ItemUpdate(title="Renamed copy", description="new"))

        original = stored("Technik", "meldungen")[0]
        assert original["description"] == "new"
        assert original["title"] == "Item m1"

    @pytest.mark.asyncio
    async def test_update_missing_item(self, data_dir):
        """Updating a missing item raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await update_item("Technik", "tasks", "a", ItemUpdate(title="x"))
