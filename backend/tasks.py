"""
Task and report operations ("tasks" / "meldungen" collections).

Every mutation is one read-modify-write under the collection's lock.
Follow-up bookkeeping (archive log, syncing a forwarded copy back to its
original) runs after the lock is released and only logs its failures.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional

from pydantic import ValidationError

import archive
from database import document_key, get_document, with_lock
from errors import InvalidInputError, NotFoundError
from models import (
    COLLECTION_REPORTS,
    COLLECTION_TASKS,
    COLLECTIONS,
    ItemCreate,
    ItemUpdate,
    Note,
    TaskInstance,
    TaskStatus,
)
from timeutil import new_id, now_local, parse_timestamp

logger = logging.getLogger(__name__)

SYSTEM_AUTHOR = "System"

DAY_FILTERS = ("today", "yesterday", "last7days", "last7")
SORT_ORDERS = ("asc", "desc")
DATE_FIELDS = ("created", "completed")


def items_key(department: str, collection: str) -> str:
    if collection not in COLLECTIONS:
        raise InvalidInputError(f"collection must be one of {', '.join(COLLECTIONS)}")
    return document_key(department, collection)


def parse_items(raw: list, key: str) -> list[TaskInstance]:
    """Validate stored entries, skipping (and logging) the ones that cannot be read."""
    items = []
    for entry in raw:
        try:
            items.append(TaskInstance.model_validate(entry))
        except ValidationError:
            logger.warning("Skipping malformed item in %s: %r", key, entry)
    return items


def _locate(raw: list, ref: str) -> int:
    """Index of the item with id == ref, falling back to ref as a list index."""
    ref = str(ref)
    for i, entry in enumerate(raw):
        if isinstance(entry, dict) and str(entry.get("id")) == ref:
            return i
    if ref.isdigit() and int(ref) < len(raw):
        return int(ref)
    raise NotFoundError("Item not found")


def _item_at(raw: list, index: int) -> TaskInstance:
    try:
        return TaskInstance.model_validate(raw[index])
    except ValidationError:
        logger.warning("Item at index %s is malformed: %r", index, raw[index])
        raise NotFoundError("Item not found") from None


async def _sync_to_original(copy: TaskInstance, update: Callable[[TaskInstance], None], what: str) -> bool:
    """
    Apply update to the item a forwarded copy was made from.
    Best-effort: a missing original or a storage error is logged, never raised.
    """
    key = document_key(copy.source_department, copy.source_collection or COLLECTION_REPORTS)

    def apply(raw: list):
        for i, entry in enumerate(raw):
            if isinstance(entry, dict) and str(entry.get("id")) == copy.original_id:
                original = TaskInstance.model_validate(entry)
                update(original)
                raw[i] = original.model_dump(mode="json")
                return raw, True
        return None, False

    try:
        found = await with_lock(key, apply)
    except Exception:
        logger.exception("Syncing %s to original %s in %s failed", what, copy.original_id, key)
        return False
    if not found:
        logger.info("Original %s not found in %s; %s not synced", copy.original_id, key, what)
    return found


# ---- listing ----

def _item_date(item: TaskInstance, by_completion: bool) -> Optional[datetime]:
    if by_completion:
        return parse_timestamp(item.completed_at) or parse_timestamp(item.created_at)
    return parse_timestamp(item.created_at) or parse_timestamp(item.completed_at)


def _in_day_window(moment: Optional[datetime], day: str, today: date) -> bool:
    if moment is None:
        return False
    d = moment.date()
    if day == "today":
        return d == today
    if day == "yesterday":
        return d == today - timedelta(days=1)
    # last7days: today and the six days before
    return today - timedelta(days=6) <= d <= today


async def list_items(
    department: str,
    collection: str,
    status: Optional[str] = None,
    day: Optional[str] = None,
    sort: Optional[str] = None,
    date_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> list[TaskInstance]:
    """
    List a collection with optional filters.

    status:  "open" | "done"
    day:     "today" | "yesterday" | "last7days" (alias "last7")
    sort:    "desc" (default) | "asc"
    date_by: "created" | "completed"; defaults to "completed" when status is "done"
    """
    key = items_key(department, collection)
    status = status.lower() if status else None
    if status is not None and status not in (TaskStatus.OPEN.value, TaskStatus.DONE.value):
        raise InvalidInputError("status must be 'open' or 'done'")
    if day is not None and day not in DAY_FILTERS:
        raise InvalidInputError(f"day must be one of {', '.join(DAY_FILTERS)}")
    if sort is not None and sort not in SORT_ORDERS:
        raise InvalidInputError("sort must be 'asc' or 'desc'")
    if date_by is not None and date_by not in DATE_FIELDS:
        raise InvalidInputError("date_by must be 'created' or 'completed'")

    items = parse_items(await get_document(key, []), key)

    if status:
        items = [i for i in items if i.status.value == status]

    by_completion = date_by == "completed" if date_by else status == TaskStatus.DONE.value

    if day:
        today = (now or now_local()).date()
        items = [i for i in items if _in_day_window(_item_date(i, by_completion), day, today)]

    def sort_key(item: TaskInstance) -> datetime:
        return _item_date(item, by_completion) or datetime.min

    return sorted(items, key=sort_key, reverse=sort != "asc")


# ---- mutations ----

async def create_item(
    department: str, collection: str, data: ItemCreate, now: Optional[datetime] = None
) -> TaskInstance:
    key = items_key(department, collection)
    item = TaskInstance(
        id=new_id(),
        title=data.title,
        description=data.description,
        category=data.category,
        priority=data.priority,
        status=TaskStatus.OPEN,
        completed=False,
        created_at=(now or now_local()).isoformat(),
        attachments=data.attachments,
    )

    def append(raw: list):
        raw.append(item.model_dump(mode="json"))
        return raw, item

    await with_lock(key, append)
    logger.debug("Item created key=%s id=%s", key, item.id)
    return item


async def delete_item(department: str, collection: str, ref: str) -> TaskInstance:
    key = items_key(department, collection)

    def remove(raw: list):
        index = _locate(raw, ref)
        entry = raw.pop(index)
        return raw, entry

    entry = await with_lock(key, remove)
    logger.debug("Item deleted key=%s ref=%s", key, ref)
    try:
        return TaskInstance.model_validate(entry)
    except ValidationError:
        return TaskInstance(id=str(ref))


async def set_completed(
    department: str,
    collection: str,
    ref: str,
    completed: Optional[bool] = None,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TaskInstance:
    """
    Complete or reopen an item; completed=None toggles.

    The status flip is the result. Archive bookkeeping for recurring instances
    and the sync back to a forwarded item's original are best-effort.
    """
    key = items_key(department, collection)
    now = now or now_local()

    def flip(raw: list):
        index = _locate(raw, ref)
        item = _item_at(raw, index)
        done = (not item.completed) if completed is None else completed
        item.completed = done
        item.status = TaskStatus.DONE if done else TaskStatus.OPEN
        item.completed_at = now.isoformat() if done else None
        if done:
            item.completed_by = actor or item.completed_by or "unknown"
        raw[index] = item.model_dump(mode="json")
        return raw, item

    item = await with_lock(key, flip)
    logger.debug("Item %s key=%s id=%s", item.status.value, key, item.id)

    if collection == COLLECTION_TASKS and item.from_recurring:
        try:
            if item.completed:
                await archive.append_record(department, archive.record_for(item, department, now))
            else:
                await archive.remove_latest(department, item.instance_id, item.id)
        except Exception:
            logger.exception("Archive update failed dep=%s id=%s", department, item.id)

    if item.has_lineage():

        def copy_status(original: TaskInstance) -> None:
            original.status = item.status
            original.completed = item.completed
            original.completed_at = item.completed_at
            if item.completed_by:
                original.completed_by = item.completed_by

        await _sync_to_original(item, copy_status, "status")

    return item


async def forward(
    department: str,
    collection: str,
    ref: str,
    target_department: Optional[str],
    now: Optional[datetime] = None,
) -> TaskInstance:
    """
    Copy an item into the target department's task collection.

    The copy keeps a back-reference (source_department, source_collection,
    original_id) and both items get a system note naming the other side.
    """
    if not target_department or not target_department.strip():
        raise InvalidInputError("target_department is required")
    target_department = target_department.strip()
    source_key = items_key(department, collection)
    target_key = items_key(target_department, COLLECTION_TASKS)
    if target_department == department:
        raise InvalidInputError("Cannot forward to the same department")

    now = now or now_local()
    stamp = now.isoformat()

    def read(raw: list):
        return None, _item_at(raw, _locate(raw, ref))

    original = await with_lock(source_key, read)

    copy = original.model_copy(
        deep=True,
        update={
            "id": new_id(),
            "instance_id": None,
            "template_id": None,
            "from_recurring": False,
            "status": TaskStatus.OPEN,
            "completed": False,
            "completed_at": None,
            "completed_by": None,
            "source_department": department,
            "source_collection": collection,
            "target_department": None,
            "original_id": original.id,
            "created_at": stamp,
        },
    )
    copy.notes.append(Note(author=SYSTEM_AUTHOR, text=f"Forwarded from {department}", timestamp=stamp))

    def append(raw: list):
        raw.append(copy.model_dump(mode="json"))
        return raw, None

    await with_lock(target_key, append)

    def annotate(raw: list):
        for i, entry in enumerate(raw):
            if isinstance(entry, dict) and str(entry.get("id")) == original.id:
                item = TaskInstance.model_validate(entry)
                item.notes.append(
                    Note(author=SYSTEM_AUTHOR, text=f"Forwarded to {target_department}", timestamp=stamp)
                )
                raw[i] = item.model_dump(mode="json")
                return raw, True
        return None, False

    try:
        if not await with_lock(source_key, annotate):
            logger.warning("Forwarded item %s vanished from %s before it was annotated", original.id, source_key)
    except Exception:
        logger.exception("Annotating forwarded item %s in %s failed", original.id, source_key)

    logger.debug("Item forwarded %s/%s -> %s id=%s", source_key, original.id, target_key, copy.id)
    return copy


async def add_note(
    department: str,
    collection: str,
    ref: str,
    author: Optional[str],
    text: Optional[str],
    now: Optional[datetime] = None,
) -> TaskInstance:
    if not author or not author.strip() or not text or not text.strip():
        raise InvalidInputError("author and text are required")
    key = items_key(department, collection)
    note = Note(author=author.strip(), text=text, timestamp=(now or now_local()).isoformat())

    def append(raw: list):
        index = _locate(raw, ref)
        item = _item_at(raw, index)
        item.notes.append(note)
        raw[index] = item.model_dump(mode="json")
        return raw, item

    item = await with_lock(key, append)

    if item.has_lineage():
        await _sync_to_original(item, lambda original: original.notes.append(note), "note")

    return item


async def update_item(department: str, collection: str, ref: str, data: ItemUpdate) -> TaskInstance:
    """Merge edited fields and append attachments; a changed description syncs to the original."""
    key = items_key(department, collection)
    changes: dict[str, Any] = data.model_dump(exclude_unset=True, exclude={"attachments"})
    changes = {k: v for k, v in changes.items() if v is not None}

    def apply(raw: list):
        index = _locate(raw, ref)
        item = _item_at(raw, index)
        before = item.description
        for field, value in changes.items():
            setattr(item, field, value)
        item.attachments.extend(data.attachments)
        raw[index] = item.model_dump(mode="json")
        return raw, (item, item.description != before)

    item, description_changed = await with_lock(key, apply)

    if description_changed and item.has_lineage():

        def copy_description(original: TaskInstance) -> None:
            original.description = item.description

        await _sync_to_original(item, copy_description, "description")

    return item
