"""Per-department log of completed recurring task instances."""
import logging
from datetime import datetime
from typing import Optional

from pydantic import ValidationError

from database import document_key, get_document, with_lock
from models import ArchiveRecord, TaskInstance
from timeutil import day_key

logger = logging.getLogger(__name__)

ARCHIVE = "archive"


def archive_key(department: str) -> str:
    return document_key(department, ARCHIVE)


def record_for(task: TaskInstance, department: str, now: datetime) -> ArchiveRecord:
    """Snapshot of a completed task for the archive."""
    return ArchiveRecord(
        id=task.id,
        instance_id=task.instance_id,
        template_id=task.template_id,
        title=task.title,
        description=task.description or "",
        source_department=task.source_department or department,
        due_date=task.due_date,
        created_at=task.created_at,
        completed_at=task.completed_at or now.isoformat(),
        completed_by=task.completed_by,
        archived_at=now.isoformat(),
        day_key=day_key(now),
    )


async def append_record(department: str, record: ArchiveRecord) -> None:
    def append(raw: list):
        raw.append(record.model_dump(mode="json"))
        return raw, None

    await with_lock(archive_key(department), append)


async def remove_latest(department: str, instance_id: Optional[str], task_id: str) -> bool:
    """
    Remove the most recent record matching instance_id (when given) or task_id.
    Returns False when nothing matched.
    """

    def remove(raw: list):
        for i in range(len(raw) - 1, -1, -1):
            entry = raw[i]
            if not isinstance(entry, dict):
                continue
            same_instance = instance_id is not None and entry.get("instance_id") == instance_id
            if same_instance or str(entry.get("id")) == task_id:
                del raw[i]
                return raw, True
        return None, False

    return await with_lock(archive_key(department), remove)


async def list_archive(department: str) -> list[ArchiveRecord]:
    raw = await get_document(archive_key(department), [])
    records = []
    for entry in raw:
        try:
            records.append(ArchiveRecord.model_validate(entry))
        except ValidationError:
            logger.warning("Skipping malformed archive record in %s: %r", archive_key(department), entry)
    return records
