import math
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

RECURRENCE_DAILY = "daily"
RECURRENCE_ONCE = "once"
RECURRENCES = (RECURRENCE_DAILY, RECURRENCE_ONCE)

COLLECTION_TASKS = "tasks"
COLLECTION_REPORTS = "meldungen"
COLLECTIONS = (COLLECTION_TASKS, COLLECTION_REPORTS)

MAX_LEAD_MINUTES = 24 * 60
MAX_COOLDOWN_HOURS = 168


def clamp_number(value: Any, low: int, high: int) -> int:
    """Floor a numeric value into [low, high]; non-numeric or non-finite values become 0."""
    if isinstance(value, bool):
        return 0
    try:
        n = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(n):
        return 0
    return max(low, min(high, math.floor(n)))


class TaskStatus(str, Enum):
    OPEN = "open"
    DONE = "done"


class Note(BaseModel):
    author: str
    text: str
    timestamp: str


class Attachment(BaseModel):
    name: str
    url: str
    mime_type: str = "application/octet-stream"


class RecurringTemplate(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    department: str = ""
    title: str = ""
    description: str = ""
    time_of_day: str = "00:00"  # HH:MM, 24h
    recurrence: Optional[str] = None  # "daily" | "once"; missing or other stored values are never materialized
    due_date: Optional[str] = None  # YYYY-MM-DD, only for "once"
    lead_minutes: int = 0
    cooldown_hours: int = 0
    instruction_url: Optional[str] = None
    created_at: Optional[str] = None
    created_by: Optional[str] = None

    @field_validator("lead_minutes", mode="before")
    @classmethod
    def _clamp_lead(cls, v: Any) -> int:
        return clamp_number(v, 0, MAX_LEAD_MINUTES)

    @field_validator("cooldown_hours", mode="before")
    @classmethod
    def _clamp_cooldown(cls, v: Any) -> int:
        return clamp_number(v, 0, MAX_COOLDOWN_HOURS)


class TaskInstance(BaseModel):
    """An entry of a department's "tasks" or "meldungen" collection."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    instance_id: Optional[str] = None  # rec_{template_id}_{day_key} for materialized instances
    template_id: Optional[str] = None
    from_recurring: bool = False
    title: str = ""
    description: str = ""
    category: str = ""
    priority: str = "medium"
    status: TaskStatus = TaskStatus.OPEN
    completed: bool = False
    source_department: Optional[str] = None
    source_collection: Optional[str] = None
    target_department: Optional[str] = None
    original_id: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    completed_by: Optional[str] = None
    due_date: Optional[str] = None
    instruction_url: Optional[str] = None
    notes: list[Note] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _sync_status(cls, data: Any) -> Any:
        # status wins; unknown legacy values fall back to the completed flag
        if isinstance(data, dict):
            data = dict(data)
            if data.get("status") not in (TaskStatus.OPEN.value, TaskStatus.DONE.value):
                data["status"] = TaskStatus.DONE.value if data.get("completed") else TaskStatus.OPEN.value
            data["completed"] = data["status"] == TaskStatus.DONE.value
        return data

    def has_lineage(self) -> bool:
        """True for copies created by forwarding, which sync back to their original."""
        return bool(self.source_department and self.original_id)


class ArchiveRecord(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    instance_id: Optional[str] = None
    template_id: Optional[str] = None
    title: str = ""
    description: str = ""
    source_department: Optional[str] = None
    due_date: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    completed_by: Optional[str] = None
    archived_at: Optional[str] = None
    day_key: Optional[str] = None


# Request bodies. Required fields are checked by the service functions so the
# API answers with 400 and a readable message instead of a schema error.

class TemplateCreate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    time_of_day: Optional[str] = None
    recurrence: Optional[str] = None
    due_date: Optional[str] = None
    lead_minutes: Any = None
    cooldown_hours: Any = None
    instruction_url: Optional[str] = None
    created_by: Optional[str] = None


class TemplateUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    time_of_day: Optional[str] = None
    recurrence: Optional[str] = None
    due_date: Optional[str] = None
    lead_minutes: Any = None
    cooldown_hours: Any = None
    instruction_url: Optional[str] = None


class ItemCreate(BaseModel):
    title: str = ""
    description: str = ""
    category: str = ""
    priority: str = "medium"
    attachments: list[Attachment] = Field(default_factory=list)


class ItemUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    attachments: list[Attachment] = Field(default_factory=list)


class CompleteRequest(BaseModel):
    completed: Optional[bool] = None  # None toggles
    completed_by: Optional[str] = None


class ForwardRequest(BaseModel):
    target_department: Optional[str] = None


class NoteCreate(BaseModel):
    author: Optional[str] = None
    text: Optional[str] = None
