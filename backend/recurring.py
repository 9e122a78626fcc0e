"""Recurring task templates, one collection per department."""
import logging
from datetime import date, datetime

from pydantic import ValidationError

from database import document_key, get_document, with_lock
from errors import InvalidInputError, NotFoundError
from models import (
    RECURRENCE_ONCE,
    RECURRENCES,
    RecurringTemplate,
    TemplateCreate,
    TemplateUpdate,
)
from timeutil import is_hm, new_id, now_local, parse_timestamp

logger = logging.getLogger(__name__)

RECURRING = "recurring"


def templates_key(department: str) -> str:
    return document_key(department, RECURRING)


def _parse_templates(raw: list, department: str) -> list[RecurringTemplate]:
    templates = []
    for entry in raw:
        try:
            templates.append(RecurringTemplate.model_validate(entry))
        except ValidationError:
            logger.warning("Skipping malformed template in %s: %r", templates_key(department), entry)
    return templates


def _dump(templates: list[RecurringTemplate]) -> list[dict]:
    return [t.model_dump(mode="json") for t in templates]


def _check_due_date(value: str) -> None:
    try:
        date.fromisoformat(value)
    except ValueError:
        raise InvalidInputError("due_date must be YYYY-MM-DD") from None


async def load_templates(department: str) -> list[RecurringTemplate]:
    """Templates in stored order, read without taking the lock."""
    raw = await get_document(templates_key(department), [])
    return _parse_templates(raw, department)


async def list_templates(department: str) -> list[RecurringTemplate]:
    """
    List templates newest first.
    Legacy entries missing created_at/created_by or numeric fields are filled
    in and written back once.
    """

    def fill_defaults(raw: list):
        templates = _parse_templates(raw, department)
        stamp = now_local().isoformat()
        for t in templates:
            if not t.created_at:
                t.created_at = stamp
            if not t.created_by:
                t.created_by = "unknown"
        normalized = _dump(templates)
        return (normalized if normalized != raw else None), templates

    templates = await with_lock(templates_key(department), fill_defaults)
    return sorted(
        templates,
        key=lambda t: parse_timestamp(t.created_at) or datetime.min,
        reverse=True,
    )


async def create_template(department: str, data: TemplateCreate) -> RecurringTemplate:
    if not data.title or not data.time_of_day or not data.recurrence:
        raise InvalidInputError("title, time_of_day and recurrence are required")
    if not is_hm(data.time_of_day):
        raise InvalidInputError("time_of_day must be HH:MM")
    if data.recurrence not in RECURRENCES:
        raise InvalidInputError(f"recurrence must be one of {', '.join(RECURRENCES)}")
    if data.recurrence == RECURRENCE_ONCE:
        if not data.due_date:
            raise InvalidInputError("due_date (YYYY-MM-DD) is required for recurrence 'once'")
        _check_due_date(data.due_date)

    template = RecurringTemplate(
        id=new_id(),
        department=department,
        title=data.title,
        description=data.description or "",
        time_of_day=data.time_of_day.strip(),
        recurrence=data.recurrence,
        due_date=data.due_date if data.recurrence == RECURRENCE_ONCE else None,
        lead_minutes=data.lead_minutes,
        cooldown_hours=data.cooldown_hours,
        instruction_url=data.instruction_url or None,
        created_at=now_local().isoformat(),
        created_by=data.created_by or "unknown",
    )

    def append(raw: list):
        raw.append(template.model_dump(mode="json"))
        return raw, template

    await with_lock(templates_key(department), append)
    logger.debug("Template created dep=%s id=%s title=%s", department, template.id, template.title)
    return template


async def update_template(department: str, template_id: str, data: TemplateUpdate) -> RecurringTemplate:
    """Apply a partial update; lead/cooldown values are re-normalized."""
    changes = data.model_dump(exclude_unset=True)
    if "title" in changes and not changes["title"]:
        raise InvalidInputError("title must not be empty")
    if "time_of_day" in changes and not is_hm(changes["time_of_day"]):
        raise InvalidInputError("time_of_day must be HH:MM")
    if "recurrence" in changes and changes["recurrence"] not in RECURRENCES:
        raise InvalidInputError(f"recurrence must be one of {', '.join(RECURRENCES)}")
    if changes.get("due_date"):
        _check_due_date(changes["due_date"])

    def apply(raw: list):
        templates = _parse_templates(raw, department)
        for i, current in enumerate(templates):
            if current.id != template_id:
                continue
            try:
                updated = RecurringTemplate.model_validate({**current.model_dump(), **changes})
            except ValidationError as exc:
                fields = sorted({str(err["loc"][0]) for err in exc.errors() if err["loc"]})
                raise InvalidInputError(f"invalid value for {', '.join(fields)}") from None
            if updated.recurrence == RECURRENCE_ONCE and not updated.due_date:
                raise InvalidInputError("due_date (YYYY-MM-DD) is required for recurrence 'once'")
            if updated.recurrence != RECURRENCE_ONCE:
                updated.due_date = None
            templates[i] = updated
            return _dump(templates), updated
        raise NotFoundError("Template not found")

    return await with_lock(templates_key(department), apply)


async def delete_template(department: str, template_id: str) -> None:
    def remove(raw: list):
        templates = _parse_templates(raw, department)
        remaining = [t for t in templates if t.id != template_id]
        if len(remaining) == len(templates):
            raise NotFoundError("Template not found")
        return _dump(remaining), None

    await with_lock(templates_key(department), remove)
    logger.debug("Template deleted dep=%s id=%s", department, template_id)
