"""
Materialization of recurring templates into today's task instances.

For every template of a department the engine decides whether a task
instance for today should be appended to the department's "tasks"
collection:

- recurrence: "daily" is always eligible, "once" only on its due date,
  anything else never
- lead time: an instance may appear lead_minutes before time_of_day
- cooldown: no new instance within cooldown_hours of the last completed one
- idempotency: at most one instance per template and day, keyed by
  rec_{template_id}_{day_key}

force=True bypasses lead time and cooldown but never idempotency.
All templates are checked in one read-modify-write of the task collection.
"""
import logging
from datetime import datetime
from typing import Optional

from database import with_lock
from models import (
    COLLECTION_TASKS,
    RECURRENCE_DAILY,
    RECURRENCE_ONCE,
    RecurringTemplate,
    TaskInstance,
    TaskStatus,
)
from recurring import load_templates
from tasks import items_key, parse_items
from timeutil import day_key, new_id, now_local, parse_hm, parse_timestamp

logger = logging.getLogger(__name__)

RECURRING_CATEGORY = "Betrieb"
RECURRING_PRIORITY = "medium"


def instance_key(template_id: str, today: str) -> str:
    return f"rec_{template_id}_{today}"


def is_due_on(template: RecurringTemplate, today: str) -> bool:
    if template.recurrence == RECURRENCE_ONCE:
        return template.due_date == today
    return template.recurrence == RECURRENCE_DAILY


def lead_time_reached(template: RecurringTemplate, now_minutes: int) -> bool:
    allowed_from = max(0, parse_hm(template.time_of_day) - max(0, template.lead_minutes))
    return now_minutes >= allowed_from


def last_completion(items: list[TaskInstance], template_id: str) -> Optional[datetime]:
    latest = None
    for item in items:
        if item.template_id != template_id or not item.completed:
            continue
        done_at = parse_timestamp(item.completed_at)
        if done_at is not None and (latest is None or done_at > latest):
            latest = done_at
    return latest


def cooling_down(template: RecurringTemplate, items: list[TaskInstance], now: datetime) -> bool:
    if template.cooldown_hours <= 0:
        return False
    done_at = last_completion(items, template.id)
    if done_at is None:
        return False
    hours_since = (now - done_at).total_seconds() / 3600
    return hours_since < template.cooldown_hours


def build_instance(template: RecurringTemplate, now: datetime) -> TaskInstance:
    today = day_key(now)
    return TaskInstance(
        id=new_id(),
        instance_id=instance_key(template.id, today),
        template_id=template.id,
        from_recurring=True,
        title=template.title,
        description=template.description or "",
        category=RECURRING_CATEGORY,
        priority=RECURRING_PRIORITY,
        status=TaskStatus.OPEN,
        completed=False,
        created_at=now.isoformat(),
        due_date=f"{today} {template.time_of_day or '00:00'}",
        instruction_url=template.instruction_url,
    )


async def materialize(department: str, force: bool = False, now: Optional[datetime] = None) -> int:
    """Create today's due instances for one department. Returns how many were created."""
    templates = await load_templates(department)
    if not templates:
        return 0

    now = now or now_local()
    today = day_key(now)
    now_minutes = now.hour * 60 + now.minute
    key = items_key(department, COLLECTION_TASKS)

    def spawn(raw: list):
        items = parse_items(raw, key)
        existing = {item.instance_id for item in items if item.instance_id}
        created = 0

        for template in templates:
            if not is_due_on(template, today):
                continue
            if not force and not lead_time_reached(template, now_minutes):
                continue
            if not force and cooling_down(template, items, now):
                continue
            instance_id = instance_key(template.id, today)
            if instance_id in existing:
                continue

            raw.append(build_instance(template, now).model_dump(mode="json"))
            existing.add(instance_id)
            created += 1

        return (raw if created else None), created

    created = await with_lock(key, spawn)
    if created:
        logger.debug("Materialized %s instance(s) dep=%s force=%s", created, department, force)
    return created
