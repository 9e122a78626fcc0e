"""Demo data for local development."""
import logging
from datetime import datetime, timedelta
from typing import Optional

from database import document_key, with_lock
from models import (
    COLLECTION_REPORTS,
    COLLECTION_TASKS,
    RECURRENCE_DAILY,
    RECURRENCE_ONCE,
    RecurringTemplate,
    TaskInstance,
    TaskStatus,
)
from recurring import templates_key
from timeutil import day_key, new_id, now_local

logger = logging.getLogger(__name__)

CATEGORIES = ["Betrieb", "Technik", "IT"]
PRIORITIES = ["high", "medium", "low"]


def build_demo_items(department: str, collection: str, now: datetime) -> list[dict]:
    label = "Report" if collection == COLLECTION_REPORTS else "Task"
    items = []
    for i in range(6):
        done = i % 3 == 0
        stamp = (now - timedelta(days=i % 5)).isoformat()
        item = TaskInstance(
            id=new_id(),
            title=f"{label} {i + 1} - {department}",
            description=f"Sample {collection} #{i + 1} for {department}.",
            category=CATEGORIES[i % len(CATEGORIES)],
            priority=PRIORITIES[i % len(PRIORITIES)],
            status=TaskStatus.DONE if done else TaskStatus.OPEN,
            completed=done,
            created_at=stamp,
            completed_at=stamp if done else None,
            completed_by="seeder" if done else None,
        )
        items.append(item.model_dump(mode="json"))
    return items


def build_demo_templates(department: str, now: datetime) -> list[dict]:
    tomorrow = day_key(now + timedelta(days=1))
    stamp = now.isoformat()
    templates = [
        RecurringTemplate(
            id=new_id(),
            department=department,
            title="Daily plant round",
            description="Standard morning inspection.",
            time_of_day="09:00",
            recurrence=RECURRENCE_DAILY,
            lead_minutes=480,
            cooldown_hours=8,
            created_at=stamp,
            created_by="seeder",
        ),
        RecurringTemplate(
            id=new_id(),
            department=department,
            title="Evening checklist",
            description="Daily wrap-up before the shift ends.",
            time_of_day="21:00",
            recurrence=RECURRENCE_DAILY,
            lead_minutes=480,
            cooldown_hours=8,
            created_at=stamp,
            created_by="seeder",
        ),
        RecurringTemplate(
            id=new_id(),
            department=department,
            title="One-off special inspection",
            description="Due tomorrow only.",
            time_of_day="10:30",
            recurrence=RECURRENCE_ONCE,
            due_date=tomorrow,
            lead_minutes=120,
            cooldown_hours=0,
            created_at=stamp,
            created_by="seeder",
        ),
    ]
    return [t.model_dump(mode="json") for t in templates]


async def seed_department(department: str, reset: bool = False, now: Optional[datetime] = None) -> dict:
    """Fill empty collections (or all of them when reset) with demo data."""
    now = now or now_local()
    counts = {}

    def replace_with(build):
        def fill(raw: list):
            if raw and not reset:
                return None, len(raw)
            fresh = build()
            return fresh, len(fresh)

        return fill

    for collection in (COLLECTION_TASKS, COLLECTION_REPORTS):
        counts[collection] = await with_lock(
            document_key(department, collection),
            replace_with(lambda c=collection: build_demo_items(department, c, now)),
        )
    counts["recurring"] = await with_lock(
        templates_key(department),
        replace_with(lambda: build_demo_templates(department, now)),
    )

    logger.info("Seeded dep=%s reset=%s counts=%s", department, reset, counts)
    return {"department": department, **counts}
