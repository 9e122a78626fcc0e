"""
Recurring task scheduler.

A small polling loop that materializes today's recurring instances for
every configured department: once right away, then every interval.
To stop it, cancel the task running run_scheduler().
"""
import asyncio
import logging
from collections.abc import Iterable

from materialize import materialize

logger = logging.getLogger(__name__)


async def materialize_all(departments: Iterable[str], force: bool = False) -> int:
    """Materialize every department; a failing department does not stop the others."""
    total = 0
    for department in departments:
        try:
            total += await materialize(department, force=force)
        except Exception:
            logger.exception("Materialization failed dep=%s", department)
    if total > 0:
        logger.info("Recurring tasks created: %s%s", total, " (forced)" if force else "")
    return total


async def run_scheduler(departments: Iterable[str], interval_seconds: float = 60.0) -> None:
    departments = list(departments)
    sleep_s = max(0.01, float(interval_seconds))
    logger.info("Scheduler started departments=%s interval=%ss", departments, sleep_s)

    while True:
        await materialize_all(departments)
        await asyncio.sleep(sleep_s)
