import asyncio
import contextlib
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

import archive
import config
import database
import recurring
import tasks
from errors import InvalidInputError, NotFoundError
from logging_setup import setup_logging
from materialize import materialize
from models import (
    COLLECTION_TASKS,
    ArchiveRecord,
    CompleteRequest,
    ForwardRequest,
    ItemCreate,
    ItemUpdate,
    NoteCreate,
    RecurringTemplate,
    TaskInstance,
    TemplateCreate,
    TemplateUpdate,
)
from scheduler import materialize_all, run_scheduler
from seed import seed_department


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # Startup
    setup_logging(config.LOG_LEVEL, config.LOG_DIR)
    os.makedirs(database.DATA_DIR, exist_ok=True)
    runner = None
    if config.SCHEDULER_ENABLED:
        runner = asyncio.create_task(
            run_scheduler(config.DEPARTMENTS, interval_seconds=config.SCHEDULER_INTERVAL_SECONDS)
        )
    yield
    # Shutdown
    if runner is not None:
        runner.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await runner


app = FastAPI(title="CheckBell", lifespan=lifespan)


@app.exception_handler(NotFoundError)
async def not_found_handler(_request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidInputError)
async def invalid_input_handler(_request: Request, exc: InvalidInputError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/api/health")
def health() -> dict:
    return {"ok": True, "departments": config.DEPARTMENTS}


# ---- recurring templates ----

@app.get("/api/{department}/recurring")
async def list_templates(department: str) -> list[RecurringTemplate]:
    return await recurring.list_templates(department)


@app.post("/api/{department}/recurring")
async def create_template(department: str, data: TemplateCreate) -> RecurringTemplate:
    return await recurring.create_template(department, data)


@app.post("/api/{department}/recurring/materialize-now")
async def materialize_now(department: str, force: bool = False) -> dict:
    """Manual trigger; force skips lead time and cooldown."""
    created = await materialize(department, force=force)
    return {"department": department, "created": created, "forced": force}


@app.put("/api/{department}/recurring/{template_id}")
async def update_template(department: str, template_id: str, data: TemplateUpdate) -> RecurringTemplate:
    return await recurring.update_template(department, template_id, data)


@app.delete("/api/{department}/recurring/{template_id}")
async def delete_template(department: str, template_id: str) -> dict:
    await recurring.delete_template(department, template_id)
    return {"status": "deleted"}


# ---- archive ----

@app.get("/api/{department}/archive")
async def get_archive(department: str) -> list[ArchiveRecord]:
    return await archive.list_archive(department)


# ---- seed ----

@app.post("/api/seed")
async def seed(reset: bool = False, force: bool = False) -> dict:
    if not config.ALLOW_SEED:
        raise HTTPException(status_code=403, detail="Seeding is disabled")
    summary = [await seed_department(dep, reset=reset) for dep in config.DEPARTMENTS]
    created = await materialize_all(config.DEPARTMENTS, force=force)
    return {"ok": True, "reset": reset, "force": force, "created": created, "summary": summary}


# ---- tasks / meldungen ----

@app.get("/api/{department}/{collection}")
async def list_items(
    department: str,
    collection: str,
    status: Optional[str] = None,
    day: Optional[str] = None,
    sort: Optional[str] = None,
    date_by: Optional[str] = None,
) -> list[TaskInstance]:
    if collection == COLLECTION_TASKS:
        await materialize(department)
    return await tasks.list_items(department, collection, status=status, day=day, sort=sort, date_by=date_by)


@app.post("/api/{department}/{collection}")
async def create_item(department: str, collection: str, data: ItemCreate) -> TaskInstance:
    return await tasks.create_item(department, collection, data)


@app.put("/api/{department}/{collection}/{ref}")
async def update_item(department: str, collection: str, ref: str, data: ItemUpdate) -> TaskInstance:
    return await tasks.update_item(department, collection, ref, data)


@app.delete("/api/{department}/{collection}/{ref}")
async def delete_item(department: str, collection: str, ref: str) -> dict:
    await tasks.delete_item(department, collection, ref)
    return {"status": "deleted"}


@app.patch("/api/{department}/{collection}/{ref}/complete")
async def complete_item(
    department: str,
    collection: str,
    ref: str,
    data: CompleteRequest,
    x_user: Optional[str] = Header(default=None),
) -> TaskInstance:
    actor = data.completed_by or (x_user or "").strip() or None
    return await tasks.set_completed(department, collection, ref, completed=data.completed, actor=actor)


@app.put("/api/{department}/{collection}/{ref}/forward")
async def forward_item(department: str, collection: str, ref: str, data: ForwardRequest) -> TaskInstance:
    return await tasks.forward(department, collection, ref, data.target_department)


@app.post("/api/{department}/{collection}/{ref}/notes")
async def add_note(department: str, collection: str, ref: str, data: NoteCreate) -> TaskInstance:
    return await tasks.add_note(department, collection, ref, data.author, data.text)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
