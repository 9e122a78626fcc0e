import asyncio
import contextlib
import copy
import json
import logging
import os
import tempfile
from typing import Any, Callable, Optional

import config

logger = logging.getLogger(__name__)

DATA_DIR = config.DATA_DIR

# Mutator callback: receives the current document and returns
# (next_document, result). A next_document of None means "do not write".
Mutator = Callable[[Any], tuple[Optional[Any], Any]]


def document_key(department: str, kind: str) -> str:
    """Storage key for one department's collection, e.g. "Technik_tasks"."""
    return f"{department}_{kind}"


def document_path(key: str) -> str:
    return os.path.join(DATA_DIR, f"{key}.json")


def read_document(key: str, default: Any) -> Any:
    """
    Read a whole document.
    Missing documents return a copy of default. Unreadable or mistyped
    documents are logged and also return the default.
    """
    path = document_path(key)
    if not os.path.exists(path):
        return copy.deepcopy(default)
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        logger.warning("Document %s is unreadable; treating it as empty", path, exc_info=True)
        return copy.deepcopy(default)
    if not isinstance(data, type(default)):
        logger.warning(
            "Document %s holds %s, expected %s; treating it as empty",
            path,
            type(data).__name__,
            type(default).__name__,
        )
        return copy.deepcopy(default)
    return data


def write_document(key: str, data: Any) -> None:
    """Replace a whole document (temp file + rename)."""
    os.makedirs(DATA_DIR, exist_ok=True)
    path = document_path(key)
    fd, tmp_path = tempfile.mkstemp(dir=DATA_DIR, prefix=f".{key}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


async def get_document(key: str, default: Any) -> Any:
    return await asyncio.to_thread(read_document, key, default)


async def set_document(key: str, data: Any) -> None:
    await asyncio.to_thread(write_document, key, data)


# Per-key lock registry. asyncio.Lock wakes waiters in arrival order, so each
# key gets a FIFO queue; entries are dropped once nobody holds or waits.
_locks: dict[str, asyncio.Lock] = {}
_lock_users: dict[str, int] = {}


def active_lock_keys() -> list[str]:
    return list(_locks)


async def with_lock(key: str, fn: Mutator, default: Any = None) -> Any:
    """
    Run one read-modify-write on a document, serialized per key.

    fn gets the latest committed document and returns (next_document, result).
    next_document is written before the lock is released unless it is None.
    Exceptions from fn release the lock and propagate to this caller only.
    """
    if default is None:
        default = []

    lock = _locks.get(key)
    if lock is None:
        lock = _locks[key] = asyncio.Lock()
    _lock_users[key] = _lock_users.get(key, 0) + 1

    try:
        async with lock:
            current = await get_document(key, default)
            next_document, result = fn(current)
            if next_document is not None:
                await set_document(key, next_document)
            return result
    finally:
        _lock_users[key] -= 1
        if _lock_users[key] == 0:
            del _lock_users[key]
            del _locks[key]
