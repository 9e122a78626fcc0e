"""
Shared pytest fixtures for backend tests.
Every test gets its own temporary data directory.
"""
import pytest
import sys
import os

# Add backend to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import config
import database


@pytest.fixture
def data_dir(monkeypatch, tmp_path):
    """Point the document store at an empty temp directory."""
    path = tmp_path / "data"
    monkeypatch.setattr(database, "DATA_DIR", str(path))
    yield path


@pytest.fixture
def make_template():
    """Build a stored template dict with sensible defaults."""

    def _make(template_id="tpl-1", **overrides):
        template = {
            "id": template_id,
            "department": "Technik",
            "title": "Morning round",
            "description": "Check the plant",
            "time_of_day": "09:00",
            "recurrence": "daily",
            "due_date": None,
            "lead_minutes": 0,
            "cooldown_hours": 0,
            "instruction_url": None,
            "created_at": "2025-01-01T08:00:00",
            "created_by": "tester",
        }
        template.update(overrides)
        return template

    return _make


@pytest.fixture
def app_client(data_dir, monkeypatch):
    """
    Create a test client for the FastAPI app.
    The background scheduler and logging setup are disabled.
    """
    from fastapi.testclient import TestClient
    import main

    monkeypatch.setattr(config, "SCHEDULER_ENABLED", False)
    monkeypatch.setattr(main, "setup_logging", lambda *args, **kwargs: None)

    with TestClient(main.app) as client:
        yield client
