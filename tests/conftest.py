"""Shared fixtures.

Every test gets a fresh temp-file SQLite DatabaseManager and a ManualClock
pinned to 2026-03-10 12:00 UTC. ``engine`` wires a PipelineEngine over the
seeded default layout (Vânzări / Receptie / Arhivare) with a single scan
worker. Tests of concurrent writers start their own threads or build a
multi-worker engine over the same database.
"""
import os
import shutil
import tempfile
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest

from config.role_config import role_config
from config.settings import Settings
from database import DatabaseManager
from engine.clock import ManualClock
from engine.core import PipelineEngine
from engine.notifications import Notifier

NOW = datetime(2026, 3, 10, 12, 0, 0)

TOKENS = {
    "tok-admin": "ana",
    "tok-sales": "vlad",
    "tok-reception": "ioana",
    "tok-tech": "mihai",
}
ROLES = {
    "ana": "admin",
    "vlad": "vanzator",
    "ioana": "receptie",
    "mihai": "tehnician",
}


class RecordingNotifier(Notifier):
    """Collects reminders instead of delivering them."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    def notify(self, recipient: Optional[str], title: str, message: str,
               payload: Optional[Dict[str, Any]] = None) -> None:
        self.sent.append({"recipient": recipient, "title": title,
                          "message": message, "payload": payload or {}})


class Layout:
    """Pipeline and stage ids of a seeded database, by name."""

    def __init__(self, directory):
        self.pipelines = {p.name: p for p in directory.pipelines()}

    def pipeline_id(self, name: str) -> int:
        return self.pipelines[name].id

    def stage_id(self, pipeline: str, stage: str) -> int:
        for info in self.pipelines[pipeline].stages:
            if info.name == stage:
                return info.id
        raise KeyError(f"{pipeline}/{stage}")


@pytest.fixture
def temp_db():
    """Yield a fresh DatabaseManager bound to a temp SQLite database."""
    temp_dir = tempfile.mkdtemp(prefix="engine-tests-")
    db_path = os.path.join(temp_dir, "test.db")
    manager = DatabaseManager(database_url=f"sqlite:///{db_path}")
    manager.create_tables()

    try:
        yield manager
    finally:
        manager.close()
        shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def seeded_db(temp_db):
    """temp_db with the default pipelines."""
    temp_db.seed_pipelines(role_config.get_default_pipelines())
    return temp_db


@pytest.fixture
def clock():
    return ManualClock(NOW)


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        scan_max_workers=1,
        on_access_timeout_ms=5000,
        cron_secret="cron-secret",
        session_tokens=dict(TOKENS),
        actor_roles=dict(ROLES),
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(seeded_db, clock, test_settings, notifier):
    return PipelineEngine(seeded_db, test_settings, clock=clock, notifier=notifier)


@pytest.fixture
def layout(engine):
    return Layout(engine.directory)
