"""
Test fixtures: a fresh SQLite database per test, seeded with a small leads table,
and a loguru sink for asserting on log lines.
"""

import os
import tempfile

# Must be set before table_backup is imported
os.environ.setdefault(
    "BACKUP_DATABASE_URL",
    f"sqlite+aiosqlite:///{tempfile.mkdtemp()}/default.sqlite3",
)
os.environ.setdefault("BACKUP_SCHEDULER_ENABLED", "false")

from datetime import datetime, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from loguru import logger

from table_backup import crud
from table_backup.db import Database
from table_backup.migrations import migrate
from table_backup.models import BackupSchedule, ScheduleConfig

LEADS = [
    {"id": 1, "email": "ada@example.org", "name": "Ada"},
    {"id": 2, "email": "grace@example.org", "name": "Grace"},
    {"id": 3, "email": "alan@example.org", "name": None},
]

# 2025-06-10 02:05 UTC, five minutes after a 02:00 daily schedule came due
NOW = datetime(2025, 6, 10, 2, 5, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def database(tmp_path, monkeypatch) -> AsyncGenerator[Database, None]:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.sqlite3'}")
    await migrate(database)

    async with database.connect() as conn:
        await conn.execute(
            "CREATE TABLE leads (id INTEGER PRIMARY KEY, email TEXT NOT NULL, name TEXT)"
        )
        for lead in LEADS:
            await conn.execute(
                "INSERT INTO leads (id, email, name) VALUES (:id, :email, :name)", lead
            )

    monkeypatch.setattr(crud, "db", database)
    yield database
    await database.dispose()


@pytest.fixture
def log_messages():
    messages: list[str] = []
    handler_id = logger.add(
        lambda message: messages.append(message.record["message"]), level="DEBUG"
    )
    yield messages
    logger.remove(handler_id)


def make_schedule(
    schedule_type: str = "daily",
    next_run: datetime = datetime(2025, 6, 10, 2, 0, tzinfo=timezone.utc),
    **overrides,
) -> BackupSchedule:
    config = overrides.pop("config", {"hour": 2, "minute": 0, "timezone": "UTC"})
    return BackupSchedule(
        id=overrides.pop("id", "sched-1"),
        table_name=overrides.pop("table_name", "leads"),
        schedule_name=overrides.pop("schedule_name", "Nightly leads"),
        schedule_type=schedule_type,
        schedule_config=ScheduleConfig(**config),
        next_run=next_run,
        **overrides,
    )


async def fetch_leads(database: Database) -> list[dict]:
    return await database.fetchall("SELECT id, email, name FROM leads ORDER BY id")
