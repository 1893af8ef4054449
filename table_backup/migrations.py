# Database migrations for the table backup subsystem
# Migrations are like a blockchain - never edit a released one, only add!

from typing import Any

from loguru import logger

DB_NAME = "table_backup"


async def m001_backup_schedules(db: Any) -> None:
    """
    Backup schedules with recurrence config, execution lock and failure tracking.
    Timestamps are stored as epoch seconds.
    """
    await db.execute(
        """
        CREATE TABLE backup_schedules (
            id TEXT PRIMARY KEY,
            table_name TEXT NOT NULL,
            schedule_name TEXT,
            schedule_type TEXT NOT NULL,
            schedule_config TEXT NOT NULL DEFAULT '{}',
            retention_count INTEGER,
            active BOOLEAN NOT NULL DEFAULT TRUE,
            next_run BIGINT NOT NULL,
            last_run_at BIGINT,
            last_error TEXT,
            lock_until BIGINT,
            consecutive_failures INTEGER NOT NULL DEFAULT 0,
            created_by TEXT,
            created_at BIGINT NOT NULL
        );
    """
    )

    await db.execute(
        """
        CREATE INDEX idx_backup_schedules_next_run
        ON backup_schedules(active, next_run);
    """
    )


async def m002_backup_snapshots(db: Any) -> None:
    """
    Snapshot metadata. The rows themselves live in a separate
    backup_data_<id> table per snapshot.
    """
    await db.execute(
        """
        CREATE TABLE backup_snapshots (
            id TEXT PRIMARY KEY,
            table_name TEXT NOT NULL,
            backup_table_name TEXT NOT NULL,
            row_count INTEGER NOT NULL DEFAULT 0,
            backup_name TEXT,
            description TEXT,
            created_by TEXT,
            created_at BIGINT NOT NULL
        );
    """
    )

    await db.execute(
        """
        CREATE INDEX idx_backup_snapshots_table
        ON backup_snapshots(table_name, created_at DESC);
    """
    )


async def m003_backup_schedule_runs(db: Any) -> None:
    """
    Run history, one row per completed schedule execution.
    """
    await db.execute(
        """
        CREATE TABLE backup_schedule_runs (
            id TEXT PRIMARY KEY,
            schedule_id TEXT NOT NULL,
            timestamp BIGINT NOT NULL,
            status TEXT NOT NULL,
            snapshot_id TEXT,
            row_count INTEGER,
            error_message TEXT,
            FOREIGN KEY (schedule_id) REFERENCES backup_schedules(id) ON DELETE CASCADE
        );
    """
    )

    await db.execute(
        """
        CREATE INDEX idx_backup_schedule_runs_schedule
        ON backup_schedule_runs(schedule_id, timestamp DESC);
    """
    )


async def m004_snapshot_sequence(db: Any) -> None:
    """
    Monotonic creation counter, so snapshots taken within the same second
    still have a definite newest-first order.
    """
    await db.execute(
        """
        ALTER TABLE backup_snapshots
        ADD COLUMN sequence_number BIGINT NOT NULL DEFAULT 0;
    """
    )


MIGRATIONS = [
    m001_backup_schedules,
    m002_backup_snapshots,
    m003_backup_schedule_runs,
    m004_snapshot_sequence,
]


async def migrate(db: Any) -> int:
    """Apply pending migrations in order. Returns the resulting schema version."""
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS backup_dbversions (
            db TEXT PRIMARY KEY,
            version INTEGER NOT NULL
        );
    """
    )
    row = await db.fetchone(
        "SELECT version FROM backup_dbversions WHERE db = :db", {"db": DB_NAME}
    )
    current = row["version"] if row else 0

    for version, migration in enumerate(MIGRATIONS, start=1):
        if version <= current:
            continue
        logger.info(f"🔧 Running migration {migration.__name__}")
        async with db.connect() as conn:
            await migration(conn)
            if version == 1 and not row:
                await conn.execute(
                    "INSERT INTO backup_dbversions (db, version) VALUES (:db, :version)",
                    {"db": DB_NAME, "version": version},
                )
            else:
                await conn.execute(
                    "UPDATE backup_dbversions SET version = :version WHERE db = :db",
                    {"db": DB_NAME, "version": version},
                )
        current = version

    return current
