from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from loguru import logger

from .config import get_settings
from .db import Connection, Database
from .models import (
    BackupSchedule,
    BackupSnapshot,
    CreateBackupScheduleData,
    RestoreMode,
    RestoreResult,
    ScheduleCompletion,
    ScheduleRun,
    SnapshotResult,
)

db = Database(get_settings().database_url)

INTERNAL_TABLE_PREFIX = "backup_"
BACKUP_DATA_PREFIX = "backup_data_"
RESTORE_MODES = ("replace", "merge")


def _ts(dt: datetime) -> int:
    """Epoch seconds; naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Schedules


async def create_backup_schedule(
    data: CreateBackupScheduleData, next_run: datetime
) -> BackupSchedule:
    """Create a new backup schedule"""
    schedule_id = uuid4().hex
    await db.execute(
        """
        INSERT INTO backup_schedules
        (id, table_name, schedule_name, schedule_type, schedule_config,
         retention_count, active, next_run, consecutive_failures, created_by, created_at)
        VALUES (:id, :table_name, :schedule_name, :schedule_type, :schedule_config,
         :retention_count, :active, :next_run, 0, :created_by, :created_at)
        """,
        {
            "id": schedule_id,
            "table_name": data.table_name,
            "schedule_name": data.schedule_name,
            "schedule_type": data.schedule_type,
            "schedule_config": data.schedule_config.to_json(),
            "retention_count": data.retention_count,
            "active": data.active,
            "next_run": _ts(next_run),
            "created_by": data.created_by,
            "created_at": _ts(_utcnow()),
        },
    )
    schedule = await get_backup_schedule(schedule_id)
    if not schedule:
        raise RuntimeError(f"Backup schedule {schedule_id} could not be read back")
    return schedule


async def get_backup_schedule(schedule_id: str) -> Optional[BackupSchedule]:
    return await db.fetchone(
        "SELECT * FROM backup_schedules WHERE id = :id",
        {"id": schedule_id},
        BackupSchedule,
    )


async def get_backup_schedules(table_name: Optional[str] = None) -> list[BackupSchedule]:
    """Get all backup schedules, optionally for a single table"""
    if table_name:
        return await db.fetchall(
            "SELECT * FROM backup_schedules WHERE table_name = :table_name "
            "ORDER BY created_at DESC",
            {"table_name": table_name},
            BackupSchedule,
        )
    return await db.fetchall(
        "SELECT * FROM backup_schedules ORDER BY created_at DESC", model=BackupSchedule
    )


async def update_backup_schedule(
    schedule_id: str, data: CreateBackupScheduleData, next_run: datetime
) -> Optional[BackupSchedule]:
    """Update the recurrence of a schedule. Lock and failure counters are untouched."""
    await db.execute(
        """
        UPDATE backup_schedules
        SET table_name = :table_name, schedule_name = :schedule_name,
            schedule_type = :schedule_type, schedule_config = :schedule_config,
            retention_count = :retention_count, active = :active, next_run = :next_run
        WHERE id = :id
        """,
        {
            "id": schedule_id,
            "table_name": data.table_name,
            "schedule_name": data.schedule_name,
            "schedule_type": data.schedule_type,
            "schedule_config": data.schedule_config.to_json(),
            "retention_count": data.retention_count,
            "active": data.active,
            "next_run": _ts(next_run),
        },
    )
    return await get_backup_schedule(schedule_id)


async def delete_backup_schedule(schedule_id: str) -> None:
    """Delete a schedule and its run history. Snapshots are kept."""
    async with db.connect() as conn:
        await conn.execute(
            "DELETE FROM backup_schedule_runs WHERE schedule_id = :id", {"id": schedule_id}
        )
        await conn.execute("DELETE FROM backup_schedules WHERE id = :id", {"id": schedule_id})


async def get_due_backup_schedules(
    now: datetime, lookahead_minutes: int = 1
) -> list[BackupSchedule]:
    """Active, unlocked schedules whose next run is at or before now + lookahead"""
    horizon = now + timedelta(minutes=lookahead_minutes)
    return await db.fetchall(
        """
        SELECT * FROM backup_schedules
        WHERE active = true
          AND next_run <= :horizon
          AND (lock_until IS NULL OR lock_until < :now)
        ORDER BY next_run
        """,
        {"horizon": _ts(horizon), "now": _ts(now)},
        BackupSchedule,
    )


async def mark_schedule_running(
    schedule_id: str, lock_until: datetime, now: Optional[datetime] = None
) -> bool:
    """
    Compare-and-set the execution lock.
    Returns False when the schedule is already locked (or does not exist).
    """
    result = await db.execute(
        """
        UPDATE backup_schedules
        SET lock_until = :lock_until
        WHERE id = :id AND (lock_until IS NULL OR lock_until < :now)
        """,
        {"id": schedule_id, "lock_until": _ts(lock_until), "now": _ts(now or _utcnow())},
    )
    return result.rowcount == 1


async def complete_schedule(schedule_id: str, completion: ScheduleCompletion) -> None:
    """Release the lock, record the outcome and persist the next run in one transaction"""
    completed_at = _ts(completion.completed_at or _utcnow())
    async with db.connect() as conn:
        if completion.success:
            await conn.execute(
                """
                UPDATE backup_schedules
                SET lock_until = NULL,
                    consecutive_failures = 0,
                    last_error = NULL,
                    last_run_at = :completed_at,
                    next_run = :next_run
                WHERE id = :id
                """,
                {
                    "id": schedule_id,
                    "completed_at": completed_at,
                    "next_run": _ts(completion.next_run),
                },
            )
        else:
            await conn.execute(
                """
                UPDATE backup_schedules
                SET lock_until = NULL,
                    consecutive_failures = consecutive_failures + 1,
                    last_error = :error,
                    last_run_at = :completed_at,
                    next_run = :next_run
                WHERE id = :id
                """,
                {
                    "id": schedule_id,
                    "error": completion.error or "Unknown error",
                    "completed_at": completed_at,
                    "next_run": _ts(completion.next_run),
                },
            )

        await conn.execute(
            """
            INSERT INTO backup_schedule_runs
            (id, schedule_id, timestamp, status, snapshot_id, row_count, error_message)
            VALUES (:id, :schedule_id, :timestamp, :status, :snapshot_id, :row_count,
             :error_message)
            """,
            {
                "id": uuid4().hex,
                "schedule_id": schedule_id,
                "timestamp": completed_at,
                "status": "success" if completion.success else "error",
                "snapshot_id": completion.snapshot_id,
                "row_count": completion.row_count,
                "error_message": completion.error,
            },
        )


async def get_schedule_runs(
    schedule_id: Optional[str] = None, limit: int = 50
) -> list[ScheduleRun]:
    """Get run history, optionally filtered by schedule_id"""
    if schedule_id:
        return await db.fetchall(
            "SELECT * FROM backup_schedule_runs WHERE schedule_id = :schedule_id "
            "ORDER BY timestamp DESC LIMIT :limit",
            {"schedule_id": schedule_id, "limit": limit},
            ScheduleRun,
        )
    return await db.fetchall(
        "SELECT * FROM backup_schedule_runs ORDER BY timestamp DESC LIMIT :limit",
        {"limit": limit},
        ScheduleRun,
    )


# Snapshots


async def _backupable_tables(conn: Connection) -> list[str]:
    allowed = get_settings().tables
    return sorted(
        name
        for name in await conn.get_table_names()
        if not name.startswith(INTERNAL_TABLE_PREFIX) and (not allowed or name in allowed)
    )


async def get_backupable_tables() -> list[str]:
    async with db.connect() as conn:
        return await _backupable_tables(conn)


async def create_table_backup(
    table_name: str,
    actor_id: Optional[str] = None,
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> SnapshotResult:
    """
    Copy every current row of table_name into a new backup_data_<id> table.
    The copy, the row count and the metadata row share one transaction.
    """
    snapshot_id = uuid4().hex
    backup_table_name = f"{BACKUP_DATA_PREFIX}{snapshot_id}"

    async with db.connect() as conn:
        if table_name not in await _backupable_tables(conn):
            raise ValueError(f"Table not available for backup: {table_name}")

        source = conn.quote(table_name)
        target = conn.quote(backup_table_name)
        await conn.execute(f"CREATE TABLE {target} AS SELECT * FROM {source}")
        row = await conn.fetchone(f"SELECT COUNT(*) AS row_count FROM {target}")
        row_count = int(row["row_count"])

        await conn.execute(
            """
            INSERT INTO backup_snapshots
            (id, table_name, backup_table_name, row_count, backup_name, description,
             created_by, created_at, sequence_number)
            VALUES (:id, :table_name, :backup_table_name, :row_count, :backup_name,
             :description, :created_by, :created_at,
             (SELECT COALESCE(MAX(sequence_number), 0) + 1 FROM backup_snapshots))
            """,
            {
                "id": snapshot_id,
                "table_name": table_name,
                "backup_table_name": backup_table_name,
                "row_count": row_count,
                "backup_name": name,
                "description": description,
                "created_by": actor_id,
                "created_at": _ts(_utcnow()),
            },
        )

    logger.info(f"📦 Snapshot {snapshot_id} of {table_name} created ({row_count} rows)")
    return SnapshotResult(snapshot_id=snapshot_id, row_count=row_count)


async def get_backup_snapshot(snapshot_id: str) -> Optional[BackupSnapshot]:
    return await db.fetchone(
        "SELECT * FROM backup_snapshots WHERE id = :id",
        {"id": snapshot_id},
        BackupSnapshot,
    )


async def get_backup_snapshots(table_name: Optional[str] = None) -> list[BackupSnapshot]:
    if table_name:
        return await db.fetchall(
            "SELECT * FROM backup_snapshots WHERE table_name = :table_name "
            "ORDER BY created_at DESC, sequence_number DESC",
            {"table_name": table_name},
            BackupSnapshot,
        )
    return await db.fetchall(
        "SELECT * FROM backup_snapshots ORDER BY created_at DESC, sequence_number DESC",
        model=BackupSnapshot,
    )


async def _drop_snapshot(conn: Connection, snapshot: BackupSnapshot) -> None:
    await conn.execute(f"DROP TABLE IF EXISTS {conn.quote(snapshot.backup_table_name)}")
    await conn.execute("DELETE FROM backup_snapshots WHERE id = :id", {"id": snapshot.id})


async def delete_backup_snapshot(snapshot_id: str) -> bool:
    """Delete a snapshot and its data table. Returns False if it did not exist."""
    async with db.connect() as conn:
        snapshot = await conn.fetchone(
            "SELECT * FROM backup_snapshots WHERE id = :id",
            {"id": snapshot_id},
            BackupSnapshot,
        )
        if not snapshot:
            return False
        await _drop_snapshot(conn, snapshot)
    logger.info(f"🗑️ Deleted snapshot {snapshot_id} of {snapshot.table_name}")
    return True


async def cleanup_old_backups_by_schedule(table_name: str, retention_count: int) -> int:
    """Delete snapshots of table_name beyond the newest retention_count. Returns how many."""
    async with db.connect() as conn:
        snapshots = await conn.fetchall(
            "SELECT * FROM backup_snapshots WHERE table_name = :table_name "
            "ORDER BY created_at DESC, sequence_number DESC",
            {"table_name": table_name},
            BackupSnapshot,
        )
        stale = snapshots[max(retention_count, 0) :]
        for snapshot in stale:
            logger.debug(f"🗑️ Removing old snapshot {snapshot.id} of {table_name}")
            await _drop_snapshot(conn, snapshot)
    return len(stale)


async def restore_table_backup(snapshot_id: str, mode: RestoreMode) -> RestoreResult:
    """
    Restore a snapshot into its source table.

    replace: delete every current row, then insert all snapshot rows.
    merge: insert only snapshot rows whose primary key is absent from the table.
    Runs in a single transaction, so an interrupted restore leaves the table as it was.
    """
    if mode not in RESTORE_MODES:
        raise ValueError(f"Invalid restore mode: {mode}")

    async with db.connect() as conn:
        snapshot = await conn.fetchone(
            "SELECT * FROM backup_snapshots WHERE id = :id",
            {"id": snapshot_id},
            BackupSnapshot,
        )
        if not snapshot:
            raise ValueError(f"Backup snapshot not found: {snapshot_id}")
        if snapshot.table_name not in await conn.get_table_names():
            raise ValueError(f"Source table no longer exists: {snapshot.table_name}")

        current_columns = set(await conn.get_columns(snapshot.table_name))
        columns = [
            column
            for column in await conn.get_columns(snapshot.backup_table_name)
            if column in current_columns
        ]
        target = conn.quote(snapshot.table_name)
        source = conn.quote(snapshot.backup_table_name)
        column_list = ", ".join(conn.quote(column) for column in columns)

        if mode == "replace":
            await conn.execute(f"DELETE FROM {target}")
            result = await conn.execute(
                f"INSERT INTO {target} ({column_list}) SELECT {column_list} FROM {source}"
            )
        else:
            primary_key = await conn.get_primary_key(snapshot.table_name)
            if not primary_key:
                raise ValueError(
                    f"Merge restore needs a primary key on {snapshot.table_name}"
                )
            match = " AND ".join(
                f"current_rows.{conn.quote(column)} = snapshot_rows.{conn.quote(column)}"
                for column in primary_key
            )
            select_list = ", ".join(
                f"snapshot_rows.{conn.quote(column)}" for column in columns
            )
            result = await conn.execute(
                f"""
                INSERT INTO {target} ({column_list})
                SELECT {select_list} FROM {source} AS snapshot_rows
                WHERE NOT EXISTS (
                    SELECT 1 FROM {target} AS current_rows WHERE {match}
                )
                """
            )

    rows_restored = max(result.rowcount, 0)
    logger.info(
        f"♻️ Restored {rows_restored} row(s) into {snapshot.table_name} "
        f"from snapshot {snapshot_id} ({mode})"
    )
    return RestoreResult(
        snapshot_id=snapshot_id,
        table_name=snapshot.table_name,
        mode=mode,
        rows_restored=rows_restored,
    )
