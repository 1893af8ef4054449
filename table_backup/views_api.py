from datetime import datetime, timezone
from http import HTTPStatus
from typing import Optional

from dateutil import tz
from fastapi import APIRouter, Query, Request
from loguru import logger
from starlette.exceptions import HTTPException

from .crud import (
    create_backup_schedule,
    create_table_backup,
    delete_backup_schedule,
    delete_backup_snapshot,
    get_backup_schedule,
    get_backup_schedules,
    get_backup_snapshot,
    get_backup_snapshots,
    get_backupable_tables,
    get_schedule_runs,
    restore_table_backup,
    update_backup_schedule,
)
from .models import (
    PUBLIC_SCHEDULE_TYPES,
    BackupSchedule,
    CreateBackupScheduleData,
    CreateSnapshotData,
    RestoreData,
)
from .tasks import BackupScheduler, compute_next_run

backup_api_router = APIRouter()


def get_scheduler(request: Request) -> BackupScheduler:
    """The process scheduler if one was started, else a detached instance."""
    scheduler = getattr(request.app.state, "backup_scheduler", None)
    return scheduler or BackupScheduler()


async def validate_schedule_data(data: CreateBackupScheduleData) -> None:
    """
    Validate table, recurrence type and timezone of a schedule.
    Raises HTTPException if validation fails.
    """
    if data.schedule_type not in PUBLIC_SCHEDULE_TYPES:
        raise HTTPException(
            status_code=HTTPStatus.BAD_REQUEST,
            detail=f"Invalid schedule type. Must be one of: {', '.join(PUBLIC_SCHEDULE_TYPES)}",
        )

    if tz.gettz(data.schedule_config.timezone) is None:
        raise HTTPException(
            status_code=HTTPStatus.BAD_REQUEST,
            detail=f"Unknown timezone: {data.schedule_config.timezone}",
        )

    if data.table_name not in await get_backupable_tables():
        raise HTTPException(
            status_code=HTTPStatus.BAD_REQUEST,
            detail=f"Table not available for backup: {data.table_name}",
        )


def first_run(data: CreateBackupScheduleData) -> datetime:
    now = datetime.now(timezone.utc)
    draft = BackupSchedule(id="new", next_run=now, **data.model_dump())
    return compute_next_run(draft, now)


async def get_schedule_or_404(schedule_id: str) -> BackupSchedule:
    schedule = await get_backup_schedule(schedule_id)
    if not schedule:
        raise HTTPException(
            status_code=HTTPStatus.NOT_FOUND,
            detail="Backup schedule not found",
        )
    return schedule


@backup_api_router.get("/api/v1/tables", status_code=HTTPStatus.OK)
async def api_get_tables():
    """List the tables that can be backed up."""
    return await get_backupable_tables()


@backup_api_router.get("/api/v1/snapshots", status_code=HTTPStatus.OK)
async def api_get_snapshots(table_name: Optional[str] = Query(None)):
    return await get_backup_snapshots(table_name)


@backup_api_router.post("/api/v1/snapshots", status_code=HTTPStatus.CREATED)
async def api_create_snapshot(data: CreateSnapshotData):
    """Take a manual snapshot of a table."""
    if data.table_name not in await get_backupable_tables():
        raise HTTPException(
            status_code=HTTPStatus.BAD_REQUEST,
            detail=f"Table not available for backup: {data.table_name}",
        )

    try:
        result = await create_table_backup(
            data.table_name,
            data.created_by,
            data.backup_name or f"Manual: {data.table_name}",
            data.description,
        )
    except Exception as e:
        logger.error(f"❌ Manual backup of {data.table_name} failed: {e!s}")
        raise HTTPException(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            detail=f"Backup failed: {e!s}",
        )

    logger.info(f"✅ Manual backup of {data.table_name}: {result.snapshot_id}")
    return await get_backup_snapshot(result.snapshot_id)


@backup_api_router.delete("/api/v1/snapshots/{snapshot_id}", status_code=HTTPStatus.OK)
async def api_delete_snapshot(snapshot_id: str):
    if not await delete_backup_snapshot(snapshot_id):
        raise HTTPException(
            status_code=HTTPStatus.NOT_FOUND,
            detail="Backup snapshot not found",
        )
    return {"success": True}


@backup_api_router.post(
    "/api/v1/snapshots/{snapshot_id}/restore", status_code=HTTPStatus.OK
)
async def api_restore_snapshot(snapshot_id: str, data: RestoreData):
    """Restore a snapshot in replace or merge mode."""
    snapshot = await get_backup_snapshot(snapshot_id)
    if not snapshot:
        raise HTTPException(
            status_code=HTTPStatus.NOT_FOUND,
            detail="Backup snapshot not found",
        )

    try:
        result = await restore_table_backup(snapshot_id, data.mode)
    except ValueError as e:
        raise HTTPException(status_code=HTTPStatus.BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"❌ Restore of snapshot {snapshot_id} failed: {e!s}")
        raise HTTPException(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            detail=f"Restore failed: {e!s}",
        )

    return result


@backup_api_router.get("/api/v1/schedules", status_code=HTTPStatus.OK)
async def api_get_schedules(table_name: Optional[str] = Query(None)):
    return await get_backup_schedules(table_name)


@backup_api_router.get("/api/v1/schedules/{schedule_id}", status_code=HTTPStatus.OK)
async def api_get_schedule(schedule_id: str):
    return await get_schedule_or_404(schedule_id)


@backup_api_router.post("/api/v1/schedules", status_code=HTTPStatus.CREATED)
async def api_create_schedule(data: CreateBackupScheduleData):
    """Create a new backup schedule."""
    await validate_schedule_data(data)

    schedule = await create_backup_schedule(data, first_run(data))
    logger.info(
        f"✅ Created backup schedule: {schedule.schedule_name or schedule.table_name} "
        f"(ID: {schedule.id}), first run {schedule.next_run.isoformat()}"
    )
    return schedule


@backup_api_router.put("/api/v1/schedules/{schedule_id}", status_code=HTTPStatus.OK)
async def api_update_schedule(schedule_id: str, data: CreateBackupScheduleData):
    """Update a backup schedule. The next run is recomputed from the new recurrence."""
    await get_schedule_or_404(schedule_id)
    await validate_schedule_data(data)

    updated_schedule = await update_backup_schedule(schedule_id, data, first_run(data))
    logger.info(f"✅ Updated backup schedule: {schedule_id}")
    return updated_schedule


@backup_api_router.delete("/api/v1/schedules/{schedule_id}", status_code=HTTPStatus.OK)
async def api_delete_schedule(schedule_id: str):
    await get_schedule_or_404(schedule_id)
    await delete_backup_schedule(schedule_id)
    logger.info(f"✅ Deleted backup schedule: {schedule_id}")
    return {"success": True}


@backup_api_router.post("/api/v1/schedules/{schedule_id}/run", status_code=HTTPStatus.OK)
async def api_run_schedule(schedule_id: str, request: Request):
    """Run a schedule now, through the same lock as the poller."""
    schedule = await get_schedule_or_404(schedule_id)
    now = datetime.now(timezone.utc)

    if schedule.lock_until and schedule.lock_until > now:
        raise HTTPException(
            status_code=HTTPStatus.CONFLICT,
            detail="Schedule is already running",
        )

    logger.info(f"🚀 Manual run triggered for schedule: {schedule_id}")
    success = await get_scheduler(request).execute_schedule(schedule, now)
    return {"success": success, "schedule": await get_backup_schedule(schedule_id)}


@backup_api_router.get("/api/v1/history", status_code=HTTPStatus.OK)
async def api_get_history(
    schedule_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
):
    """Get run history, optionally filtered by schedule_id."""
    if schedule_id:
        await get_schedule_or_404(schedule_id)
    return await get_schedule_runs(schedule_id=schedule_id, limit=limit)
