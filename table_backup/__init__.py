from fastapi import APIRouter
from loguru import logger

from .crud import db
from .tasks import BackupScheduler
from .views_api import backup_api_router

logger.debug(
    "Table backup module loaded. "
    "This module provides scheduled table snapshots with replace/merge restore."
)

backup_ext: APIRouter = APIRouter(prefix="/backup", tags=["Backup"])
backup_ext.include_router(backup_api_router)


def backup_start() -> BackupScheduler:
    """Start a backup scheduler. The caller holds it and passes it to backup_stop()."""
    scheduler = BackupScheduler()
    scheduler.init()
    logger.info("🚀 Started table backup scheduler")
    return scheduler


async def backup_stop(scheduler: BackupScheduler) -> None:
    try:
        await scheduler.shutdown()
    except Exception as ex:
        logger.warning(ex)


__all__ = [
    "BackupScheduler",
    "backup_ext",
    "backup_start",
    "backup_stop",
    "db",
]
