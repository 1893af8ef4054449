import asyncio
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from loguru import logger

from . import backup_ext, backup_start, backup_stop, db
from .config import get_settings
from .migrations import migrate

# Upper bound on graceful shutdown; the scheduler's own wait is only a soft limit
SHUTDOWN_HARD_TIMEOUT_SECONDS = 10


@asynccontextmanager
async def lifespan(app: FastAPI):
    version = await migrate(db)
    logger.info(f"✅ Backup schema at version {version}")

    scheduler = None
    if get_settings().scheduler_enabled:
        # Routes are registered by now; start polling
        scheduler = backup_start()
        app.state.backup_scheduler = scheduler

    try:
        yield
    finally:
        if scheduler:
            try:
                await asyncio.wait_for(
                    backup_stop(scheduler), timeout=SHUTDOWN_HARD_TIMEOUT_SECONDS
                )
            except asyncio.TimeoutError:
                logger.error(
                    f"❌ Backup scheduler did not stop within "
                    f"{SHUTDOWN_HARD_TIMEOUT_SECONDS}s, exiting anyway"
                )
        await db.dispose()


def create_app() -> FastAPI:
    app = FastAPI(title="Table Backup", lifespan=lifespan)
    app.include_router(backup_ext)
    return app


def run() -> None:
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
