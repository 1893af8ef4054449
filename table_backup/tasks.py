import asyncio
import calendar
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from dateutil import tz
from dateutil.relativedelta import relativedelta
from loguru import logger

from . import crud
from .models import BackupSchedule, ScheduleCompletion

POLL_INTERVAL_SECONDS = 60
LOOKAHEAD_MINUTES = 1
# A lock older than this is considered abandoned and the schedule may run again
MAX_EXECUTION_TIME = timedelta(minutes=30)
ALERT_FAILURE_THRESHOLD = 3
SHUTDOWN_WARNING_SECONDS = 30
SHUTDOWN_POLL_STEP_SECONDS = 0.1


def ensure_timezone_aware(dt):
    """Helper to ensure datetime is timezone aware"""
    if dt and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _clamped_day(year: int, month: int, day: int) -> int:
    return min(day, calendar.monthrange(year, month)[1])


def compute_next_run(schedule: BackupSchedule, now: datetime) -> datetime:
    """
    Next run time in UTC for a schedule, strictly after now.

    Wall-clock arithmetic happens in the schedule's timezone. If the candidate
    time has already passed (<= now) it moves forward by one unit of the
    recurrence. Never raises: any error falls back to now + 1 day.
    """
    now = ensure_timezone_aware(now)
    try:
        config = schedule.schedule_config
        zone = tz.gettz(config.timezone or "UTC")
        if zone is None:
            raise ValueError(f"Unknown timezone: {config.timezone}")

        local_now = now.astimezone(zone).replace(tzinfo=None)
        at_time = local_now.replace(
            hour=config.hour, minute=config.minute, second=0, microsecond=0
        )

        if schedule.schedule_type == "daily":
            next_local = at_time
            if next_local <= local_now:
                next_local += relativedelta(days=1)

        elif schedule.schedule_type == "weekly":
            current_day = local_now.isoweekday() % 7  # 0 = Sunday
            days_until = config.day_of_week - current_day
            if days_until < 0 or (days_until == 0 and at_time <= local_now):
                days_until += 7
            next_local = at_time + relativedelta(days=days_until)

        elif schedule.schedule_type == "monthly":
            target_day = config.day_of_month
            next_local = at_time.replace(
                day=_clamped_day(at_time.year, at_time.month, target_day)
            )
            if next_local <= local_now:
                following = at_time.replace(day=1) + relativedelta(months=1)
                next_local = following.replace(
                    day=_clamped_day(following.year, following.month, target_day)
                )

        elif schedule.schedule_type == "custom":
            # TODO: parse cron expressions once custom schedules carry one
            logger.warning(
                f"⚠️ Custom schedule {schedule.id} has no cron support, using daily fallback"
            )
            next_local = local_now + relativedelta(days=1)

        else:
            logger.warning(
                f"⚠️ Unknown schedule type {schedule.schedule_type!r} for {schedule.id}, "
                f"using daily fallback"
            )
            next_local = local_now + relativedelta(days=1)

        # A wall time inside a DST gap does not exist; shift it forward
        localized = tz.resolve_imaginary(next_local.replace(tzinfo=zone))
        return localized.astimezone(timezone.utc)

    except Exception as e:
        logger.error(f"❌ Error computing next run for schedule {schedule.id}: {e!s}")
        return now.astimezone(timezone.utc) + timedelta(days=1)


class BackupScheduler:
    """
    Polls the schedule store once per interval and runs due backups one at a time.

    At most one poll is in flight per instance: a tick that fires while a poll is
    still running is dropped. Across processes, the per-schedule lock in the store
    is the only mutual exclusion, so a run that outlives MAX_EXECUTION_TIME can be
    claimed again elsewhere.
    """

    def __init__(self, store: Any = crud, poll_interval: float = POLL_INTERVAL_SECONDS):
        self.store = store
        self.poll_interval = poll_interval
        self._is_running = False
        self._stopped = False
        self._timer_task: Optional[asyncio.Task] = None
        self._poll_tasks: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def started(self) -> bool:
        return self._timer_task is not None

    def init(self) -> None:
        """Poll immediately, then every poll_interval seconds. Call once."""
        logger.info("🚀 Initializing backup scheduler...")
        self._stopped = False
        self._spawn_poll()
        self._timer_task = asyncio.create_task(self._tick())
        logger.info(
            f"✅ Backup scheduler initialized (polling every {self.poll_interval} seconds)"
        )

    async def shutdown(self, timeout: float = SHUTDOWN_WARNING_SECONDS) -> None:
        """Stop the timer and wait for the in-flight poll, up to timeout seconds."""
        logger.info("🛑 Shutting down backup scheduler...")
        self._stopped = True

        if self._timer_task:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self._is_running:
            if loop.time() >= deadline:
                logger.warning(
                    f"⚠️ Backup scheduler shutdown timed out after {timeout}s, "
                    f"leaving in-flight poll running"
                )
                return
            await asyncio.sleep(SHUTDOWN_POLL_STEP_SECONDS)

        logger.info("✅ Backup scheduler shutdown complete")

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            self._spawn_poll()

    def _spawn_poll(self) -> None:
        task = asyncio.create_task(self._timed_poll())
        self._poll_tasks.add(task)
        task.add_done_callback(self._poll_tasks.discard)

    async def _timed_poll(self) -> None:
        if self._stopped:
            return
        try:
            await self.poll()
        except Exception as e:
            logger.error(f"❌ Backup scheduler poll failed: {e!s}")

    async def poll(self, now: Optional[datetime] = None) -> None:
        """Run every due schedule sequentially. Returns at once if a poll is in flight."""
        if self._is_running:
            logger.info("⏩ Backup poll already running, skipping...")
            return

        self._is_running = True
        try:
            now = ensure_timezone_aware(now) or datetime.now(timezone.utc)
            logger.debug("🔄 Checking backup schedules...")

            schedules = await self.store.get_due_backup_schedules(now, LOOKAHEAD_MINUTES)
            if not schedules:
                return

            logger.info(f"📊 Found {len(schedules)} due backup schedule(s)")
            for schedule in schedules:
                try:
                    await self.execute_schedule(schedule, now)
                except Exception as e:
                    logger.error(f"❌ Error handling schedule {schedule.id}: {e!s}")

        except Exception as e:
            logger.error(f"❌ Error in backup scheduler poll: {e!s}")
        finally:
            self._is_running = False

    async def execute_schedule(self, schedule: BackupSchedule, now: datetime) -> bool:
        """
        Lock, snapshot, prune and reschedule a single schedule.
        Returns True on success, False when the lock was taken or the run failed.
        """
        now = ensure_timezone_aware(now)
        lock_until = now + MAX_EXECUTION_TIME

        locked = await self.store.mark_schedule_running(schedule.id, lock_until, now)
        if not locked:
            logger.info(f"⏩ Schedule {schedule.id} already running or locked, skipping")
            return False

        logger.info(f"💾 Executing schedule {schedule.id} (table: {schedule.table_name})")

        try:
            result = await self.store.create_table_backup(
                schedule.table_name,
                schedule.created_by,
                f"Scheduled: {schedule.schedule_name or schedule.table_name}",
                f'Automated backup from schedule "{schedule.schedule_name or "Unnamed"}"',
            )
            logger.info(f"✅ Backup created: {result.snapshot_id} ({result.row_count} rows)")

            if schedule.retention_count and schedule.retention_count > 0:
                deleted = await self.store.cleanup_old_backups_by_schedule(
                    schedule.table_name, schedule.retention_count
                )
                if deleted > 0:
                    logger.info(
                        f"🗑️ Cleaned up {deleted} old backup(s) for {schedule.table_name}"
                    )

            next_run = compute_next_run(schedule, now)
            await self.store.complete_schedule(
                schedule.id,
                ScheduleCompletion(
                    success=True,
                    next_run=next_run,
                    snapshot_id=result.snapshot_id,
                    row_count=result.row_count,
                    completed_at=now,
                ),
            )
            logger.info(f"✅ Schedule {schedule.id} completed. Next run: {next_run.isoformat()}")
            return True

        except Exception as e:
            error_message = str(e) or type(e).__name__
            logger.error(f"❌ Schedule {schedule.id} failed: {error_message}")
            await self._record_failure(schedule, now, error_message)
            return False

    async def _record_failure(
        self, schedule: BackupSchedule, now: datetime, error_message: str
    ) -> None:
        next_run = compute_next_run(schedule, now)
        try:
            await self.store.complete_schedule(
                schedule.id,
                ScheduleCompletion(
                    success=False, next_run=next_run, error=error_message, completed_at=now
                ),
            )
        except Exception as e:
            logger.error(f"❌ Could not record failure of schedule {schedule.id}: {e!s}")

        logger.error(
            f"❌ Backup failed. Next attempt for {schedule.id} scheduled for: "
            f"{next_run.isoformat()}"
        )

        consecutive_failures = (schedule.consecutive_failures or 0) + 1
        if consecutive_failures >= ALERT_FAILURE_THRESHOLD:
            # No paging integration yet; the log line is the alert
            logger.error(
                f"🚨 ALERT: Schedule {schedule.id} ({schedule.table_name}) has failed "
                f"{consecutive_failures} times consecutively!"
            )
