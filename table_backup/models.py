# Data models for the table backup subsystem

import json
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

PUBLIC_SCHEDULE_TYPES = ("daily", "weekly", "monthly")
RestoreMode = Literal["replace", "merge"]


class ScheduleConfig(BaseModel):
    """Recurrence parameters. Stored as JSON with camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    hour: int = Field(0, ge=0, le=23)
    minute: int = Field(0, ge=0, le=59)
    day_of_week: int = Field(0, ge=0, le=6, alias="dayOfWeek")  # 0 = Sunday
    day_of_month: int = Field(1, ge=1, le=31, alias="dayOfMonth")
    timezone: str = "UTC"

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True))


def _parse_config(value: Any) -> Any:
    if value is None or value == "":
        return {}
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


class CreateBackupScheduleData(BaseModel):
    table_name: str
    schedule_name: Optional[str] = None
    schedule_type: str  # daily, weekly, monthly
    schedule_config: ScheduleConfig = Field(default_factory=ScheduleConfig)
    retention_count: Optional[int] = Field(None, ge=1)  # Keep last N snapshots
    active: bool = True
    created_by: Optional[str] = None


class BackupSchedule(BaseModel):
    id: str
    table_name: str
    schedule_name: Optional[str] = None
    schedule_type: str
    schedule_config: ScheduleConfig = Field(default_factory=ScheduleConfig)
    retention_count: Optional[int] = None
    active: bool = True
    next_run: datetime
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    lock_until: Optional[datetime] = None  # None when idle
    consecutive_failures: int = 0
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("schedule_config", mode="before")
    @classmethod
    def parse_schedule_config(cls, value: Any) -> Any:
        return _parse_config(value)


class ScheduleCompletion(BaseModel):
    success: bool
    next_run: datetime
    error: Optional[str] = None
    snapshot_id: Optional[str] = None
    row_count: Optional[int] = None
    completed_at: Optional[datetime] = None


class ScheduleRun(BaseModel):
    id: str
    schedule_id: str
    timestamp: datetime
    status: str  # success, error
    snapshot_id: Optional[str] = None
    row_count: Optional[int] = None
    error_message: Optional[str] = None


class CreateSnapshotData(BaseModel):
    table_name: str
    backup_name: Optional[str] = None
    description: Optional[str] = None
    created_by: Optional[str] = None


class BackupSnapshot(BaseModel):
    id: str
    table_name: str
    backup_table_name: str
    row_count: int = 0
    backup_name: Optional[str] = None
    description: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    sequence_number: int = 0


class SnapshotResult(BaseModel):
    snapshot_id: str
    row_count: int


class RestoreData(BaseModel):
    mode: RestoreMode = "replace"


class RestoreResult(BaseModel):
    snapshot_id: str
    table_name: str
    mode: RestoreMode
    rows_restored: int
