from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class BackupSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="BACKUP_", env_file=".env", extra="ignore", case_sensitive=False
    )

    database_url: str = "sqlite+aiosqlite:///./data/database.sqlite3"
    # Tables that may be backed up. Empty means every non-internal table.
    tables: list[str] = []
    scheduler_enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8000


@lru_cache
def get_settings() -> BackupSettings:
    return BackupSettings()
