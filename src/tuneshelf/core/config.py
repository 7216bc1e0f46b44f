import os
from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Project Paths
    BASE_DIR: Path = Path(__file__).resolve().parent.parent.parent
    DATA_DIR: Path = Path(
        os.getenv("TUNESHELF_DATA_DIR", str(BASE_DIR.parent / "data"))
    )

    # Database
    DB_NAME: str = "tuneshelf.db"

    @property
    def DB_PATH(self) -> Path:
        return self.DATA_DIR / self.DB_NAME

    @property
    def DB_URL(self) -> str:
        # Use forward slashes so Windows paths work in the URL (no backslash escapes)
        path = self.DB_PATH.resolve().as_posix()
        return f"sqlite+aiosqlite:///{path}"

    DB_ECHO: bool = False
    DB_BACKUP_RETENTION: int = 5

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_RETENTION: str = "10 days"
    LOG_ROTATION: str = "10 MB"

    # Sync defaults (a CLI flag always wins over these)
    MEDIA_PATH: str = ""
    SYNC_TAGS: List[str] = []
    SYNC_SUBSTITUTIONS: List[str] = []
    SYNC_TIMEOUT: float = 0  # seconds, 0 = no budget
    SYNC_MAX_FAILURES: int = 3  # failed runs before a track loses orphan protection

    # Default owner for manifest playlists
    ADMIN_NAME: str = "admin"


settings = Settings()

# Ensure data directory exists
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
