from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings

__version__ = "0.1.0"


class Settings(BaseSettings):
    api_base_url: str = "http://localhost:3000/api/synchronizeJobManager"
    database_url: str = "sqlite:///./jobtracker.db"
    request_timeout_seconds: float = 30.0
    outbox_max_retries: int = 3
    outbox_backoff_minutes: int = 60
    outbox_retention_days: int = 7
    sync_interval_minutes: int = 15
    outbox_cleanup_hour: int = 4
    auth_url: str = ""
    auth_api_key: str = ""
    session_dir: Path = Path.home() / ".jobtracker" / "session"
    user_agent: str = f"JobTracker-Sync/{__version__}"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
