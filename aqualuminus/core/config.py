from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "AquaLuminus UV Scheduler"
    timezone: str = "UTC"

    # Storage (devices, schedules, activity log and the task queue share one file)
    sqlite_path: str = Field(default="aqualuminus.db")

    # Device transport: "http" talks to the lamp firmware, "sim" is in-process
    device_mode: str = Field(default="http")
    device_timeout_seconds: float = 5.0

    # Background polling
    poll_interval_seconds: int = 900      # 15 min status/sensor refresh
    history_interval_seconds: int = 86400  # daily sensor history snapshot

    # Cleaning cycles
    advance_notice_minutes: int = 5

    # Work engine
    work_poll_seconds: float = 1.0
    work_max_attempts: int = 5
    work_backoff_seconds: float = 30.0
    work_max_backoff_seconds: float = 1800.0
    worker_concurrency: int = 4

    # Notifications: always logged, optionally POSTed to a webhook
    notify_webhook_url: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_file: str = "aqualuminus.log"


settings = Settings()
