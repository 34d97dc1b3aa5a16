from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_log_dir() -> Path:
    env = os.environ.get("APP_ROOT")
    root = Path(env).resolve() if env else Path.cwd().resolve()
    return root / "logs"


class PublicConfig(BaseSettings):
    """
    Non-sensitive config with safe defaults.

    Loaded from (in order):
      - process env
      - optional `.env` file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- runtime ---
    env: str = Field(default="development", alias="ENV")  # development|production|test
    host: str = Field(default="127.0.0.1", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # --- logging ---
    log_dir: Path = Field(default_factory=_default_log_dir, alias="LOG_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=3, alias="LOG_BACKUP_COUNT")

    # --- redis connection (non-secret parts; REDIS_URL wins when set) ---
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_db: int = Field(default=0, alias="REDIS_DB")

    # --- sessions ---
    session_ttl_seconds: int = Field(default=30 * 24 * 3600, alias="SESSION_TTL_SECONDS")  # one month
    # Minimum time between two refreshes of the same session.
    session_activity_window_seconds: int = Field(
        default=3600, alias="SESSION_ACTIVITY_WINDOW_SECONDS"
    )
    session_cookie_name: str = Field(default="session", alias="SESSION_COOKIE_NAME")
    session_cookie_max_age_days: int = Field(default=30, alias="SESSION_COOKIE_MAX_AGE_DAYS")
    cookie_secure: bool | None = Field(default=None, alias="COOKIE_SECURE")  # None => not development
    # Backend for the session key-value store: redis|memory
    session_store: str = Field(default="redis", alias="SESSION_STORE")

    # --- outgoing mail (used by email jobs) ---
    app_origin: str = Field(default="http://localhost:3000", alias="APP_ORIGIN")  # links in emails
    mail_from_address: str = Field(default="noreply@cookhound.local", alias="MAIL_FROM_ADDRESS")
    mail_from_name: str = Field(default="Cookhound", alias="MAIL_FROM_NAME")
    contact_email: str = Field(default="support@cookhound.local", alias="CONTACT_EMAIL")

    # --- background jobs ---
    # redis: jobs live in Redis (required for separate worker processes)
    # local: in-process queue (dev/tests; app and worker must share the process)
    queue_backend: str = Field(default="redis", alias="QUEUE_BACKEND")
    # Redis key prefix for queues/schedulers (no secrets)
    redis_queue_prefix: str = Field(default="ch", alias="REDIS_QUEUE_PREFIX")
    # How long a consumer blocks waiting for work before re-checking pause/stop flags.
    queue_poll_interval_ms: int = Field(default=1_000, alias="QUEUE_POLL_INTERVAL_MS")
    # How often delayed jobs and cron schedules are checked for due entries.
    queue_scheduler_interval_ms: int = Field(default=500, alias="QUEUE_SCHEDULER_INTERVAL_MS")
    # Grace period for in-flight jobs when a worker closes.
    queue_close_timeout_sec: float = Field(default=30.0, alias="QUEUE_CLOSE_TIMEOUT_SEC")

    def is_development(self) -> bool:
        return str(self.env or "").strip().lower() in {"development", "dev", "local"}

    def effective_cookie_secure(self) -> bool:
        if self.cookie_secure is not None:
            return bool(self.cookie_secure)
        return not self.is_development()
