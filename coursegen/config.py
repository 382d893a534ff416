"""Settings + structured logging for the course-generation service."""

from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

# Load .env file from project root
PROJECT_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=PROJECT_DIR / ".env")


class Settings(BaseSettings):
    """Runtime settings for the orchestrator, monitor and API."""

    # Environment + logging
    environment: Literal["development", "production"] = "development"
    log_level: str = "INFO"
    log_json: bool = False
    debug: bool = False

    # API
    api_title: str = "Course Generation API"
    api_version: str = "1.0.0"
    host: str = "0.0.0.0"
    port: int = 8000
    reload: bool = False
    cors_origins: list[str] = ["*"]

    # Orchestration
    max_concurrent_tasks_per_job: int = 5
    max_task_attempts: int = 3
    media_max_attempts: int = 2
    retry_backoff_seconds: float = 1.0
    retry_backoff_max_seconds: float = 30.0
    dispatch_poll_interval_seconds: float = 2.0
    job_retention_minutes: int = 60
    eviction_interval_seconds: float = 300.0
    max_active_jobs_per_owner: int = 3

    # Content generation
    content_backend: Literal["agent", "deterministic"] = "agent"
    content_model: str = "gpt-4o-mini"
    openai_api_key: str | None = None
    task_timeout_seconds: float = 300.0
    content_retry_attempts: int = 3
    content_retry_wait_seconds: float = 1.0
    content_rate_limit_per_minute: int = 120

    # Resilience monitor
    monitor_enabled: bool = True
    monitor_interval_seconds: float = 60.0
    stall_after_seconds: float = 300.0
    stuck_after_seconds: float = 600.0
    max_recovery_attempts: int = 3
    auto_restart_failed_jobs: bool = False

    # Durable store
    store_backend: Literal["memory", "file"] = "memory"
    store_path: str = ".coursegen/jobs"

    # Event log
    max_log_entries_per_job: int = 500

    def is_production(self) -> bool:
        return self.environment == "production"

    def get_environment_display(self) -> str:
        return self.environment.capitalize()

    def get_cors_config(self) -> dict[str, Any]:
        """CORS middleware options; wildcard origins are dropped in production."""
        origins = self.cors_origins
        if self.is_production():
            origins = [origin for origin in origins if origin != "*"]
        return {
            "allow_origins": origins,
            "allow_credentials": True,
            "allow_methods": ["GET", "POST", "DELETE"],
            "allow_headers": ["*"],
        }


settings = Settings()


def configure_structlog() -> None:
    """Simple logging setup."""
    import logging
    import sys

    import structlog

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        stream=sys.stdout,
        format="%(message)s",
        force=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_json
        else structlog.dev.ConsoleRenderer(colors=True, pad_event=20)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso" if settings.log_json else "%H:%M:%S"),
            structlog.stdlib.add_log_level,
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
