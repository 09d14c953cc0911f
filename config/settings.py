"""
Configuration management for CommitRelay.

This module provides centralized configuration with:
- Delivery endpoint and authentication settings
- Retry and backoff tuning
- Watcher and durable queue settings
- Logging configuration
- The list of watched projects
"""

from pathlib import Path
from typing import Optional, List, Dict, Any
from functools import lru_cache

from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings
from pydantic_settings import BaseSettings as PydanticBaseSettings

from shared.models import ProjectConfig, RetryPolicy


DEFAULT_STATE_DIR = Path.home() / ".config" / "commit-relay"


class ApiSettings(BaseSettings):
    """Remote collection service settings."""

    url: str = Field(default="http://localhost:8080", description="Collection service base URL")
    auth_token: Optional[SecretStr] = Field(default=None, description="Bearer token")
    request_timeout: float = Field(default=30.0, gt=0, description="HTTP request timeout")
    health_check_timeout: float = Field(default=5.0, gt=0, description="Health probe timeout")

    @field_validator("url")
    @classmethod
    def validate_api_url(cls, v):
        if not v.startswith(("http://", "https://")):
            raise ValueError("API URL must be HTTP/HTTPS")
        return v.rstrip("/")


class RetrySettings(BaseSettings):
    """Retry and backoff settings for delivery calls."""

    max_retries: int = Field(default=5, ge=0, description="Retries after the first attempt")
    base_delay_ms: int = Field(default=1000, ge=0, description="Delay before the first retry")
    max_delay_ms: int = Field(default=30000, ge=0, description="Upper bound for any delay")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Exponential growth factor")
    jitter_ratio: float = Field(default=0.3, ge=0, le=1, description="Maximum random jitter")
    failure_threshold: int = Field(
        default=3, ge=1, description="Consecutive failures before disconnected"
    )

    def to_policy(self) -> RetryPolicy:
        """Build the client's retry policy from these settings."""
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            backoff_multiplier=self.backoff_multiplier,
            jitter_ratio=self.jitter_ratio,
        )


class WatcherSettings(BaseSettings):
    """Repository watcher settings."""

    debounce_ms: int = Field(default=2000, ge=0, description="Quiet period before extraction")
    initial_commit_limit: int = Field(
        default=5, ge=1, description="Commits reported when no baseline exists"
    )
    session_poll_interval: float = Field(
        default=30.0, ge=0, description="Seconds an active session lookup is cached"
    )


class QueueSettings(BaseSettings):
    """Durable retry queue settings."""

    state_dir: str = Field(default=str(DEFAULT_STATE_DIR), description="Daemon state directory")
    max_size: int = Field(default=100, ge=1, description="Maximum queued payloads")
    max_age_days: float = Field(default=7, gt=0, description="Maximum age of a queued payload")
    process_interval: float = Field(default=60.0, gt=0, description="Seconds between drains")
    max_item_attempts: Optional[int] = Field(
        default=None, ge=1, description="Attempts after which an item no longer blocks a pass"
    )

    @field_validator("state_dir")
    @classmethod
    def expand_state_dir(cls, v):
        return str(Path(v).expanduser())

    @property
    def queue_file(self) -> Path:
        return Path(self.state_dir) / "queue" / "pending.json"


class MonitoringSettings(BaseSettings):
    """Logging configuration settings."""

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Logging format string",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()


class Settings(PydanticBaseSettings):
    """
    Main application settings.

    Values come from the environment or a ``.env`` file; nested groups use
    ``__`` as the delimiter (``API__URL``, ``QUEUE__MAX_SIZE``). Projects are
    given as a JSON list in ``PROJECTS``.
    """

    app_name: str = Field(default="CommitRelay", description="Application name")
    version: str = Field(default="1.0.0", description="Application version")

    api: ApiSettings = Field(default_factory=ApiSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    watcher: WatcherSettings = Field(default_factory=WatcherSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    projects: List[ProjectConfig] = Field(default_factory=list, description="Watched projects")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "env_nested_delimiter": "__",
        "extra": "ignore",
    }


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings: Application configuration object
    """
    return Settings()


def export_config(settings: Settings) -> Dict[str, Any]:
    """
    Export configuration for display and diagnostics.

    Returns:
        Dict[str, Any]: Configuration export (without the auth token)
    """
    return {
        "app_name": settings.app_name,
        "version": settings.version,
        "api": {
            "url": settings.api.url,
            "authenticated": settings.api.auth_token is not None,
            "request_timeout": settings.api.request_timeout,
        },
        "retry": {
            "max_retries": settings.retry.max_retries,
            "base_delay_ms": settings.retry.base_delay_ms,
            "max_delay_ms": settings.retry.max_delay_ms,
        },
        "watcher": {
            "debounce_ms": settings.watcher.debounce_ms,
            "initial_commit_limit": settings.watcher.initial_commit_limit,
        },
        "queue": {
            "file": str(settings.queue.queue_file),
            "max_size": settings.queue.max_size,
            "max_age_days": settings.queue.max_age_days,
            "process_interval": settings.queue.process_interval,
        },
        "monitoring": {"log_level": settings.monitoring.log_level},
        "projects": [
            {"path": project.path, "name": project.name} for project in settings.projects
        ],
    }
