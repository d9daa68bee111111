"""Configuration management for the CRM workflow engine."""

import os
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field, field_validator
from enum import Enum

from .core.exceptions import ConfigurationError


ENV_PREFIX = "CRM_WORKFLOWS_"

DEFAULT_ELIGIBLE_ENTITY_TYPES = ["Contact", "Company", "Deal", "Lead", "Activity"]

SUPPORTED_DATABASE_SCHEMES = ("sqlite", "postgresql", "mysql")


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AppConfig(BaseModel):
    """Application configuration settings.

    Every field can be set from an environment variable named after it with
    the ``CRM_WORKFLOWS_`` prefix, e.g. ``CRM_WORKFLOWS_MAX_CASCADE_DEPTH``.
    """

    # Service
    app_name: str = Field(default="CRM Workflow Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")
    host: str = Field(default="0.0.0.0", description="Bind address of the API server")
    port: int = Field(default=8000, ge=1, le=65535, description="Port of the API server")
    reload: bool = Field(default=False, description="Auto-reload the API server on code changes")

    # Storage
    database_url: str = Field(default="sqlite:///./crm_workflows.db", description="SQLAlchemy database URL")
    database_echo: bool = Field(default=False, description="Log every SQL statement")

    # Trigger matching and cascades
    eligible_entity_types: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ELIGIBLE_ENTITY_TYPES),
        description="Entity types whose lifecycle events can trigger workflows"
    )
    workflow_cache_ttl_seconds: int = Field(
        default=60, ge=0,
        description="Lifetime of cached active workflow lists per tenant and entity type"
    )
    max_cascade_depth: int = Field(default=5, ge=1, description="Maximum nesting of executions within one chain")

    # Date triggers
    date_scan_interval_minutes: int = Field(default=60, ge=1, description="Interval between date trigger scans")
    preferred_time_window_minutes: int = Field(
        default=30, ge=0,
        description="Tolerance around a date trigger's preferred time of day"
    )

    # Background jobs and actions
    enable_scheduler: bool = Field(default=True, description="Run jobs on the background scheduler")
    scheduler_max_workers: int = Field(default=10, ge=1, description="Thread pool size of the scheduler")
    job_max_retries: int = Field(default=2, ge=0, description="Retries of a job on infrastructure errors")
    job_retry_base_delay: float = Field(default=1.0, ge=0, description="Base delay in seconds between job retries")
    webhook_timeout_seconds: float = Field(default=10.0, gt=0, description="Default timeout of webhook calls")

    # Logging
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s%(run_context)s",
        description="Text log format; %(run_context)s expands to the workflow run fields"
    )
    log_file: Optional[str] = Field(default=None, description="Rotating log file path")
    log_structured: bool = Field(default=False, description="Emit JSON log lines")
    log_max_size: int = Field(default=10 * 1024 * 1024, description="Log file size in bytes before rotation")
    log_backup_count: int = Field(default=5, description="Rotated log files to keep")

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Only SQLite, PostgreSQL and MySQL URLs are accepted."""
        if not v:
            raise ValueError("Database URL cannot be empty")
        scheme = v.split('://')[0].split('+')[0].lower()
        if scheme not in SUPPORTED_DATABASE_SCHEMES:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {list(SUPPORTED_DATABASE_SCHEMES)}")
        return v

    @field_validator('eligible_entity_types', mode='before')
    @classmethod
    def validate_entity_types(cls, v):
        """Accept a comma separated string; blanks are dropped."""
        if isinstance(v, str):
            v = v.split(',')
        cleaned = [item.strip() for item in v if item and item.strip()]
        if not cleaned:
            raise ValueError("At least one eligible entity type is required")
        return cleaned

    @field_validator('log_level', mode='before')
    @classmethod
    def upper_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.lower().startswith("sqlite")

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Keyword arguments for ``uvicorn.run``."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from ``CRM_WORKFLOWS_*`` environment variables."""
        values = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        return cls.model_validate(values)


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration, reading the environment on first use."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load a .env file (``config_file`` or ./.env) into the environment and rebuild the configuration."""
    global _config
    from dotenv import load_dotenv

    if config_file and os.path.exists(config_file):
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        load_dotenv('.env')

    _config = AppConfig.from_env()
    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def _ensure_parent_dir(path: str, label: str, errors: List[str]) -> None:
    directory = os.path.dirname(path)
    if not directory or os.path.isdir(directory):
        return
    try:
        os.makedirs(directory, exist_ok=True)
    except OSError as e:
        errors.append(f"Cannot create {label} directory {directory}: {e}")


def validate_config(config: AppConfig) -> None:
    """Create the directories the database file and log file live in.

    Raises:
        ConfigurationError: If a directory cannot be created
    """
    errors: List[str] = []

    if config.is_sqlite and ":memory:" not in config.database_url:
        _ensure_parent_dir(config.database_url.split(":///", 1)[-1], "database", errors)

    if config.log_file:
        _ensure_parent_dir(config.log_file, "log", errors)

    if errors:
        raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")


def get_testing_config() -> AppConfig:
    """Configuration for tests: in-memory database, jobs run on demand."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        enable_scheduler=False,
        job_retry_base_delay=0.0
    )
