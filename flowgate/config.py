"""Configuration management for the Flowgate workflow engine.

Every setting can be overridden by an environment variable named after the
field with a ``FLOWGATE_`` prefix, for example ``FLOWGATE_MAX_CONCURRENT_EXECUTIONS``.
"""

import os
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "FLOWGATE_"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


SUPPORTED_DATABASES = ("sqlite", "postgresql", "mysql")


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="Flowgate", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")

    # Database settings
    database_url: str = Field(default="sqlite:///./flowgate.db", description="SQLAlchemy database URL")
    database_echo: bool = Field(default=False, description="Echo SQL statements to the log")

    # Execution engine settings
    max_concurrent_executions: int = Field(
        default=10,
        description="Maximum number of executions walking the graph at once"
    )
    node_timeout: float = Field(default=300, description="Default per-node timeout in seconds")
    default_max_retries: int = Field(default=3, description="Execution-level retries allowed after a failure")
    retry_base_delay: float = Field(default=1.0, description="Base backoff delay in seconds")
    retry_max_delay: float = Field(default=60.0, description="Maximum backoff delay in seconds")
    max_node_visits: int = Field(
        default=1000,
        description="Node visits allowed per execution before it is failed as a runaway loop"
    )
    shutdown_grace_period: float = Field(
        default=30.0,
        description="Seconds to wait for in-flight executions on shutdown"
    )

    # Human review settings
    human_review_timeout_hours: float = Field(
        default=24,
        description="Hours a human review may stay open before the execution fails"
    )
    sweep_interval_seconds: float = Field(default=60, description="Interval of the review timeout sweep")
    callback_base_url: str = Field(
        default="http://localhost:8000",
        description="Public base URL injected into external tasks as the callback"
    )
    task_request_timeout: float = Field(default=30.0, description="HTTP timeout for task system calls")
    task_status_url_template: Optional[str] = Field(
        default=None,
        description="URL template for task status polling, with a {task_id} placeholder"
    )
    poll_interval_seconds: float = Field(default=5.0, description="Task status polling interval")
    poll_max_wait_seconds: float = Field(default=300.0, description="Maximum task status polling wait")

    # Language model settings
    llm_provider: str = Field(default="anthropic", description="Language model provider name")
    llm_default_model: str = Field(
        default="claude-3-5-haiku-latest",
        description="Model used by llm and agent nodes without an explicit model"
    )

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: Optional[str] = Field(default=None, description="Text log format; a default is used when unset")
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_structured: bool = Field(default=False, description="Emit JSON log lines")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of rotated log files to keep")

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("Database URL cannot be empty")
        scheme = v.split('://')[0].split('+')[0].lower()
        if scheme not in SUPPORTED_DATABASES:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {list(SUPPORTED_DATABASES)}")
        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_concurrent_executions', 'max_node_visits')
    @classmethod
    def validate_positive_limits(cls, v):
        if v < 1:
            raise ValueError("Execution limits must be at least 1")
        return v

    @field_validator('default_max_retries')
    @classmethod
    def validate_retries(cls, v):
        if v < 0:
            raise ValueError("Retries cannot be negative")
        return v

    @field_validator('node_timeout', 'human_review_timeout_hours', 'sweep_interval_seconds',
                     'task_request_timeout', 'poll_interval_seconds', 'poll_max_wait_seconds')
    @classmethod
    def validate_timeouts(cls, v):
        if v <= 0:
            raise ValueError("Timeouts and intervals must be positive")
        return v

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.lower().startswith("sqlite")

    def get_database_connect_args(self) -> Dict[str, Any]:
        """Driver arguments for the configured database."""
        if self.is_sqlite:
            # Sessions are opened from worker threads as well as the event loop thread
            return {"check_same_thread": False}
        return {}

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from FLOWGATE_* environment variables.

        Values are validated and coerced by the model, so ``"3"`` becomes an
        int and ``"yes"`` a bool.
        """
        overrides = {}
        for name in cls.model_fields:
            value = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if value is not None:
                overrides[name] = value
        return cls(**overrides)


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a dotenv file, then the environment.

    Variables already set in the environment win over the file.
    """
    global _config

    dotenv_path = config_file if config_file and os.path.exists(config_file) else '.env'
    if os.path.exists(dotenv_path):
        from dotenv import load_dotenv
        load_dotenv(dotenv_path)

    _config = AppConfig.from_env()
    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def get_testing_config() -> AppConfig:
    """Configuration for tests: in-memory database and short delays."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_concurrent_executions=4,
        node_timeout=5,
        retry_base_delay=0.001,
        retry_max_delay=0.01,
        sweep_interval_seconds=0.05,
        poll_interval_seconds=0.01,
        poll_max_wait_seconds=1.0,
    )
